from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from config import MatchingSettings, get_settings
from schemas import CandidateData, DispatchResult, JobData, OutboundMessage, ProcessingError
from services import match_store
from services.delivery import Deliverer, build_message
from services.errors import DeliveryError, NotEligible
from services.rate_limit import SendBudget

log = logging.getLogger(__name__)


@dataclass
class _SendOutcome:
    user_id: int
    delivery_id: Optional[str] = None
    error: Optional[str] = None
    permanent: bool = False
    # タイムアウト：送信処理自体はまだ動いているかもしれず、届いたかどうか分からない
    unknown: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


async def _send_one(
    deliverer: Deliverer,
    message: OutboundMessage,
    semaphore: asyncio.Semaphore,
    timeout: float,
) -> _SendOutcome:
    """1通送る。例外は外に出さず結果として返す（1人の失敗でバッチを止めない）。"""
    async with semaphore:
        try:
            delivery_id = await asyncio.wait_for(deliverer.deliver(message), timeout=timeout)
            return _SendOutcome(user_id=message.user_id, delivery_id=delivery_id)
        except asyncio.TimeoutError:
            return _SendOutcome(
                user_id=message.user_id,
                error=f"delivery outcome unknown: timed out after {timeout}s",
                unknown=True,
            )
        except DeliveryError as e:
            return _SendOutcome(user_id=message.user_id, error=str(e), permanent=e.permanent)
        except Exception as e:
            log.exception("unexpected delivery error for user %s", message.user_id)
            return _SendOutcome(user_id=message.user_id, error=f"{type(e).__name__}: {e}")


def _record_outcomes(db: Session, job_id: int, outcomes: List[_SendOutcome], result: DispatchResult) -> None:
    # 送信そのものは並行、DB 書き込みはここで順番に行う
    try:
        for outcome in outcomes:
            if outcome.ok:
                if match_store.mark_sent(db, job_id, outcome.user_id, outcome.delivery_id):
                    result.sent += 1
                else:
                    log.warning("match job=%s user=%s was already marked sent", job_id, outcome.user_id)
                continue
            if outcome.unknown:
                match_store.mark_delivery_unknown(db, job_id, outcome.user_id, outcome.error)
            else:
                match_store.record_delivery_failure(db, job_id, outcome.user_id, outcome.error, outcome.permanent)
            result.failed += 1
            result.errors.append(
                ProcessingError(user_id=outcome.user_id, error=outcome.error, permanent=outcome.permanent)
            )
            log.warning(
                "delivery failed job=%s user=%s permanent=%s: %s",
                job_id, outcome.user_id, outcome.permanent, outcome.error,
            )
        db.commit()
    except Exception:
        db.rollback()
        raise


async def dispatch_service(
    job_id: int,
    db: Session,
    deliverer: Deliverer,
    budget: Optional[SendBudget] = None,
    settings: Optional[MatchingSettings] = None,
) -> DispatchResult:
    """
    保存済みで未送信のマッチを通知する。
    - 送信枠（直近1時間の上限）の確保と同じロックの中で送る行を確保し、確保した行だけを送る
    - 送信枠を超える分は送らずに deferred として次回に回す
    - batch_size ごとに区切り、バッチ内は dispatch_concurrency まで並行に送る
    - 一時的な失敗は未送信のまま残し、恒久的な失敗は dead-letter、タイムアウトは結果不明にする
    """
    settings = settings or get_settings()
    budget = budget or SendBudget(settings.hourly_send_budget)
    floor = settings.qualification_floor

    job_row = match_store.get_job(db, job_id)
    if job_row is None:
        raise NotEligible(job_id, "not_found")
    if not job_row.featured:
        log.info("job %s is no longer featured; nothing to dispatch", job_id)
        return DispatchResult(job_id=job_id)
    job = JobData.model_validate(job_row)

    candidates = match_store.select_unsent_matches(db, job_id, floor)
    if not candidates:
        return DispatchResult(job_id=job_id)

    token = uuid.uuid4().hex
    grant = budget.reserve(
        db, job_id, len(candidates),
        claim=lambda limit: match_store.claim_unsent_matches(db, job_id, floor, token, limit),
    )
    result = DispatchResult(job_id=job_id, attempted=grant.granted, deferred=grant.deferred)
    if grant.granted == 0:
        log.info("nothing claimable within the send budget; deferring %d notifications for job %s", grant.deferred, job_id)
        return result

    try:
        # 以降の commit で ORM オブジェクトが失効するので、メッセージに必要な値を先に取り出しておく
        messages = [
            build_message(
                job,
                CandidateData(user_id=seeker.id, name=seeker.name, email=seeker.email, location=seeker.location),
                match.score,
                list(match.reasons or []),
                settings,
            )
            for match, seeker in match_store.select_claimed_matches(db, token)
        ]
        semaphore = asyncio.Semaphore(settings.dispatch_concurrency)

        for start in range(0, len(messages), settings.batch_size):
            batch = messages[start: start + settings.batch_size]
            outcomes = await asyncio.gather(
                *(_send_one(deliverer, m, semaphore, settings.delivery_timeout_seconds) for m in batch)
            )
            _record_outcomes(db, job_id, list(outcomes), result)
            log.info(
                "job %s batch %d: sent=%d failed=%d",
                job_id, start // settings.batch_size + 1,
                sum(1 for o in outcomes if o.ok), sum(1 for o in outcomes if not o.ok),
            )
            if start + settings.batch_size < len(messages) and settings.batch_delay_seconds > 0:
                await asyncio.sleep(settings.batch_delay_seconds)
    finally:
        match_store.release_claims(db, token)
        budget.release(db, grant)

    log.info(
        "dispatch job %s done: attempted=%d sent=%d failed=%d deferred=%d",
        job_id, result.attempted, result.sent, result.failed, result.deferred,
    )
    return result

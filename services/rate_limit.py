from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from models import RateLimitLock, SendReservation
from services.match_store import count_sent_since, utcnow

log = logging.getLogger(__name__)

LOCK_NAME = "match_notifications"


@dataclass
class BudgetGrant:
    requested: int
    granted: int
    reservation_id: Optional[int] = None

    @property
    def deferred(self) -> int:
        return self.requested - self.granted


class SendBudget:
    """
    システム全体の「直近1時間の送信数 <= 上限」を守る送信枠。
    状態は DB（job_matches.sent_at と send_reservations）にだけ持つので、
    複数プロセス・複数インスタンスから同時に配信しても枠を超えない。
    """

    def __init__(self, hourly_budget: int, window: timedelta = timedelta(hours=1)):
        self.hourly_budget = hourly_budget
        self.window = window

    # ------ ロック行を SELECT ... FOR UPDATE で掴む ------
    def _acquire_lock(self, db: Session) -> None:
        stmt = select(RateLimitLock).where(RateLimitLock.name == LOCK_NAME).with_for_update()
        if db.execute(stmt).scalar_one_or_none() is not None:
            return
        try:
            db.add(RateLimitLock(name=LOCK_NAME))
            db.flush()
        except IntegrityError:
            # 別プロセスが先に作った。作り直さずに掴み直す
            db.rollback()
            db.execute(stmt).scalar_one()

    def _used(self, db: Session, now: datetime) -> int:
        since = now - self.window
        sent = count_sent_since(db, since)
        pending = db.execute(
            select(func.coalesce(func.sum(SendReservation.granted), 0)).where(
                SendReservation.released_at.is_(None),
                SendReservation.created_at >= since,
            )
        ).scalar_one()
        return int(sent) + int(pending)

    def remaining(self, db: Session, now: Optional[datetime] = None) -> int:
        return max(0, self.hourly_budget - self._used(db, now or utcnow()))

    def reserve(
        self,
        db: Session,
        job_id: int,
        requested: int,
        now: Optional[datetime] = None,
        claim: Optional[Callable[[int], Tuple[int, int]]] = None,
    ) -> BudgetGrant:
        """
        requested 件のうち今送ってよい件数を確保する。
        集計と予約の書き込みは同じトランザクション・同じロックの中で行う。
        claim を渡すと、ロックの中で claim(上限) を呼んで配信対象の行も確保する。
        claim は (候補件数, 確保件数) を返し、その値が requested / granted になる。
        """
        now = now or utcnow()
        if requested <= 0:
            return BudgetGrant(requested=0, granted=0)

        try:
            self._acquire_lock(db)
            remaining = max(0, self.hourly_budget - self._used(db, now))
            granted = min(requested, remaining)
            if claim is not None:
                requested, granted = claim(granted)
            reservation_id = None
            if granted > 0:
                reservation = SendReservation(job_id=job_id, granted=granted, created_at=now)
                db.add(reservation)
                db.flush()
                reservation_id = reservation.id
            db.commit()
        except Exception:
            db.rollback()
            raise

        if granted < requested:
            log.info(
                "send budget limits job %s: requested=%d granted=%d (hourly budget %d)",
                job_id, requested, granted, self.hourly_budget,
            )
        return BudgetGrant(requested=requested, granted=granted, reservation_id=reservation_id)

    def release(self, db: Session, grant: BudgetGrant, now: Optional[datetime] = None) -> None:
        """配信が終わったら予約を閉じる。送れた分は job_matches.sent_at 側で数えられる。"""
        if grant.reservation_id is None:
            return
        db.execute(
            update(SendReservation)
            .where(SendReservation.id == grant.reservation_id)
            .values(released_at=now or utcnow())
        )
        db.commit()


def get_send_budget() -> SendBudget:
    """FastAPI の Depends 用。状態は DB にあるので毎回作ってよい。"""
    return SendBudget(get_settings().hourly_send_budget)

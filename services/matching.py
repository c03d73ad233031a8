from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from config import MatchingSettings, get_settings
from models import JobPosting
from schemas import (
    CandidateData, JobData,
    MatchItem, MatchRunResult, ProcessingError,
    FeaturedJobResult, JobMatchOut,
)
from services import match_store
from services.delivery import Deliverer
from services.dispatch import dispatch_service
from services.embedding import Embedder
from services.errors import (
    CandidateProcessingError, EmbeddingUnavailable, InvalidVectorError, NotEligible,
)
from services.rate_limit import SendBudget
from services.reasons import generate_match_reasons
from services.similarity import parse_embedding, similarity_score
from services.stats import build_stats

log = logging.getLogger(__name__)


# ------ DB → Pydantic 変換ヘルパー ------
def resolve_job_from_db(job: JobPosting) -> JobData:
    """JobPosting（ORM） → JobData。skills が欠けていても空リストに揃える。"""
    return JobData.model_validate(job)


def ensure_eligible(db: Session, job_id: int) -> JobPosting:
    job = match_store.get_job(db, job_id)
    if job is None:
        raise NotEligible(job_id, "not_found")
    if not job.featured:
        raise NotEligible(job_id, "not_featured")
    return job


async def embed_job(job: JobData, embedder: Embedder, timeout: float) -> List[float]:
    """求人の埋め込み。失敗・タイムアウト・不正ベクトルはすべて EmbeddingUnavailable にまとめる。"""
    try:
        vector = parse_embedding(
            await asyncio.wait_for(embedder.embed(job.embedding_text()), timeout=timeout)
        )
        if not vector.any():
            raise InvalidVectorError("zero vector")
        return vector.tolist()
    except asyncio.TimeoutError as e:
        raise EmbeddingUnavailable(f"job {job.id}: embedding timed out after {timeout}s") from e
    except InvalidVectorError as e:
        raise EmbeddingUnavailable(f"job {job.id}: invalid embedding: {e}") from e
    except Exception as e:
        raise EmbeddingUnavailable(f"job {job.id}: embedding failed: {e}") from e


# ---------- マッチングロジック本体 ----------
def score_candidate(job: JobData, job_vector: List[float], candidate: CandidateData, floor: float) -> MatchItem:
    try:
        candidate_vector = parse_embedding(candidate.embedding_json)
        score = similarity_score(job_vector, candidate_vector)
    except InvalidVectorError as e:
        raise CandidateProcessingError(candidate.user_id, str(e)) from e

    return MatchItem(
        user_id=candidate.user_id,
        name=candidate.name,
        score=score,
        reasons=generate_match_reasons(job, candidate, score),
        qualified=score >= floor,
    )


def rank_matches(items: List[MatchItem]) -> List[MatchItem]:
    """スコア降順、同点は user_id 昇順（再実行しても順位が変わらないように）。"""
    return sorted(items, key=lambda m: (-m.score, m.user_id))


def persist_matches(db: Session, job_id: int, items: List[MatchItem], floor: float) -> int:
    """閾値以上だけを (job_id, user_id) で upsert。1トランザクションでまとめて commit。"""
    qualified = [m for m in items if m.score >= floor]
    try:
        for m in qualified:
            match_store.upsert_match(db, job_id, m.user_id, m.score, m.reasons)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return len(qualified)


# ------ ルーターから呼ぶサービス層の関数 ------
async def run_matching_service(
    job_id: int,
    db: Session,
    embedder: Embedder,
    settings: Optional[MatchingSettings] = None,
    now: Optional[datetime] = None,
) -> MatchRunResult:
    """
    注目求人に対して候補者をスコアリングし、閾値以上を保存する。
    1人分の失敗は errors に積んで続行。中断するのは NotEligible / EmbeddingUnavailable だけ。
    """
    settings = settings or get_settings()
    job = resolve_job_from_db(ensure_eligible(db, job_id))
    job_vector = await embed_job(job, embedder, settings.embed_timeout_seconds)

    candidates = match_store.fetch_eligible_candidates(
        db,
        activity_window_days=settings.activity_window_days,
        embedding_freshness_days=settings.embedding_freshness_days,
        now=now,
    )
    log.info("matching job %s against %d eligible candidates", job_id, len(candidates))

    items: List[MatchItem] = []
    errors: List[ProcessingError] = []
    for candidate in candidates:
        try:
            items.append(score_candidate(job, job_vector, candidate, settings.qualification_floor))
        except CandidateProcessingError as e:
            log.warning("skipping candidate %s for job %s: %s", e.user_id, job_id, e)
            errors.append(ProcessingError(user_id=e.user_id, error=str(e)))

    ranked = rank_matches(items)
    persisted = persist_matches(db, job_id, ranked, settings.qualification_floor)

    stats = build_stats(
        [m.score for m in ranked],
        total_candidates=len(candidates),
        high_score_threshold=settings.high_score_threshold,
    )
    log.info(
        "matching job %s done: scored=%d persisted=%d failed=%d top=%.2f",
        job_id, len(ranked), persisted, len(errors), stats.top_score,
    )
    return MatchRunResult(
        job_id=job_id,
        matches=ranked,
        stats=stats,
        persisted=persisted,
        failed_candidates=len(errors),
        errors=errors,
    )


async def process_featured_job_service(
    job_id: int,
    db: Session,
    embedder: Embedder,
    deliverer: Deliverer,
    budget: Optional[SendBudget] = None,
    settings: Optional[MatchingSettings] = None,
) -> FeaturedJobResult:
    """注目求人になったときの一連の処理：マッチング → 保存 → 配信。"""
    settings = settings or get_settings()
    run = await run_matching_service(job_id, db, embedder, settings=settings)
    dispatch = await dispatch_service(job_id, db, deliverer, budget=budget, settings=settings)
    run.stats.notified = dispatch.sent
    return FeaturedJobResult(run=run, dispatch=dispatch)


def list_job_matches_service(job_id: int, db: Session, min_score: Optional[float] = None) -> List[JobMatchOut]:
    return [JobMatchOut.model_validate(m) for m in match_store.job_match_rows(db, job_id, min_score)]


def list_user_matches_service(user_id: int, db: Session, limit: int = 20) -> List[JobMatchOut]:
    return [JobMatchOut.model_validate(m) for m in match_store.user_match_rows(db, user_id, limit)]

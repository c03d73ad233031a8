"""
job_matches まわりの読み書き。業務判断（閾値・順位付け）は呼び出し側で行い、ここは SQL だけ。
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import and_, or_, select, update, func
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.orm import Session

from models import JobPosting, JobSeeker, CandidateProfile, JobMatch, MATCH_TYPE_AI_FEATURED
from schemas import CandidateData


def utcnow() -> datetime:
    """DB には naive な UTC で保存する。"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ------ 求人・候補者の読み出し ------
def get_job(db: Session, job_id: int) -> Optional[JobPosting]:
    return db.get(JobPosting, job_id)


def fetch_eligible_candidates(
    db: Session,
    activity_window_days: int,
    embedding_freshness_days: int,
    now: Optional[datetime] = None,
) -> List[CandidateData]:
    """
    通知を受け取れる候補者プール：
    有効アカウント・未削除・通知オプトイン・埋め込みが新しい・最近アクティブ。
    """
    now = now or utcnow()
    active_since = now - timedelta(days=activity_window_days)
    fresh_since = now - timedelta(days=embedding_freshness_days)

    rows = db.execute(
        select(CandidateProfile, JobSeeker)
        .join(JobSeeker, CandidateProfile.user_id == JobSeeker.id)
        .where(
            JobSeeker.is_active.is_(True),
            JobSeeker.deleted_at.is_(None),
            JobSeeker.last_active_at >= active_since,
            CandidateProfile.opt_in_match_alerts.is_(True),
            CandidateProfile.embedding.is_not(None),
            CandidateProfile.embedding_updated_at >= fresh_since,
        )
        .order_by(JobSeeker.id)
    ).all()

    return [
        CandidateData(
            user_id=seeker.id,
            name=seeker.name,
            email=seeker.email,
            location=seeker.location,
            last_active_at=seeker.last_active_at,
            skills=profile.skills,
            job_titles=profile.job_titles,
            industries=profile.industries,
            opt_in_match_alerts=profile.opt_in_match_alerts,
            embedding_json=profile.embedding,
        )
        for profile, seeker in rows
    ]


# ------ upsert（(job_id, user_id) で一意） ------
def _upsert_statement(dialect: str, values: dict):
    """方言ごとのネイティブ upsert。score / reasons / updated_at だけを更新する。"""
    if dialect == "sqlite":
        stmt = sqlite.insert(JobMatch).values(**values)
        return stmt.on_conflict_do_update(
            index_elements=["job_id", "user_id"],
            set_={"score": stmt.excluded.score, "reasons": stmt.excluded.reasons, "updated_at": func.now()},
        )
    if dialect == "postgresql":
        stmt = postgresql.insert(JobMatch).values(**values)
        return stmt.on_conflict_do_update(
            constraint="uq_job_matches_job_user",
            set_={"score": stmt.excluded.score, "reasons": stmt.excluded.reasons, "updated_at": func.now()},
        )
    if dialect in ("mysql", "mariadb"):
        stmt = mysql.insert(JobMatch).values(**values)
        return stmt.on_duplicate_key_update(
            score=stmt.inserted.score, reasons=stmt.inserted.reasons, updated_at=func.now()
        )
    return None


def upsert_match(db: Session, job_id: int, user_id: int, score: float, reasons: Sequence[str]) -> None:
    """
    既存行があればスコアと理由だけ更新、無ければ作成。
    通知フラグには触らない（再実行で送信済みが戻らないように）。
    """
    values = {
        "job_id": job_id,
        "user_id": user_id,
        "score": score,
        "reasons": list(reasons),
        "match_type": MATCH_TYPE_AI_FEATURED,
        "sent": False,
        "opened": False,
        "clicked": False,
        "dead_lettered": False,
        "delivery_unknown": False,
    }
    stmt = _upsert_statement(db.get_bind().dialect.name, values)
    if stmt is not None:
        db.execute(stmt)
        return

    # ネイティブ upsert が無い DB は読んでから書く
    existing = get_match(db, job_id, user_id)
    if existing is not None:
        existing.score = score
        existing.reasons = list(reasons)
    else:
        db.add(JobMatch(**values))
    db.flush()


# ------ 参照 ------
def get_match(db: Session, job_id: int, user_id: int) -> Optional[JobMatch]:
    return db.execute(
        select(JobMatch).where(JobMatch.job_id == job_id, JobMatch.user_id == user_id)
    ).scalar_one_or_none()


def job_match_rows(db: Session, job_id: int, min_score: Optional[float] = None) -> List[JobMatch]:
    stmt = select(JobMatch).where(JobMatch.job_id == job_id)
    if min_score is not None:
        stmt = stmt.where(JobMatch.score >= min_score)
    stmt = stmt.order_by(JobMatch.score.desc(), JobMatch.user_id.asc())
    return list(db.execute(stmt).scalars().all())


def user_match_rows(db: Session, user_id: int, limit: int = 20) -> List[JobMatch]:
    stmt = (
        select(JobMatch)
        .join(JobPosting, JobMatch.job_id == JobPosting.id)
        .where(JobMatch.user_id == user_id, JobPosting.featured.is_(True))
        .order_by(JobMatch.score.desc(), JobMatch.created_at.desc(), JobMatch.id.desc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


# ------ 配信対象の選択と確保（claim） ------
# 確保したまま落ちた配信の行は、この時間が過ぎたら別の配信が取り直せる
CLAIM_TTL = timedelta(hours=1)


def _claimable(now: datetime):
    """誰も確保していない、または確保が古くなった行。"""
    return or_(JobMatch.dispatch_token.is_(None), JobMatch.claimed_at < now - CLAIM_TTL)


def _dispatchable(stmt, job_id: int, min_score: float, now: datetime):
    return (
        stmt.join(JobSeeker, JobMatch.user_id == JobSeeker.id)
        .join(CandidateProfile, CandidateProfile.user_id == JobSeeker.id)
        .where(
            JobMatch.job_id == job_id,
            JobMatch.score >= min_score,
            JobMatch.sent.is_(False),
            JobMatch.dead_lettered.is_(False),
            JobMatch.delivery_unknown.is_(False),
            _claimable(now),
            JobSeeker.is_active.is_(True),
            JobSeeker.deleted_at.is_(None),
            CandidateProfile.opt_in_match_alerts.is_(True),
        )
        .order_by(JobMatch.score.desc(), JobMatch.user_id.asc())
    )


def select_unsent_matches(
    db: Session, job_id: int, min_score: float, now: Optional[datetime] = None
) -> List[Tuple[JobMatch, JobSeeker]]:
    """配信候補：未送信・dead-letter でも結果不明でもない・他の配信が確保していない・まだ通知を受け取れる候補者。スコア降順。"""
    stmt = _dispatchable(select(JobMatch, JobSeeker), job_id, min_score, now or utcnow())
    return [(m, s) for m, s in db.execute(stmt).all()]


def claim_unsent_matches(
    db: Session,
    job_id: int,
    min_score: float,
    token: str,
    limit: int,
    now: Optional[datetime] = None,
) -> Tuple[int, int]:
    """
    配信候補の上位 limit 件に token を立てる。戻り値は (候補件数, 確保できた件数)。
    UPDATE 側でも未確保を条件にしているので、同じ行を2つの token が持つことはない。
    """
    now = now or utcnow()
    ids = list(db.execute(_dispatchable(select(JobMatch.id), job_id, min_score, now)).scalars().all())
    if limit <= 0 or not ids:
        return len(ids), 0
    result = db.execute(
        update(JobMatch)
        .where(JobMatch.id.in_(ids[:limit]), JobMatch.sent.is_(False), _claimable(now))
        .values(dispatch_token=token, claimed_at=now)
    )
    return len(ids), result.rowcount


def select_claimed_matches(db: Session, token: str) -> List[Tuple[JobMatch, JobSeeker]]:
    stmt = (
        select(JobMatch, JobSeeker)
        .join(JobSeeker, JobMatch.user_id == JobSeeker.id)
        .where(JobMatch.dispatch_token == token, JobMatch.sent.is_(False))
        .order_by(JobMatch.score.desc(), JobMatch.user_id.asc())
    )
    return [(m, s) for m, s in db.execute(stmt).all()]


def release_claims(db: Session, token: str, now: Optional[datetime] = None) -> int:
    """自分の確保と、期限切れで放置された確保をまとめて外す。"""
    now = now or utcnow()
    result = db.execute(
        update(JobMatch)
        .where(or_(JobMatch.dispatch_token == token, JobMatch.claimed_at < now - CLAIM_TTL))
        .values(dispatch_token=None, claimed_at=None)
    )
    return result.rowcount


def count_sent_since(db: Session, since: datetime) -> int:
    """送信済みに加え、結果不明（タイムアウト）の送信も届いた可能性があるので数える。"""
    return db.execute(
        select(func.count())
        .select_from(JobMatch)
        .where(
            or_(
                and_(JobMatch.sent.is_(True), JobMatch.sent_at >= since),
                and_(JobMatch.delivery_unknown.is_(True), JobMatch.attempted_at >= since),
            )
        )
    ).scalar_one()


# ------ 通知状態の更新（前にしか進めない） ------
def mark_sent(db: Session, job_id: int, user_id: int, delivery_id: Optional[str], at: Optional[datetime] = None) -> bool:
    result = db.execute(
        update(JobMatch)
        .where(JobMatch.job_id == job_id, JobMatch.user_id == user_id, JobMatch.sent.is_(False))
        .values(sent=True, sent_at=at or utcnow(), delivery_id=delivery_id, last_error=None)
    )
    return result.rowcount > 0


def record_delivery_failure(db: Session, job_id: int, user_id: int, error: str, permanent: bool) -> None:
    values = {"last_error": error[:2000]}
    if permanent:
        values["dead_lettered"] = True
    db.execute(
        update(JobMatch)
        .where(JobMatch.job_id == job_id, JobMatch.user_id == user_id, JobMatch.sent.is_(False))
        .values(**values)
    )


def mark_delivery_unknown(
    db: Session, job_id: int, user_id: int, error: str, at: Optional[datetime] = None
) -> bool:
    """タイムアウトした送信。実際に届いたか分からないので自動では再送しない。"""
    result = db.execute(
        update(JobMatch)
        .where(JobMatch.job_id == job_id, JobMatch.user_id == user_id, JobMatch.sent.is_(False))
        .values(delivery_unknown=True, attempted_at=at or utcnow(), last_error=error[:2000])
    )
    return result.rowcount > 0


def mark_opened(db: Session, job_id: int, user_id: int, at: Optional[datetime] = None) -> bool:
    result = db.execute(
        update(JobMatch)
        .where(JobMatch.job_id == job_id, JobMatch.user_id == user_id, JobMatch.opened.is_(False))
        .values(opened=True, opened_at=at or utcnow())
    )
    return result.rowcount > 0


def mark_clicked(db: Session, job_id: int, user_id: int, at: Optional[datetime] = None) -> bool:
    result = db.execute(
        update(JobMatch)
        .where(JobMatch.job_id == job_id, JobMatch.user_id == user_id, JobMatch.clicked.is_(False))
        .values(clicked=True, clicked_at=at or utcnow())
    )
    return result.rowcount > 0


def set_opt_in(db: Session, user_id: int, opt_in: bool) -> bool:
    result = db.execute(
        update(CandidateProfile)
        .where(CandidateProfile.user_id == user_id)
        .values(opt_in_match_alerts=opt_in)
    )
    return result.rowcount > 0

from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from config import MatchingSettings, get_settings
from schemas import CampaignStats, MatchingStats
from services import match_store

log = logging.getLogger(__name__)


def build_stats(
    scores: Sequence[float],
    total_candidates: int,
    high_score_threshold: float,
    notified: int = 0,
) -> MatchingStats:
    """
    スコア列から集計する。average_score は渡されたスコア全体の平均
    （マッチング実行時は閾値未満も含むプール全体、保存済み集計では保存行全体）。
    """
    if not scores:
        return MatchingStats(total_candidates=total_candidates, notified=notified)
    return MatchingStats(
        total_candidates=total_candidates,
        high_score_matches=sum(1 for s in scores if s >= high_score_threshold),
        notified=notified,
        average_score=round(sum(scores) / len(scores), 2),
        top_score=max(scores),
    )


def get_stats_service(job_id: int, db: Session, settings: Optional[MatchingSettings] = None) -> MatchingStats:
    """保存済みマッチの集計。0件でもエラーにせず全部 0 で返す。"""
    settings = settings or get_settings()
    rows = match_store.job_match_rows(db, job_id)
    return build_stats(
        [r.score for r in rows],
        total_candidates=len(rows),
        high_score_threshold=settings.high_score_threshold,
        notified=sum(1 for r in rows if r.sent),
    )


def get_campaign_stats_service(job_id: int, db: Session, settings: Optional[MatchingSettings] = None) -> CampaignStats:
    settings = settings or get_settings()
    rows = match_store.job_match_rows(db, job_id)
    base = get_stats_service(job_id, db, settings)
    opened = sum(1 for r in rows if r.opened)
    clicked = sum(1 for r in rows if r.clicked)
    return CampaignStats(
        **base.model_dump(),
        opened=opened,
        clicked=clicked,
        open_rate=round(opened / base.notified, 4) if base.notified else 0.0,
        click_rate=round(clicked / base.notified, 4) if base.notified else 0.0,
    )


# ------ 開封・クリックのトラッキング（何度呼ばれても1回だけ立つ） ------
def track_open_service(job_id: int, user_id: int, db: Session) -> bool:
    updated = match_store.mark_opened(db, job_id, user_id)
    db.commit()
    if updated:
        log.info("match opened: job=%s user=%s", job_id, user_id)
    return updated


def track_click_service(job_id: int, user_id: int, db: Session) -> bool:
    updated = match_store.mark_clicked(db, job_id, user_id)
    db.commit()
    if updated:
        log.info("match clicked: job=%s user=%s", job_id, user_id)
    return updated


def unsubscribe_service(user_id: int, db: Session) -> bool:
    """通知メール内の配信停止リンクから呼ばれる。"""
    updated = match_store.set_opt_in(db, user_id, False)
    db.commit()
    if updated:
        log.info("user %s unsubscribed from match alerts", user_id)
    return updated

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from config import MatchingSettings, get_settings
from database import get_db
import schemas
from services.delivery import Deliverer, get_deliverer
from services.embedding import Embedder, get_embedder
from services.errors import EmbeddingUnavailable, NotEligible
from services.matching import (
    run_matching_service,
    process_featured_job_service,
    list_job_matches_service,
    list_user_matches_service,
)
from services.rate_limit import SendBudget, get_send_budget
from services.stats import get_stats_service, get_campaign_stats_service

router = APIRouter(
    prefix="/match",
    tags=["Matching"],
)


def not_eligible_to_http(e: NotEligible) -> HTTPException:
    """not_found → 404、注目求人でない → 409。"""
    status = 404 if e.reason == "not_found" else 409
    return HTTPException(status_code=status, detail={"job_id": e.job_id, "reason": e.reason})


# ========== 注目求人に対してマッチングを実行 ==========
@router.post("/jobs/{job_id}/run", response_model=schemas.MatchRunResult)
async def run_matching(
    job_id: int,
    db: Session = Depends(get_db),
    embedder: Embedder = Depends(get_embedder),
    settings: MatchingSettings = Depends(get_settings),
):
    try:
        return await run_matching_service(job_id, db, embedder, settings=settings)
    except NotEligible as e:
        raise not_eligible_to_http(e)
    except EmbeddingUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


# ========== マッチング → 保存 → 配信 を一括で ==========
@router.post("/jobs/{job_id}/featured", response_model=schemas.FeaturedJobResult)
async def process_featured_job(
    job_id: int,
    db: Session = Depends(get_db),
    embedder: Embedder = Depends(get_embedder),
    deliverer: Deliverer = Depends(get_deliverer),
    budget: SendBudget = Depends(get_send_budget),
    settings: MatchingSettings = Depends(get_settings),
):
    try:
        return await process_featured_job_service(
            job_id, db, embedder, deliverer, budget=budget, settings=settings
        )
    except NotEligible as e:
        raise not_eligible_to_http(e)
    except EmbeddingUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))


# ========== 保存済みマッチの参照 ==========
@router.get("/jobs/{job_id}/matches", response_model=List[schemas.JobMatchOut])
def job_matches(
    job_id: int,
    min_score: Optional[float] = Query(None, ge=0, le=100),
    db: Session = Depends(get_db),
):
    return list_job_matches_service(job_id, db, min_score=min_score)


@router.get("/jobs/{job_id}/stats", response_model=schemas.MatchingStats)
def job_stats(
    job_id: int,
    db: Session = Depends(get_db),
    settings: MatchingSettings = Depends(get_settings),
):
    return get_stats_service(job_id, db, settings)


@router.get("/jobs/{job_id}/campaign-stats", response_model=schemas.CampaignStats)
def campaign_stats(
    job_id: int,
    db: Session = Depends(get_db),
    settings: MatchingSettings = Depends(get_settings),
):
    return get_campaign_stats_service(job_id, db, settings)


@router.get("/users/{user_id}", response_model=List[schemas.JobMatchOut])
def user_matches(
    user_id: int,
    limit: int = Query(20, gt=0, le=100),
    db: Session = Depends(get_db),
):
    """求職者ごとのマッチ一覧（注目求人のみ、スコア順）。"""
    return list_user_matches_service(user_id, db, limit=limit)

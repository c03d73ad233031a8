import base64

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse, Response
from sqlalchemy.orm import Session

from config import MatchingSettings, get_settings
from database import get_db
import schemas
from services.delivery import Deliverer, get_deliverer
from services.dispatch import dispatch_service
from services.errors import NotEligible
from services.rate_limit import SendBudget, get_send_budget
from services.stats import track_click_service, track_open_service, unsubscribe_service
from routers.matching import not_eligible_to_http

router = APIRouter(
    prefix="/notifications",
    tags=["Notifications"],
)

# 開封トラッキング用の 1x1 透過 GIF
PIXEL_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")


# ========== 未送信マッチの配信 ==========
@router.post("/jobs/{job_id}/dispatch", response_model=schemas.DispatchResult)
async def dispatch(
    job_id: int,
    db: Session = Depends(get_db),
    deliverer: Deliverer = Depends(get_deliverer),
    budget: SendBudget = Depends(get_send_budget),
    settings: MatchingSettings = Depends(get_settings),
):
    try:
        return await dispatch_service(job_id, db, deliverer, budget=budget, settings=settings)
    except NotEligible as e:
        raise not_eligible_to_http(e)


# ========== メール内リンクから叩かれるトラッキング ==========
@router.get("/track/open")
def track_open(
    job_id: int = Query(...),
    user_id: int = Query(...),
    db: Session = Depends(get_db),
):
    # 該当行が無くても画像は返す（メールクライアント側にエラーを見せない）
    track_open_service(job_id, user_id, db)
    return Response(
        content=PIXEL_GIF,
        media_type="image/gif",
        headers={"Cache-Control": "no-store, no-cache, must-revalidate"},
    )


@router.get("/track/click")
def track_click(
    job_id: int = Query(...),
    user_id: int = Query(...),
    db: Session = Depends(get_db),
    settings: MatchingSettings = Depends(get_settings),
):
    track_click_service(job_id, user_id, db)
    target = f"{settings.public_base_url.rstrip('/')}/jobs/{job_id}"
    return RedirectResponse(url=target, status_code=302)


@router.post("/track", response_model=schemas.TrackResponse)
def track_event(
    job_id: int = Query(...),
    user_id: int = Query(...),
    event: str = Query(..., pattern="^(open|click)$"),
    db: Session = Depends(get_db),
):
    """API から直接記録する場合。open / click のどちらか。"""
    service = track_open_service if event == "open" else track_click_service
    return schemas.TrackResponse(job_id=job_id, user_id=user_id, updated=service(job_id, user_id, db))


@router.get("/unsubscribe")
def unsubscribe(user_id: int = Query(...), db: Session = Depends(get_db)):
    if not unsubscribe_service(user_id, db):
        raise HTTPException(status_code=404, detail="candidate profile not found")
    return {"user_id": user_id, "unsubscribed": True}

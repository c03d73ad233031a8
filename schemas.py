from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _clean_terms(value) -> List[str]:
    """None や空文字を落として文字列リストに揃える。欠損でルール判定が狂わないように。"""
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    cleaned: List[str] = []
    for item in value:
        if item is None:
            continue
        text = str(item).strip()
        if text and text not in cleaned:
            cleaned.append(text)
    return cleaned


# =========================
# ① マッチ計算の入力
# =========================

# 求人（job_postings）→ マッチ計算に使う入力
class JobData(BaseModel):
    id: int
    title: str
    description: str = ""
    company: str = ""
    location: Optional[str] = None
    skills: List[str] = Field(default_factory=list)   # 必須スキル名
    job_type: Optional[str] = None
    featured: bool = False
    salary_min: Optional[int] = None
    salary_max: Optional[int] = None

    @field_validator("skills", mode="before")
    @classmethod
    def _skills(cls, v):
        return _clean_terms(v)

    @field_validator("description", "company", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return v or ""

    def embedding_text(self) -> str:
        """埋め込み用テキスト（タイトル + 説明 + スキル）。"""
        return " ".join(p for p in (self.title, self.description, " ".join(self.skills)) if p)

    class Config:
        from_attributes = True


# 求職者（job_seekers + candidate_profiles）→ マッチ計算に使う入力
class CandidateData(BaseModel):
    user_id: int
    name: Optional[str] = None
    email: str
    location: Optional[str] = None
    last_active_at: Optional[datetime] = None
    skills: List[str] = Field(default_factory=list)
    job_titles: List[str] = Field(default_factory=list)
    industries: List[str] = Field(default_factory=list)
    opt_in_match_alerts: bool = False
    embedding_json: Optional[str] = Field(default=None, repr=False)  # 未パースの埋め込み

    @field_validator("skills", "job_titles", "industries", mode="before")
    @classmethod
    def _terms(cls, v):
        return _clean_terms(v)


# =========================
# ② マッチ計算の結果
# =========================

class MatchItem(BaseModel):
    user_id: int
    name: Optional[str] = None
    score: float
    reasons: List[str]
    qualified: bool   # 閾値以上で保存対象かどうか

class MatchingStats(BaseModel):
    total_candidates: int = 0
    high_score_matches: int = 0
    notified: int = 0
    average_score: float = 0.0
    top_score: float = 0.0

class CampaignStats(MatchingStats):
    opened: int = 0
    clicked: int = 0
    open_rate: float = 0.0    # opened / notified
    click_rate: float = 0.0   # clicked / notified

class ProcessingError(BaseModel):
    user_id: Optional[int] = None
    error: str
    permanent: bool = False

class MatchRunResult(BaseModel):
    job_id: int
    matches: List[MatchItem]
    stats: MatchingStats
    persisted: int = 0
    failed_candidates: int = 0
    errors: List[ProcessingError] = Field(default_factory=list)


# =========================
# ③ 配信
# =========================

class OutboundMessage(BaseModel):
    job_id: int
    user_id: int
    to: str
    subject: str
    text: str
    html: str
    tracking_refs: Dict[str, str] = Field(default_factory=dict)   # open_url / click_url / unsubscribe_url
    headers: Dict[str, str] = Field(default_factory=dict)

class DispatchResult(BaseModel):
    job_id: int
    attempted: int = 0
    sent: int = 0
    failed: int = 0
    deferred: int = 0      # 送信枠が足りず次回に回した件数
    errors: List[ProcessingError] = Field(default_factory=list)

class FeaturedJobResult(BaseModel):
    run: MatchRunResult
    dispatch: DispatchResult


# =========================
# ④ 保存済みマッチの参照
# =========================

class JobMatchOut(BaseModel):
    job_id: int
    user_id: int
    score: float
    reasons: List[str]
    match_type: str
    sent: bool
    sent_at: Optional[datetime] = None
    opened: bool
    opened_at: Optional[datetime] = None
    clicked: bool
    clicked_at: Optional[datetime] = None
    dead_lettered: bool = False

    class Config:
        from_attributes = True

class TrackResponse(BaseModel):
    job_id: int
    user_id: int
    updated: bool

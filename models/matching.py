from __future__ import annotations
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    Integer, Float, JSON, String, Text, Boolean, DateTime, ForeignKey,
    UniqueConstraint, Index, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from database import Base

MATCH_TYPE_AI_FEATURED = "ai_featured"

class JobMatch(Base):
    """
    求人×求職者のマッチ結果。(job_id, user_id) で一意。
    通知系のフラグは 未送信 → 送信済 → 開封 → クリック の順にしか進まない。
    """
    __tablename__ = "job_matches"
    __table_args__ = (
        UniqueConstraint("job_id", "user_id", name="uq_job_matches_job_user"),
        Index("ix_job_matches_job_score", "job_id", "score"),
        Index("ix_job_matches_sent_at", "sent", "sent_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    job_id: Mapped[int] = mapped_column(Integer, ForeignKey("job_postings.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("job_seekers.id"), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    reasons: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    match_type: Mapped[str] = mapped_column(String(32), nullable=False, default=MATCH_TYPE_AI_FEATURED)

    # --- 通知ライフサイクル ---
    sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    delivery_id: Mapped[Optional[str]] = mapped_column(String(255))
    opened: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    clicked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    clicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # 恒久的な配信エラーになった行は以降の配信対象から外す
    dead_lettered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    # 送信がタイムアウトして届いたか分からない行。再送せず、送信枠では送信済みとして数える
    delivery_unknown: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # 配信中の行には配信ごとのトークンを立てる。同じ行を2つの配信が同時に送らないように
    dispatch_token: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    job_posting = relationship("JobPosting", back_populates="matches")
    job_seeker = relationship("JobSeeker", back_populates="matches")

from __future__ import annotations
from datetime import datetime
from typing import List, Optional, TYPE_CHECKING

from sqlalchemy import Integer, String, Text, Boolean, DateTime, JSON, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from database import Base

if TYPE_CHECKING:
    # 型ヒント用（実行時には読み込まれない）
    from .matching import JobMatch

class JobPosting(Base):
    """求人。マッチングエンジンからは読み取り専用。"""
    __tablename__ = "job_postings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    company: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    location: Mapped[Optional[str]] = mapped_column(String(255))
    skills: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)  # 必須スキル名
    job_type: Mapped[Optional[str]] = mapped_column(String(64))                   # full_time など
    featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    salary_min: Mapped[Optional[int]] = mapped_column(Integer)
    salary_max: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, server_default=func.now())

    # --- 1対多 ---
    matches: Mapped[List["JobMatch"]] = relationship(
        "JobMatch", back_populates="job_posting", cascade="all, delete-orphan"
    )

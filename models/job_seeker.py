from __future__ import annotations
from datetime import datetime
from typing import List, Optional

from sqlalchemy import Integer, String, Text, Boolean, DateTime, JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from database import Base

class JobSeeker(Base):
    """求職者アカウント。認証・プロフィール編集は別システムの管轄。"""
    __tablename__ = "job_seekers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_active_at: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)

    profile = relationship(
        "CandidateProfile", back_populates="job_seeker", uselist=False, cascade="all, delete-orphan"
    )
    matches = relationship("JobMatch", back_populates="job_seeker", cascade="all, delete-orphan")

class CandidateProfile(Base):
    """
    上流の埋め込みパイプラインが作るプロフィール。ここでは読むだけ。
    embedding は JSON 文字列のまま保存されるので、壊れた値も入りうる。
    """
    __tablename__ = "candidate_profiles"

    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("job_seekers.id"), primary_key=True)
    embedding: Mapped[Optional[str]] = mapped_column(Text)
    embedding_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)
    skills: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    job_titles: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    industries: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    opt_in_match_alerts: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    job_seeker = relationship("JobSeeker", back_populates="profile")

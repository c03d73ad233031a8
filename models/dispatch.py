from __future__ import annotations
from datetime import datetime
from typing import Optional

from sqlalchemy import Integer, String, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from database import Base

class RateLimitLock(Base):
    """送信枠の計算を直列化するためだけの行。SELECT ... FOR UPDATE で掴む。"""
    __tablename__ = "rate_limit_locks"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)

class SendReservation(Base):
    """配信実行中に確保している送信枠。実行が終わったら released_at を埋める。"""
    __tablename__ = "send_reservations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    job_id: Mapped[int] = mapped_column(Integer, nullable=False)
    granted: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

"""
Pytest configuration and shared fixtures.
"""

import asyncio
import json
import math
import time
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  registers tables on Base.metadata
from config import MatchingSettings
from database import Base
from models import CandidateProfile, JobMatch, JobPosting, JobSeeker
from schemas import OutboundMessage
from services.match_store import utcnow

JOB_VECTOR = [1.0, 0.0, 0.0]


def vector_for_score(score: float) -> List[float]:
    """Unit vector whose cosine with JOB_VECTOR scores `score` (0-100)."""
    c = score / 100.0
    return [c, math.sqrt(max(0.0, 1.0 - c * c)), 0.0]


class FakeEmbedder:
    """Returns a fixed vector; can be told to fail or hang."""

    def __init__(self, vector: Optional[List[float]] = None, error: Optional[Exception] = None, delay: float = 0.0):
        self.vector = vector or list(JOB_VECTOR)
        self.error = error
        self.delay = delay
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.vector)


class FakeDeliverer:
    """Records every message (with start/end times); raises the configured error for chosen users."""

    def __init__(
        self,
        failures: Optional[Dict[int, Exception]] = None,
        delays: Optional[Dict[int, float]] = None,
        delay: float = 0.0,
    ):
        self.failures = failures or {}
        self.delays = delays or {}
        self.delay = delay
        self.sent: List[OutboundMessage] = []
        self.timeline: Dict[int, Tuple[float, float]] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    async def deliver(self, message: OutboundMessage) -> str:
        started = time.monotonic()
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(message.user_id, self.delay)
            if delay:
                await asyncio.sleep(delay)
            error = self.failures.get(message.user_id)
            if error is not None:
                raise error
            self.sent.append(message)
            return f"fake-{message.user_id}"
        finally:
            self.in_flight -= 1
            self.timeline[message.user_id] = (started, time.monotonic())

    @property
    def sent_user_ids(self) -> List[int]:
        return [m.user_id for m in self.sent]


@pytest.fixture
def engine():
    """In-memory SQLite shared across threads (TestClient runs in a worker thread)."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db_session(engine):
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def settings() -> MatchingSettings:
    return MatchingSettings(batch_delay_seconds=0, embed_timeout_seconds=1, delivery_timeout_seconds=1)


@pytest.fixture
def make_job(db_session):
    """Factory for job postings (featured by default)."""

    def _make(**kwargs) -> JobPosting:
        values = {
            "title": "Forklift Operator",
            "description": "Warehouse logistics role moving pallets.",
            "company": "Acme Logistics",
            "location": "Austin, TX",
            "skills": ["forklift", "inventory"],
            "job_type": "full_time",
            "featured": True,
            "salary_min": 40000,
            "salary_max": 50000,
        }
        values.update(kwargs)
        job = JobPosting(**values)
        db_session.add(job)
        db_session.commit()
        return job

    return _make


@pytest.fixture
def make_candidate(db_session):
    """Factory for a job seeker plus profile. `score` picks an embedding scoring that value."""

    def _make(
        score: float = 90.0,
        embedding: Optional[str] = None,
        name: str = "Jane Doe",
        email: Optional[str] = None,
        location: Optional[str] = "Austin, TX",
        is_active: bool = True,
        deleted: bool = False,
        opt_in: bool = True,
        active_days_ago: int = 1,
        embedding_days_ago: int = 1,
        skills: Optional[List[str]] = None,
        job_titles: Optional[List[str]] = None,
        industries: Optional[List[str]] = None,
    ) -> JobSeeker:
        now = utcnow()
        seeker = JobSeeker(
            name=name,
            email=email or "placeholder@example.com",
            location=location,
            is_active=is_active,
            deleted_at=now if deleted else None,
            last_active_at=now - timedelta(days=active_days_ago),
        )
        db_session.add(seeker)
        db_session.flush()
        if email is None:
            seeker.email = f"user{seeker.id}@example.com"
        db_session.add(
            CandidateProfile(
                user_id=seeker.id,
                embedding=embedding if embedding is not None else json.dumps(vector_for_score(score)),
                embedding_updated_at=now - timedelta(days=embedding_days_ago),
                skills=skills or [],
                job_titles=job_titles or [],
                industries=industries or [],
                opt_in_match_alerts=opt_in,
            )
        )
        db_session.commit()
        return seeker

    return _make


@pytest.fixture
def make_match(db_session):
    """Factory for persisted match rows."""

    def _make(job_id: int, user_id: int, score: float = 90.0, **kwargs) -> JobMatch:
        row = JobMatch(job_id=job_id, user_id=user_id, score=score, reasons=kwargs.pop("reasons", ["strong_match"]), **kwargs)
        db_session.add(row)
        db_session.commit()
        return row

    return _make

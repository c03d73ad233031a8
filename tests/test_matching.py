"""
Tests for services/matching.py - scoring the candidate pool and persisting matches.
"""

import pytest
from sqlalchemy import func, select

from models import JobMatch, JobPosting
from schemas import MatchItem
from services.errors import EmbeddingUnavailable, NotEligible
from services.match_store import get_match, job_match_rows
from services.matching import (
    list_job_matches_service,
    list_user_matches_service,
    persist_matches,
    rank_matches,
    run_matching_service,
)

from conftest import FakeEmbedder


def _row_count(db) -> int:
    return db.execute(select(func.count()).select_from(JobMatch)).scalar_one()


def _persisted(db, job_id: int):
    """What is actually stored for a job, read straight from the table."""
    rows = db.execute(
        select(JobMatch.id, JobMatch.user_id, JobMatch.score, JobMatch.reasons, JobMatch.match_type)
        .where(JobMatch.job_id == job_id)
        .order_by(JobMatch.user_id)
    ).all()
    return [tuple(r) for r in rows]


class TestRunMatching:
    """Test a full matching run."""

    @pytest.mark.asyncio
    async def test_persists_only_qualifying_matches(self, db_session, settings, make_job, make_candidate):
        job = make_job()
        high = make_candidate(score=95.0)
        mid = make_candidate(score=85.0)
        low = make_candidate(score=50.0)

        result = await run_matching_service(job.id, db_session, FakeEmbedder(), settings=settings)

        assert [m.user_id for m in result.matches] == [high.id, mid.id, low.id]
        assert [m.qualified for m in result.matches] == [True, True, False]
        assert result.persisted == 2
        assert {r.user_id for r in job_match_rows(db_session, job.id)} == {high.id, mid.id}

    @pytest.mark.asyncio
    async def test_stats(self, db_session, settings, make_job, make_candidate):
        job = make_job()
        for score in (95.0, 85.0, 50.0):
            make_candidate(score=score)

        result = await run_matching_service(job.id, db_session, FakeEmbedder(), settings=settings)

        assert result.stats.total_candidates == 3
        assert result.stats.high_score_matches == 1
        assert result.stats.top_score == 95.0
        assert result.stats.average_score == round((95.0 + 85.0 + 50.0) / 3, 2)
        assert result.stats.notified == 0

    @pytest.mark.asyncio
    async def test_matches_sorted_by_score_then_user_id(self, db_session, settings, make_job, make_candidate):
        job = make_job()
        first = make_candidate(score=90.0)
        second = make_candidate(score=90.0)
        top = make_candidate(score=97.0)

        result = await run_matching_service(job.id, db_session, FakeEmbedder(), settings=settings)

        assert [m.user_id for m in result.matches] == [top.id, first.id, second.id]

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, db_session, settings, make_job, make_candidate):
        job = make_job(description="Warehouse logistics role.", skills=["forklift"])
        make_candidate(score=95.0, skills=["Forklift"], job_titles=["Forklift Operator"])
        make_candidate(score=88.0, location="Denver, CO")
        make_candidate(score=40.0)

        await run_matching_service(job.id, db_session, FakeEmbedder(), settings=settings)
        before = _persisted(db_session, job.id)
        await run_matching_service(job.id, db_session, FakeEmbedder(), settings=settings)
        after = _persisted(db_session, job.id)

        assert _row_count(db_session) == 2
        assert len(before) == 2
        assert after == before

    @pytest.mark.asyncio
    async def test_rerun_keeps_notification_state(self, db_session, settings, make_job, make_candidate):
        job = make_job()
        seeker = make_candidate(score=95.0)
        await run_matching_service(job.id, db_session, FakeEmbedder(), settings=settings)

        row = get_match(db_session, job.id, seeker.id)
        row.sent = True
        row.opened = True
        db_session.commit()

        await run_matching_service(job.id, db_session, FakeEmbedder(), settings=settings)

        db_session.expire_all()
        row = get_match(db_session, job.id, seeker.id)
        assert row.sent is True
        assert row.opened is True

    @pytest.mark.asyncio
    async def test_one_malformed_embedding_does_not_abort(self, db_session, settings, make_job, make_candidate):
        job = make_job()
        good = [make_candidate(score=90.0) for _ in range(9)]
        bad = make_candidate(embedding="not-a-vector")

        result = await run_matching_service(job.id, db_session, FakeEmbedder(), settings=settings)

        assert len(result.matches) == 9
        assert result.failed_candidates == 1
        assert result.errors[0].user_id == bad.id
        assert {m.user_id for m in result.matches} == {s.id for s in good}
        assert result.stats.total_candidates == 10

    @pytest.mark.asyncio
    async def test_dimension_mismatch_is_candidate_error(self, db_session, settings, make_job, make_candidate):
        job = make_job()
        make_candidate(score=90.0)
        bad = make_candidate(embedding="[1.0, 0.0]")

        result = await run_matching_service(job.id, db_session, FakeEmbedder(), settings=settings)

        assert result.failed_candidates == 1
        assert result.errors[0].user_id == bad.id

    @pytest.mark.asyncio
    async def test_ineligible_candidates_excluded(self, db_session, settings, make_job, make_candidate):
        job = make_job()
        eligible = make_candidate(score=90.0)
        make_candidate(score=99.0, is_active=False)
        make_candidate(score=99.0, deleted=True)
        make_candidate(score=99.0, opt_in=False)
        make_candidate(score=99.0, active_days_ago=45)
        make_candidate(score=99.0, embedding_days_ago=90)

        result = await run_matching_service(job.id, db_session, FakeEmbedder(), settings=settings)

        assert [m.user_id for m in result.matches] == [eligible.id]
        assert result.stats.total_candidates == 1

    @pytest.mark.asyncio
    async def test_empty_pool(self, db_session, settings, make_job):
        job = make_job()

        result = await run_matching_service(job.id, db_session, FakeEmbedder(), settings=settings)

        assert result.matches == []
        assert result.stats.total_candidates == 0
        assert result.stats.average_score == 0.0
        assert result.stats.top_score == 0.0


class TestEligibility:
    """Test the job eligibility gate."""

    @pytest.mark.asyncio
    async def test_missing_job(self, db_session, settings):
        with pytest.raises(NotEligible) as exc:
            await run_matching_service(999, db_session, FakeEmbedder(), settings=settings)
        assert exc.value.reason == "not_found"

    @pytest.mark.asyncio
    async def test_unfeatured_job_writes_nothing(self, db_session, settings, make_job, make_candidate):
        job = make_job(featured=False)
        make_candidate(score=95.0)
        embedder = FakeEmbedder()

        with pytest.raises(NotEligible) as exc:
            await run_matching_service(job.id, db_session, embedder, settings=settings)

        assert exc.value.reason == "not_featured"
        assert embedder.calls == []
        assert _row_count(db_session) == 0


class TestJobEmbedding:
    """Test job embedding failures."""

    @pytest.mark.asyncio
    async def test_embedder_error(self, db_session, settings, make_job, make_candidate):
        job = make_job()
        make_candidate(score=95.0)

        with pytest.raises(EmbeddingUnavailable):
            await run_matching_service(
                job.id, db_session, FakeEmbedder(error=RuntimeError("model down")), settings=settings
            )
        assert _row_count(db_session) == 0

    @pytest.mark.asyncio
    async def test_embedder_timeout(self, db_session, make_job):
        from config import MatchingSettings

        job = make_job()
        fast_timeout = MatchingSettings(embed_timeout_seconds=0.01, batch_delay_seconds=0)

        with pytest.raises(EmbeddingUnavailable, match="timed out"):
            await run_matching_service(job.id, db_session, FakeEmbedder(delay=1.0), settings=fast_timeout)

    @pytest.mark.asyncio
    async def test_zero_job_vector(self, db_session, settings, make_job):
        job = make_job()

        with pytest.raises(EmbeddingUnavailable):
            await run_matching_service(job.id, db_session, FakeEmbedder(vector=[0.0, 0.0, 0.0]), settings=settings)


class TestPersistMatches:
    """Test the qualification floor on persistence."""

    def test_floor_is_inclusive(self, db_session, make_job, make_candidate):
        job = make_job()
        seekers = [make_candidate() for _ in range(4)]
        items = [
            MatchItem(user_id=s.id, score=score, reasons=["ai_similarity"], qualified=score >= 80)
            for s, score in zip(seekers, (95.0, 80.0, 79.9, 50.0))
        ]

        persisted = persist_matches(db_session, job.id, items, floor=80.0)

        assert persisted == 2
        assert sorted(r.score for r in job_match_rows(db_session, job.id)) == [80.0, 95.0]

    def test_rank_matches(self):
        items = [
            MatchItem(user_id=3, score=80.0, reasons=[], qualified=True),
            MatchItem(user_id=2, score=90.0, reasons=[], qualified=True),
            MatchItem(user_id=1, score=80.0, reasons=[], qualified=True),
        ]
        assert [m.user_id for m in rank_matches(items)] == [2, 1, 3]


class TestListMatches:
    """Test reading persisted matches."""

    def test_list_job_matches_with_min_score(self, db_session, make_job, make_candidate, make_match):
        job = make_job()
        a, b = make_candidate(), make_candidate()
        make_match(job.id, a.id, score=92.0)
        make_match(job.id, b.id, score=81.0)

        assert [m.user_id for m in list_job_matches_service(job.id, db_session)] == [a.id, b.id]
        assert [m.user_id for m in list_job_matches_service(job.id, db_session, min_score=90)] == [a.id]

    def test_list_user_matches_only_featured_jobs(self, db_session, make_job, make_candidate, make_match):
        featured = make_job(title="Featured")
        plain = make_job(title="Plain", featured=False)
        seeker = make_candidate()
        make_match(featured.id, seeker.id, score=85.0)
        make_match(plain.id, seeker.id, score=99.0)

        matches = list_user_matches_service(seeker.id, db_session)

        assert [m.job_id for m in matches] == [featured.id]
        assert db_session.get(JobPosting, plain.id) is not None

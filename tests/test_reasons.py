"""
Tests for services/reasons.py - rule-based match explanations.
"""

from schemas import CandidateData, JobData
from services.reasons import generate_match_reasons, score_tier


def _job(**kwargs) -> JobData:
    values = {
        "id": 1,
        "title": "Forklift Operator",
        "description": "Warehouse logistics role in a busy distribution center.",
        "company": "Acme",
        "location": "Austin, TX",
        "skills": ["Forklift Operator"],
    }
    values.update(kwargs)
    return JobData(**values)


def _candidate(**kwargs) -> CandidateData:
    values = {"user_id": 7, "email": "c@example.com"}
    values.update(kwargs)
    return CandidateData(**values)


class TestScoreTier:
    """Test score band tags."""

    def test_tiers(self):
        assert score_tier(99.0) == "exceptional_match"
        assert score_tier(95.0) == "exceptional_match"
        assert score_tier(94.99) == "strong_match"
        assert score_tier(90.0) == "strong_match"
        assert score_tier(85.0) == "good_match"
        assert score_tier(80.0) == "decent_match"

    def test_below_lowest_tier(self):
        assert score_tier(79.99) is None


class TestGenerateMatchReasons:
    """Test reason tag generation."""

    def test_skill_substring_match_is_case_insensitive(self):
        reasons = generate_match_reasons(_job(), _candidate(skills=["forklift"]), 50.0)
        assert "skills_match" in reasons

    def test_skill_match_is_bidirectional(self):
        job = _job(skills=["forklift"])
        reasons = generate_match_reasons(job, _candidate(skills=["Certified Forklift Driver"]), 50.0)
        assert "skills_match" in reasons

    def test_no_signals_falls_back(self):
        job = _job(location=None, skills=[])
        reasons = generate_match_reasons(job, _candidate(location=None), 50.0)
        assert reasons == ["ai_similarity"]

    def test_tier_alone_is_enough(self):
        job = _job(location=None, skills=[])
        reasons = generate_match_reasons(job, _candidate(location=None), 91.0)
        assert reasons == ["strong_match"]

    def test_industry_found_in_description(self):
        reasons = generate_match_reasons(_job(), _candidate(industries=["Logistics"]), 50.0)
        assert "industry_experience" in reasons

    def test_title_match(self):
        reasons = generate_match_reasons(_job(), _candidate(job_titles=["forklift operator"]), 50.0)
        assert "title_match" in reasons

    def test_location_match(self):
        reasons = generate_match_reasons(_job(), _candidate(location="austin"), 50.0)
        assert "location_match" in reasons

    def test_missing_fields_never_match(self):
        """Empty strings or absent values must not count as overlaps."""
        job = _job(location="", skills=[""])
        candidate = _candidate(location="", skills=["", None], job_titles=[], industries=[])
        assert generate_match_reasons(job, candidate, 10.0) == ["ai_similarity"]

    def test_order_is_tier_then_rules(self):
        candidate = _candidate(
            skills=["forklift"], industries=["logistics"], job_titles=["Operator"], location="Austin, TX"
        )
        reasons = generate_match_reasons(_job(), candidate, 96.0)
        assert reasons == [
            "exceptional_match",
            "skills_match",
            "industry_experience",
            "title_match",
            "location_match",
        ]

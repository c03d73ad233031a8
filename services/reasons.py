from __future__ import annotations

from typing import Iterable, List, Optional

from schemas import CandidateData, JobData

# スコア帯（高い方から順に判定し、最初に当たったものだけ付ける）
SCORE_TIERS = (
    (95.0, "exceptional_match"),
    (90.0, "strong_match"),
    (85.0, "good_match"),
    (80.0, "decent_match"),
)
FALLBACK_REASON = "ai_similarity"


def _overlaps(a: Optional[str], b: Optional[str]) -> bool:
    """大文字小文字を無視して、どちらかがもう片方を含むか。空文字は一致扱いにしない。"""
    if not a or not b:
        return False
    a, b = a.strip().lower(), b.strip().lower()
    if not a or not b:
        return False
    return a in b or b in a


def _any_overlap(left: Iterable[str], right: Iterable[str]) -> bool:
    right = list(right)
    return any(_overlaps(x, y) for x in left for y in right)


def score_tier(score: float) -> Optional[str]:
    for floor, tag in SCORE_TIERS:
        if score >= floor:
            return tag
    return None


def generate_match_reasons(job: JobData, candidate: CandidateData, score: float) -> List[str]:
    """
    なぜマッチしたかのタグを返す。スコアを説明するだけで、スコア自体は計算しない。
    どのルールにも当たらなければ ["ai_similarity"]。
    """
    reasons: List[str] = []

    tier = score_tier(score)
    if tier:
        reasons.append(tier)

    # ① スキル（部分一致・双方向）
    if _any_overlap(job.skills, candidate.skills):
        reasons.append("skills_match")

    # ② 業界経験（候補者の業界語が求人本文に出てくるか）
    description = job.description.lower()
    if any(ind.lower() in description for ind in candidate.industries):
        reasons.append("industry_experience")

    # ③ 過去の職種名 × 求人タイトル
    if any(_overlaps(title, job.title) for title in candidate.job_titles):
        reasons.append("title_match")

    # ④ 勤務地
    if _overlaps(candidate.location, job.location):
        reasons.append("location_match")

    return reasons or [FALLBACK_REASON]

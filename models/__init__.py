from database import Base

# 求人
from .job_posting import JobPosting

# 求職者関連
from .job_seeker import JobSeeker, CandidateProfile

# マッチ結果
from .matching import JobMatch, MATCH_TYPE_AI_FEATURED

# 配信の送信枠
from .dispatch import RateLimitLock, SendReservation

__all__ = (
    "Base",
    # 求人
    "JobPosting",
    # 求職者
    "JobSeeker",
    "CandidateProfile",
    # マッチ結果
    "JobMatch",
    "MATCH_TYPE_AI_FEATURED",
    # 送信枠
    "RateLimitLock",
    "SendReservation",
)

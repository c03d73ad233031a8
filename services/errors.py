"""マッチング／配信で使う例外。呼び出し元まで伝播するのは NotEligible と EmbeddingUnavailable だけ。"""
from __future__ import annotations

from typing import Optional


class MatchingError(Exception):
    pass


class NotEligible(MatchingError):
    """求人が存在しない、または注目求人ではない。何も保存せずに中断する。"""

    def __init__(self, job_id: int, reason: str):
        self.job_id = job_id
        self.reason = reason  # "not_found" | "not_featured"
        super().__init__(f"job {job_id} is not eligible for matching: {reason}")


class EmbeddingUnavailable(MatchingError):
    """求人側の埋め込みが取れなかった（失敗・タイムアウト）。"""


class InvalidVectorError(ValueError):
    """ゼロベクトル・長さ不一致など、スコア計算できない入力。"""


class CandidateProcessingError(MatchingError):
    """1人分の埋め込みが読めない／計算できない。その候補者だけ飛ばす。"""

    def __init__(self, user_id: int, message: str):
        self.user_id = user_id
        super().__init__(message)


class DeliveryError(MatchingError):
    permanent = False

    def __init__(self, message: str, user_id: Optional[int] = None):
        self.user_id = user_id
        super().__init__(message)


class TransientDeliveryError(DeliveryError):
    """一時的な失敗。未送信のまま残し、次回の配信で再び対象になる。"""


class PermanentDeliveryError(DeliveryError):
    """恒久的な失敗（宛先不正など）。行を dead-letter にして以降は送らない。"""
    permanent = True

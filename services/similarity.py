from __future__ import annotations

import json
from typing import Sequence, Union

import numpy as np

from services.errors import InvalidVectorError

VectorLike = Union[Sequence[float], np.ndarray]


def _as_vector(values: VectorLike, label: str) -> np.ndarray:
    try:
        vec = np.asarray(values, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise InvalidVectorError(f"{label} is not numeric: {e}") from e
    if vec.ndim != 1 or vec.size == 0:
        raise InvalidVectorError(f"{label} must be a non-empty 1-D vector")
    if not np.all(np.isfinite(vec)):
        raise InvalidVectorError(f"{label} contains NaN or inf")
    return vec


def parse_embedding(raw: Union[str, Sequence[float], None]) -> np.ndarray:
    """保存済みの埋め込み（JSON 文字列 or 数値リスト）をベクトルにする。"""
    if raw is None:
        raise InvalidVectorError("embedding is missing")
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidVectorError(f"embedding is not valid JSON: {e}") from e
    return _as_vector(raw, "embedding")


# SBERT などのテキスト埋め込みはほぼ正の向きに集まるので、
# 負のコサインは 0 に丸めて [0, 1] → [0, 100] に線形変換する。
def similarity_score(job_vector: VectorLike, candidate_vector: VectorLike) -> float:
    """
    コサイン類似度を 0〜100 のスコアで返す（小数2桁）。
    向きだけを見るので長さには依存しない。ゼロベクトルは入力エラー。
    """
    a = _as_vector(job_vector, "job vector")
    b = _as_vector(candidate_vector, "candidate vector")
    if a.shape != b.shape:
        raise InvalidVectorError(f"dimension mismatch: {a.size} != {b.size}")

    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        raise InvalidVectorError("cannot score a zero vector")

    cosine = float(np.dot(a, b) / (norm_a * norm_b))
    cosine = min(1.0, max(0.0, cosine))
    return round(cosine * 100.0, 2)

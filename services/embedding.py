from __future__ import annotations

import asyncio
import logging
import os
from functools import lru_cache
from typing import List, Optional, Protocol

from config import MatchingSettings, get_settings

log = logging.getLogger(__name__)


class Embedder(Protocol):
    """テキスト → 固定長ベクトル。実体は外部モデル。"""

    async def embed(self, text: str) -> List[float]:
        ...


# ====== SBERT（ローカルモデル） ======
class SentenceTransformerEmbedder:
    """
    sentence-transformers を使う埋め込み。モデル読み込みが重いので初回呼び出しまで遅延する。
    encode はブロッキングなのでスレッドに逃がす。
    """

    def __init__(self, model_name: str):
        self.model_name = model_name
        self._model = None

    def _get_model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            self._model = SentenceTransformer(self.model_name)
            log.info("SBERT model loaded: %s", self.model_name)
        return self._model

    async def embed(self, text: str) -> List[float]:
        model = await asyncio.to_thread(self._get_model)
        vector = await asyncio.to_thread(model.encode, text)
        return [float(x) for x in vector]


# ====== OpenAI Embeddings API ======
class OpenAIEmbedder:
    def __init__(self, model_name: str, api_key: Optional[str] = None):
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("環境変数 OPENAI_API_KEY が設定されていません。")

        from openai import AsyncOpenAI

        self.model_name = model_name
        self._client = AsyncOpenAI(api_key=api_key)

    async def embed(self, text: str) -> List[float]:
        response = await self._client.embeddings.create(model=self.model_name, input=text)
        return list(response.data[0].embedding)


def build_embedder(settings: MatchingSettings) -> Embedder:
    if settings.embedding_provider == "openai":
        return OpenAIEmbedder(settings.openai_embedding_model)
    return SentenceTransformerEmbedder(settings.sbert_model)


@lru_cache(maxsize=1)
def get_embedder() -> Embedder:
    """FastAPI の Depends 用。プロセス内で1つだけ作る。"""
    return build_embedder(get_settings())

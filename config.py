# ------------------------------------------------------------
# マッチング／配信エンジンの設定値。
# 環境変数 → .env → デフォルト値 の順で解決する（pydantic-settings）。
# ハードコードせず、すべて環境変数で上書きできるようにしておく。
# ------------------------------------------------------------
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MatchingSettings(BaseSettings):
    # --- スコア閾値（0〜100） ---
    qualification_floor: float = Field(80.0, ge=0, le=100, validation_alias="MATCH_QUALIFICATION_FLOOR")
    high_score_threshold: float = Field(90.0, ge=0, le=100, validation_alias="MATCH_HIGH_SCORE_THRESHOLD")

    # --- 送信レート制御 ---
    hourly_send_budget: int = Field(100, ge=0, validation_alias="MATCH_HOURLY_SEND_BUDGET")
    batch_size: int = Field(50, gt=0, validation_alias="MATCH_BATCH_SIZE")
    batch_delay_seconds: float = Field(1.0, ge=0, validation_alias="MATCH_BATCH_DELAY_SECONDS")
    dispatch_concurrency: int = Field(10, gt=0, validation_alias="MATCH_DISPATCH_CONCURRENCY")

    # --- 候補者プールの絞り込み（日数） ---
    activity_window_days: int = Field(30, gt=0, validation_alias="MATCH_ACTIVITY_WINDOW_DAYS")
    embedding_freshness_days: int = Field(60, gt=0, validation_alias="MATCH_EMBEDDING_FRESHNESS_DAYS")

    # --- 外部呼び出しのタイムアウト（秒） ---
    embed_timeout_seconds: float = Field(30.0, gt=0, validation_alias="MATCH_EMBED_TIMEOUT_SECONDS")
    delivery_timeout_seconds: float = Field(15.0, gt=0, validation_alias="MATCH_DELIVERY_TIMEOUT_SECONDS")

    # --- 外部プロバイダ ---
    embedding_provider: str = Field("sbert", validation_alias="EMBEDDING_PROVIDER")  # "sbert" | "openai"
    sbert_model: str = Field(
        "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2", validation_alias="SBERT_MODEL"
    )
    openai_embedding_model: str = Field("text-embedding-3-small", validation_alias="OPENAI_EMBEDDING_MODEL")
    delivery_backend: str = Field("log", validation_alias="DELIVERY_BACKEND")  # "smtp" | "log"
    from_email: str = Field("jobs@example.com", validation_alias="FROM_EMAIL")
    smtp_host: Optional[str] = Field(None, validation_alias="SMTP_HOST")
    smtp_port: int = Field(587, validation_alias="SMTP_PORT")
    smtp_user: Optional[str] = Field(None, validation_alias="SMTP_USER")
    smtp_use_tls: bool = Field(True, validation_alias="SMTP_USE_TLS")

    # --- URL（フロントの求人ページ / このAPIのトラッキング） ---
    public_base_url: str = Field("http://localhost:3000", validation_alias="PUBLIC_BASE_URL")
    tracking_base_url: str = Field("http://localhost:8000", validation_alias="TRACKING_BASE_URL")

    # 空文字の環境変数は未設定扱い。コードからはフィールド名でも渡せる
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
        populate_by_name=True,
    )

    @model_validator(mode="after")
    def _check_thresholds(self) -> "MatchingSettings":
        if self.high_score_threshold < self.qualification_floor:
            raise ValueError("high_score_threshold must be >= qualification_floor")
        if self.embedding_provider not in ("sbert", "openai"):
            raise ValueError(f"unknown embedding_provider: {self.embedding_provider}")
        if self.delivery_backend not in ("smtp", "log"):
            raise ValueError(f"unknown delivery_backend: {self.delivery_backend}")
        if self.delivery_backend == "smtp" and not self.smtp_host:
            raise ValueError("SMTP_HOST is required when DELIVERY_BACKEND=smtp")
        return self


@lru_cache(maxsize=1)
def get_settings() -> MatchingSettings:
    """FastAPI の Depends からも使う共有設定。テストでは dependency_overrides で差し替える。"""
    return MatchingSettings()

# ------------------------------------------------------------
# DB接続の土台。engine / SessionLocal / Base / get_db / init_db を定義。
# DATABASE_URL があればそれを優先、無ければ DB_USER などの分割値から
# MySQL 用 URL を組み立てる。どちらも無ければ SQLite にフォールバック。
# ------------------------------------------------------------
import os
from pathlib import Path
from typing import Generator
from urllib.parse import quote_plus

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass


# ============================================================
# 1) 接続先 URL の解決
# ============================================================
def _build_database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    user = os.getenv("DB_USER")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST") or "localhost"
    port = os.getenv("DB_PORT", "3306")
    name = os.getenv("DB_NAME")

    if user and password and name:
        # パスワードに記号が入っていても壊れないようにエンコード
        return (
            f"mysql+pymysql://{quote_plus(user)}:{quote_plus(password)}"
            f"@{host}:{port}/{name}?charset=utf8mb4"
        )
    # 開発用のローカル SQLite
    return "sqlite:///./matching.db"


DATABASE_URL = _build_database_url()

if os.getenv("DISABLE_SQLITE") == "1" and DATABASE_URL.startswith("sqlite"):
    raise RuntimeError(
        "SQLite フォールバックが抑止されました。DATABASE_URL または DB_* を設定してください。"
    )


# ============================================================
# 2) create_engine（DBごとに微調整）
# ============================================================
def _is_mysql(url: str) -> bool:
    return url.split(":", 1)[0].startswith("mysql")


def make_engine(url: str):
    """URL に応じた connect_args でエンジンを作る。テストからも使う。"""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            echo=False,
            future=True,
        )

    connect_args = {}
    if _is_mysql(url):
        # マネージド MySQL は TLS 必須のことが多い
        import ssl
        ca = os.getenv("DB_SSL_CA")
        if ca and Path(ca).exists():
            connect_args = {"ssl": ssl.create_default_context(cafile=str(Path(ca).resolve()))}
        else:
            connect_args = {"ssl": ssl.create_default_context()}

    return create_engine(
        url,
        pool_pre_ping=True,   # 接続死活監視
        pool_recycle=1800,    # 長時間アイドルで切られる対策（秒）
        echo=False,
        future=True,
        connect_args=connect_args,
    )


engine = make_engine(DATABASE_URL)

# ============================================================
# 3) セッションファクトリ / Base
# ============================================================
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    future=True,
)
Base = declarative_base()


def init_db(bind=None) -> None:
    """全モデルを読み込んでテーブルを作成する（マイグレーションは対象外）。"""
    import models  # noqa: F401  Base.metadata へ登録させる

    Base.metadata.create_all(bind=bind or engine)


# ============================================================
# 4) FastAPI で使う DB セッション依存関係
# ============================================================
def get_db() -> Generator:
    """
    FastAPI の Depends で使うDBセッション。
    使用後は必ず close() される。
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import os

# ====== 自作モジュール ======
# （ルーターに分割：マッチングAPI と 通知配信/トラッキング）
from database import init_db
from routers.matching import router as matching_router
from routers.notifications import router as notifications_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # ローカル開発用：AUTO_CREATE_TABLES=true ならテーブルを作る（本番はマイグレーションで管理）
    if os.getenv("AUTO_CREATE_TABLES", "false").lower() == "true":
        init_db()
        log.info("tables created")
    yield


app = FastAPI(
    title="Featured Job Matching API",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS（Next.jsからの呼び出し許可）
# 環境変数 ALLOW_ORIGINS（カンマ区切り）で上書き可能にする
_env_origins = os.getenv("ALLOW_ORIGINS")
_allow_origins = (
    [o.strip() for o in _env_origins.split(",")] if _env_origins else ["http://localhost:3000"]
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ルーターを登録（プレフィックスやタグは各ファイル内で定義）
app.include_router(matching_router)
app.include_router(notifications_router)


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


# ローカル実行（python main.py）
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("RELOAD", "false").lower() == "true",
    )

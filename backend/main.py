import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# 在应用启动前加载环境变量
load_dotenv()

from journalflow.core.middleware import ExceptionHandlerMiddleware, workflow_exception_handler  # noqa: E402
from journalflow.core.errors import WorkflowError  # noqa: E402
from journalflow.api.v1 import workflow  # noqa: E402

logger = logging.getLogger("journalflow")

_SENTRY_ENABLED = False
try:
    from journalflow.core.sentry_init import init_sentry

    _SENTRY_ENABLED = init_sentry()
    if _SENTRY_ENABLED:
        logger.info("[sentry] enabled")
except Exception as e:
    # 中文注释: 零崩溃原则: Sentry 任何异常不得阻塞启动
    logger.warning("[sentry] init failed (ignored): %s", e)


app = FastAPI(
    title="JournalFlow API",
    description="Editorial workflow and review-assignment engine",
    version="1.0.0",
)


def _parse_frontend_origins() -> list[str]:
    """
    解析允许跨域的前端 Origins（FRONTEND_ORIGINS，逗号分隔）。
    """
    origins: list[str] = []
    for part in (os.environ.get("FRONTEND_ORIGINS") or "").split(","):
        o = part.strip().rstrip("/")
        if o and o not in origins:
            origins.append(o)
    return origins or ["http://localhost:3000"]


# === 中间件配置 ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_frontend_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ExceptionHandlerMiddleware)
app.add_exception_handler(WorkflowError, workflow_exception_handler)

# === 路由注册 ===
app.include_router(workflow.router, prefix="/api/v1")


@app.get("/")
async def root():
    return {"message": "JournalFlow API is running", "docs": "/docs"}

import logging
import time

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from journalflow.core.errors import WorkflowError

# === 结构化日志配置 ===
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("journalflow")


def workflow_error_response(exc: WorkflowError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def workflow_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    WorkflowError -> {"detail", "code", "context"}

    中文注释: 4xx 只记 info，5xx（存储不可用/DOI 生成失败）记 warning。
    """
    if not isinstance(exc, WorkflowError):
        raise exc
    log = logger.warning if exc.http_status >= 500 else logger.info
    log(
        "Workflow error: %s %s -> %s code=%s context=%s",
        request.method,
        request.url.path,
        exc.http_status,
        exc.code,
        exc.context,
    )
    return workflow_error_response(exc)


class ExceptionHandlerMiddleware(BaseHTTPMiddleware):
    """
    统一异常捕获中间件：请求日志 + 未处理异常兜底为 500 JSON。
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        try:
            response = await call_next(request)
            process_time = time.time() - start_time
            logger.info(
                "Method: %s Path: %s Status: %s Time: %.4fs",
                request.method,
                request.url.path,
                response.status_code,
                process_time,
            )
            return response
        except WorkflowError as exc:
            return workflow_error_response(exc)
        except HTTPException as exc:
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": exc.detail, "code": "http_exception", "context": {}},
            )
        except Exception as e:
            logger.error("Unhandled Exception: %s", e, exc_info=True)
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal server error", "code": "server_error", "context": {}},
            )

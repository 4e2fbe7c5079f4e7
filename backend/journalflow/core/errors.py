from __future__ import annotations

from typing import Any


class WorkflowError(Exception):
    """
    编辑流程引擎的统一错误基类。

    中文注释:
    - 每个错误都带有稳定的 code 与结构化 context（稿件 id、当前状态、请求状态等），
      便于 HTTP 层渲染精确的错误信息。
    - 所有错误对本次操作都是终止性的；只有 DOI 与 CAS 冲突有有限次自动重试。
    """

    code = "workflow_error"
    http_status = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code, "context": dict(self.context)}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, context={self.context!r})"


class NotFound(WorkflowError):
    code = "not_found"
    http_status = 404


class IllegalTransition(WorkflowError):
    code = "illegal_transition"
    http_status = 409


class Forbidden(WorkflowError):
    code = "forbidden"
    http_status = 403


class InvalidReviewer(WorkflowError):
    code = "invalid_reviewer"
    http_status = 422


class IncompleteReview(WorkflowError):
    code = "incomplete_review"
    http_status = 422


class AlreadyPublished(WorkflowError):
    code = "already_published"
    http_status = 409


class DoiGenerationFailed(WorkflowError):
    code = "doi_generation_failed"
    http_status = 503


class Conflict(WorkflowError):
    code = "conflict"
    http_status = 409


class StorageUnavailable(WorkflowError):
    code = "storage_unavailable"
    http_status = 503

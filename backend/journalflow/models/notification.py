from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field
from pydantic.config import ConfigDict


NotificationType = Literal[
    "pending_submission",
    "overdue_review",
    "ready_for_publication",
    "revision_required",
]


class NotificationPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]


class NotificationAudience(str, Enum):
    EDITORS = "editors"
    ASSIGNED_EDITOR = "assigned_editor"
    ADMINS = "admins"
    AUTHOR = "author"


class NotificationEvent(BaseModel):
    """
    通知请求（交给外部 Notification Delivery 投递）

    中文注释:
    - recipient_ids 为空时由投递方按 audience（editors/admins）展开收件人。
    - count 仅用于管理端汇总（digest）条目，普通事件恒为 1。
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: NotificationType
    priority: NotificationPriority
    audience: NotificationAudience
    recipient_ids: tuple[str, ...] = ()
    manuscript_id: Optional[str] = None
    assignment_id: Optional[str] = None
    title: str = Field(..., max_length=255)
    message: str = Field(..., max_length=2000)
    action_url: Optional[str] = None
    count: int = Field(1, ge=0)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: dict[str, Any] = Field(default_factory=dict)

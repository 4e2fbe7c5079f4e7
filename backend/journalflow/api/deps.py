"""
API 依赖注入

中文注释:
- 引擎服务全部通过 Depends 获取，测试里用 app.dependency_overrides 注入内存实现。
- 认证由上游网关完成，这里只从 X-Actor-Id / X-Actor-Roles 头部读取调用方身份。
"""

from functools import lru_cache

from fastapi import BackgroundTasks, Depends, Header, HTTPException

from journalflow.core.config import WorkflowConfig
from journalflow.models.manuscript import Actor
from journalflow.services.analytics_service import AnalyticsService
from journalflow.services.editorial_service import EditorialService
from journalflow.services.identity_service import IdentityResolver, SupabaseIdentityResolver
from journalflow.services.notification_service import (
    BackgroundTaskDelivery,
    NotificationSink,
    NotificationTrigger,
    SupabaseNotificationSink,
)
from journalflow.services.reviewer_service import ReviewerService
from journalflow.services.store import ManuscriptStore, SupabaseManuscriptStore


@lru_cache(maxsize=1)
def get_workflow_config() -> WorkflowConfig:
    return WorkflowConfig.from_env()


@lru_cache(maxsize=1)
def get_store() -> SupabaseManuscriptStore:
    return SupabaseManuscriptStore()


@lru_cache(maxsize=1)
def get_identity_resolver() -> SupabaseIdentityResolver:
    return SupabaseIdentityResolver()


@lru_cache(maxsize=1)
def get_notification_sink() -> SupabaseNotificationSink:
    return SupabaseNotificationSink()


def get_notification_trigger(
    background_tasks: BackgroundTasks,
    sink: NotificationSink = Depends(get_notification_sink),
    store: ManuscriptStore = Depends(get_store),
) -> NotificationTrigger:
    # 中文注释: 每个请求一个 trigger，通知挂在本次响应的 BackgroundTasks 上
    return NotificationTrigger(BackgroundTaskDelivery(background_tasks, sink), store=store)


def get_editorial_service(
    store: ManuscriptStore = Depends(get_store),
    identity: IdentityResolver = Depends(get_identity_resolver),
    config: WorkflowConfig = Depends(get_workflow_config),
    notifier: NotificationTrigger = Depends(get_notification_trigger),
) -> EditorialService:
    return EditorialService(store, identity, notifier=notifier, config=config)


def get_reviewer_service(
    store: ManuscriptStore = Depends(get_store),
    identity: IdentityResolver = Depends(get_identity_resolver),
    config: WorkflowConfig = Depends(get_workflow_config),
) -> ReviewerService:
    return ReviewerService(store, identity, config=config)


def get_analytics_service(
    store: ManuscriptStore = Depends(get_store),
    identity: IdentityResolver = Depends(get_identity_resolver),
    config: WorkflowConfig = Depends(get_workflow_config),
) -> AnalyticsService:
    return AnalyticsService(store, identity, config=config)


async def get_actor(
    x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    x_actor_roles: str | None = Header(default=None, alias="X-Actor-Roles"),
) -> Actor:
    actor_id = (x_actor_id or "").strip()
    if not actor_id:
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id header")
    return Actor(id=actor_id, roles=x_actor_roles or "")

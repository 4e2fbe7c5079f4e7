from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol

from fastapi import BackgroundTasks
from postgrest.exceptions import APIError

from journalflow.models.manuscript import Manuscript, ManuscriptStatus, ensure_utc
from journalflow.models.notification import (
    NotificationAudience,
    NotificationEvent,
    NotificationPriority,
)
from journalflow.services.store import ManuscriptStore, TimeWindow

logger = logging.getLogger("journalflow.notifications")


class NotificationDelivery(Protocol):
    """外部投递方：enqueue 必须是非阻塞的 best-effort 调用。"""

    def enqueue(self, event: NotificationEvent) -> bool: ...


class NotificationSink(Protocol):
    def deliver(self, event: NotificationEvent) -> None: ...


def sort_for_display(events: Iterable[NotificationEvent]) -> list[NotificationEvent]:
    """优先级 high > medium > low；同优先级按时间倒序（最近的在前）。"""
    return sorted(
        events,
        key=lambda e: (-e.priority.rank, -e.occurred_at.timestamp()),
    )


class SupabaseNotificationSink:
    """
    把通知写入 notifications 表

    中文注释:
    1) 写入使用 supabase_admin（service_role），避免 RLS 导致写入失败。
    2) 有明确收件人时每人一行；否则写一行 audience 级别的通知，由前端按角色展示。
    """

    def __init__(self, client: Any = None) -> None:
        if client is None:
            from journalflow.lib.api_client import supabase_admin

            client = supabase_admin
        self.client = client

    @staticmethod
    def _default_action_url(event: NotificationEvent) -> str:
        if event.action_url:
            return event.action_url
        if event.type == "overdue_review":
            return "/dashboard?tab=reviews&status=overdue"
        if event.type == "pending_submission":
            return "/dashboard?tab=editor&status=submitted"
        if event.manuscript_id:
            return f"/dashboard/manuscripts/{event.manuscript_id}"
        return "/dashboard/notifications"

    def deliver(self, event: NotificationEvent) -> None:
        base = {
            "manuscript_id": event.manuscript_id,
            "type": event.type,
            "priority": event.priority.value,
            "audience": event.audience.value,
            "title": event.title,
            "content": event.message,
            "action_url": self._default_action_url(event),
            "is_read": False,
            "created_at": event.occurred_at.isoformat(),
        }
        recipients = list(event.recipient_ids) or [None]
        payload = [{**base, "user_id": rid} for rid in recipients]
        try:
            self.client.table("notifications").insert(payload).execute()
        except APIError as e:
            # 中文注释: 外键错误（收件人不在 auth.users）对主流程无影响，降级为 debug 日志
            text = str(e).lower()
            code = str(getattr(e, "code", "") or "").lower()
            if "23503" in code or "23503" in text:
                logger.debug("[Notifications] skipped orphan recipient: %s", e)
                return
            raise


def deliver_notification_safe(sink: NotificationSink, event: NotificationEvent) -> None:
    """
    给 BackgroundTasks 用的安全包装：任何异常都吞掉，只记录日志，避免影响已返回的响应。
    """
    try:
        sink.deliver(event)
    except Exception as e:
        logger.error("[Notifications] delivery failed (ignored): type=%s err=%s", event.type, e)


class BackgroundTaskDelivery:
    """
    按请求构造的投递方：事件挂到 FastAPI BackgroundTasks，响应发出后再写入 sink。

    中文注释:
    - enqueue 只登记任务，不做任何 IO，因此不会阻塞流转。
    """

    def __init__(self, background_tasks: BackgroundTasks, sink: NotificationSink) -> None:
        self.background_tasks = background_tasks
        self.sink = sink

    def enqueue(self, event: NotificationEvent) -> bool:
        self.background_tasks.add_task(deliver_notification_safe, self.sink, event)
        return True


def _in_progress_at(ms: Manuscript, as_of: datetime) -> bool:
    """已终结（withdrawn / rejected / published）的稿件不再产生逾期提醒。"""
    status = ms.status_at(as_of)
    return status is not None and not status.is_terminal


_STATUS_RULES: dict[ManuscriptStatus, tuple[str, NotificationPriority, NotificationAudience, str]] = {
    ManuscriptStatus.SUBMITTED: (
        "pending_submission",
        NotificationPriority.HIGH,
        NotificationAudience.EDITORS,
        "Pending Submission",
    ),
    ManuscriptStatus.ACCEPTED: (
        "ready_for_publication",
        NotificationPriority.MEDIUM,
        NotificationAudience.EDITORS,
        "Ready for Publication",
    ),
    ManuscriptStatus.REVISION_REQUIRED: (
        "revision_required",
        NotificationPriority.MEDIUM,
        NotificationAudience.AUTHOR,
        "Revision Required",
    ),
}


class NotificationTrigger:
    """
    工作流 / 审稿事件 -> 通知请求 的无状态映射。

    规则:
    - 稿件进入 submitted -> pending submission（editors）
    - 稿件进入 accepted -> ready for publication（editors）
    - 稿件进入 revision-required -> revision required（通讯作者）
    - 审稿任务逾期（读取时检测）-> overdue review（责任编辑，否则 admins）

    中文注释:
    - 投递失败（包括 enqueue 抛异常）只记录日志，绝不让触发它的流转失败。
    """

    def __init__(
        self,
        delivery: NotificationDelivery | None = None,
        *,
        store: ManuscriptStore | None = None,
    ) -> None:
        self.delivery = delivery
        self.store = store

    def build_for_status(
        self, manuscript: Manuscript, status: ManuscriptStatus, *, at: datetime | None = None
    ) -> NotificationEvent | None:
        rule = _STATUS_RULES.get(status)
        if rule is None:
            return None
        type_, priority, audience, title = rule
        occurred_at = at or datetime.now(timezone.utc)
        recipients: tuple[str, ...] = ()
        if audience == NotificationAudience.AUTHOR and manuscript.author_id:
            recipients = (manuscript.author_id,)

        label = manuscript.manuscript_code or manuscript.id
        messages = {
            "pending_submission": f"Manuscript {label} is awaiting initial review",
            "ready_for_publication": f"Manuscript {label} has been accepted and is ready to be published",
            "revision_required": f"Manuscript {label} requires revision",
        }
        return NotificationEvent(
            type=type_,  # type: ignore[arg-type]
            priority=priority,
            audience=audience,
            recipient_ids=recipients,
            manuscript_id=manuscript.id,
            title=title,
            message=messages[type_],
            occurred_at=occurred_at,
            payload={"status": status.value, "manuscript_code": manuscript.manuscript_code},
        )

    def dispatch(self, event: NotificationEvent | None) -> bool:
        if event is None or self.delivery is None:
            return False
        try:
            accepted = bool(self.delivery.enqueue(event))
        except Exception as e:
            logger.warning("[Notifications] enqueue failed (ignored): type=%s err=%s", event.type, e)
            return False
        if not accepted:
            logger.warning("[Notifications] enqueue rejected: type=%s", event.type)
        return accepted

    def on_status_changed(
        self, manuscript: Manuscript, *, at: datetime | None = None
    ) -> NotificationEvent | None:
        event = self.build_for_status(manuscript, manuscript.status, at=at)
        self.dispatch(event)
        return event

    @staticmethod
    def overdue_alert_events(
        manuscripts: Iterable[Manuscript], *, as_of: datetime
    ) -> list[NotificationEvent]:
        events: list[NotificationEvent] = []
        for ms in manuscripts:
            if not _in_progress_at(ms, as_of):
                continue
            for assignment in ms.review_assignments:
                if not assignment.is_overdue(as_of):
                    continue
                if ms.editor_assigned:
                    audience = NotificationAudience.ASSIGNED_EDITOR
                    recipients: tuple[str, ...] = (ms.editor_assigned,)
                else:
                    audience = NotificationAudience.ADMINS
                    recipients = ()
                due_date = assignment.due_date or as_of
                overdue_days = (as_of - due_date).total_seconds() / 86400.0
                events.append(
                    NotificationEvent(
                        type="overdue_review",
                        priority=NotificationPriority.HIGH,
                        audience=audience,
                        recipient_ids=recipients,
                        manuscript_id=ms.id,
                        assignment_id=assignment.id,
                        title="Overdue Review",
                        message=(
                            f"Review by {assignment.reviewer_id} on {ms.manuscript_code or ms.id} "
                            f"is {overdue_days:.1f} days overdue"
                        ),
                        occurred_at=due_date,
                        payload={
                            "reviewer_id": assignment.reviewer_id,
                            "sub_status": assignment.sub_status.value,
                            "overdue_days": round(overdue_days, 2),
                        },
                    )
                )
        return sort_for_display(events)

    def _population(self, as_of: datetime) -> list[Manuscript]:
        if self.store is None:
            return []
        return self.store.query(None, TimeWindow(end=as_of))

    def collect_overdue_alerts(
        self, *, as_of: datetime | None = None, dispatch: bool = True
    ) -> list[NotificationEvent]:
        """读取时检测逾期审稿，可选择同时投递。"""
        now = ensure_utc(as_of) or datetime.now(timezone.utc)
        events = self.overdue_alert_events(self._population(now), as_of=now)
        if dispatch:
            for event in events:
                self.dispatch(event)
        return events

    def build_admin_digest(self, *, as_of: datetime | None = None) -> list[NotificationEvent]:
        """
        管理端通知汇总：按类别计数，0 的类别不返回，按展示优先级排序。
        """
        now = ensure_utc(as_of) or datetime.now(timezone.utc)
        population = self._population(now)

        counts = {"submitted": 0, "accepted": 0, "revision-required": 0}
        overdue = 0
        for ms in population:
            status = ms.status_at(now)
            if status is not None and status.value in counts:
                counts[status.value] += 1
            if _in_progress_at(ms, now):
                overdue += sum(1 for a in ms.review_assignments if a.is_overdue(now))

        items = [
            (
                "pending_submission",
                counts["submitted"],
                NotificationPriority.HIGH,
                NotificationAudience.EDITORS,
                "Pending Submissions",
                f"{counts['submitted']} articles awaiting initial review",
                "/admin/articles?status=submitted",
            ),
            (
                "overdue_review",
                overdue,
                NotificationPriority.HIGH,
                NotificationAudience.ADMINS,
                "Overdue Reviews",
                f"{overdue} reviews are overdue",
                "/admin/reviews?status=overdue",
            ),
            (
                "ready_for_publication",
                counts["accepted"],
                NotificationPriority.MEDIUM,
                NotificationAudience.EDITORS,
                "Ready for Publication",
                f"{counts['accepted']} articles ready to be published",
                "/admin/publications/ready",
            ),
            (
                "revision_required",
                counts["revision-required"],
                NotificationPriority.MEDIUM,
                NotificationAudience.EDITORS,
                "Revisions Required",
                f"{counts['revision-required']} articles need revision",
                "/admin/articles?status=revision-required",
            ),
        ]
        digest = [
            NotificationEvent(
                type=type_,  # type: ignore[arg-type]
                priority=priority,
                audience=audience,
                title=title,
                message=message,
                action_url=action_url,
                count=count,
                occurred_at=now,
            )
            for type_, count, priority, audience, title, message, action_url in items
            if count > 0
        ]
        return sort_for_display(digest)

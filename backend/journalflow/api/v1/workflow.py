"""
Workflow API Router
功能: 编辑流程引擎的 HTTP 适配层（路由保持薄，规则全部在服务层）

中文注释:
- /manuscripts: 投稿、状态流转、DOI、审稿人绑定
- /reviewers/bulk-assign: 批量指派（逐条返回结果）
- /reviews/{assignment_id}/outcome: 审稿子状态流转
- /metrics, /issues, /activity: 只读统计与活动流
- /notifications/*: 逾期提醒、管理端汇总
- WorkflowError 由 main.py 注册的异常处理器统一渲染为 {"detail","code","context"}
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from journalflow.api.deps import (
    get_actor,
    get_analytics_service,
    get_editorial_service,
    get_notification_trigger,
    get_reviewer_service,
)
from journalflow.core.errors import Forbidden
from journalflow.core.role_matrix import can_perform_action
from journalflow.models.analytics import (
    ActivityCategory,
    ActivityFeed,
    Granularity,
    IssueSummary,
    WorkflowMetrics,
)
from journalflow.models.manuscript import (
    Actor,
    AssignmentOverrides,
    Manuscript,
    ManuscriptDraft,
    PublicationDetails,
    ReviewAssignment,
)
from journalflow.models.notification import NotificationEvent
from journalflow.services.analytics_service import AnalyticsService
from journalflow.services.editorial_service import EditorialService
from journalflow.services.notification_service import NotificationTrigger
from journalflow.services.reviewer_service import BulkAssignItem, BulkAssignResult, ReviewerService
from journalflow.services.store import TimeWindow

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workflow",
    tags=["Workflow"],
    responses={401: {"description": "缺少调用方身份"}, 403: {"description": "权限不足"}},
)


class TransitionRequest(BaseModel):
    target_status: str = Field(..., min_length=1)
    comment: Optional[str] = Field(None, max_length=2000)
    assignment_overrides: Optional[AssignmentOverrides] = None
    publication: Optional[PublicationDetails] = None


class DoiRequest(BaseModel):
    prefix: Optional[str] = None


class DoiResponse(BaseModel):
    manuscript_id: str
    doi: str


class AssignReviewersRequest(BaseModel):
    reviewer_ids: list[str] = Field(default_factory=list)
    due_date: Optional[datetime] = None


class AssignReviewersResponse(BaseModel):
    manuscript: Manuscript
    created_assignment_ids: list[str]


class BulkAssignRequest(BaseModel):
    items: list[BulkAssignItem] = Field(default_factory=list)


class BulkAssignResponse(BaseModel):
    results: list[BulkAssignResult]


class ReviewOutcomeRequest(BaseModel):
    sub_status: str
    rating: Optional[int] = None
    recommendation: Optional[str] = None
    comments: Optional[str] = None


def _require_analytics_access(actor: Actor) -> None:
    if not can_perform_action(action="analytics:view", roles=actor.roles):
        raise Forbidden("Insufficient role for workflow analytics", actor_id=actor.id)


@router.post("/manuscripts", response_model=Manuscript, status_code=201)
def submit_manuscript(
    body: ManuscriptDraft,
    actor: Actor = Depends(get_actor),
    service: EditorialService = Depends(get_editorial_service),
):
    return service.submit_manuscript(body, actor)


@router.get("/manuscripts/{manuscript_id}", response_model=Manuscript)
def get_manuscript(
    manuscript_id: str,
    actor: Actor = Depends(get_actor),
    service: EditorialService = Depends(get_editorial_service),
):
    return service.get_manuscript(manuscript_id)


@router.post("/manuscripts/{manuscript_id}/transitions", response_model=Manuscript)
def request_transition(
    manuscript_id: str,
    body: TransitionRequest,
    actor: Actor = Depends(get_actor),
    service: EditorialService = Depends(get_editorial_service),
):
    return service.request_transition(
        manuscript_id=manuscript_id,
        target_status=body.target_status,
        actor=actor,
        comment=body.comment,
        assignment_overrides=body.assignment_overrides,
        publication=body.publication,
    )


@router.post("/manuscripts/{manuscript_id}/doi", response_model=DoiResponse)
def generate_doi(
    manuscript_id: str,
    body: Optional[DoiRequest] = None,
    actor: Actor = Depends(get_actor),
    service: EditorialService = Depends(get_editorial_service),
):
    doi = service.generate_doi(
        manuscript_id=manuscript_id,
        actor=actor,
        prefix=body.prefix if body else None,
    )
    return DoiResponse(manuscript_id=manuscript_id, doi=doi)


@router.post("/manuscripts/{manuscript_id}/reviewers", response_model=AssignReviewersResponse)
def assign_reviewers(
    manuscript_id: str,
    body: AssignReviewersRequest,
    actor: Actor = Depends(get_actor),
    service: ReviewerService = Depends(get_reviewer_service),
):
    manuscript, created = service.assign_reviewers(
        manuscript_id=manuscript_id,
        reviewer_ids=body.reviewer_ids,
        due_date=body.due_date,
        actor=actor,
    )
    return AssignReviewersResponse(
        manuscript=manuscript,
        created_assignment_ids=[a.id for a in created],
    )


@router.post("/reviewers/bulk-assign", response_model=BulkAssignResponse)
def bulk_assign(
    body: BulkAssignRequest,
    actor: Actor = Depends(get_actor),
    service: ReviewerService = Depends(get_reviewer_service),
):
    results = service.bulk_assign(body.items, actor=actor)
    failed = sum(1 for r in results if not r.success)
    if failed:
        logger.info("bulk assign: %s items, %s failed", len(results), failed)
    return BulkAssignResponse(results=results)


@router.post("/reviews/{assignment_id}/outcome", response_model=ReviewAssignment)
def record_review_outcome(
    assignment_id: str,
    body: ReviewOutcomeRequest,
    actor: Actor = Depends(get_actor),
    service: ReviewerService = Depends(get_reviewer_service),
):
    return service.record_review_outcome(
        assignment_id=assignment_id,
        sub_status=body.sub_status,
        rating=body.rating,
        recommendation=body.recommendation,
        comments=body.comments,
        actor=actor,
    )


@router.get("/metrics", response_model=WorkflowMetrics)
def get_metrics(
    start: Optional[datetime] = Query(None, description="时间窗起点（默认 as_of 前 90 天）"),
    end: Optional[datetime] = Query(None, description="时间窗终点（默认 as_of）"),
    as_of: Optional[datetime] = Query(None),
    granularity: Granularity = Query("month"),
    dense: bool = Query(False),
    top_n: int = Query(5, ge=0, le=100),
    actor: Actor = Depends(get_actor),
    service: AnalyticsService = Depends(get_analytics_service),
):
    _require_analytics_access(actor)
    window = TimeWindow(start=start, end=end) if (start or end) else None
    return service.compute_metrics(
        window=window,
        as_of=as_of,
        granularity=granularity,
        dense=dense,
        top_n=top_n,
    )


@router.get("/activity", response_model=ActivityFeed)
def activity_feed(
    as_of: Optional[datetime] = Query(None),
    category: Optional[ActivityCategory] = Query(None, alias="type", description="manuscripts / reviews"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    service: AnalyticsService = Depends(get_analytics_service),
):
    _require_analytics_access(actor)
    return service.activity_feed(as_of=as_of, category=category, page=page, limit=limit)


@router.get("/issues", response_model=list[IssueSummary])
def list_issues(
    journal_id: Optional[str] = Query(None),
    actor: Actor = Depends(get_actor),
    service: AnalyticsService = Depends(get_analytics_service),
):
    return service.list_issues(journal_id=journal_id)


@router.get("/notifications/overdue", response_model=list[NotificationEvent])
def collect_overdue_alerts(
    as_of: Optional[datetime] = Query(None),
    dispatch: bool = Query(False, description="是否同时投递到通知队列"),
    actor: Actor = Depends(get_actor),
    trigger: NotificationTrigger = Depends(get_notification_trigger),
):
    _require_analytics_access(actor)
    return trigger.collect_overdue_alerts(as_of=as_of, dispatch=dispatch)


@router.get("/notifications/digest", response_model=list[NotificationEvent])
def build_admin_digest(
    as_of: Optional[datetime] = Query(None),
    actor: Actor = Depends(get_actor),
    trigger: NotificationTrigger = Depends(get_notification_trigger),
):
    _require_analytics_access(actor)
    return trigger.build_admin_digest(as_of=as_of)

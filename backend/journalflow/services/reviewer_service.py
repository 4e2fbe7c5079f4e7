from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from journalflow.core.config import WorkflowConfig
from journalflow.core.errors import (
    Forbidden,
    IllegalTransition,
    IncompleteReview,
    InvalidReviewer,
    NotFound,
    WorkflowError,
)
from journalflow.core.role_matrix import REVIEW_ELIGIBLE_ROLES, can_perform_action
from journalflow.models.manuscript import (
    Actor,
    Manuscript,
    ReviewAssignment,
    ReviewStatus,
    ReviewStatusEntry,
    ensure_utc,
)
from journalflow.services.identity_service import IdentityResolver
from journalflow.services.store import ManuscriptStore, run_transaction

logger = logging.getLogger("journalflow.reviews")


def _clean_ids(reviewer_ids: Iterable[str]) -> list[str]:
    # 去重但保留顺序，后续创建 assignment 的顺序与请求一致
    return list(dict.fromkeys(str(x).strip() for x in reviewer_ids if str(x or "").strip()))


def validate_reviewer_roles(
    reviewer_ids: Iterable[str],
    roles_by_id: dict[str, set[str]],
    *,
    manuscript_id: str | None = None,
) -> list[str]:
    """
    全有或全无：任何一个 id 不能解析为 reviewer/editor/admin 都整体拒绝。
    """
    ids = _clean_ids(reviewer_ids)
    if not ids:
        raise InvalidReviewer("At least one reviewer id is required", manuscript_id=manuscript_id)
    invalid = [rid for rid in ids if not (roles_by_id.get(rid) or set()) & REVIEW_ELIGIBLE_ROLES]
    if invalid:
        raise InvalidReviewer(
            "One or more reviewers not found or invalid role",
            manuscript_id=manuscript_id,
            reviewer_ids=invalid,
        )
    return ids


def bind_reviewers(
    manuscript: Manuscript,
    reviewer_ids: list[str],
    due_date: datetime | None,
    *,
    now: datetime,
    actor_id: str | None,
) -> list[ReviewAssignment]:
    """
    在稿件（事务内的副本）上为尚无 open 任务的审稿人创建 assignment。

    中文注释:
    - 已有 open 任务的审稿人保持不变（幂等）。
    - 终态任务不会被复用；再次邀请会新建一条当前轮次的记录。
    """
    created: list[ReviewAssignment] = []
    for rid in reviewer_ids:
        if manuscript.open_assignment_for(rid) is not None:
            continue
        assignment = ReviewAssignment(
            id=str(uuid4()),
            reviewer_id=rid,
            round=manuscript.review_round,
            sub_status=ReviewStatus.ASSIGNED,
            assigned_at=now,
            due_date=due_date,
            history=[
                ReviewStatusEntry(sub_status=ReviewStatus.ASSIGNED, changed_by=actor_id, changed_at=now)
            ],
        )
        manuscript.review_assignments.append(assignment)
        created.append(assignment)
    manuscript.review_due_date = due_date
    manuscript.sync_reviewers()
    return created


class BulkAssignItem(BaseModel):
    manuscript_id: str
    reviewer_ids: list[str] = Field(default_factory=list)
    due_date: Optional[datetime] = None

    @field_validator("due_date")
    @classmethod
    def coerce_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)


class BulkAssignResult(BaseModel):
    manuscript_id: str
    success: bool
    assigned_reviewers: int = 0
    created_assignment_ids: list[str] = Field(default_factory=list)
    error: Optional[dict[str, Any]] = None


class ReviewerService:
    """
    Review Assignment Tracker：审稿人绑定与审稿子状态流转。

    中文注释:
    - 每个公开操作都是单稿件的 read-modify-write（version CAS），冲突时有限次重试。
    - bulk_assign 逐条独立执行，单条失败不会回滚或阻塞其他条目。
    """

    def __init__(
        self,
        store: ManuscriptStore,
        identity: IdentityResolver,
        *,
        config: WorkflowConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.identity = identity
        self.config = config or WorkflowConfig.from_env()
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return ensure_utc(self._clock()) or datetime.now(timezone.utc)
        return datetime.now(timezone.utc)

    def assign_reviewers(
        self,
        *,
        manuscript_id: str,
        reviewer_ids: list[str],
        due_date: datetime | None,
        actor: Actor,
    ) -> tuple[Manuscript, list[ReviewAssignment]]:
        current = self.store.get(manuscript_id)
        if not can_perform_action(action="review:assign", roles=actor.roles):
            raise Forbidden(
                "Only editors or admins can assign reviewers",
                manuscript_id=manuscript_id,
                actor_id=actor.id,
            )
        if current.status.is_terminal:
            raise IllegalTransition(
                "Cannot assign reviewers to a manuscript in a terminal state",
                manuscript_id=manuscript_id,
                current_status=current.status.value,
            )

        ids = _clean_ids(reviewer_ids)
        roles_by_id = self.identity.resolve_roles(ids) if ids else {}
        ids = validate_reviewer_roles(ids, roles_by_id, manuscript_id=manuscript_id)
        due = ensure_utc(due_date)

        def _mutate(ms: Manuscript) -> list[ReviewAssignment]:
            if ms.status.is_terminal:
                raise IllegalTransition(
                    "Cannot assign reviewers to a manuscript in a terminal state",
                    manuscript_id=manuscript_id,
                    current_status=ms.status.value,
                )
            return bind_reviewers(ms, ids, due, now=self._now(), actor_id=actor.id)

        updated, created = run_transaction(
            self.store, manuscript_id, _mutate, max_attempts=self.config.cas_max_attempts
        )
        logger.info(
            "[Reviews] assigned manuscript=%s new=%s open=%s",
            manuscript_id,
            len(created),
            len(updated.reviewers),
        )
        return updated, created

    def bulk_assign(self, items: list[BulkAssignItem], *, actor: Actor) -> list[BulkAssignResult]:
        results: list[BulkAssignResult] = []
        for item in items:
            try:
                _, created = self.assign_reviewers(
                    manuscript_id=item.manuscript_id,
                    reviewer_ids=item.reviewer_ids,
                    due_date=item.due_date,
                    actor=actor,
                )
            except WorkflowError as e:
                logger.info("[Reviews] bulk item failed manuscript=%s code=%s", item.manuscript_id, e.code)
                results.append(
                    BulkAssignResult(manuscript_id=item.manuscript_id, success=False, error=e.to_dict())
                )
                continue
            results.append(
                BulkAssignResult(
                    manuscript_id=item.manuscript_id,
                    success=True,
                    assigned_reviewers=len(_clean_ids(item.reviewer_ids)),
                    created_assignment_ids=[a.id for a in created],
                )
            )
        return results

    def record_review_outcome(
        self,
        *,
        assignment_id: str,
        sub_status: str | ReviewStatus,
        rating: int | None = None,
        recommendation: str | None = None,
        comments: str | None = None,
        actor: Actor,
    ) -> ReviewAssignment:
        try:
            target = ReviewStatus(sub_status)
        except ValueError as e:
            raise IllegalTransition(
                "Invalid review status",
                assignment_id=assignment_id,
                requested_status=str(sub_status),
            ) from e

        manuscript = self.store.find_by_assignment(assignment_id)

        def _mutate(ms: Manuscript) -> ReviewAssignment:
            assignment = ms.find_assignment(assignment_id)
            if assignment is None:
                raise NotFound("Review assignment not found", assignment_id=assignment_id)

            is_own = actor.id == assignment.reviewer_id and can_perform_action(
                action="review:record_own", roles=actor.roles
            )
            if not is_own and not can_perform_action(action="review:record_any", roles=actor.roles):
                raise Forbidden(
                    "Only the assigned reviewer or an editor can update this review",
                    assignment_id=assignment_id,
                    actor_id=actor.id,
                )

            current = assignment.sub_status
            if target.value not in ReviewStatus.allowed_next(current):
                raise IllegalTransition(
                    f"Invalid review transition: {current.value} -> {target.value}",
                    assignment_id=assignment_id,
                    manuscript_id=ms.id,
                    current_status=current.value,
                    requested_status=target.value,
                )

            now = self._now()
            if target == ReviewStatus.COMPLETED:
                missing = [
                    name
                    for name, value in (("rating", rating), ("recommendation", recommendation))
                    if value is None or (isinstance(value, str) and not value.strip())
                ]
                if missing:
                    raise IncompleteReview(
                        "Completed reviews require rating and recommendation",
                        assignment_id=assignment_id,
                        missing=missing,
                    )
                if not 1 <= int(rating) <= 5:  # type: ignore[arg-type]
                    raise IncompleteReview(
                        "Rating must be between 1 and 5",
                        assignment_id=assignment_id,
                        rating=rating,
                    )
                if assignment.submitted_at is None:
                    assignment.submitted_at = now
                assignment.rating = int(rating)  # type: ignore[arg-type]
                assignment.recommendation = str(recommendation).strip()

            if comments:
                assignment.comments = comments
            assignment.sub_status = target
            assignment.history.append(
                ReviewStatusEntry(sub_status=target, changed_by=actor.id, changed_at=now)
            )
            ms.sync_reviewers()
            return assignment

        _, assignment = run_transaction(
            self.store, manuscript.id, _mutate, max_attempts=self.config.cas_max_attempts
        )
        logger.info(
            "[Reviews] assignment=%s manuscript=%s -> %s",
            assignment_id,
            manuscript.id,
            assignment.sub_status.value,
        )
        return assignment

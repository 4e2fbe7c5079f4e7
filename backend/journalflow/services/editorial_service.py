from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt

from journalflow.core.config import WorkflowConfig
from journalflow.core.doi_generator import generate_doi_candidate, generate_manuscript_code
from journalflow.core.errors import (
    AlreadyPublished,
    Conflict,
    DoiGenerationFailed,
    Forbidden,
    IllegalTransition,
    InvalidReviewer,
)
from journalflow.core.role_matrix import (
    EDITORIAL_ROLES,
    can_perform_action,
    can_request_transition,
)
from journalflow.models.manuscript import (
    Actor,
    AssignmentOverrides,
    Manuscript,
    ManuscriptDraft,
    ManuscriptStatus,
    PublicationDetails,
    StatusHistoryEntry,
    ensure_utc,
    normalize_status,
)
from journalflow.services.identity_service import IdentityResolver
from journalflow.services.notification_service import NotificationTrigger
from journalflow.services.reviewer_service import bind_reviewers, validate_reviewer_roles
from journalflow.services.store import ManuscriptStore, run_transaction

logger = logging.getLogger("journalflow.workflow")
doi_logger = logging.getLogger("journalflow.doi")

# 进程级 DOI 锁：DOI 的“检查是否存在 -> 写入”必须串行，跨进程由 doi 唯一约束兜底
_DOI_LOCK = threading.Lock()

_DOI_STATUSES = frozenset({ManuscriptStatus.ACCEPTED, ManuscriptStatus.PUBLISHED})


class _DoiCollision(Exception):
    pass


class EditorialService:
    """
    Workflow State Machine：统一的稿件状态流转与审计历史写入服务。

    中文注释:
    - 状态机规则只查 ManuscriptStatus.allowed_next，不在这里散落字符串比较。
    - 状态、历史记录、编辑/审稿人绑定、日期戳在同一次 CAS 中写入。
    - 通知只在 CAS 成功之后触发，且投递失败不会影响流转结果。
    """

    def __init__(
        self,
        store: ManuscriptStore,
        identity: IdentityResolver,
        *,
        notifier: NotificationTrigger | None = None,
        config: WorkflowConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.identity = identity
        self.notifier = notifier or NotificationTrigger()
        self.config = config or WorkflowConfig.from_env()
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return ensure_utc(self._clock()) or datetime.now(timezone.utc)
        return datetime.now(timezone.utc)

    def get_manuscript(self, manuscript_id: str) -> Manuscript:
        return self.store.get(manuscript_id)

    def submit_manuscript(self, draft: ManuscriptDraft, actor: Actor) -> Manuscript:
        if not can_perform_action(action="manuscript:submit", roles=actor.roles):
            raise Forbidden("Actor cannot submit manuscripts", actor_id=actor.id)

        now = self._now()
        manuscript = Manuscript(
            id=str(uuid4()),
            manuscript_code=generate_manuscript_code(
                prefix=self.config.manuscript_code_prefix, now=now
            ),
            title=draft.title.strip(),
            author_id=draft.author_id or actor.id,
            journal_id=draft.journal_id,
            journal_title=draft.journal_title,
            status=ManuscriptStatus.SUBMITTED,
            submission_date=now,
            version=0,
        )
        saved = self.store.insert(manuscript)
        logger.info("[Workflow] submitted manuscript=%s code=%s", saved.id, saved.manuscript_code)
        self.notifier.on_status_changed(saved, at=now)
        return saved

    def _resolve_override_roles(self, overrides: AssignmentOverrides | None) -> dict[str, set[str]]:
        if overrides is None:
            return {}
        ids = [*(overrides.reviewer_ids or [])]
        for editor_id in (overrides.editor_assigned, overrides.associate_editor):
            if editor_id:
                ids.append(editor_id)
        return self.identity.resolve_roles(ids) if ids else {}

    @staticmethod
    def _apply_overrides(
        ms: Manuscript,
        overrides: AssignmentOverrides,
        roles_by_id: dict[str, set[str]],
        *,
        now: datetime,
        actor_id: str,
    ) -> None:
        for field in ("editor_assigned", "associate_editor"):
            editor_id = getattr(overrides, field)
            if not editor_id:
                continue
            if not (roles_by_id.get(editor_id) or set()) & EDITORIAL_ROLES:
                raise InvalidReviewer(
                    f"{field} must resolve to an editor or admin",
                    manuscript_id=ms.id,
                    field=field,
                    identity_id=editor_id,
                )
            setattr(ms, field, editor_id)

        # 空列表视为“不改动审稿人绑定”，与未提供一致
        if overrides.reviewer_ids:
            ids = validate_reviewer_roles(overrides.reviewer_ids, roles_by_id, manuscript_id=ms.id)
            due = overrides.review_due_date or ms.review_due_date
            bind_reviewers(ms, ids, due, now=now, actor_id=actor_id)
        elif overrides.review_due_date is not None:
            ms.review_due_date = overrides.review_due_date

    def _apply_publication(self, ms: Manuscript, details: PublicationDetails | None, *, now: datetime) -> None:
        ms.publication_date = now
        if details is None:
            return
        if details.volume is not None:
            ms.volume = details.volume
        if details.issue is not None:
            ms.issue = details.issue
        if details.page_range is not None:
            ms.page_range = details.page_range
        doi = (details.doi or "").strip()
        if doi and doi != ms.doi:
            if self.store.doi_exists(doi, exclude_id=ms.id):
                raise Conflict("DOI already assigned to another manuscript", manuscript_id=ms.id, doi=doi)
            ms.doi = doi

    def request_transition(
        self,
        *,
        manuscript_id: str,
        target_status: str | ManuscriptStatus,
        actor: Actor,
        comment: str | None = None,
        assignment_overrides: AssignmentOverrides | None = None,
        publication: PublicationDetails | None = None,
    ) -> Manuscript:
        """
        更新稿件状态并追加 status_history。

        校验顺序:
        1) NotFound（稿件不存在）
        2) AlreadyPublished（重复发布）
        3) IllegalTransition（不在状态表中）
        4) Forbidden（角色无权执行该流转）
        """
        target_norm = normalize_status(target_status)
        # 先读一次，保证未知稿件直接返回 NotFound（优先于状态值校验）
        self.store.get(manuscript_id)
        if target_norm is None:
            raise IllegalTransition(
                "Invalid status",
                manuscript_id=manuscript_id,
                requested_status=str(target_status),
            )
        target = ManuscriptStatus(target_norm)
        roles_by_id = self._resolve_override_roles(assignment_overrides)

        def _mutate(ms: Manuscript) -> datetime:
            current = ms.status
            if target == ManuscriptStatus.PUBLISHED and ms.publication_date is not None:
                raise AlreadyPublished(
                    "Manuscript is already published",
                    manuscript_id=ms.id,
                    publication_date=ms.publication_date.isoformat(),
                )

            allowed = ManuscriptStatus.allowed_next(current)
            if target.value not in allowed:
                raise IllegalTransition(
                    f"Invalid transition: {current.value} -> {target.value}",
                    manuscript_id=ms.id,
                    current_status=current.value,
                    requested_status=target.value,
                    allowed=sorted(allowed),
                )

            if not can_request_transition(
                target=target,
                roles=actor.roles,
                actor_id=actor.id,
                author_id=ms.author_id,
                bound_reviewers=ms.bound_reviewer_ids(),
            ):
                raise Forbidden(
                    f"Actor is not allowed to move manuscript to {target.value}",
                    manuscript_id=ms.id,
                    actor_id=actor.id,
                    current_status=current.value,
                    requested_status=target.value,
                )

            now = self._now()
            ms.status = target
            ms.status_history.append(
                StatusHistoryEntry(status=target, changed_by=actor.id, changed_at=now, comment=comment)
            )
            # 新一轮外审：先递增轮次，随后绑定的审稿人属于新一轮
            if current == ManuscriptStatus.REVISED and target == ManuscriptStatus.UNDER_REVIEW:
                ms.review_round += 1
            if assignment_overrides is not None:
                self._apply_overrides(ms, assignment_overrides, roles_by_id, now=now, actor_id=actor.id)
            if target == ManuscriptStatus.ACCEPTED:
                ms.accepted_date = now
            if target == ManuscriptStatus.PUBLISHED:
                self._apply_publication(ms, publication, now=now)
            ms.sync_reviewers()
            return now

        def _commit() -> tuple[Manuscript, datetime]:
            return run_transaction(
                self.store, manuscript_id, _mutate, max_attempts=self.config.cas_max_attempts
            )

        # 带 DOI 的发布与 generate_doi 共用同一把锁，避免两边同时写入同一个 DOI
        supplied_doi = (publication.doi or "").strip() if publication is not None else ""
        if target == ManuscriptStatus.PUBLISHED and supplied_doi:
            with _DOI_LOCK:
                updated, changed_at = _commit()
        else:
            updated, changed_at = _commit()

        prev = updated.status_history[-2].status.value if len(updated.status_history) > 1 else "submitted"
        logger.info(
            "[Workflow] manuscript=%s %s -> %s by=%s",
            manuscript_id,
            prev,
            updated.status.value,
            actor.id,
        )
        self.notifier.on_status_changed(updated, at=changed_at)
        return updated

    def generate_doi(self, *, manuscript_id: str, actor: Actor, prefix: Optional[str] = None) -> str:
        """
        为已录用/已发表稿件分配全局唯一 DOI。

        中文注释:
        - 已有 DOI 的稿件直接返回原 DOI（幂等，不会重新分配）。
        - 碰撞（本地存在或数据库唯一约束冲突）时重新生成，最多 DOI_MAX_ATTEMPTS 次。
        """
        current = self.store.get(manuscript_id)
        if current.status not in _DOI_STATUSES:
            raise IllegalTransition(
                "DOI can only be generated for accepted or published manuscripts",
                manuscript_id=manuscript_id,
                current_status=current.status.value,
            )
        if not can_perform_action(action="doi:generate", roles=actor.roles):
            raise Forbidden("Only editors or admins can generate DOIs", manuscript_id=manuscript_id, actor_id=actor.id)

        doi_prefix = (prefix or self.config.doi_prefix).strip()
        max_attempts = self.config.doi_max_attempts

        def _assign(candidate: str) -> Callable[[Manuscript], str]:
            def _mutate(ms: Manuscript) -> str:
                if ms.status not in _DOI_STATUSES:
                    raise IllegalTransition(
                        "DOI can only be generated for accepted or published manuscripts",
                        manuscript_id=ms.id,
                        current_status=ms.status.value,
                    )
                if not ms.doi:
                    ms.doi = candidate
                return ms.doi

            return _mutate

        with _DOI_LOCK:
            latest = self.store.get(manuscript_id)
            if latest.doi:
                return latest.doi
            try:
                for attempt in Retrying(
                    stop=stop_after_attempt(max_attempts),
                    retry=retry_if_exception_type((_DoiCollision, Conflict)),
                ):
                    with attempt:
                        candidate = generate_doi_candidate(prefix=doi_prefix, now=self._now())
                        if self.store.doi_exists(candidate, exclude_id=manuscript_id):
                            doi_logger.warning(
                                "[DOI] collision manuscript=%s candidate=%s attempt=%s",
                                manuscript_id,
                                candidate,
                                attempt.retry_state.attempt_number,
                            )
                            raise _DoiCollision(candidate)
                        _, doi = run_transaction(
                            self.store,
                            manuscript_id,
                            _assign(candidate),
                            max_attempts=self.config.cas_max_attempts,
                        )
            except RetryError as e:
                doi_logger.error("[DOI] giving up manuscript=%s after %s attempts", manuscript_id, max_attempts)
                raise DoiGenerationFailed(
                    "Could not generate a unique DOI",
                    manuscript_id=manuscript_id,
                    attempts=max_attempts,
                ) from e

        doi_logger.info("[DOI] assigned manuscript=%s doi=%s", manuscript_id, doi)
        return doi

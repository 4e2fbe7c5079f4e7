from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ManuscriptStatus(str, Enum):
    """
    稿件生命周期状态枚举。

    中文注释:
    - 状态机规则集中在 _TRANSITIONS（显性、穷举），服务层只查表，不做散落的字符串比较。
    - published / rejected / withdrawn 为终态。
    """

    SUBMITTED = "submitted"
    INITIAL_REVIEW = "initial-review"
    UNDER_REVIEW = "under-review"
    REVISION_REQUIRED = "revision-required"
    REVISED = "revised"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PUBLISHED = "published"
    WITHDRAWN = "withdrawn"

    @classmethod
    def allowed_next(cls, current: str | "ManuscriptStatus") -> set[str]:
        """
        - submitted -> initial-review / withdrawn
        - initial-review -> under-review / withdrawn
        - under-review -> revision-required / accepted / rejected / withdrawn
        - revision-required -> revised / withdrawn
        - revised -> under-review / revision-required / accepted / withdrawn
        - accepted -> published / withdrawn
        """
        norm = normalize_status(current)
        if norm is None:
            return set()
        return {s.value for s in _TRANSITIONS[cls(norm)]}

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self]


_TRANSITIONS: dict[ManuscriptStatus, frozenset[ManuscriptStatus]] = {
    ManuscriptStatus.SUBMITTED: frozenset(
        {ManuscriptStatus.INITIAL_REVIEW, ManuscriptStatus.WITHDRAWN}
    ),
    ManuscriptStatus.INITIAL_REVIEW: frozenset(
        {ManuscriptStatus.UNDER_REVIEW, ManuscriptStatus.WITHDRAWN}
    ),
    ManuscriptStatus.UNDER_REVIEW: frozenset(
        {
            ManuscriptStatus.REVISION_REQUIRED,
            ManuscriptStatus.ACCEPTED,
            ManuscriptStatus.REJECTED,
            ManuscriptStatus.WITHDRAWN,
        }
    ),
    ManuscriptStatus.REVISION_REQUIRED: frozenset(
        {ManuscriptStatus.REVISED, ManuscriptStatus.WITHDRAWN}
    ),
    ManuscriptStatus.REVISED: frozenset(
        {
            ManuscriptStatus.UNDER_REVIEW,
            ManuscriptStatus.REVISION_REQUIRED,
            ManuscriptStatus.ACCEPTED,
            ManuscriptStatus.WITHDRAWN,
        }
    ),
    ManuscriptStatus.ACCEPTED: frozenset(
        {ManuscriptStatus.PUBLISHED, ManuscriptStatus.WITHDRAWN}
    ),
    ManuscriptStatus.REJECTED: frozenset(),
    ManuscriptStatus.PUBLISHED: frozenset(),
    ManuscriptStatus.WITHDRAWN: frozenset(),
}


def normalize_status(value: str | ManuscriptStatus | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, ManuscriptStatus):
        return value.value
    v = str(value).strip().lower().replace("_", "-")
    if not v:
        return None
    # 兼容驼峰写法（旧前端/统计接口使用 initialReview / underReview 等 key）
    legacy_map = {
        "initialreview": ManuscriptStatus.INITIAL_REVIEW.value,
        "underreview": ManuscriptStatus.UNDER_REVIEW.value,
        "revisionrequired": ManuscriptStatus.REVISION_REQUIRED.value,
    }
    v = legacy_map.get(v, v)
    try:
        return ManuscriptStatus(v).value
    except ValueError:
        return None


class ReviewStatus(str, Enum):
    """审稿任务子状态：assigned -> in-progress -> completed / declined"""

    ASSIGNED = "assigned"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    DECLINED = "declined"

    @classmethod
    def allowed_next(cls, current: str | "ReviewStatus") -> set[str]:
        try:
            cur = cls(current)
        except ValueError:
            return set()
        return {s.value for s in _REVIEW_TRANSITIONS[cur]}

    @property
    def is_terminal(self) -> bool:
        return not _REVIEW_TRANSITIONS[self]


_REVIEW_TRANSITIONS: dict[ReviewStatus, frozenset[ReviewStatus]] = {
    ReviewStatus.ASSIGNED: frozenset(
        {ReviewStatus.IN_PROGRESS, ReviewStatus.COMPLETED, ReviewStatus.DECLINED}
    ),
    ReviewStatus.IN_PROGRESS: frozenset({ReviewStatus.COMPLETED, ReviewStatus.DECLINED}),
    ReviewStatus.COMPLETED: frozenset(),
    ReviewStatus.DECLINED: frozenset(),
}

OPEN_REVIEW_STATUSES = frozenset({ReviewStatus.ASSIGNED, ReviewStatus.IN_PROGRESS})


class StatusHistoryEntry(BaseModel):
    """status_history 中的一条审计记录（写入后不可变）"""

    model_config = ConfigDict(frozen=True)

    status: ManuscriptStatus
    changed_by: Optional[str] = None
    changed_at: datetime
    comment: Optional[str] = None

    @field_validator("changed_at")
    @classmethod
    def coerce_utc(cls, value: datetime) -> datetime | None:
        return ensure_utc(value)


class ReviewStatusEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    sub_status: ReviewStatus
    changed_by: Optional[str] = None
    changed_at: datetime

    @field_validator("changed_at")
    @classmethod
    def coerce_utc(cls, value: datetime) -> datetime | None:
        return ensure_utc(value)


class ReviewAssignment(BaseModel):
    """
    审稿任务（Manuscript 的子实体）

    中文注释:
    - reviewer_id 只是外键字符串，不持有任何对象引用。
    - 终态（completed / declined）后不再变化；再次邀请会新建一条记录。
    """

    id: str
    reviewer_id: str
    round: int = Field(1, ge=1)
    sub_status: ReviewStatus = ReviewStatus.ASSIGNED
    assigned_at: datetime
    due_date: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    rating: Optional[int] = Field(None, ge=1, le=5)
    recommendation: Optional[str] = None
    comments: Optional[str] = None
    history: list[ReviewStatusEntry] = Field(default_factory=list)

    @field_validator("assigned_at", "due_date", "submitted_at")
    @classmethod
    def coerce_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @property
    def is_open(self) -> bool:
        return self.sub_status in OPEN_REVIEW_STATUSES

    def sub_status_at(self, as_of: datetime) -> ReviewStatus | None:
        """
        按 history 重建 as_of 时刻的子状态；as_of 早于分配时间返回 None。
        """
        if self.assigned_at > as_of:
            return None
        if not self.history:
            if self.sub_status == ReviewStatus.COMPLETED and self.submitted_at and self.submitted_at > as_of:
                return ReviewStatus.IN_PROGRESS
            return self.sub_status
        current = ReviewStatus.ASSIGNED
        for entry in self.history:
            if entry.changed_at > as_of:
                break
            current = entry.sub_status
        return current

    def is_overdue(self, as_of: datetime) -> bool:
        status = self.sub_status_at(as_of)
        if status not in OPEN_REVIEW_STATUSES:
            return False
        return self.due_date is not None and self.due_date < as_of


class Manuscript(BaseModel):
    id: str
    manuscript_code: str
    title: str = ""
    author_id: Optional[str] = None
    journal_id: Optional[str] = None
    journal_title: Optional[str] = None

    status: ManuscriptStatus = ManuscriptStatus.SUBMITTED
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)

    editor_assigned: Optional[str] = None
    associate_editor: Optional[str] = None
    reviewers: list[str] = Field(default_factory=list)
    review_assignments: list[ReviewAssignment] = Field(default_factory=list)
    review_round: int = Field(1, ge=1)
    review_due_date: Optional[datetime] = None

    submission_date: Optional[datetime] = None
    accepted_date: Optional[datetime] = None
    publication_date: Optional[datetime] = None
    doi: Optional[str] = None
    volume: Optional[str] = None
    issue: Optional[str] = None
    page_range: Optional[str] = None

    version: int = 0

    @field_validator("review_due_date", "submission_date", "accepted_date", "publication_date")
    @classmethod
    def coerce_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    def find_assignment(self, assignment_id: str) -> ReviewAssignment | None:
        for assignment in self.review_assignments:
            if assignment.id == assignment_id:
                return assignment
        return None

    def open_assignment_for(self, reviewer_id: str) -> ReviewAssignment | None:
        for assignment in self.review_assignments:
            if assignment.reviewer_id == reviewer_id and assignment.is_open:
                return assignment
        return None

    def bound_reviewer_ids(self) -> set[str]:
        """当前绑定的审稿人（open 状态的任务，不论来自哪一轮）。"""
        return {a.reviewer_id for a in self.review_assignments if a.is_open}

    def sync_reviewers(self) -> None:
        """reviewers 永远由 open 状态的 review_assignments 推导，保持插入顺序。"""
        self.reviewers = list(
            dict.fromkeys(a.reviewer_id for a in self.review_assignments if a.is_open)
        )

    def status_at(self, as_of: datetime) -> ManuscriptStatus | None:
        """
        用 status_history 重建 as_of 时刻的状态；投稿时间晚于 as_of 返回 None。
        """
        if self.submission_date is not None and self.submission_date > as_of:
            return None
        if not self.status_history:
            return self.status
        current = ManuscriptStatus.SUBMITTED
        for entry in self.status_history:
            if entry.changed_at > as_of:
                break
            current = entry.status
        return current


class Actor(BaseModel):
    """已认证的调用方（身份 + 角色）；认证机制本身由上游负责。"""

    model_config = ConfigDict(frozen=True)

    id: str
    roles: frozenset[str] = frozenset()

    @field_validator("roles", mode="before")
    @classmethod
    def normalize_roles(cls, value: object) -> frozenset[str]:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = value.split(",")
        return frozenset(str(r).strip().lower() for r in value if str(r or "").strip())  # type: ignore[union-attr]


class ManuscriptDraft(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    author_id: Optional[str] = None
    journal_id: Optional[str] = None
    journal_title: Optional[str] = None


class AssignmentOverrides(BaseModel):
    """request_transition 时可顺带写入的编辑/审稿人绑定"""

    editor_assigned: Optional[str] = None
    associate_editor: Optional[str] = None
    reviewer_ids: Optional[list[str]] = None
    review_due_date: Optional[datetime] = None

    @field_validator("review_due_date")
    @classmethod
    def coerce_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)


class PublicationDetails(BaseModel):
    volume: Optional[str] = None
    issue: Optional[str] = None
    page_range: Optional[str] = None
    doi: Optional[str] = None

import threading
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Callable, Iterable, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from journalflow.core.config import WorkflowConfig
from journalflow.core.errors import Conflict, NotFound
from journalflow.models.manuscript import (
    Actor,
    Manuscript,
    ManuscriptStatus,
    StatusHistoryEntry,
)
from journalflow.models.notification import NotificationEvent
from journalflow.services.analytics_service import AnalyticsService
from journalflow.services.editorial_service import EditorialService
from journalflow.services.notification_service import NotificationTrigger
from journalflow.services.reviewer_service import ReviewerService
from journalflow.services.store import TimeWindow

# === 全局测试配置 ===
# 中文注释:
# 1. 引擎的外部协作方（Entity Store / Identity Resolver / Notification Delivery）全部用内存实现替代。
# 2. 时间统一由 FixedClock 驱动，避免测试依赖真实时钟。

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryManuscriptStore:
    """
    线程安全的内存 Entity Store：version CAS + doi 唯一约束。
    """

    def __init__(self):
        self._docs: dict[str, Manuscript] = {}
        self._lock = threading.Lock()
        self.cas_calls = 0
        self.cas_conflicts = 0

    def get(self, manuscript_id: str) -> Manuscript:
        with self._lock:
            ms = self._docs.get(manuscript_id)
            if ms is None:
                raise NotFound("Manuscript not found", manuscript_id=manuscript_id)
            return ms.model_copy(deep=True)

    def insert(self, manuscript: Manuscript) -> Manuscript:
        with self._lock:
            self._docs[manuscript.id] = manuscript.model_copy(deep=True)
            return manuscript.model_copy(deep=True)

    def compare_and_swap(self, manuscript_id: str, expected_version: int, new_value: Manuscript) -> Manuscript:
        with self._lock:
            self.cas_calls += 1
            current = self._docs.get(manuscript_id)
            if current is None:
                raise NotFound("Manuscript not found", manuscript_id=manuscript_id)
            if current.version != expected_version:
                self.cas_conflicts += 1
                raise Conflict("Manuscript was modified concurrently", manuscript_id=manuscript_id)
            if new_value.doi and any(
                other.doi == new_value.doi for oid, other in self._docs.items() if oid != manuscript_id
            ):
                raise Conflict("Unique constraint violated", operation="compare_and_swap")
            self._docs[manuscript_id] = new_value.model_copy(deep=True)
            return new_value.model_copy(deep=True)

    def query(
        self,
        predicate: Optional[Callable[[Manuscript], bool]] = None,
        window: Optional[TimeWindow] = None,
    ) -> list[Manuscript]:
        with self._lock:
            docs = [ms.model_copy(deep=True) for ms in self._docs.values()]
        out = []
        for ms in docs:
            if window is not None and ms.submission_date is not None:
                if window.end is not None and ms.submission_date > window.end:
                    continue
                if window.start is not None and ms.submission_date < window.start:
                    continue
            if predicate is None or predicate(ms):
                out.append(ms)
        return out

    def find_by_assignment(self, assignment_id: str) -> Manuscript:
        with self._lock:
            for ms in self._docs.values():
                if ms.find_assignment(assignment_id) is not None:
                    return ms.model_copy(deep=True)
        raise NotFound("Review assignment not found", assignment_id=assignment_id)

    def doi_exists(self, doi: str, *, exclude_id: Optional[str] = None) -> bool:
        with self._lock:
            return any(ms.doi == doi and ms.id != exclude_id for ms in self._docs.values())


class FakeIdentityResolver:
    def __init__(self, roles: dict[str, set[str]], names: Optional[dict[str, str]] = None):
        self.roles = roles
        self.names = names or {}
        self.role_calls: list[list[str]] = []

    def resolve_roles(self, ids: Iterable[str]) -> dict[str, set[str]]:
        wanted = list(ids)
        self.role_calls.append(wanted)
        return {i: set(self.roles[i]) for i in wanted if i in self.roles}

    def resolve_names(self, ids: Iterable[str]) -> dict[str, str]:
        return {i: self.names[i] for i in ids if i in self.names}


class RecordingDelivery:
    def __init__(self, *, fail: bool = False):
        self.events: list[NotificationEvent] = []
        self.fail = fail

    def enqueue(self, event: NotificationEvent) -> bool:
        if self.fail:
            raise RuntimeError("notification queue unavailable")
        self.events.append(event)
        return True


USERS = {
    "editor-1": {"editor"},
    "editor-2": {"editor"},
    "admin-1": {"admin"},
    "rev-1": {"reviewer"},
    "rev-2": {"reviewer"},
    "rev-3": {"reviewer"},
    "author-1": {"author"},
    "author-2": {"author"},
}

NAMES = {
    "rev-1": "Alice Chen",
    "rev-2": "Bob Li",
    "rev-3": "Alice Chen",
    "editor-1": "Eve Editor",
}


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def workflow_config() -> WorkflowConfig:
    return WorkflowConfig(
        doi_prefix="10.1234",
        doi_max_attempts=5,
        cas_max_attempts=3,
        metrics_default_window_days=90,
        manuscript_code_prefix="CSMR",
    )


@pytest.fixture
def store() -> InMemoryManuscriptStore:
    return InMemoryManuscriptStore()


@pytest.fixture
def identity() -> FakeIdentityResolver:
    return FakeIdentityResolver(USERS, NAMES)


@pytest.fixture
def delivery() -> RecordingDelivery:
    return RecordingDelivery()


@pytest.fixture
def trigger(delivery, store) -> NotificationTrigger:
    return NotificationTrigger(delivery, store=store)


@pytest.fixture
def editorial(store, identity, trigger, workflow_config, clock) -> EditorialService:
    return EditorialService(store, identity, notifier=trigger, config=workflow_config, clock=clock)


@pytest.fixture
def reviewers(store, identity, workflow_config, clock) -> ReviewerService:
    return ReviewerService(store, identity, config=workflow_config, clock=clock)


@pytest.fixture
def analytics(store, identity, workflow_config, clock) -> AnalyticsService:
    return AnalyticsService(store, identity, config=workflow_config, clock=clock)


@pytest.fixture
def editor() -> Actor:
    return Actor(id="editor-1", roles=frozenset({"editor"}))


@pytest.fixture
def admin() -> Actor:
    return Actor(id="admin-1", roles=frozenset({"admin"}))


@pytest.fixture
def author() -> Actor:
    return Actor(id="author-1", roles=frozenset({"author"}))


@pytest.fixture
def reviewer() -> Actor:
    return Actor(id="rev-1", roles=frozenset({"reviewer"}))


_seq = {"n": 0}


def make_manuscript(
    *,
    status: ManuscriptStatus = ManuscriptStatus.SUBMITTED,
    submitted_at: datetime = T0,
    author_id: str = "author-1",
    journal_id: Optional[str] = "j-1",
    journal_title: Optional[str] = "Journal of Testing",
    **fields,
) -> Manuscript:
    """
    直接构造某个状态的稿件（不经过状态机），history 只包含目标状态一条。
    """
    _seq["n"] += 1
    history = []
    if status != ManuscriptStatus.SUBMITTED:
        history.append(StatusHistoryEntry(status=status, changed_by="seed", changed_at=submitted_at))
    data = {
        "id": f"ms-{_seq['n']}",
        "manuscript_code": f"CSMR-2026-{_seq['n']:06d}",
        "title": f"Manuscript {_seq['n']}",
        "author_id": author_id,
        "journal_id": journal_id,
        "journal_title": journal_title,
        "status": status,
        "status_history": history,
        "submission_date": submitted_at,
    }
    if status == ManuscriptStatus.PUBLISHED:
        data["publication_date"] = submitted_at
    data.update(fields)
    return Manuscript(**data)


@pytest.fixture
def seed(store) -> Callable[..., Manuscript]:
    def _seed(**kwargs) -> Manuscript:
        return store.insert(make_manuscript(**kwargs))

    return _seed


@pytest_asyncio.fixture
async def client(editorial, reviewers, analytics, trigger) -> AsyncGenerator:
    """
    提供一个注入了内存服务的异步测试客户端
    """
    from main import app
    from journalflow.api import deps

    app.dependency_overrides[deps.get_editorial_service] = lambda: editorial
    app.dependency_overrides[deps.get_reviewer_service] = lambda: reviewers
    app.dependency_overrides[deps.get_analytics_service] = lambda: analytics
    app.dependency_overrides[deps.get_notification_trigger] = lambda: trigger
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac
    app.dependency_overrides.clear()


def actor_headers(actor_id: str, *roles: str) -> dict[str, str]:
    return {"X-Actor-Id": actor_id, "X-Actor-Roles": ",".join(roles)}

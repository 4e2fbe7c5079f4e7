from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Protocol, TypeVar

from postgrest.exceptions import APIError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from journalflow.core.errors import Conflict, NotFound, StorageUnavailable
from journalflow.models.manuscript import Manuscript

logger = logging.getLogger("journalflow.store")

T = TypeVar("T")


@dataclass(frozen=True)
class TimeWindow:
    """闭区间 [start, end]；任一端为 None 表示不限制"""

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def contains(self, value: datetime | None) -> bool:
        if value is None:
            return False
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value > self.end:
            return False
        return True


class ManuscriptStore(Protocol):
    """
    Entity Store 接口（外部协作方）。

    中文注释:
    - 每份稿件是一个文档；写入一律走 compare_and_swap（version 乐观锁）。
    - query 供 Metrics Aggregator 只读扫描使用，允许读到“事务中途”的快照。
    """

    def get(self, manuscript_id: str) -> Manuscript: ...

    def insert(self, manuscript: Manuscript) -> Manuscript: ...

    def compare_and_swap(
        self, manuscript_id: str, expected_version: int, new_value: Manuscript
    ) -> Manuscript: ...

    def query(
        self,
        predicate: Callable[[Manuscript], bool] | None = None,
        window: TimeWindow | None = None,
    ) -> list[Manuscript]: ...

    def find_by_assignment(self, assignment_id: str) -> Manuscript: ...

    def doi_exists(self, doi: str, *, exclude_id: str | None = None) -> bool: ...


def run_transaction(
    store: ManuscriptStore,
    manuscript_id: str,
    mutate: Callable[[Manuscript], T],
    *,
    max_attempts: int = 3,
) -> tuple[Manuscript, T]:
    """
    单稿件 read-modify-write。

    中文注释:
    - mutate 在稿件的深拷贝上执行，可抛出任意 WorkflowError（不会重试）。
    - 只有 Conflict（版本号不匹配）会重新读取并重放 mutate，超过次数后把 Conflict 抛给调用方。
    """
    for attempt in Retrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        retry=retry_if_exception_type(Conflict),
        reraise=True,
    ):
        with attempt:
            current = store.get(manuscript_id)
            draft = current.model_copy(deep=True)
            result = mutate(draft)
            draft.version = current.version + 1
            if attempt.retry_state.attempt_number > 1:
                logger.info(
                    "CAS retry manuscript=%s attempt=%s",
                    manuscript_id,
                    attempt.retry_state.attempt_number,
                )
            saved = store.compare_and_swap(manuscript_id, current.version, draft)
    return saved, result


def _is_unique_violation(err: Exception) -> bool:
    text = str(err or "").lower()
    code = str(getattr(err, "code", "") or "").lower()
    return "23505" in code or "23505" in text or "duplicate key" in text


class SupabaseManuscriptStore:
    """
    基于 Supabase（PostgREST）的稿件文档存储。

    表结构（manuscripts）:
    - id text primary key
    - manuscript_code text
    - status text
    - version int
    - doi text unique
    - submission_date timestamptz
    - assignment_ids text[]      -- 便于按审稿任务 id 反查稿件
    - document jsonb             -- Manuscript 完整文档
    """

    TABLE = "manuscripts"
    PAGE_SIZE = 500

    def __init__(self, client: Any = None) -> None:
        if client is None:
            from journalflow.lib.api_client import supabase_admin

            client = supabase_admin
        self.client = client

    def _execute(self, query: Any, *, op: str) -> list[dict[str, Any]]:
        try:
            resp = query.execute()
        except APIError as e:
            if _is_unique_violation(e):
                raise Conflict("Unique constraint violated", operation=op) from e
            logger.error("[Store] %s failed: %s", op, e)
            raise StorageUnavailable(f"Manuscript store {op} failed", operation=op) from e
        except StorageUnavailable:
            raise
        except Exception as e:
            logger.error("[Store] %s failed: %s", op, e)
            raise StorageUnavailable(f"Manuscript store {op} failed", operation=op) from e
        return getattr(resp, "data", None) or []

    @staticmethod
    def _row(manuscript: Manuscript) -> dict[str, Any]:
        return {
            "id": manuscript.id,
            "manuscript_code": manuscript.manuscript_code,
            "status": manuscript.status.value,
            "version": manuscript.version,
            "doi": manuscript.doi,
            "submission_date": manuscript.submission_date.isoformat() if manuscript.submission_date else None,
            "assignment_ids": [a.id for a in manuscript.review_assignments],
            "document": manuscript.model_dump(mode="json"),
        }

    @staticmethod
    def _to_model(row: dict[str, Any]) -> Manuscript:
        doc = dict(row.get("document") or {})
        doc.setdefault("id", row.get("id"))
        if row.get("version") is not None:
            doc["version"] = row["version"]
        return Manuscript.model_validate(doc)

    def get(self, manuscript_id: str) -> Manuscript:
        rows = self._execute(
            self.client.table(self.TABLE)
            .select("id,version,document")
            .eq("id", manuscript_id)
            .limit(1),
            op="get",
        )
        if not rows:
            raise NotFound("Manuscript not found", manuscript_id=manuscript_id)
        return self._to_model(rows[0])

    def insert(self, manuscript: Manuscript) -> Manuscript:
        rows = self._execute(
            self.client.table(self.TABLE).insert(self._row(manuscript)),
            op="insert",
        )
        return self._to_model(rows[0]) if rows else manuscript

    def compare_and_swap(
        self, manuscript_id: str, expected_version: int, new_value: Manuscript
    ) -> Manuscript:
        rows = self._execute(
            self.client.table(self.TABLE)
            .update(self._row(new_value))
            .eq("id", manuscript_id)
            .eq("version", expected_version),
            op="compare_and_swap",
        )
        if rows:
            return self._to_model(rows[0])
        # 0 行：要么稿件不存在，要么被其他写入者抢先
        self.get(manuscript_id)
        raise Conflict(
            "Manuscript was modified concurrently",
            manuscript_id=manuscript_id,
            expected_version=expected_version,
        )

    def query(
        self,
        predicate: Callable[[Manuscript], bool] | None = None,
        window: TimeWindow | None = None,
    ) -> list[Manuscript]:
        out: list[Manuscript] = []
        offset = 0
        while True:
            q = self.client.table(self.TABLE).select("id,version,document")
            if window is not None and window.end is not None:
                q = q.lte("submission_date", window.end.isoformat())
            rows = self._execute(
                q.order("id").range(offset, offset + self.PAGE_SIZE - 1),
                op="query",
            )
            for row in rows:
                ms = self._to_model(row)
                if predicate is None or predicate(ms):
                    out.append(ms)
            if len(rows) < self.PAGE_SIZE:
                break
            offset += self.PAGE_SIZE
        return out

    def find_by_assignment(self, assignment_id: str) -> Manuscript:
        rows = self._execute(
            self.client.table(self.TABLE)
            .select("id,version,document")
            .contains("assignment_ids", [assignment_id])
            .limit(1),
            op="find_by_assignment",
        )
        if not rows:
            raise NotFound("Review assignment not found", assignment_id=assignment_id)
        return self._to_model(rows[0])

    def doi_exists(self, doi: str, *, exclude_id: str | None = None) -> bool:
        rows = self._execute(
            self.client.table(self.TABLE).select("id").eq("doi", doi).limit(2),
            op="doi_exists",
        )
        return any(str(row.get("id")) != str(exclude_id) for row in rows)

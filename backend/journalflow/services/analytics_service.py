"""
Analytics Service - Metrics Aggregator
功能: 只读扫描稿件文档，计算编辑流程运营指标

中文注释:
- 所有指标都以 as_of 为基准，通过 status_history / assignment.history 重建历史状态，
  因此同一份数据在不同 as_of 下结果可复现。
- 只读、不加锁；读到的是 store.query 返回时的快照。
- 空数据集返回全 0 / 空列表，不抛错。
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from journalflow.core.config import WorkflowConfig
from journalflow.models.analytics import (
    ActivityCategory,
    ActivityEntry,
    ActivityFeed,
    Granularity,
    IssueSummary,
    RankedEntry,
    ReviewerPerformance,
    TrendPoint,
    VenuePublicationRate,
    WorkflowMetrics,
)
from journalflow.models.manuscript import (
    Manuscript,
    ManuscriptStatus,
    ReviewAssignment,
    ReviewStatus,
    ensure_utc,
)
from journalflow.services.identity_service import IdentityResolver
from journalflow.services.store import ManuscriptStore, TimeWindow

logger = logging.getLogger("journalflow.analytics")


def _days(delta: timedelta) -> float:
    return delta.total_seconds() / 86400.0


def _mean(values: list[float]) -> float:
    if not values:
        return 0.0
    return round(sum(values) / len(values), 2)


def _ratio(num: int, den: int) -> float:
    if den <= 0:
        return 0.0
    return round(num / den, 4)


def _bucket(dt: datetime, granularity: Granularity) -> date:
    if granularity == "day":
        return dt.date()
    return date(dt.year, dt.month, 1)


def _bucket_range(start: datetime, end: datetime, granularity: Granularity) -> list[date]:
    out: list[date] = []
    cur = _bucket(start, granularity)
    last = _bucket(end, granularity)
    while cur <= last:
        out.append(cur)
        if granularity == "day":
            cur = cur + timedelta(days=1)
        elif cur.month == 12:
            cur = date(cur.year + 1, 1, 1)
        else:
            cur = date(cur.year, cur.month + 1, 1)
    return out


def _issue_key(value: str) -> tuple[int, object]:
    # 数字卷/期按数值比较（"10" > "9"），其余按字符串
    v = value.strip()
    if v.isdigit():
        return (1, int(v))
    return (0, v)


_ACTIVITY_ORDER = {"submission": 0, "status_change": 1, "review_completed": 2, "review_declined": 3}


def _review_outcomes(assignment: ReviewAssignment) -> list[tuple[datetime, ReviewStatus]]:
    """审稿任务进入 completed / declined 的时间点；没有 history 的旧数据回退到 submitted_at。"""
    outcomes = [
        (entry.changed_at, entry.sub_status)
        for entry in assignment.history
        if entry.sub_status in (ReviewStatus.COMPLETED, ReviewStatus.DECLINED)
    ]
    if not assignment.history and assignment.sub_status == ReviewStatus.COMPLETED and assignment.submitted_at:
        outcomes.append((assignment.submitted_at, ReviewStatus.COMPLETED))
    return outcomes


@dataclass
class _ReviewerTally:
    total: int = 0
    completed: int = 0
    declined: int = 0
    on_time: int = 0
    ratings: list[float] = field(default_factory=list)
    durations: list[float] = field(default_factory=list)


@dataclass
class _VenueTally:
    title: str
    total: int = 0
    published: int = 0


@dataclass
class _IssueGroup:
    journal_id: Optional[str]
    journal_title: str
    count: int = 0
    first: Optional[datetime] = None


class AnalyticsService:
    """
    Metrics Aggregator

    中文注释: store / identity 通过构造函数注入，测试中使用内存实现。
    """

    def __init__(
        self,
        store: ManuscriptStore,
        identity: IdentityResolver,
        *,
        config: WorkflowConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.identity = identity
        self.config = config or WorkflowConfig.from_env()
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return ensure_utc(self._clock()) or datetime.now(timezone.utc)
        return datetime.now(timezone.utc)

    def _resolve_window(self, window: TimeWindow | None, as_of: datetime) -> TimeWindow:
        default_start = as_of - timedelta(days=self.config.metrics_default_window_days)
        if window is None:
            return TimeWindow(start=default_start, end=as_of)
        start = ensure_utc(window.start) or default_start
        end = ensure_utc(window.end) or as_of
        return TimeWindow(start=start, end=min(end, as_of))

    def _names(self, ids: Iterable[str]) -> dict[str, str]:
        wanted = sorted(set(ids))
        if not wanted:
            return {}
        names = self.identity.resolve_names(wanted)
        return {rid: (names.get(rid) or rid) for rid in wanted}

    @staticmethod
    def _trend(
        values: Iterable[datetime], window: TimeWindow, granularity: Granularity, dense: bool
    ) -> list[TrendPoint]:
        counts: Counter[date] = Counter(_bucket(v, granularity) for v in values if window.contains(v))
        if dense and window.start is not None and window.end is not None:
            buckets = _bucket_range(window.start, window.end, granularity)
        else:
            buckets = sorted(counts)
        return [TrendPoint(bucket=b, count=counts.get(b, 0)) for b in buckets]

    def compute_metrics(
        self,
        *,
        window: TimeWindow | None = None,
        as_of: datetime | None = None,
        granularity: Granularity = "month",
        dense: bool = False,
        top_n: int = 5,
    ) -> WorkflowMetrics:
        if granularity not in ("day", "month"):
            raise ValueError(f"Unsupported granularity: {granularity}")
        now = ensure_utc(as_of) or self._now()
        win = self._resolve_window(window, now)
        population = self.store.query(None, TimeWindow(end=now))

        by_status = {s.value: 0 for s in ManuscriptStatus}
        reviews_by_status: Counter[str] = Counter()
        overdue = 0
        completed_durations: list[float] = []
        reviewers: dict[str, _ReviewerTally] = {}
        venues: dict[str, _VenueTally] = {}
        publication_days: list[float] = []
        submissions: list[datetime] = []
        publications: list[datetime] = []

        for ms in population:
            status = ms.status_at(now)
            if status is None:
                continue
            by_status[status.value] += 1

            if ms.submission_date is not None:
                submissions.append(ms.submission_date)
            pub = ms.publication_date
            if pub is not None and pub <= now:
                publications.append(pub)
                if win.contains(pub) and ms.submission_date is not None:
                    publication_days.append(_days(pub - ms.submission_date))

            venue_id = ms.journal_id or ms.journal_title
            if venue_id:
                venue = venues.setdefault(venue_id, _VenueTally(title=ms.journal_title or venue_id))
                venue.total += 1
                if status == ManuscriptStatus.PUBLISHED:
                    venue.published += 1

            for a in ms.review_assignments:
                sub_status = a.sub_status_at(now)
                if sub_status is None:
                    continue
                reviews_by_status[sub_status.value] += 1
                if a.is_overdue(now):
                    overdue += 1

                tally = reviewers.setdefault(a.reviewer_id, _ReviewerTally())
                tally.total += 1
                if sub_status == ReviewStatus.DECLINED:
                    tally.declined += 1
                if sub_status != ReviewStatus.COMPLETED:
                    continue
                tally.completed += 1
                if a.rating is not None:
                    tally.ratings.append(float(a.rating))
                submitted = a.submitted_at
                if submitted is None:
                    continue
                duration = _days(submitted - a.assigned_at)
                tally.durations.append(duration)
                if a.due_date is None or submitted <= a.due_date:
                    tally.on_time += 1
                if win.contains(submitted):
                    completed_durations.append(duration)

        names = self._names(reviewers.keys())
        performance = [
            ReviewerPerformance(
                reviewer_id=rid,
                name=names.get(rid, rid),
                total_assigned=t.total,
                completed=t.completed,
                declined=t.declined,
                completion_rate=_ratio(t.completed, t.total),
                on_time=t.on_time,
                on_time_rate=_ratio(t.on_time, t.completed),
                avg_rating=_mean(t.ratings),
                avg_review_time_days=_mean(t.durations),
            )
            for rid, t in reviewers.items()
        ]
        performance.sort(key=lambda p: (-p.total_assigned, p.name, p.reviewer_id))

        top = max(0, int(top_n))
        top_venues = sorted(
            (RankedEntry(id=vid, name=v.title, count=v.total) for vid, v in venues.items()),
            key=lambda e: (-e.count, e.name, e.id),
        )[:top]
        top_reviewers = [
            RankedEntry(id=p.reviewer_id, name=p.name, count=p.total_assigned) for p in performance
        ][:top]

        rates = sorted(
            (
                VenuePublicationRate(
                    journal_id=vid,
                    journal_title=v.title,
                    total=v.total,
                    published=v.published,
                    rate=_ratio(v.published, v.total),
                )
                for vid, v in venues.items()
            ),
            key=lambda r: (-r.rate, r.journal_title, r.journal_id),
        )

        metrics = WorkflowMetrics(
            as_of=now,
            window_start=win.start or now,
            window_end=win.end or now,
            granularity=granularity,
            manuscripts_by_status=by_status,
            total_manuscripts=sum(by_status.values()),
            reviews_by_status=dict(reviews_by_status),
            total_reviews=sum(reviews_by_status.values()),
            overdue_reviews=overdue,
            reviews_completed_in_window=len(completed_durations),
            avg_review_time_days=_mean(completed_durations),
            reviewer_performance=performance,
            submission_trend=self._trend(submissions, win, granularity, dense),
            publication_trend=self._trend(publications, win, granularity, dense),
            top_venues=top_venues,
            top_reviewers=top_reviewers,
            published_in_window=len(publication_days),
            avg_time_to_publication_days=_mean(publication_days),
            publication_rate_by_venue=rates,
        )
        logger.debug(
            "[Analytics] metrics as_of=%s manuscripts=%s reviews=%s overdue=%s",
            now.isoformat(),
            metrics.total_manuscripts,
            metrics.total_reviews,
            metrics.overdue_reviews,
        )
        return metrics

    def list_issues(self, *, journal_id: Optional[str] = None) -> list[IssueSummary]:
        """
        已发表稿件按 (期刊, 卷, 期) 分组。
        排序: 期刊名升序 -> 卷降序 -> 期降序
        """

        def _published(ms: Manuscript) -> bool:
            if ms.status != ManuscriptStatus.PUBLISHED:
                return False
            if not ms.volume or not ms.issue:
                return False
            return journal_id is None or ms.journal_id == journal_id

        groups: dict[tuple[str, str, str], _IssueGroup] = {}
        for ms in self.store.query(_published):
            key = (ms.journal_id or ms.journal_title or "", str(ms.volume), str(ms.issue))
            group = groups.setdefault(
                key,
                _IssueGroup(journal_id=ms.journal_id, journal_title=ms.journal_title or ms.journal_id or ""),
            )
            group.count += 1
            pub = ms.publication_date
            if pub is not None and (group.first is None or pub < group.first):
                group.first = pub

        issues = [
            IssueSummary(
                journal_id=g.journal_id,
                journal_title=g.journal_title,
                volume=volume,
                issue=issue,
                article_count=g.count,
                first_published_at=g.first,
            )
            for (_, volume, issue), g in groups.items()
        ]
        # 多键稳定排序：先排次要键，再排主键
        issues.sort(key=lambda i: _issue_key(i.issue), reverse=True)
        issues.sort(key=lambda i: _issue_key(i.volume), reverse=True)
        issues.sort(key=lambda i: i.journal_title)
        return issues

    def activity_feed(
        self,
        *,
        as_of: datetime | None = None,
        category: ActivityCategory | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> ActivityFeed:
        """
        最近活动流：投稿、状态流转、审稿完成 / 拒绝。

        中文注释:
        - 只包含 as_of 及之前发生的事件，按时间倒序。
        - 同一时刻的事件按 稿件 id -> 类型 -> 任务 id 排序，保证分页结果稳定。
        """
        if category not in (None, "manuscripts", "reviews"):
            raise ValueError(f"Unsupported activity type: {category}")
        page = max(1, page)
        limit = max(1, limit)
        now = ensure_utc(as_of) or self._now()

        raw: list[dict] = []
        for ms in self.store.query(None, TimeWindow(end=now)):
            base = {
                "manuscript_id": ms.id,
                "manuscript_code": ms.manuscript_code,
                "title": ms.title,
            }
            if category in (None, "manuscripts"):
                if ms.submission_date is not None and ms.submission_date <= now:
                    raw.append(
                        {
                            **base,
                            "type": "submission",
                            "occurred_at": ms.submission_date,
                            "actor_id": ms.author_id,
                            "action": "submitted manuscript",
                            "status": ManuscriptStatus.SUBMITTED.value,
                        }
                    )
                for entry in ms.status_history:
                    # submitted 只在投稿时出现，已由 submission 条目表示
                    if entry.status == ManuscriptStatus.SUBMITTED or entry.changed_at > now:
                        continue
                    raw.append(
                        {
                            **base,
                            "type": "status_change",
                            "occurred_at": entry.changed_at,
                            "actor_id": entry.changed_by,
                            "action": f"moved manuscript to {entry.status.value}",
                            "status": entry.status.value,
                            "comment": entry.comment,
                        }
                    )
            if category in (None, "reviews"):
                for assignment in ms.review_assignments:
                    for occurred_at, sub_status in _review_outcomes(assignment):
                        if occurred_at > now:
                            continue
                        completed = sub_status == ReviewStatus.COMPLETED
                        raw.append(
                            {
                                **base,
                                "type": "review_completed" if completed else "review_declined",
                                "occurred_at": occurred_at,
                                "actor_id": assignment.reviewer_id,
                                "action": "submitted review" if completed else "declined review",
                                "status": sub_status.value,
                                "assignment_id": assignment.id,
                                "review_round": assignment.round,
                                "rating": assignment.rating if completed else None,
                                "recommendation": assignment.recommendation if completed else None,
                            }
                        )

        raw.sort(key=lambda r: (r["manuscript_id"], _ACTIVITY_ORDER[r["type"]], r.get("assignment_id") or ""))
        raw.sort(key=lambda r: r["occurred_at"], reverse=True)

        total = len(raw)
        start = (page - 1) * limit
        chunk = raw[start : start + limit]
        names = self._names(r["actor_id"] for r in chunk if r.get("actor_id"))
        activities = [
            ActivityEntry(**r, actor_name=names.get(r["actor_id"]) if r.get("actor_id") else None)
            for r in chunk
        ]
        return ActivityFeed(
            as_of=now,
            activities=activities,
            page=page,
            pages=(total + limit - 1) // limit,
            total=total,
        )

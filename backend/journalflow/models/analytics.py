"""
Workflow 指标数据模型 (Pydantic v2)
功能: 定义 Metrics Aggregator 的输出结构

中文注释:
- WorkflowMetrics: compute_metrics() 的完整返回
- ReviewerPerformance: 单个审稿人的完成率/准时率/平均评分
- TrendPoint: 按 day / month 分桶的计数
- IssueSummary: list_issues() 返回的期/卷汇总
- ActivityFeed: activity_feed() 返回的分页活动流
"""

from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

Granularity = Literal["day", "month"]


class TrendPoint(BaseModel):
    bucket: date = Field(..., description="桶起点（day 为当天，month 为当月第一天）")
    count: int = Field(..., ge=0)


class ReviewerPerformance(BaseModel):
    """
    审稿人绩效
    所有比率在分母为 0 时为 0.0
    """

    reviewer_id: str
    name: str
    total_assigned: int = Field(..., ge=0)
    completed: int = Field(..., ge=0)
    declined: int = Field(..., ge=0)
    completion_rate: float = Field(..., ge=0, le=1, description="completed / total_assigned")
    on_time: int = Field(..., ge=0)
    on_time_rate: float = Field(..., ge=0, le=1, description="on_time / completed")
    avg_rating: float = Field(..., ge=0)
    avg_review_time_days: float = Field(..., ge=0)


class RankedEntry(BaseModel):
    id: str
    name: str
    count: int = Field(..., ge=0)


class VenuePublicationRate(BaseModel):
    journal_id: str
    journal_title: str
    total: int = Field(..., ge=0)
    published: int = Field(..., ge=0)
    rate: float = Field(..., ge=0, le=1)


class WorkflowMetrics(BaseModel):
    """
    compute_metrics() 返回

    中文注释:
    - manuscripts_by_status 包含全部 9 个状态（0 也保留），reviews_by_status 为稀疏计数。
    - *_in_window / trend / avg_* 只统计时间窗内的事件；状态分布是 as_of 时刻的快照。
    """

    as_of: datetime
    window_start: datetime
    window_end: datetime
    granularity: Granularity = "month"

    manuscripts_by_status: dict[str, int] = Field(default_factory=dict)
    total_manuscripts: int = 0

    reviews_by_status: dict[str, int] = Field(default_factory=dict)
    total_reviews: int = 0
    overdue_reviews: int = 0
    reviews_completed_in_window: int = 0
    avg_review_time_days: float = 0.0

    reviewer_performance: list[ReviewerPerformance] = Field(default_factory=list)
    submission_trend: list[TrendPoint] = Field(default_factory=list)
    publication_trend: list[TrendPoint] = Field(default_factory=list)
    top_venues: list[RankedEntry] = Field(default_factory=list)
    top_reviewers: list[RankedEntry] = Field(default_factory=list)

    published_in_window: int = 0
    avg_time_to_publication_days: float = 0.0
    publication_rate_by_venue: list[VenuePublicationRate] = Field(default_factory=list)


class IssueSummary(BaseModel):
    journal_id: Optional[str] = None
    journal_title: str
    volume: str
    issue: str
    article_count: int = Field(..., ge=1)
    first_published_at: Optional[datetime] = None


ActivityType = Literal["submission", "status_change", "review_completed", "review_declined"]
ActivityCategory = Literal["manuscripts", "reviews"]


class ActivityEntry(BaseModel):
    """
    活动流中的一条记录

    中文注释:
    - submission / status_change 属于 manuscripts 类，review_* 属于 reviews 类。
    - actor_name 解析不到时回退为 actor_id。
    """

    type: ActivityType
    occurred_at: datetime
    manuscript_id: str
    manuscript_code: str
    title: str
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    action: str
    status: Optional[str] = None
    assignment_id: Optional[str] = None
    review_round: Optional[int] = None
    rating: Optional[int] = None
    recommendation: Optional[str] = None
    comment: Optional[str] = None


class ActivityFeed(BaseModel):
    as_of: datetime
    activities: list[ActivityEntry] = Field(default_factory=list)
    page: int = Field(1, ge=1)
    pages: int = Field(0, ge=0)
    total: int = Field(0, ge=0)

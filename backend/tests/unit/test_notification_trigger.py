from datetime import datetime, timedelta, timezone

import pytest

from conftest import T0, RecordingDelivery
from journalflow.models.manuscript import ManuscriptStatus
from journalflow.models.notification import (
    NotificationAudience,
    NotificationEvent,
    NotificationPriority,
)
from journalflow.services.notification_service import NotificationTrigger, sort_for_display


@pytest.mark.parametrize(
    "status,expected_type,priority,audience",
    [
        (ManuscriptStatus.SUBMITTED, "pending_submission", "high", "editors"),
        (ManuscriptStatus.ACCEPTED, "ready_for_publication", "medium", "editors"),
        (ManuscriptStatus.REVISION_REQUIRED, "revision_required", "medium", "author"),
    ],
)
def test_status_rules(seed, trigger, status, expected_type, priority, audience):
    ms = seed(status=status)
    event = trigger.build_for_status(ms, status, at=T0)
    assert event.type == expected_type
    assert event.priority.value == priority
    assert event.audience.value == audience
    assert event.manuscript_id == ms.id
    assert event.occurred_at == T0
    assert ms.manuscript_code in event.message


@pytest.mark.parametrize(
    "status",
    [
        ManuscriptStatus.INITIAL_REVIEW,
        ManuscriptStatus.UNDER_REVIEW,
        ManuscriptStatus.REVISED,
        ManuscriptStatus.REJECTED,
        ManuscriptStatus.PUBLISHED,
        ManuscriptStatus.WITHDRAWN,
    ],
)
def test_other_statuses_emit_nothing(seed, trigger, delivery, status):
    ms = seed(status=status)
    assert trigger.on_status_changed(ms, at=T0) is None
    assert delivery.events == []


def test_revision_required_goes_to_author(seed, trigger):
    ms = seed(status=ManuscriptStatus.REVISION_REQUIRED, author_id="author-2")
    event = trigger.build_for_status(ms, ms.status)
    assert event.recipient_ids == ("author-2",)


def test_dispatch_swallows_delivery_errors(seed):
    failing = NotificationTrigger(RecordingDelivery(fail=True))
    ms = seed(status=ManuscriptStatus.SUBMITTED)
    event = failing.on_status_changed(ms, at=T0)
    assert event is not None
    assert failing.dispatch(event) is False


def test_dispatch_without_delivery_is_noop(seed):
    ms = seed()
    assert NotificationTrigger().on_status_changed(ms).type == "pending_submission"


def _under_review(seed, reviewers, editor, *, due, reviewer_ids=("rev-1",), **fields):
    ms = seed(status=ManuscriptStatus.UNDER_REVIEW, **fields)
    reviewers.assign_reviewers(manuscript_id=ms.id, reviewer_ids=list(reviewer_ids), due_date=due, actor=editor)
    return ms


def test_overdue_alerts_address_assigned_editor_or_admins(trigger, delivery, seed, reviewers, editor):
    due = T0 + timedelta(days=7)
    owned = _under_review(seed, reviewers, editor, due=due, editor_assigned="editor-2")
    orphan = _under_review(seed, reviewers, editor, due=due + timedelta(days=2))
    _under_review(seed, reviewers, editor, due=T0 + timedelta(days=30))

    alerts = trigger.collect_overdue_alerts(as_of=T0 + timedelta(days=10))

    assert [a.manuscript_id for a in alerts] == [orphan.id, owned.id]
    by_ms = {a.manuscript_id: a for a in alerts}
    assert by_ms[owned.id].audience == NotificationAudience.ASSIGNED_EDITOR
    assert by_ms[owned.id].recipient_ids == ("editor-2",)
    assert by_ms[orphan.id].audience == NotificationAudience.ADMINS
    assert by_ms[orphan.id].recipient_ids == ()
    assert by_ms[owned.id].payload["overdue_days"] == 3.0
    assert all(a.type == "overdue_review" and a.priority == NotificationPriority.HIGH for a in alerts)
    assert len(delivery.events) == 2


def test_overdue_alerts_without_dispatch(trigger, delivery, seed, reviewers, editor):
    _under_review(seed, reviewers, editor, due=T0 + timedelta(days=1))
    alerts = trigger.collect_overdue_alerts(as_of=T0 + timedelta(days=2), dispatch=False)
    assert len(alerts) == 1
    assert delivery.events == []


def test_finished_reviews_are_never_overdue(trigger, seed, reviewers, editor, reviewer):
    ms = _under_review(seed, reviewers, editor, due=T0 + timedelta(days=1))
    aid = reviewers.store.get(ms.id).review_assignments[0].id
    reviewers.record_review_outcome(assignment_id=aid, sub_status="declined", actor=reviewer)
    assert trigger.collect_overdue_alerts(as_of=T0 + timedelta(days=5), dispatch=False) == []


@pytest.mark.parametrize("final_status", ["withdrawn", "rejected"])
def test_closed_manuscripts_stop_raising_overdue_alerts(
    trigger, editorial, seed, reviewers, editor, author, clock, final_status
):
    live = _under_review(seed, reviewers, editor, due=T0 + timedelta(days=1))
    closed = _under_review(seed, reviewers, editor, due=T0 + timedelta(days=1))
    clock.advance(days=2)
    actor = editor if final_status == "rejected" else author
    editorial.request_transition(manuscript_id=closed.id, target_status=final_status, actor=actor)

    as_of = T0 + timedelta(days=5)
    alerts = trigger.collect_overdue_alerts(as_of=as_of, dispatch=False)
    assert [a.manuscript_id for a in alerts] == [live.id]

    digest = {e.type: e.count for e in trigger.build_admin_digest(as_of=as_of)}
    assert digest["overdue_review"] == 1

    # 终结之前的时间点仍按当时状态计算
    before = trigger.collect_overdue_alerts(as_of=T0 + timedelta(days=1, hours=12), dispatch=False)
    assert sorted(a.manuscript_id for a in before) == sorted([live.id, closed.id])


def test_admin_digest_counts_and_order(trigger, seed, reviewers, editor):
    seed(status=ManuscriptStatus.SUBMITTED)
    seed(status=ManuscriptStatus.SUBMITTED)
    seed(status=ManuscriptStatus.REVISION_REQUIRED)
    _under_review(seed, reviewers, editor, due=T0 + timedelta(days=1), reviewer_ids=("rev-1", "rev-2"))

    digest = trigger.build_admin_digest(as_of=T0 + timedelta(days=3))

    assert [(e.type, e.count) for e in digest] == [
        ("pending_submission", 2),
        ("overdue_review", 2),
        ("revision_required", 1),
    ]
    assert digest[0].message == "2 articles awaiting initial review"
    assert all(e.occurred_at == T0 + timedelta(days=3) for e in digest)


def test_admin_digest_empty(trigger):
    assert trigger.build_admin_digest(as_of=T0) == []


def test_sort_for_display_orders_by_priority_then_recency():
    def _event(priority, hours):
        return NotificationEvent(
            type="pending_submission",
            priority=priority,
            audience=NotificationAudience.EDITORS,
            title="t",
            message="m",
            occurred_at=datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(hours=hours),
        )

    low = _event(NotificationPriority.LOW, 10)
    old_high = _event(NotificationPriority.HIGH, 1)
    new_high = _event(NotificationPriority.HIGH, 5)
    medium = _event(NotificationPriority.MEDIUM, 20)

    assert sort_for_display([low, old_high, medium, new_high]) == [new_high, old_high, medium, low]

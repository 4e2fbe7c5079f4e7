from datetime import timedelta

import pytest

from conftest import T0, make_manuscript
from journalflow.models.manuscript import (
    Actor,
    ManuscriptStatus,
    ReviewAssignment,
    ReviewStatus,
    ReviewStatusEntry,
    StatusHistoryEntry,
    normalize_status,
)


def test_transition_table_is_exhaustive():
    assert ManuscriptStatus.allowed_next("submitted") == {"initial-review", "withdrawn"}
    assert ManuscriptStatus.allowed_next("initial-review") == {"under-review", "withdrawn"}
    assert ManuscriptStatus.allowed_next("under-review") == {
        "revision-required",
        "accepted",
        "rejected",
        "withdrawn",
    }
    assert ManuscriptStatus.allowed_next("revision-required") == {"revised", "withdrawn"}
    assert ManuscriptStatus.allowed_next("revised") == {
        "under-review",
        "revision-required",
        "accepted",
        "withdrawn",
    }
    assert ManuscriptStatus.allowed_next("accepted") == {"published", "withdrawn"}
    for terminal in ("published", "rejected", "withdrawn"):
        assert ManuscriptStatus.allowed_next(terminal) == set()
        assert ManuscriptStatus(terminal).is_terminal is True


def test_accepted_only_reachable_from_under_review_or_revised():
    sources = {s.value for s in ManuscriptStatus if "accepted" in ManuscriptStatus.allowed_next(s)}
    assert sources == {"under-review", "revised"}


def test_normalize_status_accepts_legacy_spellings():
    assert normalize_status("under_review") == "under-review"
    assert normalize_status("underReview") == "under-review"
    assert normalize_status(" Revision_Required ") == "revision-required"
    assert normalize_status(ManuscriptStatus.ACCEPTED) == "accepted"
    assert normalize_status("") is None
    assert normalize_status("pre_check") is None
    assert ManuscriptStatus.allowed_next("nope") == set()


def test_review_status_table():
    assert ReviewStatus.allowed_next("assigned") == {"in-progress", "completed", "declined"}
    assert ReviewStatus.allowed_next("in-progress") == {"completed", "declined"}
    assert ReviewStatus.allowed_next("completed") == set()
    assert ReviewStatus.allowed_next("declined") == set()
    assert ReviewStatus.allowed_next("bogus") == set()


def test_status_at_reconstructs_from_history():
    ms = make_manuscript(status=ManuscriptStatus.SUBMITTED)
    ms.status_history = [
        StatusHistoryEntry(status=ManuscriptStatus.INITIAL_REVIEW, changed_at=T0 + timedelta(days=1)),
        StatusHistoryEntry(status=ManuscriptStatus.UNDER_REVIEW, changed_at=T0 + timedelta(days=3)),
    ]
    ms.status = ManuscriptStatus.UNDER_REVIEW

    assert ms.status_at(T0 - timedelta(seconds=1)) is None
    assert ms.status_at(T0) == ManuscriptStatus.SUBMITTED
    assert ms.status_at(T0 + timedelta(days=2)) == ManuscriptStatus.INITIAL_REVIEW
    assert ms.status_at(T0 + timedelta(days=3)) == ManuscriptStatus.UNDER_REVIEW


def _assignment(**kwargs) -> ReviewAssignment:
    data = {"id": "a-1", "reviewer_id": "rev-1", "assigned_at": T0}
    data.update(kwargs)
    return ReviewAssignment(**data)


def test_overdue_predicate():
    as_of = T0 + timedelta(days=10)
    in_progress = _assignment(sub_status=ReviewStatus.IN_PROGRESS, due_date=as_of - timedelta(days=2))
    completed = _assignment(
        sub_status=ReviewStatus.COMPLETED,
        due_date=as_of - timedelta(days=2),
        submitted_at=as_of - timedelta(days=1),
        rating=4,
        recommendation="accept",
    )
    not_due = _assignment(sub_status=ReviewStatus.ASSIGNED, due_date=as_of + timedelta(days=1))
    no_due = _assignment(sub_status=ReviewStatus.ASSIGNED)

    assert in_progress.is_overdue(as_of) is True
    assert completed.is_overdue(as_of) is False
    assert not_due.is_overdue(as_of) is False
    assert no_due.is_overdue(as_of) is False


def test_sub_status_at_uses_history():
    a = _assignment(
        sub_status=ReviewStatus.COMPLETED,
        submitted_at=T0 + timedelta(days=5),
        rating=5,
        recommendation="accept",
        history=[
            ReviewStatusEntry(sub_status=ReviewStatus.ASSIGNED, changed_at=T0),
            ReviewStatusEntry(sub_status=ReviewStatus.IN_PROGRESS, changed_at=T0 + timedelta(days=1)),
            ReviewStatusEntry(sub_status=ReviewStatus.COMPLETED, changed_at=T0 + timedelta(days=5)),
        ],
    )
    assert a.sub_status_at(T0 - timedelta(days=1)) is None
    assert a.sub_status_at(T0) == ReviewStatus.ASSIGNED
    assert a.sub_status_at(T0 + timedelta(days=2)) == ReviewStatus.IN_PROGRESS
    assert a.sub_status_at(T0 + timedelta(days=6)) == ReviewStatus.COMPLETED


def test_reviewers_are_derived_from_open_assignments():
    ms = make_manuscript(status=ManuscriptStatus.UNDER_REVIEW)
    ms.review_assignments = [
        _assignment(id="a-1", reviewer_id="rev-1"),
        _assignment(id="a-2", reviewer_id="rev-2", sub_status=ReviewStatus.DECLINED),
        _assignment(id="a-3", reviewer_id="rev-3", sub_status=ReviewStatus.IN_PROGRESS),
    ]
    ms.sync_reviewers()
    assert ms.reviewers == ["rev-1", "rev-3"]
    assert ms.find_assignment("a-2").reviewer_id == "rev-2"
    assert ms.open_assignment_for("rev-2") is None
    assert ms.bound_reviewer_ids() == {"rev-1", "rev-3"}


def test_naive_datetimes_are_coerced_to_utc():
    a = _assignment(assigned_at=T0.replace(tzinfo=None))
    assert a.assigned_at == T0


def test_rating_outside_range_is_rejected():
    with pytest.raises(ValueError):
        _assignment(rating=6)


def test_actor_roles_parse_from_header_string():
    actor = Actor(id="u1", roles=" Editor, reviewer ,,")
    assert actor.roles == frozenset({"editor", "reviewer"})
    assert Actor(id="u2", roles=None).roles == frozenset()

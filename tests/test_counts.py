from datetime import date

import pytest
from sqlalchemy import select

from conftest import ACTOR, REVIEWER
from depot import audit, counts, ledger
from depot.config import settings
from depot.enums import CountStatus, CylinderSize, CylinderStatus, MovementType
from depot.errors import ApprovalNotPermitted, InvalidTransition, StaleTransition, ValidationFailed
from depot.models import CylinderMovement

FULL_9 = (CylinderSize.KG9, CylinderStatus.FULL)


def _count(db, physical, count_date=date(2026, 10, 19)):
    return counts.submit_count(
        db, count_date, [{"cylinder_size": "9kg", "status": "full", "physical_quantity": physical}], ACTOR
    )


def test_shortfall_waits_for_review_and_approval_adjusts_stock(db, stock) -> None:
    stock(CylinderSize.KG9, 50)

    count = _count(db, 48)

    assert count.approval_status == CountStatus.PENDING_REVIEW
    assert count.items[0].projected_quantity == 50
    assert count.items[0].variance == -2

    counts.review_count(db, count.id, True, REVIEWER, CountStatus.PENDING_REVIEW)

    assert count.approval_status == CountStatus.APPROVED
    assert count.reviewed_by == REVIEWER
    assert ledger.project_stock(db)[FULL_9] == 48
    entry = db.execute(
        select(CylinderMovement).where(CylinderMovement.related_count_id == count.id)
    ).scalar_one()
    assert entry.movement_type == MovementType.ADJUSTMENT
    assert entry.quantity == 2
    assert entry.previous_status == CylinderStatus.FULL


def test_matching_count_is_finalized_without_review(db, stock) -> None:
    stock(CylinderSize.KG9, 50)
    count = _count(db, 50)
    assert count.approval_status == CountStatus.FINALIZED
    with pytest.raises(InvalidTransition):
        counts.review_count(db, count.id, True, REVIEWER, CountStatus.FINALIZED)


def test_rejection_records_audit_entries_without_moving_stock(db, stock) -> None:
    stock(CylinderSize.KG9, 50)
    count = _count(db, 53)

    counts.review_count(db, count.id, False, REVIEWER, CountStatus.PENDING_REVIEW, notes="recount tomorrow")

    assert count.approval_status == CountStatus.UNDER_INVESTIGATION
    assert count.review_notes == "recount tomorrow"
    assert ledger.project_stock(db)[FULL_9] == 50
    entry = db.execute(
        select(CylinderMovement).where(CylinderMovement.related_count_id == count.id)
    ).scalar_one()
    assert entry.movement_type == MovementType.VARIANCE_REJECTED
    assert entry.new_status == CylinderStatus.FULL

    counts.review_count(db, count.id, True, REVIEWER, CountStatus.UNDER_INVESTIGATION)
    assert ledger.project_stock(db)[FULL_9] == 53


def test_stale_review_is_rejected(db, stock) -> None:
    stock(CylinderSize.KG9, 50)
    count = _count(db, 49)
    counts.review_count(db, count.id, True, REVIEWER, CountStatus.PENDING_REVIEW)
    with pytest.raises(StaleTransition):
        counts.review_count(db, count.id, True, REVIEWER, CountStatus.PENDING_REVIEW)
    assert ledger.project_stock(db)[FULL_9] == 49


def test_counter_cannot_approve_their_own_count(db, stock, monkeypatch) -> None:
    stock(CylinderSize.KG9, 50)
    count = _count(db, 49)
    with pytest.raises(ApprovalNotPermitted):
        counts.review_count(db, count.id, True, ACTOR, CountStatus.PENDING_REVIEW)

    monkeypatch.setattr(settings, "require_distinct_count_approver", False)
    counts.review_count(db, count.id, True, ACTOR, CountStatus.PENDING_REVIEW)
    assert count.approval_status == CountStatus.APPROVED


def test_each_key_is_counted_once(db) -> None:
    line = {"cylinder_size": "9kg", "status": "full", "physical_quantity": 1}
    with pytest.raises(ValidationFailed):
        counts.submit_count(db, date(2026, 10, 19), [line, line], ACTOR)


def test_counts_can_be_listed_by_date_and_variance(db, stock) -> None:
    stock(CylinderSize.KG9, 50)
    matched = _count(db, 50, date(2026, 10, 18))
    short = _count(db, 45, date(2026, 10, 19))

    assert [c.id for c in counts.list_counts(db, has_variance=True)] == [short.id]
    assert [c.id for c in counts.list_counts(db, has_variance=False)] == [matched.id]
    assert [c.id for c in counts.list_counts(db, date_to=date(2026, 10, 18))] == [matched.id]
    assert [c.id for c in counts.list_counts(db, status=CountStatus.PENDING_REVIEW)] == [short.id]


def test_reviews_are_audited_against_the_reviewer(db, stock) -> None:
    stock(CylinderSize.KG9, 50)
    count = _count(db, 53)

    counts.review_count(db, count.id, False, REVIEWER, CountStatus.PENDING_REVIEW, notes="recount tomorrow")
    counts.review_count(db, count.id, True, REVIEWER, CountStatus.UNDER_INVESTIGATION)

    events = audit.entity_history(db, "daily_count", count.id)
    assert [(event.previous_state["status"], event.new_state["status"]) for event in events] == [
        ("pending_review", "under_investigation"),
        ("under_investigation", "approved"),
    ]
    assert {event.actor_id for event in events} == {REVIEWER}
    assert events[0].details == {"notes": "recount tomorrow"}
    assert events[1].details is None

from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from billing import (
    family_contact,
    generate_automated_report,
    generate_monthly_allocations,
    mark_allocation_paid,
    send_fee_reminders,
)
from extensions import db
from models import Notification, StudentFeeAllocation
from utils.fees import NotFoundError


def _allocations():
    return StudentFeeAllocation.query.order_by(StudentFeeAllocation.net_amount.desc()).all()


def test_allocations_are_created_for_each_subscribed_student(johnsons):
    _, emma, liam = johnsons

    result = generate_monthly_allocations(6, 2024)

    assert result.success
    assert (result.total_students, result.successful_bills, result.failed_bills) == (2, 2, 0)
    emma_bill, liam_bill = _allocations()
    assert emma_bill.student_id == emma.id
    assert emma_bill.gross_amount == Decimal("9000.00")
    assert emma_bill.discount_amount == Decimal("272.73")
    assert emma_bill.net_amount == Decimal("8727.27")
    assert liam_bill.net_amount == Decimal("7272.73")
    assert emma_bill.month == date(2024, 6, 1)
    assert emma_bill.year == 2024
    assert emma_bill.due_date == date(2024, 6, 15)
    assert emma_bill.status == StudentFeeAllocation.STATUS_PENDING


def test_rerunning_the_same_month_does_not_double_bill(johnsons):
    first = generate_monthly_allocations(6, 2024)
    before = [(a.id, a.net_amount) for a in _allocations()]

    second = generate_monthly_allocations(6, 2024)

    assert [(a.id, a.net_amount) for a in _allocations()] == before
    assert second.successful_bills == first.total_students
    assert second.failed_bills == 0
    # only the first run queues bill notifications
    assert Notification.query.count() == 2


def test_one_broken_student_does_not_stop_the_batch(johnsons, factory):
    ghost = factory.student("missing-family", "Ghost Student")
    factory.subscribe(ghost, factory.course("Chemistry", 4000))

    result = generate_monthly_allocations(7, 2024)

    assert result.total_students == 3
    assert result.successful_bills == 2
    assert result.failed_bills == 1
    assert not result.success
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Failed to process Ghost Student:")
    assert StudentFeeAllocation.query.count() == 2


def test_inactive_and_unsubscribed_students_are_not_billed(factory):
    family = factory.family("Kamau Family")
    course = factory.course("Geography", 3000)
    factory.subscribe(factory.student(family, "Active"), course)
    factory.subscribe(factory.student(family, "Left School", is_active=False), course)
    factory.student(family, "No Subscriptions")
    factory.subscribe(factory.student(family, "Ended"), course, end_date=date(2024, 1, 31))

    result = generate_monthly_allocations(3, 2024)

    assert result.total_students == 1
    assert StudentFeeAllocation.query.count() == 1


def test_bill_notification_is_queued_for_parent(johnsons):
    generate_monthly_allocations(6, 2024)

    note = Notification.query.filter(Notification.subject.like("%Emma Johnson%")).one()
    assert note.recipient == "parent@johnson.example"
    assert note.status == Notification.STATUS_PENDING
    assert note.type == "email"
    assert note.subject == "Monthly Bill Generated - Emma Johnson (June 2024)"
    assert note.payload_metadata["studentName"] == "Emma Johnson"
    assert note.payload_metadata["amount"] == 8727.27
    assert note.payload_metadata["month"] == "June"
    assert note.payload_metadata["year"] == 2024


def test_family_email_is_used_when_no_parent_user(factory):
    family = factory.family("Smith Family", email="Home@Smith.Example")
    factory.subscribe(factory.student(family, "Olivia"), factory.course("Art", 2000))

    generate_monthly_allocations(6, 2024)

    assert Notification.query.one().recipient == "home@smith.example"


def test_no_contact_means_no_notification(factory):
    family = factory.family("Quiet Family")
    factory.subscribe(factory.student(family, "Sam"), factory.course("Art", 2000))

    result = generate_monthly_allocations(6, 2024)

    assert result.success
    assert Notification.query.count() == 0


def test_notification_failure_does_not_fail_billing(johnsons):
    with patch("billing.enqueue_notification", side_effect=RuntimeError("outbox unavailable")):
        result = generate_monthly_allocations(6, 2024)

    assert result.success
    assert result.failed_bills == 0
    assert StudentFeeAllocation.query.count() == 2


def test_unique_key_conflict_counts_as_already_billed(johnsons):
    generate_monthly_allocations(6, 2024)

    # existence check misses the row, the unique constraint still catches it
    with patch("billing._find_allocation", side_effect=[None, object(), None, object()]):
        result = generate_monthly_allocations(6, 2024)

    assert result.success
    assert result.successful_bills == 2
    assert StudentFeeAllocation.query.count() == 2


def test_defaults_to_current_month(johnsons):
    today = date.today()
    result = generate_monthly_allocations()
    assert (result.month, result.year) == (today.month, today.year)
    assert StudentFeeAllocation.query.first().month == date(today.year, today.month, 1)


def test_invalid_month_is_rejected(app):
    with pytest.raises(ValueError):
        generate_monthly_allocations(13, 2024)


@pytest.mark.parametrize("month, year", [(0, 2024), (6, 0)])
def test_zero_month_or_year_is_rejected_not_defaulted(johnsons, month, year):
    with pytest.raises(ValueError):
        generate_monthly_allocations(month, year)
    assert StudentFeeAllocation.query.count() == 0


def test_batch_result_wire_shape(johnsons):
    payload = generate_monthly_allocations(6, 2024).to_dict()
    assert payload["totalStudents"] == 2
    assert payload["successfulBills"] == 2
    assert payload["failedBills"] == 0
    assert payload["errors"] == []
    assert payload["executionTime"] >= 0
    assert "timestamp" in payload


def test_overdue_reminders_flag_allocations(johnsons):
    generate_monthly_allocations(6, 2024)

    result = send_fee_reminders("overdue", today=date(2024, 6, 20))

    assert result.total_students == 2
    assert result.successful_bills == 2
    statuses = {a.status for a in StudentFeeAllocation.query.all()}
    assert statuses == {StudentFeeAllocation.STATUS_OVERDUE}
    reminders = Notification.query.filter(Notification.subject.like("Fee Reminder%")).all()
    assert len(reminders) == 2
    assert {r.priority for r in reminders} == {"high"}


def test_early_reminders_only_cover_upcoming_due_dates(johnsons, app):
    generate_monthly_allocations(6, 2024)
    app.config["REMINDER_DAYS"] = 3

    assert send_fee_reminders("early", today=date(2024, 6, 1)).total_students == 0
    assert send_fee_reminders("early", today=date(2024, 6, 13)).total_students == 2
    assert send_fee_reminders("due", today=date(2024, 6, 15)).total_students == 2


def test_paid_allocations_are_not_reminded(johnsons):
    generate_monthly_allocations(6, 2024)
    for allocation in StudentFeeAllocation.query.all():
        mark_allocation_paid(allocation.id, date(2024, 6, 10))

    result = send_fee_reminders("overdue", today=date(2024, 7, 1))

    assert result.total_students == 0


def test_unknown_reminder_kind_is_rejected(app):
    with pytest.raises(ValueError):
        send_fee_reminders("weekly")


def test_mark_allocation_paid(johnsons):
    generate_monthly_allocations(6, 2024)
    allocation = StudentFeeAllocation.query.first()

    paid = mark_allocation_paid(allocation.id, date(2024, 6, 12))

    assert paid.status == StudentFeeAllocation.STATUS_PAID
    assert paid.paid_date == date(2024, 6, 12)
    with pytest.raises(NotFoundError):
        mark_allocation_paid("nope")


def test_outstanding_report_totals_unpaid_bills(johnsons):
    generate_monthly_allocations(6, 2024)
    emma_bill = _allocations()[0]
    mark_allocation_paid(emma_bill.id)

    report = generate_automated_report("outstanding", today=date(2024, 6, 20))

    assert report.success
    assert report.data["allocations"] == 1
    assert report.data["netAmount"] == pytest.approx(7272.73)
    assert report.data["outstandingAmount"] == pytest.approx(7272.73)
    assert report.data["overdue"] == 1


def test_monthly_report_covers_current_month(johnsons):
    today = date.today()
    generate_monthly_allocations(today.month, today.year)
    previous = today.replace(day=1) - timedelta(days=1)
    generate_monthly_allocations(previous.month, previous.year)

    report = generate_automated_report("monthly", today=today)

    assert report.data["allocations"] == 2
    assert report.data["grossAmount"] == pytest.approx(16500.0)
    assert report.data["discountAmount"] == pytest.approx(500.0)
    assert report.data["byStatus"]["PENDING"]["count"] == 2


def test_unknown_report_kind_is_rejected(app):
    with pytest.raises(ValueError):
        generate_automated_report("daily")


def test_allocation_row_survives_session_reset(johnsons):
    generate_monthly_allocations(6, 2024)
    db.session.expire_all()
    assert StudentFeeAllocation.query.filter_by(year=2024).count() == 2


def test_family_contact_is_resolved_once_per_family(johnsons):
    with patch("billing.family_contact", wraps=family_contact) as lookup:
        generate_monthly_allocations(6, 2024)

    assert lookup.call_count == 1
    assert Notification.query.filter_by(recipient="parent@johnson.example").count() == 2

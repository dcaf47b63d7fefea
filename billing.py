from __future__ import annotations

import calendar
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload, selectinload

from extensions import db
from models import Family, Student, StudentFeeAllocation, User
from utils.fee_cycles import quantize
from utils.fees import (
    NotFoundError,
    calculate_family_fees,
    calculate_student_monthly_fee,
    load_family_gross_fees,
)
from utils.notify import (
    build_bill_notification,
    build_fee_reminder,
    enqueue_notification,
    normalize_email,
)


# -----------------------------
# Blueprint
# -----------------------------

billing_bp = Blueprint("billing", __name__, url_prefix="/billing")


REMINDER_KINDS = ("early", "due", "overdue")
REPORT_KINDS = ("monthly", "weekly", "outstanding")
UNPAID_STATUSES = (StudentFeeAllocation.STATUS_PENDING, StudentFeeAllocation.STATUS_OVERDUE)


@dataclass
class BatchResult:
    month: Optional[int] = None
    year: Optional[int] = None
    total_students: int = 0
    successful_bills: int = 0
    failed_bills: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    execution_time: int = 0  # milliseconds
    timestamp: datetime = field(default_factory=datetime.utcnow)
    success: bool = False

    def to_dict(self):
        return {
            "success": self.success,
            "month": self.month,
            "year": self.year,
            "totalStudents": self.total_students,
            "successfulBills": self.successful_bills,
            "failedBills": self.failed_bills,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "executionTime": self.execution_time,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ReportResult:
    kind: str
    success: bool = False
    data: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    execution_time: int = 0
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self):
        return {
            "success": self.success,
            "reportType": self.kind,
            "data": self.data,
            "errors": list(self.errors),
            "executionTime": self.execution_time,
            "timestamp": self.timestamp.isoformat(),
        }


# -----------------------------
# Helpers
# -----------------------------


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def billing_period(month: int, year: int):
    """Return ``(first_of_month, due_date)`` for a billing month."""
    if not 1 <= int(month) <= 12:
        raise ValueError("Month must be between 1 and 12")
    if int(year) < 1:
        raise ValueError("Year must be positive")
    month, year = int(month), int(year)
    due_day = int(current_app.config.get("BILLING_DUE_DAY", 15))
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, max(1, min(due_day, last_day)))


def family_contact(family: Optional[Family]) -> Optional[str]:
    """First active parent's email, falling back to the family's own email."""
    if family is None:
        return None
    for user in family.users:
        if user.role == User.ROLE_PARENT and user.is_active:
            email = normalize_email(user.email)
            if email:
                return email
    return normalize_email(family.email)


def _find_allocation(student_id: str, period_start: date, year: int) -> Optional[StudentFeeAllocation]:
    return StudentFeeAllocation.query.filter_by(
        student_id=student_id, month=period_start, year=year
    ).first()


def _family_contacts(students) -> Dict[str, Tuple[str, Optional[str]]]:
    """``family_id -> (family name, contact email)`` for the loaded students."""
    contacts: Dict[str, Tuple[str, Optional[str]]] = {}
    for student in students:
        if student.family is not None and student.family_id not in contacts:
            contacts[student.family_id] = (student.family.name, family_contact(student.family))
    return contacts


def _notify_bill(
    student_name: str, family_id: str, recipient: Tuple[str, Optional[str]], amount: Decimal, period_start: date
) -> None:
    """Queue the 'bill generated' message; never affects the billing outcome."""
    family_name, contact = recipient
    if not contact:
        return
    try:
        req = build_bill_notification(
            family_name,
            student_name,
            amount,
            calendar.month_name[period_start.month],
            period_start.year,
            contact,
        )
        enqueue_notification(req, family_id=family_id)
    except Exception as e:
        db.session.rollback()
        current_app.logger.warning("Could not queue bill notification for %s: %s", student_name, e)


# -----------------------------
# Monthly allocation generator
# -----------------------------


def generate_monthly_allocations(month: Optional[int] = None, year: Optional[int] = None) -> BatchResult:
    """Create one PENDING allocation per active, subscribed student.

    Safe to re-run for the same period: students that already have an
    allocation for the month are counted as successful and left untouched.
    """
    started = time.perf_counter()
    today = date.today()
    month = today.month if month is None else month
    year = today.year if year is None else year
    period_start, due_date = billing_period(month, year)
    log = current_app.logger

    result = BatchResult(month=month, year=year)
    log.info("Starting monthly billing for %s/%s", month, year)

    try:
        students = (
            Student.query.options(joinedload(Student.family).selectinload(Family.users))
            .filter(Student.is_active.is_(True), Student.active_subscriptions.any())
            .order_by(Student.name)
            .all()
        )
        # Read everything needed from the eager load now; commits below expire it
        roster = [(s.id, s.name, s.family_id) for s in students]
        contacts = _family_contacts(students)
        result.total_students = len(roster)
        log.info("Found %s active students", len(roster))

        gross_by_family: Dict[str, Dict[str, Decimal]] = {}

        for student_id, student_name, family_id in roster:
            try:
                if _find_allocation(student_id, period_start, year) is not None:
                    log.info("Bill already exists for %s (%s/%s)", student_name, month, year)
                    result.successful_bills += 1
                    continue

                if family_id not in gross_by_family:
                    gross_by_family[family_id] = load_family_gross_fees(family_id)
                calc = calculate_student_monthly_fee(student_id, family_gross_fees=gross_by_family[family_id])

                allocation = StudentFeeAllocation(
                    student_id=student_id,
                    month=period_start,
                    year=year,
                    gross_amount=quantize(calc.gross_monthly_fee),
                    discount_amount=quantize(calc.total_discount),
                    net_amount=quantize(calc.net_monthly_fee),
                    due_date=due_date,
                    status=StudentFeeAllocation.STATUS_PENDING,
                )
                db.session.add(allocation)
                try:
                    db.session.commit()
                except IntegrityError:
                    # Unique (student, month, year) hit: someone else billed it first
                    db.session.rollback()
                    if _find_allocation(student_id, period_start, year) is None:
                        raise
                    log.info("Bill for %s (%s/%s) was created concurrently", student_name, month, year)
                    result.successful_bills += 1
                    continue

                _notify_bill(
                    student_name, family_id, contacts.get(family_id, (None, None)), calc.net_monthly_fee, period_start
                )
                result.successful_bills += 1
                log.info("Created bill for %s: %s", student_name, quantize(calc.net_monthly_fee))

            except Exception as e:
                db.session.rollback()
                message = f"Failed to process {student_name}: {e}"
                result.errors.append(message)
                result.failed_bills += 1
                log.error(message)

        result.success = result.failed_bills == 0
    except Exception as e:
        db.session.rollback()
        result.errors.append(str(e))
        result.success = False
        log.exception("Monthly billing for %s/%s failed", month, year)

    result.execution_time = _elapsed_ms(started)
    log.info(
        "Monthly billing %s/%s done: %s students, %s successful, %s failed in %sms",
        month, year, result.total_students, result.successful_bills, result.failed_bills, result.execution_time,
    )
    return result


def mark_allocation_paid(allocation_id: str, paid_on: Optional[date] = None) -> StudentFeeAllocation:
    allocation = db.session.get(StudentFeeAllocation, allocation_id)
    if allocation is None:
        raise NotFoundError(f"Allocation {allocation_id} not found")
    allocation.status = StudentFeeAllocation.STATUS_PAID
    allocation.paid_date = paid_on or date.today()
    db.session.commit()
    return allocation


# -----------------------------
# Reminders & reports
# -----------------------------


def send_fee_reminders(kind: str = "overdue", today: Optional[date] = None) -> BatchResult:
    """Queue reminders for unpaid allocations.

    ``early``: due within REMINDER_DAYS; ``due``: due today; ``overdue``: past
    due (these are also flipped to OVERDUE).
    """
    if kind not in REMINDER_KINDS:
        raise ValueError(f"Invalid reminder type: {kind}")
    started = time.perf_counter()
    today = today or date.today()
    log = current_app.logger
    result = BatchResult(month=today.month, year=today.year)

    q = StudentFeeAllocation.query.options(
        joinedload(StudentFeeAllocation.student).joinedload(Student.family).selectinload(Family.users)
    )
    if kind == "early":
        horizon = today + timedelta(days=int(current_app.config.get("REMINDER_DAYS", 3)))
        q = q.filter(
            StudentFeeAllocation.status == StudentFeeAllocation.STATUS_PENDING,
            StudentFeeAllocation.due_date > today,
            StudentFeeAllocation.due_date <= horizon,
        )
    elif kind == "due":
        q = q.filter(
            StudentFeeAllocation.status == StudentFeeAllocation.STATUS_PENDING,
            StudentFeeAllocation.due_date == today,
        )
    else:
        q = q.filter(
            StudentFeeAllocation.status.in_(UNPAID_STATUSES),
            StudentFeeAllocation.due_date < today,
        )

    allocations = q.order_by(StudentFeeAllocation.due_date).all()
    result.total_students = len(allocations)

    for allocation in allocations:
        student = allocation.student
        try:
            if kind == "overdue" and allocation.status != StudentFeeAllocation.STATUS_OVERDUE:
                allocation.status = StudentFeeAllocation.STATUS_OVERDUE
                db.session.commit()
            family = student.family if student else None
            contact = family_contact(family)
            if not contact:
                result.skipped += 1
                continue
            req = build_fee_reminder(
                family.name, student.name, allocation.net_amount, allocation.due_date, contact, kind=kind
            )
            enqueue_notification(req, family_id=family.id)
            result.successful_bills += 1
        except Exception as e:
            db.session.rollback()
            name = student.name if student else allocation.student_id
            result.errors.append(f"Failed to remind {name}: {e}")
            result.failed_bills += 1
            log.error("Failed to queue %s reminder for allocation %s: %s", kind, allocation.id, e)

    result.success = result.failed_bills == 0
    result.execution_time = _elapsed_ms(started)
    log.info(
        "Fee reminders (%s): %s allocations, %s queued, %s without contact, %s failed",
        kind, result.total_students, result.successful_bills, result.skipped, result.failed_bills,
    )
    return result


def _allocation_totals(*criteria) -> Dict[str, Any]:
    A = StudentFeeAllocation
    count, gross, discount, net = (
        db.session.query(
            func.count(A.id),
            func.coalesce(func.sum(A.gross_amount), 0),
            func.coalesce(func.sum(A.discount_amount), 0),
            func.coalesce(func.sum(A.net_amount), 0),
        )
        .filter(*criteria)
        .one()
    )
    by_status = {
        status: {"count": int(n), "netAmount": float(total or 0)}
        for status, n, total in db.session.query(A.status, func.count(A.id), func.sum(A.net_amount))
        .filter(*criteria)
        .group_by(A.status)
        .all()
    }
    outstanding = sum(v["netAmount"] for k, v in by_status.items() if k in UNPAID_STATUSES)
    return {
        "allocations": int(count),
        "grossAmount": float(gross),
        "discountAmount": float(discount),
        "netAmount": float(net),
        "outstandingAmount": round(outstanding, 2),
        "byStatus": by_status,
    }


def generate_automated_report(kind: str = "monthly", today: Optional[date] = None) -> ReportResult:
    if kind not in REPORT_KINDS:
        raise ValueError(f"Invalid report type: {kind}")
    started = time.perf_counter()
    today = today or date.today()
    result = ReportResult(kind=kind)
    A = StudentFeeAllocation

    try:
        if kind == "monthly":
            period_start = date(today.year, today.month, 1)
            data = _allocation_totals(A.month == period_start, A.year == today.year)
            data["period"] = {"month": today.month, "year": today.year}
        elif kind == "weekly":
            since = datetime.combine(today - timedelta(days=7), datetime.min.time())
            data = _allocation_totals(A.created_at >= since)
            data["period"] = {"from": since.date().isoformat(), "to": today.isoformat()}
        else:
            data = _allocation_totals(A.status.in_(UNPAID_STATUSES))
            data["overdue"] = _allocation_totals(A.status.in_(UNPAID_STATUSES), A.due_date < today)["allocations"]
        result.data = data
        result.success = True
        current_app.logger.info("Generated %s report: %s", kind, data)
    except Exception as e:
        db.session.rollback()
        result.errors.append(str(e))
        current_app.logger.exception("Report generation (%s) failed", kind)

    result.execution_time = _elapsed_ms(started)
    return result


# -----------------------------
# Endpoints
# -----------------------------


def _error(message: str, status: int, details: Optional[str] = None):
    body = {"success": False, "error": message}
    if details:
        body["details"] = details
    return jsonify(body), status


def _scheduler():
    return current_app.extensions.get("billing_scheduler")


@billing_bp.route("/fees/calculate", methods=["POST"])
def calculate_fees():
    body = request.get_json(silent=True) or {}
    kind = body.get("type")
    try:
        if kind == "student" and body.get("studentId"):
            return jsonify(calculate_student_monthly_fee(str(body["studentId"])).to_dict())
        if kind == "family" and body.get("familyId"):
            return jsonify([c.to_dict() for c in calculate_family_fees(str(body["familyId"]))])
    except NotFoundError as e:
        return _error(str(e), 404)
    except Exception as e:
        current_app.logger.exception("Fee calculation failed")
        return _error("Failed to calculate fees", 500, str(e))
    return _error("Invalid request. Provide studentId or familyId with appropriate type.", 400)


@billing_bp.route("/monthly", methods=["POST"])
def run_monthly_billing():
    body = request.get_json(silent=True) or {}
    try:
        month = int(body["month"]) if body.get("month") is not None else None
        year = int(body["year"]) if body.get("year") is not None else None
    except (TypeError, ValueError):
        return _error("Month and year must be integers", 400)
    if month is not None and not 1 <= month <= 12:
        return _error("Month must be between 1 and 12", 400)
    lo = current_app.config.get("BILLING_MIN_YEAR", 2020)
    hi = current_app.config.get("BILLING_MAX_YEAR", 2100)
    if year is not None and not lo <= year <= hi:
        return _error(f"Year must be between {lo} and {hi}", 400)

    current_app.logger.info("Manual monthly billing requested for %s/%s", month or "current", year or "current")
    result = generate_monthly_allocations(month, year)
    if result.success:
        message = (
            f"Monthly billing completed successfully. Generated {result.successful_bills} bills "
            f"out of {result.total_students} students."
        )
    else:
        message = (
            f"Monthly billing completed with errors. {result.failed_bills} bills failed "
            f"out of {result.total_students} students."
        )
    return jsonify({"success": result.success, "message": message, "data": result.to_dict()})


@billing_bp.route("/allocations", methods=["GET"])
def list_allocations():
    args = request.args
    q = StudentFeeAllocation.query.options(selectinload(StudentFeeAllocation.student))
    try:
        if args.get("studentId"):
            q = q.filter(StudentFeeAllocation.student_id == args["studentId"])
        if args.get("familyId"):
            q = q.join(Student).filter(Student.family_id == args["familyId"])
        if args.get("year"):
            q = q.filter(StudentFeeAllocation.year == int(args["year"]))
        if args.get("month"):
            year = int(args.get("year") or date.today().year)
            q = q.filter(StudentFeeAllocation.month == date(year, int(args["month"]), 1))
        if args.get("status"):
            q = q.filter(StudentFeeAllocation.status == args["status"].upper())
    except ValueError:
        return _error("Invalid month or year", 400)
    rows = q.order_by(StudentFeeAllocation.month.desc(), StudentFeeAllocation.student_id).all()
    return jsonify({"success": True, "data": [row.to_dict() for row in rows]})


@billing_bp.route("/allocations/<allocation_id>/pay", methods=["POST"])
def pay_allocation(allocation_id):
    body = request.get_json(silent=True) or {}
    paid_on = None
    if body.get("paidDate"):
        try:
            paid_on = date.fromisoformat(body["paidDate"])
        except ValueError:
            return _error("paidDate must be YYYY-MM-DD", 400)
    try:
        allocation = mark_allocation_paid(allocation_id, paid_on)
    except NotFoundError as e:
        return _error(str(e), 404)
    return jsonify({"success": True, "data": allocation.to_dict()})


@billing_bp.route("/reminders", methods=["POST"])
def run_fee_reminders():
    body = request.get_json(silent=True) or {}
    kind = body.get("reminderType", "overdue")
    if kind not in REMINDER_KINDS:
        return _error("Invalid reminder type. Use: early, due, or overdue", 400)
    result = send_fee_reminders(kind)
    return jsonify({"success": result.success, "reminderType": kind, "data": result.to_dict()})


@billing_bp.route("/reports", methods=["POST"])
def run_report():
    body = request.get_json(silent=True) or {}
    kind = body.get("reportType", "monthly")
    if kind not in REPORT_KINDS:
        return _error("Invalid report type. Use: monthly, weekly, or outstanding", 400)
    return jsonify(generate_automated_report(kind).to_dict())


@billing_bp.route("/jobs", methods=["GET"])
def list_jobs():
    state = _scheduler()
    if state is None:
        return _error("Scheduler is not running", 503)
    return jsonify({"success": True, "data": state.list_jobs()})


@billing_bp.route("/jobs/<job_id>/<action>", methods=["POST"])
def control_job(job_id, action):
    state = _scheduler()
    if state is None:
        return _error("Scheduler is not running", 503)
    if state.get_job(job_id) is None:
        return _error(f"Job not found: {job_id}", 404)
    handlers = {"trigger": state.trigger_job, "start": state.start_job, "stop": state.stop_job}
    handler = handlers.get(action)
    if handler is None:
        return _error("Unknown action. Use: trigger, start, or stop", 400)
    ok = handler(job_id)
    return jsonify({"success": ok, "data": state.get_job(job_id)})

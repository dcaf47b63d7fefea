"""
Notification outbox.

Billing code never talks to the mail server directly: it drops a
``Notification`` row (status PENDING) and returns. The scheduler's dispatch
job later delivers pending rows through Flask-Mail.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Optional

from flask import current_app
from flask_mail import Message

from extensions import db, mail
from models import Notification


@dataclass
class NotificationRequest:
    to: str
    subject: str
    message: str
    type: str = "email"
    priority: str = "medium"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self):
        return {
            "to": self.to,
            "subject": self.subject,
            "message": self.message,
            "type": self.type,
            "priority": self.priority,
            "metadata": dict(self.metadata),
        }


def normalize_email(raw: str | None) -> str | None:
    if not raw:
        return None
    email = str(raw).strip().lower()
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        return None
    return email


def _money(amount) -> str:
    currency = current_app.config.get("CURRENCY_LABEL", "KES")
    return f"{currency} {float(amount):,.2f}"


def build_bill_notification(
    family_name: str, student_name: str, amount, month: str, year: int, to: str
) -> NotificationRequest:
    message = (
        f"Dear {family_name}, the monthly bill for {student_name} has been generated for "
        f"{month} {year}. Amount: {_money(amount)}. "
        "Please log in to your portal to view details and make payment."
    )
    return NotificationRequest(
        to=to,
        subject=f"Monthly Bill Generated - {student_name} ({month} {year})",
        message=message,
        metadata={
            "studentName": student_name,
            "amount": float(amount),
            "month": month,
            "year": year,
            "notificationType": "bill_generated",
        },
    )


def build_fee_reminder(
    family_name: str, student_name: str, amount, due_date: date, to: str, kind: str = "due"
) -> NotificationRequest:
    if kind == "overdue":
        lead = f"the monthly fee of {_money(amount)} for {student_name} was due on {due_date:%d %b %Y} and is now overdue"
        priority = "high"
    else:
        lead = f"the monthly fee of {_money(amount)} for {student_name} is due on {due_date:%d %b %Y}"
        priority = "medium"
    return NotificationRequest(
        to=to,
        subject=f"Fee Reminder - {student_name}",
        message=f"Dear {family_name}, this is a reminder that {lead}. Please make the payment at your earliest convenience.",
        priority=priority,
        metadata={
            "studentName": student_name,
            "amount": float(amount),
            "dueDate": due_date.isoformat(),
            "reminderType": kind,
        },
    )


def enqueue_notification(request: NotificationRequest, family_id: Optional[str] = None) -> Notification:
    row = Notification(
        recipient=request.to,
        subject=request.subject,
        message=request.message,
        type=request.type,
        priority=request.priority,
        payload_metadata=request.metadata,
        status=Notification.STATUS_PENDING,
        family_id=family_id,
    )
    db.session.add(row)
    db.session.commit()
    return row


def dispatch_pending_notifications(limit: Optional[int] = None) -> Dict[str, int]:
    """Deliver PENDING email notifications, oldest first.

    A failed delivery stays PENDING until ``NOTIFICATION_MAX_ATTEMPTS`` is
    reached, then it is marked FAILED.
    """
    cfg = current_app.config
    limit = limit or cfg.get("NOTIFICATION_BATCH_SIZE", 100)
    max_attempts = cfg.get("NOTIFICATION_MAX_ATTEMPTS", 3)
    counts = {"sent": 0, "failed": 0, "retried": 0}

    pending = (
        Notification.query.filter_by(status=Notification.STATUS_PENDING, type="email")
        .order_by(Notification.created_at)
        .limit(limit)
        .all()
    )
    for row in pending:
        row.attempts = (row.attempts or 0) + 1
        msg = Message(
            subject=row.subject or cfg.get("APP_NAME", ""),
            sender=cfg.get("MAIL_DEFAULT_SENDER"),
            recipients=[row.recipient],
            body=row.message,
        )
        try:
            mail.send(msg)
        except Exception as e:
            row.last_error = str(e)
            if row.attempts >= max_attempts:
                row.status = Notification.STATUS_FAILED
                counts["failed"] += 1
            else:
                counts["retried"] += 1
            current_app.logger.warning(
                "Failed to send notification %s to %s (attempt %s): %s",
                row.id, row.recipient, row.attempts, e,
            )
        else:
            row.status = Notification.STATUS_SENT
            row.sent_at = datetime.utcnow()
            row.last_error = None
            counts["sent"] += 1
        db.session.commit()

    if pending:
        current_app.logger.info(
            "Notification dispatch: %(sent)s sent, %(retried)s to retry, %(failed)s failed", counts
        )
    return counts

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Tuple

from flask import current_app
from sqlalchemy.orm import joinedload, selectinload

from extensions import db
from models import Course, Family, FeeStructure, Service, Student, StudentSubscription
from utils.fee_cycles import quantize, to_decimal, to_monthly


ZERO = Decimal('0.00')


class NotFoundError(LookupError):
    """A student or family id that does not resolve."""


@dataclass
class FeeLineItem:
    id: str
    name: str
    monthly_amount: Decimal
    discount: Decimal

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "monthlyAmount": float(self.monthly_amount),
            "discount": float(self.discount),
        }


@dataclass
class FeeBreakdown:
    courses: List[FeeLineItem] = field(default_factory=list)
    services: List[FeeLineItem] = field(default_factory=list)

    def to_dict(self):
        return {
            "courses": [item.to_dict() for item in self.courses],
            "services": [item.to_dict() for item in self.services],
        }


@dataclass
class FeeCalculation:
    student_id: str
    student_name: str
    gross_monthly_fee: Decimal
    item_discounts: Decimal
    family_discount_share: Decimal
    total_discount: Decimal
    net_monthly_fee: Decimal
    breakdown: FeeBreakdown

    def to_dict(self):
        return {
            "studentId": self.student_id,
            "studentName": self.student_name,
            "grossMonthlyFee": float(self.gross_monthly_fee),
            "itemDiscounts": float(self.item_discounts),
            "familyDiscountShare": float(self.family_discount_share),
            "totalDiscount": float(self.total_discount),
            "netMonthlyFee": float(self.net_monthly_fee),
            "breakdown": self.breakdown.to_dict(),
        }


# -----------------------------
# Loading
# -----------------------------


def _with_fee_structures(subscriptions_loader):
    """Extend a loader of active subscriptions down to their fee structures."""
    return (
        subscriptions_loader.joinedload(StudentSubscription.course).joinedload(Course.fee_structure),
        subscriptions_loader.joinedload(StudentSubscription.service).joinedload(Service.fee_structure),
    )


def _load_student(student_id: str) -> Student:
    student = (
        Student.query.options(
            joinedload(Student.family),
            *_with_fee_structures(selectinload(Student.active_subscriptions)),
        )
        .filter(Student.id == student_id)
        .first()
    )
    if student is None:
        raise NotFoundError(f"Student {student_id} not found")
    return student


def _load_family(family_id: str) -> Family:
    family = (
        Family.query.options(
            *_with_fee_structures(selectinload(Family.students).selectinload(Student.active_subscriptions)),
        )
        .filter(Family.id == family_id)
        .first()
    )
    if family is None:
        raise NotFoundError(f"Family {family_id} not found")
    return family


# -----------------------------
# Gross fee per student
# -----------------------------


def _billable_items(
    student: Student, log_skips: bool = False
) -> Iterator[Tuple[str, object, FeeStructure, StudentSubscription]]:
    """Yield ``(kind, course_or_service, fee_structure, subscription)``.

    Subscriptions whose course/service has no fee structure are skipped and
    contribute nothing to the fee.
    """
    for subscription in student.active_subscriptions:
        if subscription.course is not None:
            kind, target = 'course', subscription.course
        elif subscription.service is not None:
            kind, target = 'service', subscription.service
        else:
            continue
        fee_structure = target.fee_structure
        if fee_structure is None:
            if log_skips:
                current_app.logger.info(
                    "Skipping %s '%s' for student %s: no fee structure attached",
                    kind, target.name, student.id,
                )
            continue
        yield kind, target, fee_structure, subscription


def student_gross_monthly_fee(student: Student) -> Decimal:
    total = ZERO
    for _, _, fee_structure, _ in _billable_items(student):
        total += to_monthly(fee_structure.amount, fee_structure.billing_cycle)
    return total


def family_gross_fees(family: Family) -> Dict[str, Decimal]:
    return {student.id: student_gross_monthly_fee(student) for student in family.students}


def load_family_gross_fees(family_id: str) -> Dict[str, Decimal]:
    return family_gross_fees(_load_family(family_id))


# -----------------------------
# Family discount allocation
# -----------------------------


def share_of_pool(pool, gross_fees: Dict[str, Decimal], student_id: str) -> Decimal:
    """Split ``pool`` proportionally to gross fees and return one student's part.

    Each share is rounded on its own, so siblings' shares can drift from the
    pool by a cent.
    """
    pool = to_decimal(pool)
    if pool <= 0:
        return ZERO
    total = sum(gross_fees.values(), ZERO)
    if total == 0:
        return ZERO
    this_student = gross_fees.get(student_id, ZERO)
    return quantize(pool * this_student / total)


def family_discount_share(
    family_id: str, student_id: str, gross_fees: Optional[Dict[str, Decimal]] = None
) -> Decimal:
    family = db.session.get(Family, family_id)
    if family is None:
        raise NotFoundError(f"Family {family_id} not found")
    if to_decimal(family.discount_amount) <= 0:
        return ZERO
    if gross_fees is None:
        gross_fees = load_family_gross_fees(family_id)
    return share_of_pool(family.discount_amount, gross_fees, student_id)


# -----------------------------
# Student / family calculation
# -----------------------------


def calculate_student_monthly_fee(
    student_id: str, family_gross_fees: Optional[Dict[str, Decimal]] = None
) -> FeeCalculation:
    """Itemised monthly fee for one student.

    ``family_gross_fees`` may carry the already computed gross fee of every
    sibling (see ``family_gross_fees``) so batch callers do not rescan the
    family per child.
    """
    student = _load_student(student_id)
    if student.family is None:
        raise NotFoundError(f"Family {student.family_id} not found for student {student.name}")

    gross = ZERO
    item_discounts = ZERO
    breakdown = FeeBreakdown()

    for kind, target, fee_structure, subscription in _billable_items(student, log_skips=True):
        monthly_amount = to_monthly(fee_structure.amount, fee_structure.billing_cycle)
        discount = to_decimal(subscription.discount_amount)
        gross += monthly_amount
        item_discounts += discount
        item = FeeLineItem(id=target.id, name=target.name, monthly_amount=monthly_amount, discount=discount)
        if kind == 'course':
            breakdown.courses.append(item)
        else:
            breakdown.services.append(item)

    family_share = family_discount_share(student.family_id, student.id, gross_fees=family_gross_fees)

    total_discount = item_discounts + family_share
    net = max(ZERO, gross - total_discount)

    return FeeCalculation(
        student_id=student.id,
        student_name=student.name,
        gross_monthly_fee=gross,
        item_discounts=item_discounts,
        family_discount_share=family_share,
        total_discount=total_discount,
        net_monthly_fee=net,
        breakdown=breakdown,
    )


def calculate_family_fees(family_id: str) -> List[FeeCalculation]:
    family = _load_family(family_id)
    gross_fees = family_gross_fees(family)
    return [
        calculate_student_monthly_fee(student.id, family_gross_fees=gross_fees)
        for student in family.students
    ]

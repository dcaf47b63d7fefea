import uuid
from datetime import datetime
from decimal import Decimal

from extensions import db


def _uuid() -> str:
    return str(uuid.uuid4())


# Exactly one of course/service must be referenced
_ONE_TARGET = "(course_id IS NULL) <> (service_id IS NULL)"


class Family(db.Model):
    __tablename__ = 'families'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255))
    phone = db.Column(db.String(20))
    # Flat monthly pool shared by all children of the family
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0.00'))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    students = db.relationship('Student', back_populates='family', order_by='Student.name')
    users = db.relationship('User', back_populates='family')

    def __repr__(self):
        return f'<Family {self.name}>'


class User(db.Model):
    __tablename__ = 'users'

    ROLE_ADMIN = 'ADMIN'
    ROLE_PARENT = 'PARENT'
    ROLE_TEACHER = 'TEACHER'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True)
    role = db.Column(db.String(20), nullable=False, default=ROLE_PARENT)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    family_id = db.Column(db.String(36), db.ForeignKey('families.id', ondelete='SET NULL'), index=True)

    family = db.relationship('Family', back_populates='users')

    def __repr__(self):
        return f'<User {self.email} ({self.role})>'


class Student(db.Model):
    __tablename__ = 'students'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(120), nullable=False)
    family_id = db.Column(db.String(36), db.ForeignKey('families.id'), nullable=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    family = db.relationship('Family', back_populates='students')
    subscriptions = db.relationship(
        'StudentSubscription', back_populates='student', cascade="all, delete-orphan"
    )
    active_subscriptions = db.relationship(
        'StudentSubscription',
        primaryjoin="and_(StudentSubscription.student_id == Student.id, "
                    "StudentSubscription.end_date.is_(None))",
        viewonly=True,
    )
    allocations = db.relationship('StudentFeeAllocation', back_populates='student')

    def __repr__(self):
        return f'<Student {self.name}>'


class Course(db.Model):
    __tablename__ = 'courses'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    fee_structure = db.relationship('FeeStructure', back_populates='course', uselist=False, cascade="all, delete")
    subscriptions = db.relationship('StudentSubscription', back_populates='course', cascade="all, delete")

    def __repr__(self):
        return f'<Course {self.name}>'


class Service(db.Model):
    __tablename__ = 'services'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text)

    fee_structure = db.relationship('FeeStructure', back_populates='service', uselist=False, cascade="all, delete")
    subscriptions = db.relationship('StudentSubscription', back_populates='service', cascade="all, delete")

    def __repr__(self):
        return f'<Service {self.name}>'


class FeeStructure(db.Model):
    __tablename__ = 'fee_structures'
    __table_args__ = (
        db.CheckConstraint(_ONE_TARGET, name='ck_fee_structures_one_target'),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    # MONTHLY / QUARTERLY / HALF_YEARLY / YEARLY, see utils.fee_cycles
    billing_cycle = db.Column(db.String(20), nullable=False, default='MONTHLY')
    course_id = db.Column(db.String(36), db.ForeignKey('courses.id', ondelete='CASCADE'), unique=True)
    service_id = db.Column(db.String(36), db.ForeignKey('services.id', ondelete='CASCADE'), unique=True)

    course = db.relationship('Course', back_populates='fee_structure')
    service = db.relationship('Service', back_populates='fee_structure')

    def __repr__(self):
        return f'<FeeStructure {self.amount} {self.billing_cycle}>'


class StudentSubscription(db.Model):
    __tablename__ = 'student_subscriptions'
    __table_args__ = (
        db.CheckConstraint(_ONE_TARGET, name='ck_student_subscriptions_one_target'),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    student_id = db.Column(db.String(36), db.ForeignKey('students.id'), nullable=False, index=True)
    course_id = db.Column(db.String(36), db.ForeignKey('courses.id', ondelete='CASCADE'))
    service_id = db.Column(db.String(36), db.ForeignKey('services.id', ondelete='CASCADE'))
    # Monthly-equivalent discount on this one item
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0.00'))
    start_date = db.Column(db.Date, nullable=False, default=lambda: datetime.utcnow().date())
    end_date = db.Column(db.Date, nullable=True)

    student = db.relationship('Student', back_populates='subscriptions')
    course = db.relationship('Course', back_populates='subscriptions')
    service = db.relationship('Service', back_populates='subscriptions')

    @property
    def is_active(self) -> bool:
        return self.end_date is None

    def __repr__(self):
        return f'<StudentSubscription StudentID={self.student_id}>'


class StudentFeeAllocation(db.Model):
    __tablename__ = 'student_fee_allocations'
    __table_args__ = (
        db.UniqueConstraint('student_id', 'month', 'year', name='uq_allocations_student_month_year'),
    )

    STATUS_PENDING = 'PENDING'
    STATUS_PAID = 'PAID'
    STATUS_OVERDUE = 'OVERDUE'
    STATUS_CANCELLED = 'CANCELLED'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    student_id = db.Column(db.String(36), db.ForeignKey('students.id'), nullable=False, index=True)
    # First day of the billed month
    month = db.Column(db.Date, nullable=False)
    year = db.Column(db.Integer, nullable=False)
    gross_amount = db.Column(db.Numeric(12, 2), nullable=False)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False)
    net_amount = db.Column(db.Numeric(12, 2), nullable=False)
    due_date = db.Column(db.Date)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING, index=True)
    paid_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    student = db.relationship('Student', back_populates='allocations')

    def to_dict(self):
        return {
            "id": self.id,
            "studentId": self.student_id,
            "studentName": self.student.name if self.student else None,
            "month": self.month.isoformat() if self.month else None,
            "year": self.year,
            "grossAmount": float(self.gross_amount or 0),
            "discountAmount": float(self.discount_amount or 0),
            "netAmount": float(self.net_amount or 0),
            "dueDate": self.due_date.isoformat() if self.due_date else None,
            "status": self.status,
            "paidDate": self.paid_date.isoformat() if self.paid_date else None,
        }

    def __repr__(self):
        return f'<StudentFeeAllocation StudentID={self.student_id} {self.month} Net={self.net_amount}>'


class Notification(db.Model):
    """Outbound message waiting for (or done with) delivery."""

    __tablename__ = 'notifications'

    STATUS_PENDING = 'PENDING'
    STATUS_SENT = 'SENT'
    STATUS_FAILED = 'FAILED'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    recipient = db.Column(db.String(255), nullable=False)
    subject = db.Column(db.String(255))
    message = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(20), nullable=False, default='email')
    priority = db.Column(db.String(10), nullable=False, default='medium')
    # 'metadata' is reserved on declarative models, expose it as payload_metadata
    payload_metadata = db.Column('metadata', db.JSON)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING, index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    sent_at = db.Column(db.DateTime)
    family_id = db.Column(db.String(36), db.ForeignKey('families.id', ondelete='SET NULL'), index=True)

    def __repr__(self):
        return f'<Notification {self.type} to={self.recipient} {self.status}>'

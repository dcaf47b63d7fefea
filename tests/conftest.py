from datetime import date
from decimal import Decimal

import pytest

from app import create_app
from config import TestingConfig
from extensions import db
from models import Course, Family, FeeStructure, Service, Student, StudentSubscription, User


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


class Factory:
    """Small helpers to build billing data; every call commits."""

    def family(self, name="Johnson Family", discount="0", parent_email=None, email=None):
        family = Family(name=name, discount_amount=Decimal(discount), email=email)
        if parent_email:
            family.users.append(User(name=f"Parent of {name}", email=parent_email, role=User.ROLE_PARENT))
        db.session.add(family)
        db.session.commit()
        return family

    def course(self, name, amount=None, cycle="MONTHLY"):
        course = Course(name=name)
        if amount is not None:
            course.fee_structure = FeeStructure(amount=Decimal(str(amount)), billing_cycle=cycle)
        db.session.add(course)
        db.session.commit()
        return course

    def service(self, name, amount=None, cycle="MONTHLY"):
        service = Service(name=name)
        if amount is not None:
            service.fee_structure = FeeStructure(amount=Decimal(str(amount)), billing_cycle=cycle)
        db.session.add(service)
        db.session.commit()
        return service

    def student(self, family, name, is_active=True):
        student = Student(name=name, family_id=family if isinstance(family, str) else family.id, is_active=is_active)
        db.session.add(student)
        db.session.commit()
        return student

    def subscribe(self, student, target, discount="0", end_date=None):
        sub = StudentSubscription(
            student_id=student.id,
            discount_amount=Decimal(discount),
            start_date=date(2024, 1, 1),
            end_date=end_date,
        )
        if isinstance(target, Course):
            sub.course_id = target.id
        else:
            sub.service_id = target.id
        db.session.add(sub)
        db.session.commit()
        return sub


@pytest.fixture
def factory(app):
    return Factory()


@pytest.fixture
def johnsons(factory):
    """Emma (9000/month) and Liam (7500/month) sharing a 500 family pool."""
    family = factory.family("Johnson Family", discount="500", parent_email="parent@johnson.example")
    maths = factory.course("Mathematics", 9000)
    art = factory.course("Art", 7500)
    emma = factory.student(family, "Emma Johnson")
    liam = factory.student(family, "Liam Johnson")
    factory.subscribe(emma, maths)
    factory.subscribe(liam, art)
    return family, emma, liam

"""
Seed demo families, subscriptions and fee structures.

Usage:

  python scripts/seed_billing.py
  python scripts/seed_billing.py --families 20 --bill 6 2024
"""
import argparse
import os
import random
import sys
from decimal import Decimal

# Ensure project root is importable when running from scripts/
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# One-off script: never start the background jobs
os.environ.setdefault("SCHEDULER_ENABLED", "0")

from app import create_app
from billing import generate_monthly_allocations
from extensions import db
from models import Course, Family, FeeStructure, Service, Student, StudentSubscription, User


FIRST_NAMES = [
    "Emma", "Liam", "Olivia", "Noah", "Ava", "Elijah", "Sophia", "James",
    "Amara", "Kofi", "Wanjiru", "Brian", "Faith", "Kevin", "Mercy", "Dennis",
]

LAST_NAMES = [
    "Johnson", "Otieno", "Mwangi", "Smith", "Kamau", "Njoroge", "Brown", "Achieng",
]

# (name, amount, cycle)
COURSES = [
    ("Mathematics", Decimal("9000"), "MONTHLY"),
    ("Science Lab", Decimal("22500"), "QUARTERLY"),
    ("Music", Decimal("45000"), "HALF_YEARLY"),
    ("Robotics Club", Decimal("90000"), "YEARLY"),
]

SERVICES = [
    ("School Bus", Decimal("3000"), "MONTHLY"),
    ("Lunch Program", Decimal("7500"), "QUARTERLY"),
]


def seed_catalog():
    courses, services = [], []
    for name, amount, cycle in COURSES:
        course = Course(name=name)
        course.fee_structure = FeeStructure(amount=amount, billing_cycle=cycle)
        db.session.add(course)
        courses.append(course)
    for name, amount, cycle in SERVICES:
        service = Service(name=name)
        service.fee_structure = FeeStructure(amount=amount, billing_cycle=cycle)
        db.session.add(service)
        services.append(service)
    db.session.flush()
    return courses, services


def seed_families(count: int, courses, services) -> int:
    students = 0
    for i in range(count):
        last = random.choice(LAST_NAMES)
        family = Family(
            name=f"{last} Family",
            email=f"{last.lower()}{i}@example.org",
            discount_amount=Decimal(random.choice([0, 0, 250, 500, 1000])),
        )
        family.users.append(User(
            name=f"Parent {last}",
            email=f"parent.{last.lower()}{i}@example.org",
            role=User.ROLE_PARENT,
        ))
        db.session.add(family)
        for _ in range(random.randint(1, 4)):
            student = Student(name=f"{random.choice(FIRST_NAMES)} {last}", family=family)
            for course in random.sample(courses, random.randint(1, 2)):
                student.subscriptions.append(StudentSubscription(course=course))
            if random.random() < 0.5:
                student.subscriptions.append(StudentSubscription(
                    service=random.choice(services),
                    discount_amount=Decimal(random.choice([0, 0, 100, 200])),
                ))
            db.session.add(student)
            students += 1
    return students


def main():
    parser = argparse.ArgumentParser(description="Seed demo billing data")
    parser.add_argument("--families", type=int, default=10, help="Number of families to create")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for repeatable data")
    parser.add_argument("--create-tables", action="store_true", help="Run db.create_all() first")
    parser.add_argument("--bill", nargs=2, type=int, metavar=("MONTH", "YEAR"),
                        help="Generate allocations for the given month after seeding")
    args = parser.parse_args()

    if args.seed is not None:
        random.seed(args.seed)

    app = create_app()
    with app.app_context():
        if args.create_tables:
            db.create_all()
        courses, services = seed_catalog()
        students = seed_families(args.families, courses, services)
        db.session.commit()
        print(f"Seeded {args.families} families with {students} students")

        if args.bill:
            month, year = args.bill
            result = generate_monthly_allocations(month, year)
            print(
                f"Billing {month}/{year}: {result.successful_bills}/{result.total_students} ok, "
                f"{result.failed_bills} failed"
            )
            for err in result.errors:
                print("  -", err)


if __name__ == "__main__":
    main()

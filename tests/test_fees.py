from datetime import date
from decimal import Decimal

import pytest

from utils.fees import (
    NotFoundError,
    calculate_family_fees,
    calculate_student_monthly_fee,
    family_discount_share,
    share_of_pool,
)


def test_single_child_gets_whole_family_pool(factory):
    family = factory.family("Johnson Family", discount="500")
    emma = factory.student(family, "Emma")
    factory.subscribe(emma, factory.course("Mathematics", 9000))

    calc = calculate_student_monthly_fee(emma.id)

    assert calc.student_name == "Emma"
    assert calc.gross_monthly_fee == Decimal("9000")
    assert calc.item_discounts == 0
    assert calc.family_discount_share == Decimal("500.00")
    assert calc.total_discount == Decimal("500.00")
    assert calc.net_monthly_fee == Decimal("8500.00")
    assert [c.name for c in calc.breakdown.courses] == ["Mathematics"]
    assert calc.breakdown.services == []


def test_family_pool_is_split_by_gross_fee(johnsons):
    family, emma, liam = johnsons

    emma_share = family_discount_share(family.id, emma.id)
    liam_share = family_discount_share(family.id, liam.id)

    assert emma_share == Decimal("272.73")
    assert liam_share == Decimal("227.27")
    assert emma_share + liam_share == Decimal("500.00")


def test_family_pool_is_conserved_within_rounding(factory):
    family = factory.family("Otieno Family", discount="100")
    course = factory.course("Swimming", 1000)
    kids = [factory.student(family, f"Kid {i}") for i in range(3)]
    for kid in kids:
        factory.subscribe(kid, course)

    shares = [family_discount_share(family.id, kid.id) for kid in kids]

    assert shares == [Decimal("33.33")] * 3
    assert abs(sum(shares) - Decimal("100")) <= Decimal("0.01") * len(kids)


def test_zero_pool_gives_no_family_share(factory):
    family = factory.family("Kamau Family", discount="0")
    kid = factory.student(family, "Amara")
    factory.subscribe(kid, factory.course("Chess", 4000))

    assert family_discount_share(family.id, kid.id) == Decimal("0.00")
    assert calculate_student_monthly_fee(kid.id).net_monthly_fee == Decimal("4000")


def test_family_without_billable_subscriptions_gets_no_share(factory):
    family = factory.family("Mwangi Family", discount="300")
    kid = factory.student(family, "Brian")
    # course has no fee structure attached
    factory.subscribe(kid, factory.course("Free Reading Hour"))

    assert family_discount_share(family.id, kid.id) == Decimal("0.00")


def test_share_of_pool_handles_student_outside_the_map():
    gross = {"a": Decimal("100"), "b": Decimal("300")}
    assert share_of_pool(Decimal("40"), gross, "b") == Decimal("30.00")
    assert share_of_pool(Decimal("40"), gross, "zzz") == Decimal("0.00")
    assert share_of_pool(Decimal("40"), {}, "a") == Decimal("0.00")


def test_net_fee_never_goes_negative(factory):
    family = factory.family("Brown Family", discount="1000")
    kid = factory.student(family, "Noah")
    factory.subscribe(kid, factory.course("Drawing", 800), discount="500")

    calc = calculate_student_monthly_fee(kid.id)

    assert calc.total_discount == Decimal("1500.00")
    assert calc.net_monthly_fee == 0


def test_cycles_and_item_discounts_are_itemised(factory):
    family = factory.family("Smith Family")
    kid = factory.student(family, "Ava")
    factory.subscribe(kid, factory.course("Music", 45000, cycle="HALF_YEARLY"), discount="250")
    factory.subscribe(kid, factory.service("Lunch Program", 7500, cycle="QUARTERLY"), discount="100")

    calc = calculate_student_monthly_fee(kid.id)

    assert calc.gross_monthly_fee == Decimal("10000")
    assert calc.item_discounts == Decimal("350")
    assert calc.net_monthly_fee == Decimal("9650")
    assert calc.breakdown.courses[0].monthly_amount == Decimal("7500")
    assert calc.breakdown.courses[0].discount == Decimal("250")
    assert calc.breakdown.services[0].name == "Lunch Program"
    assert calc.breakdown.services[0].monthly_amount == Decimal("2500")


def test_subscription_without_fee_structure_is_skipped(factory):
    family = factory.family("Achieng Family")
    kid = factory.student(family, "Faith")
    factory.subscribe(kid, factory.course("Biology", 5000))
    factory.subscribe(kid, factory.service("Library"), discount="50")

    calc = calculate_student_monthly_fee(kid.id)

    assert calc.gross_monthly_fee == Decimal("5000")
    assert calc.item_discounts == 0
    assert calc.breakdown.services == []


def test_ended_subscriptions_are_not_billed(factory):
    family = factory.family("Njoroge Family")
    kid = factory.student(family, "Kevin")
    factory.subscribe(kid, factory.course("Physics", 6000))
    factory.subscribe(kid, factory.course("Karate", 2000), end_date=date(2024, 3, 31))

    calc = calculate_student_monthly_fee(kid.id)

    assert calc.gross_monthly_fee == Decimal("6000")
    assert [c.name for c in calc.breakdown.courses] == ["Physics"]


def test_unknown_student_raises_not_found(app):
    with pytest.raises(NotFoundError):
        calculate_student_monthly_fee("does-not-exist")


def test_dangling_family_raises_not_found(factory):
    ghost = factory.student("missing-family", "Ghost")
    with pytest.raises(NotFoundError):
        calculate_student_monthly_fee(ghost.id)


def test_family_fees_cover_every_child(johnsons):
    family, emma, liam = johnsons

    calcs = calculate_family_fees(family.id)

    by_name = {c.student_name: c for c in calcs}
    assert set(by_name) == {"Emma Johnson", "Liam Johnson"}
    assert by_name["Emma Johnson"].net_monthly_fee == Decimal("8727.27")
    assert by_name["Liam Johnson"].net_monthly_fee == Decimal("7272.73")


def test_family_fees_for_unknown_family_raise(app):
    with pytest.raises(NotFoundError):
        calculate_family_fees("no-such-family")


def test_calculation_serialises_to_wire_shape(johnsons):
    _, emma, _ = johnsons
    payload = calculate_student_monthly_fee(emma.id).to_dict()
    assert payload["studentId"] == emma.id
    assert payload["grossMonthlyFee"] == 9000.0
    assert payload["familyDiscountShare"] == 272.73
    assert payload["breakdown"]["courses"][0] == {
        "id": payload["breakdown"]["courses"][0]["id"],
        "name": "Mathematics",
        "monthlyAmount": 9000.0,
        "discount": 0.0,
    }

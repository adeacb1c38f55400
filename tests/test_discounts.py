from datetime import timedelta

import pytest
from bson import ObjectId

import discounts
from carts import CartLine, CartSnapshot
from database import db, now_utc


def _line(price, quantity, categories=()):
    product = {"_id": ObjectId(), "title": f"{price}", "price": price, "category_ids": list(categories)}
    return CartLine(product=product, quantity=quantity)


def _place_order(user_id, **fields):
    doc = {"order_number": f"ORD-TEST-{ObjectId()}", "user_id": user_id, "status": "delivered", "total_price": 10}
    doc.update(fields)
    db["order"].insert_one(doc)


def _rule(discount_type, **fields):
    rule = {"_id": ObjectId(), "name": discount_type, "discount_type": discount_type, "conditions": {}}
    rule.update(fields)
    return rule


def test_buy_two_get_one_takes_cheapest_units():
    ten, five = _line(10, 3), _line(5, 3)
    snapshot = CartSnapshot(lines=[ten, five])

    amount = discounts.calculate_discount_amount(_rule("buy_x_get_y", buy_quantity=2, get_quantity=1), snapshot)

    assert amount == 15


def test_buy_x_get_y_spills_into_next_cheapest_line():
    snapshot = CartSnapshot(lines=[_line(10, 4), _line(4, 1), _line(7, 1)])

    # 6 units -> 3 free: the 4.00 unit, the 7.00 unit, then one 10.00 unit
    amount = discounts.calculate_discount_amount(_rule("buy_x_get_y", buy_quantity=2, get_quantity=1), snapshot)

    assert amount == 21


def test_buy_x_get_y_respects_product_allow_list():
    listed, unlisted = _line(10, 3), _line(1, 5)
    rule = _rule("buy_x_get_y", buy_quantity=3, get_quantity=1,
                 conditions={"applicable_products": [listed.product_id]})

    assert discounts.calculate_discount_amount(rule, CartSnapshot(lines=[listed, unlisted])) == 10


def test_buy_x_get_y_without_quantities_grants_nothing():
    snapshot = CartSnapshot(lines=[_line(10, 3)])

    assert discounts.calculate_discount_amount(_rule("buy_x_get_y", buy_quantity=0, get_quantity=1), snapshot) == 0


def test_percentage_fixed_and_free_shipping_amounts():
    snapshot = CartSnapshot(lines=[_line(25, 2)], shipping_cost=7.5)

    assert discounts.calculate_discount_amount(_rule("percentage", value=10), snapshot) == 5
    assert discounts.calculate_discount_amount(_rule("fixed_amount", value=20), snapshot) == 20
    assert discounts.calculate_discount_amount(_rule("fixed_amount", value=80), snapshot) == 50
    assert discounts.calculate_discount_amount(_rule("free_shipping"), snapshot) == 7.5


def test_best_single_beats_smaller_stack(user, make_discount):
    make_discount(name="five", value=5, stackable=True)
    make_discount(name="ten-off", discount_type="fixed_amount", value=10, stackable=True)
    big = make_discount(name="thirty", value=30)

    result = discounts.calculate_discount(CartSnapshot(lines=[_line(50, 2)]), str(user["_id"]))

    assert result["strategy"] == "single"
    assert result["total_discount"] == 30
    assert result["final_total"] == 70
    assert [a["discount_id"] for a in result["applied_discounts"]] == [str(big["_id"])]


def test_stack_beats_best_single(user, make_discount):
    make_discount(name="five", value=5, stackable=True)
    make_discount(name="ten-off", discount_type="fixed_amount", value=10, stackable=True)
    make_discount(name="twelve", value=12)

    result = discounts.calculate_discount(CartSnapshot(lines=[_line(50, 2)]), str(user["_id"]))

    assert result["strategy"] == "stacked"
    assert result["total_discount"] == 15
    assert {a["name"] for a in result["applied_discounts"]} == {"five", "ten-off"}


def test_no_applicable_rules(user, make_discount):
    make_discount(conditions={"min_order_amount": 500})

    result = discounts.calculate_discount(CartSnapshot(lines=[_line(50, 1)]), str(user["_id"]))

    assert result == {"applied_discounts": [], "strategy": None, "total_discount": 0.0, "final_total": 50}


def test_final_total_never_negative(user, make_discount):
    make_discount(discount_type="free_shipping")

    result = discounts.calculate_discount(CartSnapshot(lines=[_line(3, 1)], shipping_cost=9), str(user["_id"]))

    assert result["total_discount"] == 9
    assert result["final_total"] == 0


@pytest.mark.parametrize("overrides", [
    {"is_active": False},
    {"end_date": now_utc() - timedelta(hours=1)},
    {"start_date": now_utc() + timedelta(days=2)},
    {"max_usage": 2, "usage_count": 2},
])
def test_inactive_rules_are_not_loaded(make_discount, overrides):
    make_discount(**overrides)

    assert discounts.active_discounts() == []


def test_active_rules_sorted_by_priority_then_value(make_discount):
    make_discount(name="low", priority=0, value=50)
    make_discount(name="high-small", priority=5, value=5)
    make_discount(name="high-big", priority=5, value=15)

    assert [d["name"] for d in discounts.active_discounts()] == ["high-big", "high-small", "low"]


def test_order_amount_bounds(user, make_discount):
    rule = make_discount(conditions={"min_order_amount": 20, "max_order_amount": 100})
    uid = str(user["_id"])

    assert not discounts.is_discount_applicable(rule, CartSnapshot(lines=[_line(10, 1)]), uid)
    assert discounts.is_discount_applicable(rule, CartSnapshot(lines=[_line(50, 1)]), uid)
    assert not discounts.is_discount_applicable(rule, CartSnapshot(lines=[_line(150, 1)]), uid)


def test_product_and_category_allow_lists(user, make_discount):
    line = _line(10, 1, categories=["garden"])
    uid = str(user["_id"])
    by_product = make_discount(conditions={"applicable_products": [line.product_id]})
    other_product = make_discount(conditions={"applicable_products": [str(ObjectId())]})
    by_category = make_discount(conditions={"applicable_categories": ["garden", "tools"]})
    other_category = make_discount(conditions={"applicable_categories": ["kitchen"]})
    snapshot = CartSnapshot(lines=[line])

    assert discounts.is_discount_applicable(by_product, snapshot, uid)
    assert not discounts.is_discount_applicable(other_product, snapshot, uid)
    assert discounts.is_discount_applicable(by_category, snapshot, uid)
    assert not discounts.is_discount_applicable(other_category, snapshot, uid)


def test_first_time_only_ignores_cancelled_orders(user, make_discount):
    rule = make_discount(conditions={"first_time_only": True})
    uid = str(user["_id"])
    snapshot = CartSnapshot(lines=[_line(10, 1)])

    _place_order(uid, status="cancelled", total_price=10)
    assert discounts.is_discount_applicable(rule, snapshot, uid)

    _place_order(uid, status="delivered", total_price=10)
    assert not discounts.is_discount_applicable(rule, snapshot, uid)


def test_max_usage_per_customer_counts_orders_referencing_rule(user, make_discount):
    rule = make_discount(conditions={"max_usage_per_customer": 2})
    uid = str(user["_id"])
    snapshot = CartSnapshot(lines=[_line(10, 1)])
    applied = [{"discount_id": str(rule["_id"]), "name": "Rule", "amount": 1}]

    _place_order(uid, status="pending", applied_discounts=applied)
    assert discounts.is_discount_applicable(rule, snapshot, uid)

    _place_order(uid, status="delivered", applied_discounts=applied)
    assert not discounts.is_discount_applicable(rule, snapshot, uid)


def test_customer_segments(make_user, make_discount):
    newcomer, regular, big_spender = make_user(), make_user(), make_user()
    _place_order(str(regular["_id"]), status="delivered", total_price=40)
    _place_order(str(big_spender["_id"]), status="delivered", total_price=1200)
    vip_rule = make_discount(conditions={"customer_segments": ["vip_customer"]})
    new_rule = make_discount(conditions={"customer_segments": ["new_customer"]})
    bulk_rule = make_discount(conditions={"customer_segments": ["bulk_buyer"]})
    small = CartSnapshot(lines=[_line(10, 1)])
    bulk = CartSnapshot(lines=[_line(1, 12)])

    assert discounts.is_discount_applicable(new_rule, small, str(newcomer["_id"]))
    assert not discounts.is_discount_applicable(new_rule, small, str(regular["_id"]))
    assert discounts.is_discount_applicable(vip_rule, small, str(big_spender["_id"]))
    assert not discounts.is_discount_applicable(vip_rule, small, str(regular["_id"]))
    assert discounts.is_discount_applicable(bulk_rule, bulk, str(regular["_id"]))
    assert not discounts.is_discount_applicable(bulk_rule, small, str(regular["_id"]))


def test_record_usage_respects_max_usage(make_discount):
    rule = make_discount(max_usage=1)

    assert discounts.record_usage(str(rule["_id"])) is True
    assert discounts.record_usage(str(rule["_id"])) is False

    discounts.release_usage(str(rule["_id"]))
    assert db["discount"].find_one({"_id": rule["_id"]})["usage_count"] == 0


def test_validate_discount_errors():
    now = now_utc()
    assert discounts.validate_discount({
        "discount_type": "percentage", "value": 150, "start_date": now, "end_date": now,
    }) == ["End date must be after start date", "Percentage discount must be between 1 and 100"]
    assert discounts.validate_discount({
        "discount_type": "buy_x_get_y", "buy_quantity": 0, "get_quantity": None,
        "start_date": now, "end_date": now + timedelta(days=1),
    }) == ["Buy quantity must be greater than 0", "Get quantity must be greater than 0"]
    assert discounts.validate_discount({
        "discount_type": "fixed_amount", "value": 5,
        "start_date": now, "end_date": now + timedelta(days=1),
    }) == []

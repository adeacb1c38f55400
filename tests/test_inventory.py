import pytest

import inventory
from database import db
from errors import InsufficientStock, NotFound, ValidationFailed


def test_reserve_never_goes_negative(make_product):
    p = make_product(inventory=3)

    assert inventory.reserve_stock(p, 2) == 1
    with pytest.raises(InsufficientStock):
        inventory.reserve_stock(p, 2)
    assert inventory.reserve_stock(p, 1) == 0
    with pytest.raises(InsufficientStock):
        inventory.reserve_stock(p, 1)

    assert db["product"].find_one({"_id": p["_id"]})["inventory"] == 0


def test_reserve_and_release_are_logged(make_product):
    p = make_product(inventory=5)

    inventory.reserve_stock(p, 2, order_ref="o-1", user_id="u-1")
    assert inventory.release_stock(str(p["_id"]), 2, "Order cancelled", "o-1", "u-1") == 5

    sold, returned = sorted(db["inventory_log"].find({"order_id": "o-1"}), key=lambda log: log["change_type"],
                            reverse=True)
    assert (sold["change_type"], sold["previous_quantity"], sold["new_quantity"]) == ("sold", 5, 3)
    assert (returned["change_type"], returned["previous_quantity"], returned["new_quantity"]) == ("returned", 3, 5)
    assert returned["reason"] == "Order cancelled"


def test_release_ignores_untracked_products(make_product):
    p = make_product(track_inventory=False, inventory=0)

    assert inventory.release_stock(str(p["_id"]), 3, "Order cancelled") is None
    assert db["product"].find_one({"_id": p["_id"]})["inventory"] == 0


def test_adjust_stock(admin, make_product):
    p = make_product(inventory=4)
    pid = str(p["_id"])

    up = inventory.adjust_stock(pid, 6, "Restock", user_id=str(admin["_id"]), notes="PO-77")
    assert up == {"product_id": pid, "previous_quantity": 4, "new_quantity": 10, "adjustment": 6}

    down = inventory.adjust_stock(pid, -10, "Shrinkage")
    assert down["new_quantity"] == 0

    with pytest.raises(InsufficientStock):
        inventory.adjust_stock(pid, -1, "Shrinkage")
    with pytest.raises(ValidationFailed):
        inventory.adjust_stock(pid, 0, "Nothing")
    with pytest.raises(NotFound):
        inventory.adjust_stock("000000000000000000000000", 1, "Restock")

    logs = inventory.inventory_logs(product_id=pid, change_type="adjustment")
    assert logs["total"] == 2
    assert {log["quantity"] for log in logs["items"]} == {6, 10}


def test_inventory_stats(make_product):
    make_product(price=2, inventory=0)
    make_product(price=5, inventory=3)
    make_product(price=1, inventory=50)
    make_product(price=9, inventory=0, track_inventory=False)
    make_product(price=100, inventory=1, is_active=False)

    stats = inventory.inventory_stats(threshold=5)

    assert len(stats["out_of_stock_products"]) == 1
    assert [p["inventory"] for p in stats["low_stock_products"]] == [3]
    assert stats["stats"] == {"total_value": 65, "total_products": 4, "total_quantity": 53}

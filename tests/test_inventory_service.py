"""Stock reservation and delivery."""

import pytest

from app.core.exceptions import BadRequestError, InsufficientStockError, ProductNotFoundError
from app.models.product import CounterInventory, ListInventory, Product
from app.services import inventory

pytestmark = pytest.mark.asyncio


async def test_flat_records_map_onto_inventory():
    listed = Product.model_validate({"key": "a", "title": "A", "price": 1, "entries": ["x", "y"]})
    counted = Product.model_validate({"key": "b", "title": "B", "price": 1, "stock": 4})
    assert isinstance(listed.inventory, ListInventory) and listed.stock == 2
    assert isinstance(counted.inventory, CounterInventory) and counted.stock == 4
    assert not counted.list_backed


async def test_reserve_limits_by_available(store, netflix):
    await inventory.reserve(store, "netflix", 2)
    with pytest.raises(InsufficientStockError) as exc:
        await inventory.reserve(store, "netflix", 2)
    assert exc.value.details["available"] == 1
    product = await inventory.get_product(store, "netflix")
    assert (product.stock, product.reserved, product.available) == (3, 2, 1)


async def test_take_from_reservation_pops_in_order(store, netflix):
    await inventory.reserve(store, "netflix", 2)
    product, items = await inventory.take(store, "netflix", 2)
    assert items == ["acc-1", "acc-2"]
    assert product.stock == 1 and product.reserved == 0
    # list-backed: stock is always the number of remaining items
    assert product.stock == len(product.inventory.items)


async def test_counter_take_returns_no_items(store, spotify):
    remaining = await inventory.decrement_stock(store, "spotify", 2, reserved=False)
    assert remaining == 3
    with pytest.raises(BadRequestError):
        await inventory.pop_items(store, "spotify", 1)


async def test_unreserved_take_respects_other_reservations(store, netflix):
    await inventory.reserve(store, "netflix", 2)
    with pytest.raises(InsufficientStockError):
        await inventory.take(store, "netflix", 2, reserved=False)


async def test_release_missing_product_is_noop(store):
    assert await inventory.release(store, "gone", 1) is None


async def test_save_product_keeps_reservations(store, netflix):
    await inventory.reserve(store, "netflix", 1)
    product = await inventory.save_product(store, "netflix", "Netflix 4K", 30000, items=["n1", "n2"])
    assert product.reserved == 1
    assert product.available == 1


async def test_add_items_and_remove(store, netflix, spotify):
    product = await inventory.add_items(store, "netflix", ["acc-4"])
    assert product.stock == 4
    with pytest.raises(BadRequestError):
        await inventory.add_items(store, "spotify", ["x"])
    await inventory.remove_product(store, "spotify")
    assert [p.key for p in await inventory.list_products(store)] == ["netflix"]
    with pytest.raises(ProductNotFoundError):
        await inventory.remove_product(store, "spotify")

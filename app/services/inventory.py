"""Product catalog and stock. Every stock change is a compare-and-swap on the product record."""

from app.core.exceptions import BadRequestError, InsufficientStockError, ProductNotFoundError
from app.core.logging import get_logger
from app.models.product import CounterInventory, ListInventory, Product
from app.storage import keys
from app.storage.base import KeyValueStore

log = get_logger(__name__)


async def get_product(store: KeyValueStore, product_key: str) -> Product | None:
    doc = await store.get(keys.product(product_key))
    return Product.model_validate(doc) if doc else None


async def list_products(store: KeyValueStore) -> list[Product]:
    products = []
    for key in sorted(await store.keys(keys.PRODUCT)):
        doc = await store.get(key)
        if doc:
            products.append(Product.model_validate(doc))
    return products


async def _mutate_product(store: KeyValueStore, product_key: str, change) -> Product:
    """Apply `change(product)` atomically; it may raise to abort."""

    def mutate(doc):
        if doc is None:
            raise ProductNotFoundError(product_key)
        product = Product.model_validate(doc)
        change(product)
        product.version += 1
        return product.model_dump(mode="json")

    return Product.model_validate(await store.update(keys.product(product_key), mutate))


async def reserve(store: KeyValueStore, product_key: str, qty: int) -> Product:
    """Hold qty units for an open purchase invoice."""

    def change(product: Product) -> None:
        if qty > product.available:
            raise InsufficientStockError(product_key, qty, product.available)
        product.reserved += qty

    product = await _mutate_product(store, product_key, change)
    log.info("stock_reserved", product_key=product_key, qty=qty, reserved=product.reserved, stock=product.stock)
    return product


async def release(store: KeyValueStore, product_key: str, qty: int) -> Product | None:
    """Return a reservation. A product removed in the meantime has nothing to release."""

    def change(product: Product) -> None:
        product.reserved = max(0, product.reserved - qty)

    try:
        return await _mutate_product(store, product_key, change)
    except ProductNotFoundError:
        log.warning("stock_release_missing_product", product_key=product_key, qty=qty)
        return None


async def take(store: KeyValueStore, product_key: str, qty: int, reserved: bool = True) -> tuple[Product, list[str]]:
    """
    Remove qty units from stock and return the delivered items (empty for counter-backed
    products). With reserved=True the units come out of an existing reservation.
    """
    taken: list[str] = []

    def change(product: Product) -> None:
        if qty > product.stock or (not reserved and qty > product.available):
            raise InsufficientStockError(product_key, qty, product.stock if reserved else product.available)
        taken[:] = product.inventory.take(qty)
        if reserved:
            product.reserved = max(0, product.reserved - qty)

    product = await _mutate_product(store, product_key, change)
    log.info("stock_taken", product_key=product_key, qty=qty, remaining=product.stock)
    return product, taken


async def pop_items(store: KeyValueStore, product_key: str, qty: int, reserved: bool = True) -> list[str]:
    product = await get_product(store, product_key)
    if product is None:
        raise ProductNotFoundError(product_key)
    if not product.list_backed:
        raise BadRequestError("Product is not list-backed", details={"product_key": product_key})
    _, items = await take(store, product_key, qty, reserved=reserved)
    return items


async def decrement_stock(store: KeyValueStore, product_key: str, qty: int, reserved: bool = True) -> int:
    """Returns remaining stock."""
    product = await get_product(store, product_key)
    if product is None:
        raise ProductNotFoundError(product_key)
    if product.list_backed:
        raise BadRequestError("Product is list-backed; pop its items instead", details={"product_key": product_key})
    product, _ = await take(store, product_key, qty, reserved=reserved)
    return product.stock


# Operator mutations


async def save_product(
    store: KeyValueStore,
    product_key: str,
    title: str,
    price: int,
    description: str = "",
    items: list[str] | None = None,
    stock: int | None = None,
) -> Product:
    """Create or replace a product; open reservations are carried over."""
    if items is not None:
        inventory = ListInventory(items=items)
    else:
        inventory = CounterInventory(stock=stock or 0)

    def mutate(doc):
        previous = Product.model_validate(doc) if doc else None
        product = Product(
            key=product_key,
            title=title,
            price=price,
            description=description,
            inventory=inventory,
            reserved=previous.reserved if previous else 0,
            version=previous.version + 1 if previous else 0,
        )
        return product.model_dump(mode="json")

    product = Product.model_validate(await store.update(keys.product(product_key), mutate))
    log.info("product_saved", product_key=product_key, stock=product.stock, mode=product.inventory.mode)
    return product


async def add_items(store: KeyValueStore, product_key: str, items: list[str]) -> Product:
    def change(product: Product) -> None:
        if not product.list_backed:
            raise BadRequestError("Product is not list-backed", details={"product_key": product_key})
        product.inventory.items.extend(items)

    return await _mutate_product(store, product_key, change)


async def remove_product(store: KeyValueStore, product_key: str) -> None:
    if await get_product(store, product_key) is None:
        raise ProductNotFoundError(product_key)
    await store.delete(keys.product(product_key))
    log.info("product_removed", product_key=product_key)

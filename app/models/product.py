from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, model_validator


class ListInventory(BaseModel):
    """Consumable list of unique items (account credentials, codes)."""
    mode: Literal["list"] = "list"
    items: list[str] = Field(default_factory=list)

    @property
    def stock(self) -> int:
        return len(self.items)

    def take(self, qty: int) -> list[str]:
        taken, self.items = self.items[:qty], self.items[qty:]
        return taken


class CounterInventory(BaseModel):
    """Plain counter; delivery is done by an operator."""
    mode: Literal["counter"] = "counter"
    stock: int = Field(default=0, ge=0)

    def take(self, qty: int) -> list[str]:
        self.stock -= qty
        return []


Inventory = Annotated[Union[ListInventory, CounterInventory], Field(discriminator="mode")]


class Product(BaseModel):
    key: str
    title: str
    price: int = Field(ge=0)
    description: str = ""
    inventory: Inventory = Field(default_factory=ListInventory)
    reserved: int = Field(default=0, ge=0)  # units held by open purchase invoices
    version: int = 0

    @model_validator(mode="before")
    @classmethod
    def _resolve_inventory(cls, data: Any) -> Any:
        """Map flat records (`items`/`entries` list or numeric `stock`) onto the inventory union."""
        if not isinstance(data, dict) or "inventory" in data:
            return data
        data = dict(data)
        items = data.pop("items", None)
        if items is None:
            items = data.pop("entries", None)
        stock = data.pop("stock", None)
        if isinstance(items, list):
            data["inventory"] = {"mode": "list", "items": [str(i) for i in items]}
        elif stock is not None:
            data["inventory"] = {"mode": "counter", "stock": max(0, int(stock))}
        return data

    @property
    def stock(self) -> int:
        return self.inventory.stock

    @property
    def available(self) -> int:
        return max(0, self.stock - self.reserved)

    @property
    def list_backed(self) -> bool:
        return isinstance(self.inventory, ListInventory)

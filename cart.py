"""
Cart and pricing

The cart is an ordered list of line items kept on the client side. It is
serialized as a JSON array under a fixed key in a string key/value store
(browser local storage in the original client). Every mutation writes the
whole cart back and the last write wins.
"""
import json
import logging
from typing import List, Optional

from pydantic import BaseModel, ValidationError

from gateway import MarketGateway
from schemas import Product

logger = logging.getLogger("farmmarket.cart")

CART_STORAGE_KEY = "market_cart"

FREE_DELIVERY_THRESHOLD = 100
REDUCED_DELIVERY_THRESHOLD = 50
REDUCED_DELIVERY_FEE = 15
STANDARD_DELIVERY_FEE = 25


def delivery_fee(subtotal: float) -> float:
    if subtotal >= FREE_DELIVERY_THRESHOLD:
        return 0
    if subtotal >= REDUCED_DELIVERY_THRESHOLD:
        return REDUCED_DELIVERY_FEE
    return STANDARD_DELIVERY_FEE


class CartItem(BaseModel):
    product_id: str
    product_name: str
    product_image: Optional[str] = None
    quantity: int
    price_per_item: float

    @property
    def line_total(self) -> float:
        return self.quantity * self.price_per_item


class CartStore:
    """String key/value storage scoped to one client."""

    def __init__(self, gateway: MarketGateway, client_id: str):
        self.gateway = gateway
        self.client_id = client_id

    def get_item(self, key: str) -> Optional[str]:
        return self.gateway.get_client_value(self.client_id, key)

    def set_item(self, key: str, value: str) -> None:
        self.gateway.set_client_value(self.client_id, key, value)


class Cart:
    def __init__(self, store: Optional[CartStore] = None, items: Optional[List[CartItem]] = None):
        self.store = store
        self.items: List[CartItem] = list(items or [])

    @classmethod
    def load(cls, store: CartStore) -> "Cart":
        raw = store.get_item(CART_STORAGE_KEY)
        if not raw:
            return cls(store)
        try:
            items = [CartItem.model_validate(i) for i in json.loads(raw)]
        except (ValueError, TypeError, ValidationError):
            logger.exception("cart_parse_failed client_id=%s", store.client_id)
            return cls(store)
        return cls(store, items)

    def save(self) -> None:
        if self.store is None:
            return
        self.store.set_item(CART_STORAGE_KEY, json.dumps([i.model_dump() for i in self.items]))

    def find(self, product_id: str) -> Optional[CartItem]:
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None

    def add(self, product: Product, quantity: int) -> None:
        if quantity <= 0:
            return
        existing = self.find(product.id)
        if existing:
            self.set_quantity(product.id, existing.quantity + quantity)
            return
        self.items.append(CartItem(
            product_id=product.id,
            product_name=product.name,
            product_image=product.image_url,
            quantity=quantity,
            price_per_item=product.price,
        ))
        self.save()

    def remove(self, product_id: str) -> None:
        self.items = [i for i in self.items if i.product_id != product_id]
        self.save()

    def set_quantity(self, product_id: str, quantity: int) -> None:
        if quantity <= 0:
            self.remove(product_id)
            return
        item = self.find(product_id)
        if item is None:
            return
        item.quantity = quantity
        self.save()

    def clear(self) -> None:
        self.items = []
        self.save()

    def is_empty(self) -> bool:
        return not self.items

    @property
    def total_items(self) -> int:
        return sum(i.quantity for i in self.items)

    @property
    def total_price(self) -> float:
        return sum(i.line_total for i in self.items)

    def summary(self) -> dict:
        subtotal = self.total_price
        fee = delivery_fee(subtotal) if self.items else 0
        return {
            "items": [{**i.model_dump(), "line_total": i.line_total} for i in self.items],
            "total_items": self.total_items,
            "total_price": subtotal,
            "delivery_fee": fee,
            "total": subtotal + fee,
        }

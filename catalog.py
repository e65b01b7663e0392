"""
Catalog query and filter engine

The shopper-facing catalog is every product with stock left, newest first,
with the farm name and the farm owner's username joined in. Filtering by
category and free text happens in memory over that list.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from errors import AuthorizationError, NotFoundError
from gateway import MarketGateway
from identity import Session, require_farmer
from schemas import Product

logger = logging.getLogger("farmmarket.catalog")

ALL_CATEGORIES = "all"

STATE_OK = "ok"
STATE_ERROR = "error"
STATE_NO_PRODUCTS = "no_products"
STATE_NO_MATCHES = "no_matches"


@dataclass
class CatalogView:
    state: str
    products: List[Product] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    filtered: List[Product] = field(default_factory=list)
    category: str = ALL_CATEGORIES
    query: str = ""
    message: Optional[str] = None


def fetch_products(gateway: MarketGateway) -> List[Product]:
    rows = gateway.list_in_stock_products()
    farmers = gateway.get_farmers({r.get("farmer_id", "") for r in rows})
    owners = gateway.get_users({f.user_id for f in farmers.values()})

    products = []
    for row in rows:
        farmer = farmers.get(row.get("farmer_id", ""))
        owner = owners.get(farmer.user_id) if farmer else None
        products.append(Product.from_row(
            row,
            farm_name=farmer.farm_name if farmer else None,
            farmer_name=owner.username if owner else None,
        ))
    return products


def categories_of(products: List[Product]) -> List[str]:
    # dict keeps first-seen order
    return list(dict.fromkeys(p.category for p in products))


def matches_query(product: Product, query: str) -> bool:
    q = query.lower()
    return (
        q in product.name.lower()
        or q in product.description.lower()
        or q in (product.farm_name or "").lower()
    )


def filter_products(products: List[Product], category: Optional[str] = None, query: Optional[str] = None) -> List[Product]:
    filtered = products
    if category and category != ALL_CATEGORIES:
        filtered = [p for p in filtered if p.category == category]
    if query and query.strip():
        filtered = [p for p in filtered if matches_query(p, query)]
    return filtered


def build_catalog(gateway: MarketGateway, category: Optional[str] = None, query: Optional[str] = None) -> CatalogView:
    category = category or ALL_CATEGORIES
    query = query or ""
    try:
        products = fetch_products(gateway)
    except Exception:
        logger.exception("catalog_fetch_failed")
        return CatalogView(
            state=STATE_ERROR,
            category=category,
            query=query,
            message="We couldn't load products right now. Please try again later.",
        )

    filtered = filter_products(products, category, query)
    if not products:
        state = STATE_NO_PRODUCTS
    elif not filtered:
        state = STATE_NO_MATCHES
    else:
        state = STATE_OK
    return CatalogView(
        state=state,
        products=products,
        categories=categories_of(products),
        filtered=filtered,
        category=category,
        query=query,
    )


def get_product_detail(gateway: MarketGateway, product_id: str) -> Product:
    product = gateway.get_product(product_id)
    if product is None:
        raise NotFoundError("Product not found")
    return product


# -----------------------------
# Farmer's own products
# -----------------------------

def list_own_products(gateway: MarketGateway, session: Session) -> List[Product]:
    require_farmer(session)
    if session.farmer is None:
        return []
    return gateway.list_farmer_products(session.farmer.id)


def delete_own_product(gateway: MarketGateway, session: Session, product_id: str) -> None:
    require_farmer(session)
    product = gateway.get_product(product_id)
    if product is None:
        raise NotFoundError("Product not found")
    if session.farmer is None or product.farmer_id != session.farmer.id:
        raise AuthorizationError("You can only delete your own products")
    gateway.delete_product(product_id)
    logger.info("product_deleted product_id=%s farmer_id=%s", product_id, session.farmer.id)

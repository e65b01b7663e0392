"""
Product creation, single and bulk

Creation resolves the caller's farmer profile, creating it if this is the
caller's first product, and then inserts the product rows.
"""
import logging
from typing import Any, Dict, List

from pydantic import ValidationError

from errors import ValidationFailed
from gateway import MarketGateway
from identity import Session, ensure_farmer_profile, require_farmer
from schemas import Product, Products

logger = logging.getLogger("farmmarket.products")

BULK_REQUIRED_FIELDS = ("name", "description", "price", "stock_level", "category", "unit")


def _to_row(fields: Dict[str, Any], farmer_id: str) -> Products:
    return Products(
        name=fields["name"].strip(),
        description=(fields.get("description") or "").strip(),
        price=fields["price"],
        stock_level=fields["stock_level"],
        farmer_id=farmer_id,
        image_url=fields.get("image_url") or None,
        category=(fields.get("category") or "").strip() or "Uncategorized",
        is_organic=bool(fields.get("is_organic")),
        unit=(fields.get("unit") or "").strip() or "each",
    )


def validate_entry(fields: Dict[str, Any], required=("name", "price", "stock_level")) -> Dict[str, str]:
    errors = {}
    for key in required:
        value = fields.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors[key] = f"{key.replace('_', ' ').capitalize()} is required"
    price = fields.get("price")
    if "price" not in errors and price is not None and float(price) <= 0:
        errors["price"] = "Price must be greater than zero"
    stock = fields.get("stock_level")
    if "stock_level" not in errors and stock is not None and int(stock) < 0:
        errors["stock_level"] = "Stock level cannot be negative"
    return errors


def create_product(gateway: MarketGateway, session: Session, fields: Dict[str, Any]) -> Product:
    require_farmer(session)
    errors = validate_entry(fields)
    if errors:
        raise ValidationFailed("Please fill in all required fields", errors)

    farmer_id = ensure_farmer_profile(gateway, session.user_id)
    try:
        row = _to_row(fields, farmer_id)
    except ValidationError as e:
        raise ValidationFailed("Invalid product details") from e
    product = gateway.insert_product(row)
    logger.info("product_created product_id=%s farmer_id=%s", product.id, farmer_id)
    return product


def create_products_bulk(gateway: MarketGateway, session: Session, entries: List[Dict[str, Any]]) -> List[Product]:
    require_farmer(session)
    if not entries:
        raise ValidationFailed("Add at least one product")

    errors = {}
    for index, fields in enumerate(entries):
        for key, msg in validate_entry(fields, BULK_REQUIRED_FIELDS).items():
            errors[f"{index}-{key}"] = msg
    if errors:
        raise ValidationFailed("Please fill in all required fields for all products", errors)

    farmer_id = ensure_farmer_profile(gateway, session.user_id)
    try:
        rows = [_to_row(fields, farmer_id) for fields in entries]
    except ValidationError as e:
        raise ValidationFailed("Invalid product details") from e
    created = gateway.insert_products(rows)
    logger.info("products_bulk_created count=%s farmer_id=%s", len(created), farmer_id)
    return created

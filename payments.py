"""
Hosted payment sessions

Creates a Stripe Checkout Session for an order and hands back the redirect
URL. Without STRIPE_SECRET_KEY a local mock session URL is returned so the
rest of the checkout can run end to end.
"""
import logging
import os
from typing import Dict, List, Optional

import requests
from bson import ObjectId
from pydantic import BaseModel, Field

from errors import MarketError

logger = logging.getLogger("farmmarket.payments")

STRIPE_API_URL = "https://api.stripe.com/v1/checkout/sessions"
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "bwp")
APP_ORIGIN = os.getenv("APP_ORIGIN", "http://localhost:5173")


class PaymentError(MarketError):
    pass


class PaymentLineItem(BaseModel):
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)


class PaymentSessionRequest(BaseModel):
    order_id: str
    amount: int = Field(..., ge=0, description="Total in minor units")
    currency: str = PAYMENT_CURRENCY
    order_items: List[PaymentLineItem]
    delivery_fee: float = 0
    delivery_address: str
    contact_number: str
    order_notes: Optional[str] = None


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def session_form(req: PaymentSessionRequest, origin: str) -> Dict[str, str]:
    """Flatten a session request into Stripe's form-encoded parameters."""
    lines = [(i.name, i.quantity, i.price) for i in req.order_items]
    if req.delivery_fee > 0:
        lines.append(("Delivery Fee", 1, req.delivery_fee))

    form = {
        "mode": "payment",
        "payment_method_types[0]": "card",
        "success_url": f"{origin}/payment-success?session_id={{CHECKOUT_SESSION_ID}}&order_id={req.order_id}",
        "cancel_url": f"{origin}/checkout",
        "client_reference_id": req.order_id,
        "metadata[orderId]": req.order_id,
        "metadata[deliveryAddress]": req.delivery_address,
        "metadata[contactNumber]": req.contact_number,
        "metadata[orderNotes]": req.order_notes or "",
    }
    for n, (name, quantity, price) in enumerate(lines):
        prefix = f"line_items[{n}]"
        form[f"{prefix}[price_data][currency]"] = req.currency
        form[f"{prefix}[price_data][product_data][name]"] = name
        form[f"{prefix}[price_data][unit_amount]"] = str(to_minor_units(price))
        form[f"{prefix}[quantity]"] = str(quantity)
    return form


class PaymentClient:
    def __init__(self, secret_key: Optional[str] = None, api_url: str = STRIPE_API_URL, timeout: int = 10):
        self.secret_key = secret_key
        self.api_url = api_url
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "PaymentClient":
        return cls(secret_key=os.getenv("STRIPE_SECRET_KEY"))

    def create_session(self, req: PaymentSessionRequest, origin: Optional[str] = None) -> str:
        origin = (origin or APP_ORIGIN).rstrip("/")

        if not self.secret_key:
            # Fallback mock (for local without keys)
            session_id = f"cs_test_mock_{ObjectId()}"
            logger.warning("payment_session_mocked order_id=%s", req.order_id)
            return f"{origin}/payment-success?session_id={session_id}&order_id={req.order_id}"

        try:
            resp = requests.post(
                self.api_url,
                auth=(self.secret_key, ""),
                data=session_form(req, origin),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.exception("payment_session_request_failed order_id=%s", req.order_id)
            raise PaymentError("Failed to create payment session") from e

        if resp.status_code >= 300:
            logger.error("payment_session_rejected order_id=%s status=%s body=%s", req.order_id, resp.status_code, resp.text[:500])
            raise PaymentError("Failed to create payment session")

        url = resp.json().get("url")
        if not url:
            raise PaymentError("No payment URL received")
        logger.info("payment_session_created order_id=%s", req.order_id)
        return url

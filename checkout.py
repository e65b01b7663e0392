"""
Checkout and order orchestration

place_order turns a non-empty cart plus delivery details into a pending
order, its order items and a hosted payment session, strictly in that order.
A failure at any step leaves earlier rows in place; expire_stale_orders
cancels pending orders that never received a payment.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from cart import Cart, delivery_fee
from database import utcnow
from errors import AuthorizationError, MarketError, NotFoundError, ValidationFailed
from gateway import MarketGateway
from identity import Session, ensure_consumer_profile, require_consumer
from payments import PaymentClient, PaymentLineItem, PaymentSessionRequest, to_minor_units
from schemas import Order, OrderItems, Orders, Payments

logger = logging.getLogger("farmmarket.checkout")

ORDER_FAILED_MESSAGE = "Failed to place order. Please try again."
MIN_ORDER_AGE_MINUTES = 30


class CheckoutState(str, enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    CREATING_ORDER = "creating_order"
    CREATING_ORDER_ITEMS = "creating_order_items"
    REQUESTING_PAYMENT_SESSION = "requesting_payment_session"
    REDIRECTING = "redirecting"


class EmptyCartError(MarketError):
    pass


class OrderConflictError(MarketError):
    pass


class CheckoutValidationError(ValidationFailed):
    pass


class CheckoutError(MarketError):
    def __init__(self, message: str = ORDER_FAILED_MESSAGE, step: Optional[CheckoutState] = None, order_id: Optional[str] = None):
        super().__init__(message)
        self.step = step
        self.order_id = order_id


@dataclass
class DeliveryDetails:
    delivery_address: str
    contact_number: str
    order_notes: Optional[str] = None

    def validate(self) -> Dict[str, str]:
        errors = {}
        if not (self.delivery_address or "").strip():
            errors["delivery_address"] = "Please provide a delivery address"
        if not (self.contact_number or "").strip():
            errors["contact_number"] = "Please provide a contact number"
        return errors


@dataclass
class CheckoutResult:
    order_id: str
    url: str
    subtotal: float
    delivery_fee: float
    total: float


class CheckoutOrchestrator:
    def __init__(self, gateway: MarketGateway, payment_client: PaymentClient):
        self.gateway = gateway
        self.payment_client = payment_client
        self.state = CheckoutState.IDLE
        self.order_id: Optional[str] = None

    def _enter(self, state: CheckoutState) -> None:
        self.state = state
        logger.info("checkout_state state=%s order_id=%s", state.value, self.order_id)

    def place_order(self, cart: Cart, session: Session, details: DeliveryDetails, origin: Optional[str] = None) -> CheckoutResult:
        if cart.is_empty():
            raise EmptyCartError("Your cart is empty")
        require_consumer(session)

        self.order_id = None
        self._enter(CheckoutState.VALIDATING)
        errors = details.validate()
        if errors:
            self._enter(CheckoutState.IDLE)
            raise CheckoutValidationError("Missing information", errors)

        subtotal = cart.total_price
        fee = delivery_fee(subtotal)
        total = subtotal + fee

        step = CheckoutState.CREATING_ORDER
        try:
            consumer_id = ensure_consumer_profile(self.gateway, session.user_id)

            self._enter(CheckoutState.CREATING_ORDER)
            self.order_id = self.gateway.insert_order(Orders(
                consumer_id=consumer_id,
                order_date=utcnow(),
                total_price=total,
                status="pending",
            ))

            step = CheckoutState.CREATING_ORDER_ITEMS
            self._enter(step)
            self.gateway.insert_order_items([
                OrderItems(
                    order_id=self.order_id,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    price_per_item=item.price_per_item,
                )
                for item in cart.items
            ])

            step = CheckoutState.REQUESTING_PAYMENT_SESSION
            self._enter(step)
            url = self.payment_client.create_session(PaymentSessionRequest(
                order_id=self.order_id,
                amount=to_minor_units(total),
                order_items=[
                    PaymentLineItem(name=i.product_name, quantity=i.quantity, price=i.price_per_item)
                    for i in cart.items
                ],
                delivery_fee=fee,
                delivery_address=details.delivery_address.strip(),
                contact_number=details.contact_number.strip(),
                order_notes=details.order_notes,
            ), origin)
        except Exception as e:
            logger.exception("checkout_failed step=%s order_id=%s", step.value, self.order_id)
            if self.order_id:
                logger.warning("checkout_orphaned_order order_id=%s", self.order_id)
            failed_order = self.order_id
            self._enter(CheckoutState.IDLE)
            raise CheckoutError(step=step, order_id=failed_order) from e

        self._enter(CheckoutState.REDIRECTING)
        cart.clear()
        return CheckoutResult(order_id=self.order_id, url=url, subtotal=subtotal, delivery_fee=fee, total=total)


# -----------------------------
# After payment
# -----------------------------

def confirm_payment(gateway: MarketGateway, order_id: str, session_id: Optional[str]) -> Order:
    order = gateway.get_order(order_id)
    if order is None:
        raise NotFoundError("Order not found")

    _record_payment(gateway, order, session_id)
    if order.status == "cancelled":
        logger.warning("payment_after_cancel order_id=%s session_id=%s", order_id, session_id)
        raise OrderConflictError("This order was cancelled before payment completed. Please contact us.")
    if order.status == "pending":
        gateway.update_order_status(order_id, "confirmed")
        logger.info("order_confirmed order_id=%s", order_id)
    return gateway.get_order(order_id)


def _record_payment(gateway: MarketGateway, order: Order, session_id: Optional[str]) -> None:
    if not session_id or gateway.get_payment_by_transaction(session_id) is not None:
        return
    gateway.insert_payment(Payments(
        order_id=order.id,
        transaction_id=session_id,
        amount=order.total_price,
        payment_method="card",
        status="completed",
    ))


def expire_stale_orders(gateway: MarketGateway, older_than_minutes: int = 60) -> List[str]:
    older_than_minutes = max(older_than_minutes, MIN_ORDER_AGE_MINUTES)
    cutoff = utcnow() - timedelta(minutes=older_than_minutes)
    expired = []
    for order in gateway.list_unpaid_pending_orders(cutoff):
        gateway.update_order_status(order.id, "cancelled")
        expired.append(order.id)
    if expired:
        logger.info("orders_expired count=%s", len(expired))
    return expired


# -----------------------------
# Order history
# -----------------------------

def list_my_orders(gateway: MarketGateway, session: Session) -> List[Order]:
    require_consumer(session)
    if session.consumer is None:
        return []
    return gateway.list_consumer_orders(session.consumer.id)


def get_my_order(gateway: MarketGateway, session: Session, order_id: str) -> Order:
    require_consumer(session)
    order = gateway.get_order(order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if session.consumer is None or order.consumer_id != session.consumer.id:
        raise AuthorizationError("You can only view your own orders")
    return order

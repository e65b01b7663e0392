from dataclasses import dataclass

from gateway import MarketGateway
from payments import PaymentClient


@dataclass
class AppContext:
    """Everything a request handler needs, built once in create_app."""
    db: object
    gateway: MarketGateway
    payment_client: PaymentClient

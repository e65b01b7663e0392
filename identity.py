"""
Session and identity

Users sign up with a role (farmer or consumer). Every user owns exactly one
role profile. Profiles are provisioned through the ensure_* helpers, which
are idempotent: they return the existing profile id or create one with
defaults.
"""
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from errors import AuthError, AuthorizationError, MarketError
from gateway import MarketGateway
from schemas import ConsumerProfile, Consumers, FarmerProfile, Farmers, User, Users

logger = logging.getLogger("farmmarket.identity")

PBKDF2_ROUNDS = 120_000
DEFAULT_FARM_NAME = "My Farm"
DEFAULT_FARM_LOCATION = "Unknown"


class ProfileError(MarketError):
    pass


@dataclass
class Session:
    """The authenticated principal for one request."""
    token: str
    user: User
    farmer: Optional[FarmerProfile] = None
    consumer: Optional[ConsumerProfile] = None

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.user_role


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ROUNDS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    salt, _, _ = password_hash.partition("$")
    if not salt:
        return False
    return hmac.compare_digest(hash_password(password, salt), password_hash)


# -----------------------------
# Profiles
# -----------------------------

def ensure_farmer_profile(gateway: MarketGateway, user_id: str, farm_name: Optional[str] = None, farm_location: Optional[str] = None) -> str:
    existing = gateway.get_farmer_by_user(user_id)
    if existing:
        return existing.id
    try:
        farmer_id = gateway.insert_farmer(Farmers(
            user_id=user_id,
            farm_name=farm_name or DEFAULT_FARM_NAME,
            farm_location=farm_location or DEFAULT_FARM_LOCATION,
        ))
    except Exception as e:
        logger.exception("farmer_profile_create_failed user_id=%s", user_id)
        raise ProfileError("Failed to create farmer profile") from e
    logger.info("farmer_profile_created user_id=%s farmer_id=%s", user_id, farmer_id)
    return farmer_id


def ensure_consumer_profile(gateway: MarketGateway, user_id: str, location: Optional[str] = None) -> str:
    existing = gateway.get_consumer_by_user(user_id)
    if existing:
        return existing.id
    try:
        consumer_id = gateway.insert_consumer(Consumers(user_id=user_id, location=location or ""))
    except Exception as e:
        logger.exception("consumer_profile_create_failed user_id=%s", user_id)
        raise ProfileError("Failed to create consumer profile") from e
    logger.info("consumer_profile_created user_id=%s consumer_id=%s", user_id, consumer_id)
    return consumer_id


def try_ensure_profile(gateway: MarketGateway, user: User) -> Optional[str]:
    """Provision the role profile, logging instead of raising on failure."""
    try:
        if user.user_role == "farmer":
            return ensure_farmer_profile(gateway, user.id)
        return ensure_consumer_profile(gateway, user.id)
    except Exception:
        logger.exception("profile_provisioning_skipped user_id=%s role=%s", user.id, user.user_role)
        return None


# -----------------------------
# Sign up / in / out
# -----------------------------

def sign_up(
    gateway: MarketGateway,
    email: str,
    password: str,
    username: str,
    role: str,
    location: Optional[str] = None,
    farm_name: Optional[str] = None,
    farm_location: Optional[str] = None,
    contact_info: Optional[str] = None,
) -> User:
    if gateway.get_user_row_by_email(email):
        raise AuthError("Email already registered")
    if len(password) < 6:
        raise AuthError("Password must be at least 6 characters")
    try:
        record = Users(
            email=email,
            username=username,
            contact_info=contact_info,
            user_role=role,
            password_hash=hash_password(password),
        )
    except ValidationError as e:
        raise AuthError("Invalid registration details") from e

    user_id = gateway.insert_user(record)
    logger.info("user_registered user_id=%s role=%s", user_id, role)

    if role == "farmer":
        ensure_farmer_profile(gateway, user_id, farm_name, farm_location)
    else:
        ensure_consumer_profile(gateway, user_id, location)
    return gateway.get_user(user_id)


def sign_in(gateway: MarketGateway, email: str, password: str) -> str:
    row = gateway.get_user_row_by_email(email)
    if not row or not verify_password(password, row.get("password_hash", "")):
        raise AuthError("Invalid credentials")
    user = User.from_row(row)
    token = secrets.token_urlsafe(32)
    gateway.insert_session(token, user.id)
    # Older accounts may predate their role profile
    try_ensure_profile(gateway, user)
    logger.info("user_signed_in user_id=%s", user.id)
    return token


def sign_out(gateway: MarketGateway, token: str) -> None:
    if gateway.delete_session(token):
        logger.info("user_signed_out")


def load_session(gateway: MarketGateway, token: Optional[str]) -> Optional[Session]:
    if not token:
        return None
    user_id = gateway.get_session_user_id(token)
    if not user_id:
        return None
    user = gateway.get_user(user_id)
    if user is None:
        return None
    session = Session(token=token, user=user)
    if user.user_role == "farmer":
        session.farmer = gateway.get_farmer_by_user(user.id)
    else:
        session.consumer = gateway.get_consumer_by_user(user.id)
    return session


def require_farmer(session: Session) -> None:
    if session.role != "farmer":
        raise AuthorizationError("Only farmers can do that")


def require_consumer(session: Session) -> None:
    if session.role != "consumer":
        raise AuthorizationError("Only consumers can do that")


def update_profile(gateway: MarketGateway, session: Session, changes: dict) -> Session:
    user_changes = {k: changes[k] for k in ("username", "contact_info") if changes.get(k) is not None}
    gateway.update_user(session.user_id, user_changes)

    if session.role == "farmer":
        farmer_id = ensure_farmer_profile(gateway, session.user_id)
        gateway.update_farmer(farmer_id, {
            k: changes[k] for k in ("farm_name", "farm_location", "profile_image") if changes.get(k) is not None
        })
    else:
        consumer_id = ensure_consumer_profile(gateway, session.user_id)
        gateway.update_consumer(consumer_id, {
            k: changes[k] for k in ("location", "profile_image") if changes.get(k) is not None
        })
    logger.info("profile_updated user_id=%s", session.user_id)
    return load_session(gateway, session.token)

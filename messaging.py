"""
Direct messages between users

sender_id and receiver_id are always user ids, never farmer or consumer
profile ids. A conversation is every message exchanged with one counterparty.
"""
import logging
from typing import Dict, List, Optional

from pydantic import BaseModel

from database import utcnow
from errors import NotFoundError, ValidationFailed
from gateway import MarketGateway
from schemas import Message, Messages

logger = logging.getLogger("farmmarket.messaging")

MAX_MESSAGE_LENGTH = 2000


class Counterparty(BaseModel):
    id: str
    name: str
    info: Optional[str] = None
    role: Optional[str] = None


class Conversation(BaseModel):
    counterparty: Counterparty
    last_message: str
    timestamp: str
    unread: int = 0


def resolve_counterparties(gateway: MarketGateway, user_ids: List[str]) -> Dict[str, Counterparty]:
    """Farmer profile first, then consumer profile, then a truncated id."""
    if not user_ids:
        return {}
    users = gateway.get_users(user_ids)
    farmers = gateway.get_farmers_by_users(user_ids)
    consumers = gateway.get_consumers_by_users([u for u in user_ids if u not in farmers])

    resolved = {}
    for uid in user_ids:
        user = users.get(uid)
        if uid in farmers:
            farmer = farmers[uid]
            resolved[uid] = Counterparty(
                id=uid,
                name=user.username if user else farmer.farm_name,
                info=farmer.farm_name,
                role="farmer",
            )
        elif uid in consumers:
            resolved[uid] = Counterparty(
                id=uid,
                name=user.username if user else uid[:8],
                info=consumers[uid].location,
                role="consumer",
            )
        else:
            resolved[uid] = Counterparty(id=uid, name=user.username if user else uid[:8])
    return resolved


def list_conversations(gateway: MarketGateway, user_id: str) -> List[Conversation]:
    # newest first, so the first message seen per counterparty is the preview
    messages = gateway.list_messages_for(user_id)

    groups: Dict[str, dict] = {}
    for msg in messages:
        other = msg.receiver_id if msg.sender_id == user_id else msg.sender_id
        group = groups.get(other)
        if group is None:
            group = groups[other] = {"latest": msg, "unread": 0}
        if msg.receiver_id == user_id and not msg.is_read:
            group["unread"] += 1

    names = resolve_counterparties(gateway, list(groups))
    ordered = sorted(groups.items(), key=lambda kv: kv[1]["latest"].timestamp, reverse=True)
    return [
        Conversation(
            counterparty=names[other],
            last_message=g["latest"].content,
            timestamp=g["latest"].timestamp.isoformat(),
            unread=g["unread"],
        )
        for other, g in ordered
    ]


def open_thread(gateway: MarketGateway, user_id: str, counterparty_id: str) -> List[Message]:
    thread = gateway.list_thread(user_id, counterparty_id)
    if any(m.receiver_id == user_id and not m.is_read for m in thread):
        marked = gateway.mark_thread_read(user_id, counterparty_id)
        logger.info("thread_marked_read user_id=%s counterparty_id=%s count=%s", user_id, counterparty_id, marked)
        for m in thread:
            if m.receiver_id == user_id:
                m.is_read = True
    return thread


def send_message(gateway: MarketGateway, sender_id: str, receiver_id: str, content: str) -> Message:
    content = (content or "").strip()
    if not content:
        raise ValidationFailed("Message cannot be empty", {"content": "Message cannot be empty"})
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationFailed("Message is too long", {"content": "Message is too long"})
    if receiver_id == sender_id:
        raise ValidationFailed("You cannot message yourself")
    if gateway.get_user(receiver_id) is None:
        raise NotFoundError("Recipient not found")

    message = gateway.insert_message(Messages(
        sender_id=sender_id,
        receiver_id=receiver_id,
        content=content,
        timestamp=utcnow(),
        is_read=False,
    ))
    logger.info("message_sent message_id=%s sender_id=%s receiver_id=%s", message.id, sender_id, receiver_id)
    return message


def resolve_farmer_target(gateway: MarketGateway, farmer_id: Optional[str]) -> Optional[str]:
    """Map a farmer profile id (the farmerId link parameter) to its user id."""
    if not farmer_id:
        return None
    farmer = gateway.get_farmer(farmer_id)
    return farmer.user_id if farmer else None


def search_recipients(gateway: MarketGateway, role: str, q: str, limit: int = 20) -> List[Counterparty]:
    q = (q or "").strip()
    if role == "consumer":
        user_ids = [f.user_id for f in gateway.search_farmers(q, limit)]
        for user in gateway.search_users(q, "farmer", limit):
            if user.id not in user_ids:
                user_ids.append(user.id)
    else:
        user_ids = [u.id for u in gateway.search_users(q, "consumer", limit)]
    user_ids = user_ids[:limit]
    resolved = resolve_counterparties(gateway, user_ids)
    return [resolved[u] for u in user_ids]

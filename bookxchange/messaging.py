"""
Conversation resolution and message sending.

A conversation is identified by its unordered pair of participants plus an
optional listing scope. Sending a message files it under the resolved
conversation, bumps the conversation's last_message_at and pushes the
message to the receiver's live connection.
"""

import logging
import threading
from typing import Optional

from sqlalchemy.orm import Session

from bookxchange.errors import ValidationError
from bookxchange.metrics import record_message_sent
from bookxchange.realtime import ConnectionManager
from bookxchange.schemas import MessageResponse, NewMessageNotification
from bookxchange.storage import (
    create_conversation,
    create_message,
    get_conversation_by_users,
    mark_message_as_read,
    update_conversation_last_message_time,
)

logger = logging.getLogger(__name__)

# Serialises find-or-create so concurrent sends cannot duplicate a conversation
_resolve_lock = threading.Lock()


def _find_or_create(
    db: Session,
    user1_id: int,
    user2_id: int,
    listing_id: Optional[int],
    commit: bool
):
    conversation = get_conversation_by_users(db, user1_id, user2_id, listing_id)
    if conversation is not None:
        logger.debug(f"Resolved existing conversation {conversation.id}")
        return conversation
    return create_conversation(db, user1_id, user2_id, listing_id, commit=commit)


def resolve_conversation(
    db: Session,
    user1_id: int,
    user2_id: int,
    listing_id: Optional[int] = None
):
    """
    Find the conversation between two users, creating it when missing.

    Lookup ignores participant order. A listing_id only matches the same
    listing_id, and None only matches None.

    Returns:
        The existing or newly created Conversation
    """
    with _resolve_lock:
        return _find_or_create(db, user1_id, user2_id, listing_id, commit=True)


async def send_message(
    db: Session,
    connections: ConnectionManager,
    sender_id: int,
    receiver_id: int,
    content: str,
    listing_id: Optional[int] = None
):
    """
    Persist a message and notify the receiver.

    Receiver and listing existence are checked by the caller. Resolving the
    conversation, storing the message and bumping last_message_at commit
    together or not at all. The live push happens after the commit and is
    best-effort; its outcome never affects the result.

    Returns:
        Tuple of (message, delivered)
    """
    if sender_id == receiver_id:
        raise ValidationError("You cannot send a message to yourself")

    with _resolve_lock:
        try:
            conversation = _find_or_create(db, sender_id, receiver_id, listing_id, commit=False)
            message = create_message(
                db,
                sender_id=sender_id,
                receiver_id=receiver_id,
                content=content,
                conversation_id=conversation.id,
                listing_id=listing_id,
                commit=False,
            )
            update_conversation_last_message_time(db, conversation.id, commit=False)
            db.commit()
        except Exception:
            db.rollback()
            logger.error(f"Send from {sender_id} to {receiver_id} rolled back")
            raise
    db.refresh(message)
    record_message_sent()

    notification = NewMessageNotification(message=MessageResponse.model_validate(message))
    delivered = await connections.push(
        receiver_id,
        notification.model_dump(mode="json", by_alias=True),
    )
    return message, delivered


def mark_read(db: Session, message_id: int) -> bool:
    """Mark a message read. Returns whether the message exists."""
    return mark_message_as_read(db, message_id)

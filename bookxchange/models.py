"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy, plus the
domain constants shared by the schemas and routes.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from bookxchange.storage import Base
from bookxchange.utils import utc_now


# =============================================================================
# Domain Constants
# =============================================================================

BOOK_CATEGORIES = [
    "Textbooks",
    "Science",
    "Literature",
    "Business",
    "Computer Science",
    "Engineering",
    "Mathematics",
    "History",
    "Art & Design",
    "Medicine",
    "Law",
    "Philosophy",
    "Other",
]

BOOK_CONDITIONS = [
    "Like New",
    "Very Good",
    "Good",
    "Fair",
    "Poor",
]

LISTING_TYPES = ["sell", "buy"]

LISTING_STATUSES = ["active", "sold", "deleted"]


# =============================================================================
# Tables
# =============================================================================

# sqlite_autoincrement keeps identifiers from ever being reused


class User(Base):
    """
    Registered marketplace user.

    Table: users
    username is unique case-insensitively; enforced in the registration route.
    """
    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True)
    username = Column(String, nullable=False, unique=True, index=True)
    email = Column(String, nullable=False, index=True)
    password = Column(String, nullable=False)  # bcrypt hash
    location = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)


class BookListing(Base):
    """
    A book offered for sale or wanted by its owner.

    Table: book_listings
    Deleting is a soft delete: status moves to "deleted", the row stays.
    """
    __tablename__ = "book_listings"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    author = Column(String, nullable=False)
    category = Column(String, nullable=False, index=True)
    condition = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    price = Column(String, nullable=False)  # decimal as text
    image_url = Column(String, nullable=True)
    listing_type = Column(String, nullable=False)  # sell | buy
    location = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active", index=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)


class Conversation(Base):
    """
    Two-party conversation, optionally scoped to one listing.

    Table: conversations
    At most one row per unordered (user1_id, user2_id) pair and listing_id.
    """
    __tablename__ = "conversations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True)
    user1_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    user2_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    listing_id = Column(Integer, ForeignKey("book_listings.id"), nullable=True)
    last_message_at = Column(DateTime, nullable=False, default=utc_now, index=True)


class Message(Base):
    """
    Direct message between two users.

    Table: messages
    Immutable after creation apart from read, which only goes False -> True.
    """
    __tablename__ = "messages"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    receiver_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    listing_id = Column(Integer, ForeignKey("book_listings.id"), nullable=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

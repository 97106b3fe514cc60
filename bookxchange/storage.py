import logging
from typing import Generator, List, Optional

from sqlalchemy import and_, create_engine, func, inspect, or_, select, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from bookxchange.config import settings
from bookxchange.utils import utc_now

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's async
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("users", "book_listings", "conversations", "messages")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from bookxchange import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and every table exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# User Repository Functions
# =============================================================================

def create_user(
    db: Session,
    username: str,
    email: str,
    password: str,
    location: Optional[str] = None
):
    """
    Create a user. password must already be hashed.

    Returns:
        The persisted User
    """
    from bookxchange.models import User

    user = User(username=username, email=email, password=password, location=location)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"User created: id={user.id}, username={username}")
    return user


def get_user(db: Session, user_id: int):
    from bookxchange.models import User

    return db.get(User, user_id)


def get_user_by_username(db: Session, username: str):
    """Case-insensitive exact match on username."""
    from bookxchange.models import User

    stmt = select(User).where(func.lower(User.username) == username.lower())
    return db.scalars(stmt).first()


def get_user_by_email(db: Session, email: str):
    """Case-insensitive exact match on email."""
    from bookxchange.models import User

    stmt = select(User).where(func.lower(User.email) == email.lower())
    return db.scalars(stmt).first()


# =============================================================================
# Book Listing Repository Functions
# =============================================================================

def create_book_listing(db: Session, **fields):
    """
    Create a book listing.

    Args:
        db: Database session
        **fields: Column values; user_id, title, author, category, condition,
            description, price, listing_type and location are required

    Returns:
        The persisted BookListing (status defaults to "active")
    """
    from bookxchange.models import BookListing

    listing = BookListing(**fields)
    db.add(listing)
    db.commit()
    db.refresh(listing)
    logger.info(f"Listing created: id={listing.id}, user_id={listing.user_id}")
    return listing


def get_book_listing(db: Session, listing_id: int):
    from bookxchange.models import BookListing

    return db.get(BookListing, listing_id)


def get_book_listings(db: Session, filters=None) -> List:
    """
    Retrieve listings matching every given filter.

    Args:
        db: Database session
        filters: ListingFilters or None. Without filters every listing is
            returned, whatever its status; defaulting to active listings is
            the caller's job.

    Returns:
        Listings ordered newest first
    """
    from bookxchange.models import BookListing

    query = db.query(BookListing)

    if filters is not None:
        if filters.user_id is not None:
            query = query.filter(BookListing.user_id == filters.user_id)

        if filters.category:
            query = query.filter(BookListing.category == filters.category)

        if filters.condition:
            query = query.filter(BookListing.condition == filters.condition)

        if filters.listing_type:
            query = query.filter(BookListing.listing_type == filters.listing_type)

        if filters.status:
            query = query.filter(BookListing.status == filters.status)

        if filters.search_term:
            # Case-insensitive substring search, LIKE wildcards taken literally
            escaped = (
                filters.search_term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            )
            pattern = f"%{escaped}%"
            query = query.filter(or_(
                BookListing.title.ilike(pattern, escape="\\"),
                BookListing.author.ilike(pattern, escape="\\"),
                BookListing.description.ilike(pattern, escape="\\"),
            ))
        logger.debug(f"Listing filters: {filters.model_dump(exclude_none=True)}")

    listings = query.order_by(BookListing.created_at.desc(), BookListing.id.desc()).all()
    logger.debug(f"Retrieved {len(listings)} listings")
    return listings


def update_book_listing(db: Session, listing_id: int, changes: dict):
    """
    Apply a partial update to a listing.

    Returns:
        The updated BookListing, or None if it does not exist
    """
    from bookxchange.models import BookListing

    listing = db.get(BookListing, listing_id)
    if listing is None:
        return None

    for name, value in changes.items():
        setattr(listing, name, value)
    db.commit()
    db.refresh(listing)
    logger.info(f"Listing updated: id={listing_id}, fields={sorted(changes)}")
    return listing


def delete_book_listing(db: Session, listing_id: int) -> bool:
    """
    Soft delete a listing by setting its status to "deleted".

    Returns:
        True if the listing existed, False otherwise
    """
    from bookxchange.models import BookListing

    listing = db.get(BookListing, listing_id)
    if listing is None:
        return False

    listing.status = "deleted"
    db.commit()
    logger.info(f"Listing soft-deleted: id={listing_id}")
    return True


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(
    db: Session,
    sender_id: int,
    receiver_id: int,
    content: str,
    conversation_id: int,
    listing_id: Optional[int] = None,
    commit: bool = True
):
    """
    Persist a new unread message stamped with its conversation.

    With commit=False the row is only flushed, leaving the caller to commit.

    Returns:
        The persisted Message
    """
    from bookxchange.models import Message

    message = Message(
        sender_id=sender_id,
        receiver_id=receiver_id,
        listing_id=listing_id,
        conversation_id=conversation_id,
        content=content,
        read=False,
        created_at=utc_now(),
    )
    db.add(message)
    if commit:
        db.commit()
        db.refresh(message)
    else:
        db.flush()
    logger.info(
        f"Message created: id={message.id}, from={sender_id}, to={receiver_id}, "
        f"conversation={conversation_id}"
    )
    return message


def get_message(db: Session, message_id: int):
    from bookxchange.models import Message

    return db.get(Message, message_id)


def get_messages(db: Session, conversation_id: int) -> List:
    """
    Messages of one conversation, oldest first.

    Ordering: created_at ASC, id ASC (deterministic for equal timestamps).
    An unknown conversation yields an empty list.
    """
    from bookxchange.models import Message

    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )


def get_last_message(db: Session, conversation_id: int):
    from bookxchange.models import Message

    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .first()
    )


def get_messages_by_user(db: Session, user_id: int) -> List:
    """Every message the user sent or received, oldest first."""
    from bookxchange.models import Message

    return (
        db.query(Message)
        .filter(or_(Message.sender_id == user_id, Message.receiver_id == user_id))
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )


def count_unread_messages(db: Session, user_id: int) -> int:
    from bookxchange.models import Message

    return (
        db.query(func.count(Message.id))
        .filter(Message.receiver_id == user_id, Message.read.is_(False))
        .scalar()
    ) or 0


def mark_message_as_read(db: Session, message_id: int) -> bool:
    """
    Mark a message read. Idempotent; read never reverts to False.

    Returns:
        True if the message exists, False otherwise
    """
    from bookxchange.models import Message

    message = db.get(Message, message_id)
    if message is None:
        return False

    if not message.read:
        message.read = True
        db.commit()
        logger.info(f"Message marked read: id={message_id}")
    return True


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def create_conversation(
    db: Session,
    user1_id: int,
    user2_id: int,
    listing_id: Optional[int] = None,
    commit: bool = True
):
    """Create a conversation. With commit=False the row is only flushed."""
    from bookxchange.models import Conversation

    conversation = Conversation(
        user1_id=user1_id,
        user2_id=user2_id,
        listing_id=listing_id,
        last_message_at=utc_now(),
    )
    db.add(conversation)
    if commit:
        db.commit()
        db.refresh(conversation)
    else:
        db.flush()
    logger.info(
        f"Conversation created: id={conversation.id}, users=({user1_id}, {user2_id}), "
        f"listing={listing_id}"
    )
    return conversation


def get_conversation(db: Session, conversation_id: int):
    from bookxchange.models import Conversation

    return db.get(Conversation, conversation_id)


def get_conversation_by_users(
    db: Session,
    user1_id: int,
    user2_id: int,
    listing_id: Optional[int] = None
):
    """
    Find the conversation between two users within a listing scope.

    The pair is unordered. The listing scope must be equal on both sides:
    a None listing_id only matches conversations without a listing.
    """
    from bookxchange.models import Conversation

    pair = or_(
        and_(Conversation.user1_id == user1_id, Conversation.user2_id == user2_id),
        and_(Conversation.user1_id == user2_id, Conversation.user2_id == user1_id),
    )
    if listing_id is None:
        scope = Conversation.listing_id.is_(None)
    else:
        scope = Conversation.listing_id == listing_id

    return (
        db.query(Conversation)
        .filter(pair, scope)
        .order_by(Conversation.id.asc())
        .first()
    )


def get_conversations_by_user(db: Session, user_id: int) -> List:
    """Conversations the user takes part in, most recently active first."""
    from bookxchange.models import Conversation

    return (
        db.query(Conversation)
        .filter(or_(Conversation.user1_id == user_id, Conversation.user2_id == user_id))
        .order_by(Conversation.last_message_at.desc(), Conversation.id.desc())
        .all()
    )


def update_conversation_last_message_time(
    db: Session,
    conversation_id: int,
    commit: bool = True
) -> bool:
    """
    Bump last_message_at to now. The timestamp never moves backwards.
    With commit=False the change is only flushed.

    Returns:
        True if the conversation exists, False otherwise
    """
    from bookxchange.models import Conversation

    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        return False

    now = utc_now()
    if conversation.last_message_at is None or now > conversation.last_message_at:
        conversation.last_message_at = now
        if commit:
            db.commit()
        else:
            db.flush()
    return True

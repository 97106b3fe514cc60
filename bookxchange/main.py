import logging
from contextlib import asynccontextmanager
from typing import Annotated, List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, Response, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bookxchange.config import settings
from bookxchange.errors import (
    BookXchangeError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from bookxchange.logging_utils import setup_logging, RequestLoggingMiddleware, log_message_data
from bookxchange.messaging import mark_read, send_message
from bookxchange.metrics import get_metrics, get_metrics_content_type
from bookxchange.models import (
    BOOK_CATEGORIES,
    BOOK_CONDITIONS,
    LISTING_STATUSES,
    LISTING_TYPES,
    User,
)
from bookxchange.realtime import ConnectionManager, serve_connection
from bookxchange.schemas import (
    ConversationResponse,
    ErrorResponse,
    HealthResponse,
    LastMessageSummary,
    ListingCreate,
    ListingFilters,
    ListingOptionsResponse,
    ListingResponse,
    ListingSummary,
    ListingUpdate,
    MessageCreate,
    MessageResponse,
    UnreadCountResponse,
    UserCreate,
    UserResponse,
    UserSummary,
)
from bookxchange.storage import (
    check_db_health,
    count_unread_messages,
    create_book_listing,
    create_user,
    delete_book_listing,
    get_book_listing,
    get_book_listings,
    get_conversation,
    get_conversations_by_user,
    get_db,
    get_last_message,
    get_message,
    get_messages,
    get_user,
    get_user_by_email,
    get_user_by_username,
    init_db,
    update_book_listing,
)
from bookxchange.utils import hash_password


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="BookXchange API",
    description="Peer-to-peer book marketplace with direct messaging",
    version="1.0.0",
    lifespan=lifespan,
)

# One live delivery registry per application, injected into routes
app.state.connections = ConnectionManager()

app.add_middleware(RequestLoggingMiddleware)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation error"},
    401: {"model": ErrorResponse, "description": "Missing or unknown caller identity"},
    403: {"model": ErrorResponse, "description": "Not the owner or participant"},
    404: {"model": ErrorResponse, "description": "Resource not found"},
}


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(BookXchangeError)
async def handle_bookxchange_error(request: Request, exc: BookXchangeError) -> JSONResponse:
    if isinstance(exc, InternalError):
        logger.error(f"Internal error on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": InternalError().message},
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render schema violations as a 400 with a readable message."""
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    message = "Validation error: " + "; ".join(parts)
    logger.info(message)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": message})


@app.exception_handler(SQLAlchemyError)
async def handle_database_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception(f"Database error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": InternalError().message},
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": InternalError().message},
    )


# =============================================================================
# Dependencies
# =============================================================================

def get_connections(request: Request) -> ConnectionManager:
    return request.app.state.connections


def get_current_user(
    x_user_id: Annotated[Optional[str], Header(alias="X-User-Id")] = None,
    db: Session = Depends(get_db),
):
    """
    Resolve the caller from the X-User-Id header set by the upstream
    authentication layer.
    """
    if not x_user_id:
        raise UnauthorizedError("You must be logged in to access this resource")
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise UnauthorizedError("Invalid X-User-Id header")

    user = get_user(db, user_id)
    if user is None:
        raise UnauthorizedError("Unknown user")
    return user


CurrentUser = Annotated[User, Depends(get_current_user)]


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    schema is applied, otherwise 503.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# User Routes
# =============================================================================

@app.post(
    "/users",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: ERROR_RESPONSES[400]},
)
async def register_user(body: UserCreate, db: Session = Depends(get_db)):
    """
    Register a user. Username and email are unique, compared
    case-insensitively.
    """
    if get_user_by_username(db, body.username):
        raise ValidationError("Username already exists")
    if get_user_by_email(db, body.email):
        raise ValidationError("Email already registered")

    return create_user(
        db,
        username=body.username,
        email=body.email,
        password=hash_password(body.password),
        location=body.location,
    )


@app.get("/users/me", response_model=UserResponse, responses={401: ERROR_RESPONSES[401]})
async def read_current_user(current_user: CurrentUser):
    return current_user


@app.get("/users/{user_id}", response_model=UserSummary, responses={404: ERROR_RESPONSES[404]})
async def read_user(user_id: int, db: Session = Depends(get_db)):
    """Public profile: id and username only."""
    user = get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


# =============================================================================
# Listing Routes
# =============================================================================

@app.get("/listing-options", response_model=ListingOptionsResponse)
async def listing_options() -> ListingOptionsResponse:
    return ListingOptionsResponse(
        categories=BOOK_CATEGORIES,
        conditions=BOOK_CONDITIONS,
        listing_types=LISTING_TYPES,
        statuses=LISTING_STATUSES,
    )


@app.post(
    "/listings",
    response_model=ListingResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: ERROR_RESPONSES[400], 401: ERROR_RESPONSES[401]},
)
async def create_listing(
    body: ListingCreate,
    current_user: CurrentUser,
    db: Session = Depends(get_db),
):
    """Create a listing owned by the caller."""
    return create_book_listing(db, user_id=current_user.id, **body.model_dump())


@app.get("/listings", response_model=List[ListingResponse])
async def list_listings(
    category: Annotated[Optional[str], Query(description="Exact category")] = None,
    condition: Annotated[Optional[str], Query(description="Exact condition")] = None,
    listing_type: Annotated[Optional[str], Query(alias="listingType", description="sell or buy")] = None,
    search: Annotated[Optional[str], Query(description="Case-insensitive text in title, author or description")] = None,
    user_id: Annotated[Optional[int], Query(alias="userId", description="Owner id")] = None,
    listing_status: Annotated[str, Query(alias="status", description="Listing status")] = "active",
    db: Session = Depends(get_db),
):
    """
    List listings. Filters are ANDed; only active listings are returned
    unless another status is asked for.
    """
    filters = ListingFilters(
        user_id=user_id,
        category=category,
        condition=condition,
        listing_type=listing_type,
        status=listing_status or "active",
        search_term=search,
    )
    return get_book_listings(db, filters)


@app.get("/listings/{listing_id}", response_model=ListingResponse, responses={404: ERROR_RESPONSES[404]})
async def read_listing(listing_id: int, db: Session = Depends(get_db)):
    listing = get_book_listing(db, listing_id)
    if listing is None:
        raise NotFoundError("Listing not found")
    return listing


def _owned_listing(db: Session, listing_id: int, user_id: int, action: str):
    listing = get_book_listing(db, listing_id)
    if listing is None:
        raise NotFoundError("Listing not found")
    if listing.user_id != user_id:
        raise ForbiddenError(f"You don't have permission to {action} this listing")
    return listing


@app.patch("/listings/{listing_id}", response_model=ListingResponse, responses=ERROR_RESPONSES)
async def update_listing(
    listing_id: int,
    body: ListingUpdate,
    current_user: CurrentUser,
    db: Session = Depends(get_db),
):
    """Apply a partial update. Only the owner may update."""
    _owned_listing(db, listing_id, current_user.id, "update")
    return update_book_listing(db, listing_id, body.changes())


@app.delete(
    "/listings/{listing_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=ERROR_RESPONSES,
)
async def delete_listing(
    listing_id: int,
    current_user: CurrentUser,
    db: Session = Depends(get_db),
) -> Response:
    """Soft delete: the listing stays, its status becomes "deleted"."""
    _owned_listing(db, listing_id, current_user.id, "delete")
    delete_book_listing(db, listing_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Messaging Routes
# =============================================================================

@app.post(
    "/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def create_message_route(
    request: Request,
    body: MessageCreate,
    current_user: CurrentUser,
    db: Session = Depends(get_db),
    connections: ConnectionManager = Depends(get_connections),
):
    """
    Send a message from the caller. The receiver, if connected, gets a
    new_message push before this response is returned.
    """
    if get_user(db, body.receiver_id) is None:
        raise NotFoundError("Recipient not found")

    if body.listing_id is not None and get_book_listing(db, body.listing_id) is None:
        raise NotFoundError("Listing not found")

    message, delivered = await send_message(
        db,
        connections,
        sender_id=current_user.id,
        receiver_id=body.receiver_id,
        content=body.content,
        listing_id=body.listing_id,
    )
    log_message_data(
        request=request,
        message_id=message.id,
        conversation_id=message.conversation_id,
        delivered=delivered,
    )
    return message


@app.get("/messages/unread-count", response_model=UnreadCountResponse, responses={401: ERROR_RESPONSES[401]})
async def unread_count(current_user: CurrentUser, db: Session = Depends(get_db)) -> UnreadCountResponse:
    return UnreadCountResponse(count=count_unread_messages(db, current_user.id))


@app.patch(
    "/messages/{message_id}/read",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=ERROR_RESPONSES,
)
async def mark_message_read(
    message_id: int,
    current_user: CurrentUser,
    db: Session = Depends(get_db),
) -> Response:
    """Mark a message read. Only its receiver may do so."""
    message = get_message(db, message_id)
    if message is None:
        raise NotFoundError("Message not found")
    if message.receiver_id != current_user.id:
        raise ForbiddenError("Only the receiver can mark this message as read")

    mark_read(db, message_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/conversations", response_model=List[ConversationResponse], responses={401: ERROR_RESPONSES[401]})
async def list_conversations(current_user: CurrentUser, db: Session = Depends(get_db)):
    """
    Conversations of the caller, most recently active first, each with the
    counterpart, the last message and the listing summary.
    """
    result = []
    for conversation in get_conversations_by_user(db, current_user.id):
        other_user_id = (
            conversation.user2_id if conversation.user1_id == current_user.id else conversation.user1_id
        )
        other_user = get_user(db, other_user_id)
        last_message = get_last_message(db, conversation.id)
        listing = get_book_listing(db, conversation.listing_id) if conversation.listing_id else None

        result.append(ConversationResponse(
            id=conversation.id,
            user1_id=conversation.user1_id,
            user2_id=conversation.user2_id,
            listing_id=conversation.listing_id,
            last_message_at=conversation.last_message_at,
            other_user=UserSummary.model_validate(other_user) if other_user else None,
            last_message=LastMessageSummary.model_validate(last_message) if last_message else None,
            listing=ListingSummary.model_validate(listing) if listing else None,
        ))

    logger.debug(f"User {current_user.id} has {len(result)} conversations")
    return result


@app.get(
    "/conversations/{conversation_id}/messages",
    response_model=List[MessageResponse],
    responses=ERROR_RESPONSES,
)
async def list_conversation_messages(
    conversation_id: int,
    current_user: CurrentUser,
    db: Session = Depends(get_db),
):
    """Messages of a conversation, oldest first. Participants only."""
    conversation = get_conversation(db, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")

    if current_user.id not in (conversation.user1_id, conversation.user2_id):
        raise ForbiddenError("You don't have permission to view these messages")

    return get_messages(db, conversation_id)


# =============================================================================
# Live Delivery
# =============================================================================

@app.websocket(settings.WS_PATH)
async def live_delivery(websocket: WebSocket) -> None:
    """Identify with {"type": "identify", "userId": N} to receive pushes."""
    await serve_connection(websocket, websocket.app.state.connections)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)

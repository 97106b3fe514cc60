"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
- The listing filter record used by the data store
- WebSocket frame models for the live delivery channel

Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


ListingType = Literal["sell", "buy"]
ListingStatus = Literal["active", "sold", "deleted"]


class CamelModel(BaseModel):
    """Base model serialising to camelCase and accepting either spelling."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,  # Allow creating from ORM objects
        str_strip_whitespace=True,
    )


def _validate_price(v: str) -> str:
    """Price is a non-negative decimal carried as text."""
    try:
        amount = Decimal(v)
    except InvalidOperation:
        raise ValueError("price must be a decimal number")
    if not amount.is_finite() or amount < 0:
        raise ValueError("price must be a non-negative decimal number")
    return v


# =============================================================================
# Pydantic Request Models
# =============================================================================

class UserCreate(CamelModel):
    """
    Registration payload.

    Validates:
    - username: 3-50 characters
    - email: a syntactically valid address
    - password: at least 6 characters
    """
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    location: Optional[str] = None


class ListingCreate(CamelModel):
    """
    Payload for POST /listings. The owner comes from the caller identity,
    never from the body.
    """
    title: str = Field(..., min_length=1, max_length=200)
    author: str = Field(..., min_length=1, max_length=200)
    category: str = Field(..., min_length=1)
    condition: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: str = Field(..., min_length=1, description="Decimal price as text")
    image_url: Optional[str] = None
    listing_type: ListingType
    location: str = Field(..., min_length=1)
    status: ListingStatus = "active"

    @field_validator("price", mode="before")
    @classmethod
    def coerce_price(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("price")
    @classmethod
    def validate_price(cls, v: str) -> str:
        return _validate_price(v)


class ListingUpdate(CamelModel):
    """
    Partial payload for PATCH /listings/{id}.

    Only fields present in the body are applied. Apart from imageUrl,
    present fields may not be null.
    """
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    author: Optional[str] = Field(None, min_length=1, max_length=200)
    category: Optional[str] = Field(None, min_length=1)
    condition: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1)
    price: Optional[str] = Field(None, min_length=1)
    image_url: Optional[str] = None
    listing_type: Optional[ListingType] = None
    location: Optional[str] = Field(None, min_length=1)
    status: Optional[ListingStatus] = None

    @field_validator("price", mode="before")
    @classmethod
    def coerce_price(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("price")
    @classmethod
    def validate_price(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _validate_price(v)

    @model_validator(mode="after")
    def reject_nulls(self):
        for name in self.model_fields_set:
            if name != "image_url" and getattr(self, name) is None:
                raise ValueError(f"{to_camel(name)} may not be null")
        return self

    def changes(self) -> dict:
        """Fields explicitly sent by the client, keyed by column name."""
        return self.model_dump(exclude_unset=True)


class MessageCreate(CamelModel):
    """
    Payload for POST /messages. The sender comes from the caller identity.
    """
    receiver_id: int = Field(..., gt=0)
    listing_id: Optional[int] = Field(None, gt=0)
    content: str = Field(..., min_length=1, max_length=4096)


# =============================================================================
# Filters
# =============================================================================

class ListingFilters(BaseModel):
    """
    Listing query filters, ANDed together. None means "do not filter".

    - user_id: exact owner match
    - category / condition / listing_type / status: exact match
    - search_term: case-insensitive substring of title, author or description
    """
    user_id: Optional[int] = None
    category: Optional[str] = None
    condition: Optional[str] = None
    listing_type: Optional[str] = None
    status: Optional[str] = None
    search_term: Optional[str] = None


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class UserResponse(CamelModel):
    """Public view of a user. The password hash is never serialised."""
    id: int
    username: str
    email: str
    location: Optional[str] = None
    created_at: datetime


class UserSummary(CamelModel):
    id: int
    username: str


class ListingResponse(CamelModel):
    id: int
    user_id: int
    title: str
    author: str
    category: str
    condition: str
    description: str
    price: str
    image_url: Optional[str] = None
    listing_type: str
    location: str
    status: str
    created_at: datetime


class ListingSummary(CamelModel):
    id: int
    title: str


class ListingOptionsResponse(CamelModel):
    """Values the client offers in its listing form and filters."""
    categories: list[str]
    conditions: list[str]
    listing_types: list[str]
    statuses: list[str]


class MessageResponse(CamelModel):
    id: int
    sender_id: int
    receiver_id: int
    listing_id: Optional[int] = None
    conversation_id: int
    content: str
    read: bool
    created_at: datetime


class LastMessageSummary(CamelModel):
    id: int
    content: str
    created_at: datetime
    sender_id: int
    read: bool


class ConversationResponse(CamelModel):
    """
    Conversation as seen by one participant, enriched with the counterpart,
    the most recent message and the listing it is about (if any).
    """
    id: int
    user1_id: int
    user2_id: int
    listing_id: Optional[int] = None
    last_message_at: datetime
    other_user: Optional[UserSummary] = None
    last_message: Optional[LastMessageSummary] = None
    listing: Optional[ListingSummary] = None


class UnreadCountResponse(CamelModel):
    count: int = Field(..., ge=0)


# =============================================================================
# WebSocket Frames
# =============================================================================

class IdentifyFrame(CamelModel):
    """Client -> server: bind this connection to a user."""
    type: Literal["identify"]
    user_id: int = Field(..., gt=0)


class NewMessageNotification(CamelModel):
    """Server -> client: a message was sent to the connected user."""
    type: Literal["new_message"] = "new_message"
    message: MessageResponse

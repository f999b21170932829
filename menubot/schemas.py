"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
"""

from typing import Optional

from pydantic import BaseModel, Field, StrictStr

from menubot.conversation import ConversationState, Direction


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    Freeform message written by a human agent.

    Both fields must be JSON strings; numbers are not coerced.
    """
    sender_id: StrictStr = Field(
        ...,
        min_length=1,
        description="Recipient, the sender id of the conversation"
    )
    body: StrictStr = Field(
        ...,
        min_length=1,
        description="Literal message text, or the close command to end the session"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"sender_id": "5491123456789", "body": "Hola, ¿cómo estás?"},
                {"sender_id": "5491123456789", "body": "/cerrar"},
            ]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class StatusResponse(BaseModel):
    """Response model for successful webhook and send-message processing."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessageLogResponse(BaseModel):
    """A single message log entry."""
    id: int = Field(..., description="Log entry id")
    sender_id: str = Field(..., description="Conversation participant")
    direction: Direction = Field(..., description="INBOUND or OUTBOUND")
    body: str = Field(..., description="Resolved message text")
    timestamp: str = Field(..., description="ISO-8601 UTC timestamp")

    model_config = {"from_attributes": True}


class MessagesListResponse(BaseModel):
    """
    Response model for GET /messages with pagination.

    Contains:
    - data: log entries matching filters
    - total: total count matching filters (ignoring pagination)
    - limit: number of entries per page
    - offset: starting position
    """
    data: list[MessageLogResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class ConversationResponse(BaseModel):
    """Stored and effective conversation state of a sender."""
    sender_id: str
    stored_state: Optional[str] = Field(None, description="State as written to the store")
    effective_state: ConversationState = Field(..., description="State after expiry policy")
    last_updated: str = Field(..., description="ISO-8601 UTC timestamp of the last write")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")

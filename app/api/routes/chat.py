"""
Chat API Endpoint.

Receives patient messages from the messaging transport and returns the
assistant's reply. One conversation per identifier (usually the
patient's phone number).
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from app.core.intelligence.session.manager import get_session_manager
from app.core.scheduling.engine import get_scheduling_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["Chat"])


class ChatRequest(BaseModel):
    """Chat message request."""

    conversation_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Conversation identifier",
        examples=["+15551234567"],
    )
    phone: Optional[str] = Field(
        default=None,
        max_length=32,
        description="Patient phone number (defaults to the conversation identifier)",
        examples=["+15551234567"],
    )
    message: str = Field(
        ...,
        min_length=1,
        max_length=2000,
        description="Patient's message",
        examples=["I'd like to book a cleaning next Tuesday at 10am"],
    )


class ChatResponse(BaseModel):
    """Chat response."""

    conversation_id: str
    reply: str = Field(..., description="Assistant's reply")


class SessionView(BaseModel):
    """Read-only snapshot of a conversation session."""

    conversation_id: str
    contact_phone: str
    state: str
    intents: list[str]
    patient_name: Optional[str] = None
    treatment: Optional[str] = None
    practitioner: Optional[str] = None
    duration_minutes: Optional[int] = None
    selected_slot: Optional[dict] = None
    confirmation_status: Optional[str] = None
    message_count: int
    created_at: datetime
    last_activity: datetime


class ErrorResponse(BaseModel):
    """Error response."""

    error: str
    detail: Optional[str] = None


@router.post(
    "",
    response_model=ChatResponse,
    status_code=status.HTTP_200_OK,
    summary="Send a chat message",
    description="Send a patient message to the scheduling assistant and get the reply.",
)
async def chat(request: ChatRequest) -> ChatResponse:
    """
    Process a chat message.

    The engine never raises; failures come back as an apology reply.
    """
    engine = get_scheduling_engine()
    reply = await engine.handle_turn(
        request.conversation_id,
        request.phone or request.conversation_id,
        request.message,
    )
    return ChatResponse(conversation_id=request.conversation_id, reply=reply)


@router.get(
    "/session/{conversation_id}",
    response_model=SessionView,
    summary="Inspect a session",
    description="Returns the current session without refreshing its activity time.",
    responses={404: {"model": ErrorResponse, "description": "No live session"}},
)
async def get_session(conversation_id: str) -> SessionView:
    session = await get_session_manager().peek(conversation_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found",
        )

    return SessionView(
        conversation_id=session.conversation_id,
        contact_phone=session.contact_phone,
        state=session.state.value,
        intents=list(session.intents),
        patient_name=session.patient_name,
        treatment=session.treatment,
        practitioner=session.practitioner,
        duration_minutes=session.duration_minutes,
        selected_slot=session.selected_slot.to_dict() if session.selected_slot else None,
        confirmation_status=(
            session.confirmation_status.value if session.confirmation_status else None
        ),
        message_count=len(session.messages),
        created_at=session.created_at,
        last_activity=session.last_activity,
    )


@router.delete(
    "/session/{conversation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="End a session",
    responses={404: {"model": ErrorResponse, "description": "No live session"}},
)
async def end_session(conversation_id: str) -> None:
    removed = await get_session_manager().end(conversation_id)
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found",
        )
    logger.info(f"Session {conversation_id} ended via API")

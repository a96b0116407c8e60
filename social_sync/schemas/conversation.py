from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class MessageOut(BaseModel):

    id: str
    conversation_id: str
    sender_id: str
    text: str
    created_at: Optional[datetime] = None
    is_read: bool = False
    # Set while an optimistic send is awaiting the server row
    pending: bool = False


class ConversationSummary(BaseModel):

    id: str
    participant_one: str
    participant_two: str
    other_user_id: Optional[str] = None
    updated_at: Optional[datetime] = None
    last_message: Optional[MessageOut] = None
    unread_count: int = 0


class MessageSnapshot(BaseModel):

    conversations: List[ConversationSummary] = Field(default_factory=list)
    current_conversation: Optional[ConversationSummary] = None
    messages: List[MessageOut] = Field(default_factory=list)
    unread_count: int = 0
    loading: bool = False
    is_sending: bool = False
    error: Optional[str] = None


def message_from_document(doc: Dict[str, Any]) -> MessageOut:
    return MessageOut(
        id=str(doc.get("_id") or doc.get("id")),
        conversation_id=str(doc.get("conversation_id")),
        sender_id=str(doc.get("sender_id")),
        text=doc.get("text") or "",
        created_at=doc.get("created_at"),
        is_read=bool(doc.get("is_read", False)),
    )


def conversation_from_document(doc: Dict[str, Any], user_id: Optional[str] = None) -> ConversationSummary:
    participant_one = str(doc.get("participant_one"))
    participant_two = str(doc.get("participant_two"))
    other = doc.get("other_user_id")
    if other is None and user_id is not None:
        other = participant_two if participant_one == user_id else participant_one
    last = doc.get("last_message")
    return ConversationSummary(
        id=str(doc.get("_id") or doc.get("id")),
        participant_one=participant_one,
        participant_two=participant_two,
        other_user_id=other,
        updated_at=doc.get("updated_at"),
        last_message=message_from_document(last) if last else None,
        unread_count=int(doc.get("unread_count") or 0),
    )

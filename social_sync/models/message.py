from datetime import datetime
from typing import TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    text: str
    created_at: datetime
    # read state of the receiving participant
    is_read: bool
    updated_at: datetime

from datetime import datetime
from typing import TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    # canonical ordering: participant_one < participant_two
    participant_one: str
    participant_two: str
    created_at: datetime
    updated_at: datetime

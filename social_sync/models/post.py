from datetime import datetime
from typing import Optional, TypedDict


class PostDocument(TypedDict, total=False):
    _id: str
    user_id: str
    body: Optional[str]
    created_at: datetime
    # filled in by the likes aggregation, never stored
    likes_count: int

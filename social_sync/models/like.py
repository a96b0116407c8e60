from datetime import datetime
from typing import TypedDict


class LikeDocument(TypedDict, total=False):
    _id: str
    user_id: str
    post_id: str
    created_at: datetime

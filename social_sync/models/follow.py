from datetime import datetime
from typing import TypedDict


class FollowDocument(TypedDict, total=False):
    _id: str
    follower_id: str
    following_id: str
    created_at: datetime

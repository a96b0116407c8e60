from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class FollowSnapshot(BaseModel):

    following_map: Dict[str, bool] = Field(default_factory=dict)
    follower_counts: Dict[str, int] = Field(default_factory=dict)
    following_counts: Dict[str, int] = Field(default_factory=dict)
    pending: List[str] = Field(default_factory=list)
    loading: bool = False
    error: Optional[str] = None


class PostSnapshot(BaseModel):

    posts: List[Dict[str, Any]] = Field(default_factory=list)
    liked_map: Dict[str, bool] = Field(default_factory=dict)
    like_counts: Dict[str, int] = Field(default_factory=dict)
    pending: List[str] = Field(default_factory=list)
    loading: bool = False
    error: Optional[str] = None


class FollowRequest(BaseModel):

    target_user_id: str


class LikeRequest(BaseModel):

    post_id: str


class SendMessageRequest(BaseModel):

    text: str


class LoginRequest(BaseModel):

    user_id: str


class OpenConversationRequest(BaseModel):

    other_user_id: str


class MutationResponse(BaseModel):

    ok: bool
    error: Optional[str] = None

from fastapi import APIRouter, Depends, Query

from social_sync.schemas.social import MutationResponse
from social_sync.session import Session
from social_sync.utils.dependencies import get_current_user_id, get_session


router = APIRouter(prefix="/posts", tags=["post"])


@router.get("")
async def list_posts(limit: int = Query(50, ge=1, le=200), current_user_id: str = Depends(get_current_user_id), session: Session = Depends(get_session)):
    posts = await session.posts.load_posts(limit)
    await session.posts.load_feed_state(current_user_id, [post["_id"] for post in posts])
    return {
        "items": [
            {**post, "liked": session.posts.has_liked(post["_id"]), "likes_count": session.posts.get_like_count(post["_id"])}
            for post in session.posts.posts
        ],
        "error": session.posts.error,
    }


@router.post("/{post_id}/like", response_model=MutationResponse)
async def like(post_id: str, current_user_id: str = Depends(get_current_user_id), session: Session = Depends(get_session)):
    ok = await session.posts.like_post(current_user_id, post_id)
    return MutationResponse(ok=ok, error=None if ok else session.posts.error)


@router.delete("/{post_id}/like", response_model=MutationResponse)
async def unlike(post_id: str, current_user_id: str = Depends(get_current_user_id), session: Session = Depends(get_session)):
    ok = await session.posts.unlike_post(current_user_id, post_id)
    return MutationResponse(ok=ok, error=None if ok else session.posts.error)

from fastapi import APIRouter, Depends

from social_sync.schemas.social import FollowRequest, MutationResponse
from social_sync.session import Session
from social_sync.utils.dependencies import get_current_user_id, get_session


router = APIRouter(prefix="/follows", tags=["follow"])


@router.post("", response_model=MutationResponse)
async def follow(payload: FollowRequest, current_user_id: str = Depends(get_current_user_id), session: Session = Depends(get_session)):
    ok = await session.follows.follow_user(current_user_id, payload.target_user_id)
    return MutationResponse(ok=ok, error=None if ok else session.follows.error)


@router.delete("/{target_user_id}", response_model=MutationResponse)
async def unfollow(target_user_id: str, current_user_id: str = Depends(get_current_user_id), session: Session = Depends(get_session)):
    ok = await session.follows.unfollow_user(current_user_id, target_user_id)
    return MutationResponse(ok=ok, error=None if ok else session.follows.error)


@router.get("/{user_id}")
async def profile(user_id: str, current_user_id: str = Depends(get_current_user_id), session: Session = Depends(get_session)):
    await session.follows.subscribe_to_profile(user_id)
    data = await session.follows.load_user_follow_data(current_user_id, user_id)
    if data is None:
        return {"ok": False, "error": session.follows.error}
    return {"ok": True, **data, "pending": session.follows.is_pending(user_id)}

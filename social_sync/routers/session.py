from typing import Any, Dict

from fastapi import APIRouter, Depends

from social_sync.schemas.social import LoginRequest, MutationResponse
from social_sync.session import Session
from social_sync.utils.dependencies import get_session


router = APIRouter(prefix="/session", tags=["session"])


def session_state(session: Session) -> Dict[str, Any]:
    return {
        "current_user_id": session.current_user_id,
        "follows": session.follows.snapshot().model_dump(mode="json"),
        "posts": session.posts.snapshot().model_dump(mode="json"),
        "messages": session.messages.snapshot().model_dump(mode="json"),
    }


@router.post("/login", response_model=MutationResponse)
async def login(payload: LoginRequest, session: Session = Depends(get_session)):
    if not payload.user_id.strip():
        return MutationResponse(ok=False, error="User id is required")
    await session.login(payload.user_id.strip())
    return MutationResponse(ok=True, error=session.messages.error)


@router.post("/logout", response_model=MutationResponse)
async def logout(session: Session = Depends(get_session)):
    await session.logout()
    return MutationResponse(ok=True)


@router.get("/state")
async def state(session: Session = Depends(get_session)):
    return session_state(session)

from fastapi import Depends, HTTPException, Request, status

from social_sync.session import Session


def get_session(request: Request) -> Session:
    session = getattr(request.app.state, "session", None)
    if session is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Session is not ready")
    return session


def get_current_user_id(session: Session = Depends(get_session)) -> str:
    if not session.current_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not signed in")
    return session.current_user_id

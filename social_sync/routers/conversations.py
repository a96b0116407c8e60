from fastapi import APIRouter, Depends

from social_sync.schemas.social import MutationResponse, OpenConversationRequest, SendMessageRequest
from social_sync.session import Session
from social_sync.utils.dependencies import get_current_user_id, get_session


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("")
async def list_conversations(current_user_id: str = Depends(get_current_user_id), session: Session = Depends(get_session)):
    conversations = await session.messages.load_conversations(current_user_id)
    return {
        "items": [c.model_dump(mode="json") for c in conversations],
        "unread_count": session.messages.get_unread_count(),
        "error": session.messages.error,
    }


@router.post("")
async def open_conversation(payload: OpenConversationRequest, current_user_id: str = Depends(get_current_user_id), session: Session = Depends(get_session)):
    conversation = await session.messages.open_conversation_with_user(current_user_id, payload.other_user_id)
    if conversation is None:
        return {"ok": False, "error": session.messages.error}
    return {"ok": True, "conversation": conversation.model_dump(mode="json")}


@router.post("/close", response_model=MutationResponse)
async def close_conversation(session: Session = Depends(get_session)):
    await session.messages.back_to_conversations()
    return MutationResponse(ok=True)


@router.get("/{conversation_id}/messages")
async def list_messages(conversation_id: str, current_user_id: str = Depends(get_current_user_id), session: Session = Depends(get_session)):
    messages = await session.messages.load_messages(conversation_id)
    return {"items": [m.model_dump(mode="json") for m in messages], "error": session.messages.error}


@router.post("/{conversation_id}/messages")
async def send_message(conversation_id: str, payload: SendMessageRequest, current_user_id: str = Depends(get_current_user_id), session: Session = Depends(get_session)):
    message = await session.messages.send_message(conversation_id, current_user_id, payload.text)
    if message is None:
        return {"ok": False, "error": session.messages.error}
    return {"ok": True, "message": message.model_dump(mode="json")}


@router.post("/{conversation_id}/read", response_model=MutationResponse)
async def mark_read(conversation_id: str, current_user_id: str = Depends(get_current_user_id), session: Session = Depends(get_session)):
    ok = await session.messages.mark_conversation_as_read(conversation_id, current_user_id)
    return MutationResponse(ok=ok, error=None if ok else session.messages.error)

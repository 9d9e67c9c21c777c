from fastapi import APIRouter, Request


router = APIRouter(prefix="/presence", tags=["chat"])


@router.get("/{user_id}")
async def presence(user_id: str, request: Request):
    """
    Online status from this process's presence registry. A user connected to
    another worker shows as offline here.
    """
    registry = request.app.state.presence
    return {"user_id": user_id, "online": registry.is_online(user_id)}

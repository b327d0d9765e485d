"""Single endpoint for tagged caller commands and agent messages."""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from app.api.dependencies import get_message_router
from app.messaging.router import MessageRouter

router = APIRouter()


@router.post("/messages/{context_id}")
async def post_message(
    context_id: str,
    payload: Dict[str, Any],
    message_router: MessageRouter = Depends(get_message_router),
):
    return await message_router.handle(context_id, payload)

from typing import Mapping

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from src.core.dependencies import get_connection_registry, get_state_store
from src.core.logger import logger
from src.core.settings import settings
from src.models.conversation import ButtonState, ButtonStatePatch, ConversationState
from src.services.connection_registry import ConnectionRegistry
from src.services.push_gateway import PushGateway, encode_sse
from src.services.state_store import StateStore

router = APIRouter(prefix="/api/conversation", tags=["conversation"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def resolve_user_id(headers: Mapping[str, str], query_params: Mapping[str, str]) -> str:
    return (
        headers.get(settings.api.USER_ID_HEADER)
        or query_params.get("userId")
        or settings.api.DEFAULT_USER_ID
    )


def get_user_id(request: Request) -> str:
    return resolve_user_id(request.headers, request.query_params)


def _failure(message: str) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": message})


@router.get("/state")
async def get_state(
    user_id: str = Depends(get_user_id),
    store: StateStore = Depends(get_state_store),
):
    try:
        state = await store.get_conversation_or_default(user_id)
        return state.to_payload()
    except Exception as e:
        logger.error(f"Error getting conversation state for {user_id}: {e}", exc_info=True)
        return _failure("Failed to get state")


@router.post("/state")
async def set_state(
    state: ConversationState,
    user_id: str = Depends(get_user_id),
    store: StateStore = Depends(get_state_store),
):
    try:
        await store.set_conversation(user_id, state)
        return {"success": True}
    except Exception as e:
        logger.error(f"Error setting conversation state for {user_id}: {e}", exc_info=True)
        return _failure("Failed to set state")


@router.delete("/state")
async def delete_state(
    user_id: str = Depends(get_user_id),
    store: StateStore = Depends(get_state_store),
):
    return await _clear(user_id, store)


@router.post("/clear")
async def clear_state(
    user_id: str = Depends(get_user_id),
    store: StateStore = Depends(get_state_store),
):
    return await _clear(user_id, store)


async def _clear(user_id: str, store: StateStore):
    try:
        await store.clear_conversation(user_id)
        return {"success": True}
    except Exception as e:
        logger.error(f"Error clearing conversation state for {user_id}: {e}", exc_info=True)
        return _failure("Failed to clear state")


@router.get("/button-states")
async def get_button_states(
    user_id: str = Depends(get_user_id),
    store: StateStore = Depends(get_state_store),
):
    try:
        buttons = await store.get_button_state_or_default(user_id)
        return buttons.to_payload()
    except Exception as e:
        logger.error(f"Error getting button states for {user_id}: {e}", exc_info=True)
        return _failure("Failed to get button states")


@router.post("/button-states")
async def set_button_states(
    buttons: ButtonState,
    user_id: str = Depends(get_user_id),
    store: StateStore = Depends(get_state_store),
):
    try:
        await store.set_button_state(user_id, buttons)
        return {"success": True}
    except Exception as e:
        logger.error(f"Error setting button states for {user_id}: {e}", exc_info=True)
        return _failure("Failed to set button states")


@router.patch("/button-states")
async def update_button_states(
    patch: ButtonStatePatch,
    user_id: str = Depends(get_user_id),
    store: StateStore = Depends(get_state_store),
):
    try:
        merged = await store.update_button_state(user_id, patch)
        return {"success": True, "buttonStates": merged.to_payload()}
    except Exception as e:
        logger.error(f"Error updating button states for {user_id}: {e}", exc_info=True)
        return _failure("Failed to update button states")


@router.delete("/button-states")
async def delete_button_states(
    user_id: str = Depends(get_user_id),
    store: StateStore = Depends(get_state_store),
):
    try:
        await store.clear_button_state(user_id)
        return {"success": True}
    except Exception as e:
        logger.error(f"Error clearing button states for {user_id}: {e}", exc_info=True)
        return _failure("Failed to clear button states")


@router.get("/stream")
async def stream_events(
    user_id: str = Depends(get_user_id),
    store: StateStore = Depends(get_state_store),
    registry: ConnectionRegistry = Depends(get_connection_registry),
):
    gateway = PushGateway(
        user_id,
        store,
        registry=registry,
        transport="sse",
        queue_size=settings.sync.PUSH_QUEUE_SIZE,
    )
    logger.info(f"SSE stream opened for {user_id}")
    return StreamingResponse(
        gateway.stream(encode_sse, keepalive=settings.sync.SSE_KEEPALIVE_SECONDS),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )

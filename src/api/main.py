from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from src.api.conversation import resolve_user_id, router as conversation_router
from src.api.websocket import ConversationWebSocketHandler
from src.core.dependencies import get_connection_registry, get_state_store
from src.core.logger import logger
from src.core.settings import settings
from src.services.connection_registry import ConnectionRegistry
from src.services.state_store import StateStore

app = FastAPI(
    title="Conversation Sync API",
    description="Per-user conversation state with real-time push to every open surface",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.api.API_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(conversation_router)


@app.get("/health")
async def health_check(registry: ConnectionRegistry = Depends(get_connection_registry)):
    return {
        "status": "healthy",
        "service": "conversation-sync",
        "version": "0.1.0",
        "active_connections": registry.get_active_connection_count(),
    }


@app.websocket("/ws/conversation")
async def websocket_conversation_endpoint(
    websocket: WebSocket,
    store: StateStore = Depends(get_state_store),
    registry: ConnectionRegistry = Depends(get_connection_registry),
):
    user_id = resolve_user_id(websocket.headers, websocket.query_params)
    handler = ConversationWebSocketHandler(
        websocket,
        user_id,
        store,
        registry=registry,
        queue_size=settings.sync.PUSH_QUEUE_SIZE,
    )

    try:
        await handler.connect()
        await handler.handle_stream()
    except WebSocketDisconnect:
        logger.info(f"Client {user_id} disconnected")
    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
        await handler.send_error("Stream error")
    finally:
        await handler.disconnect()


@app.on_event("startup")
async def startup_event():
    logger.info("Starting Conversation Sync API...")
    logger.info(f"Default user channel: {settings.api.DEFAULT_USER_ID}")
    logger.info(f"Push queue size: {settings.sync.PUSH_QUEUE_SIZE}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down Conversation Sync API...")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.api.main:app",
        host=settings.api.API_HOST,
        port=settings.api.API_PORT,
        workers=settings.api.API_WORKERS,
        reload=settings.api.API_RELOAD,
    )

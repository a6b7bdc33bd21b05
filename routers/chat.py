import asyncio
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from schemas.chat import ChatMessage, HealthResponse, SendMessageRequest, SendMessageResponse
from constants import HISTORY_LIMIT, HISTORY_MAX_LIMIT
from rate_limiter import enforce_rate_limit
from logging_config import get_logger

logger = get_logger(__name__)

chat_router = APIRouter(tags=["chat"], dependencies=[Depends(enforce_rate_limit)])


@chat_router.get("/healthz", response_model=HealthResponse)
async def healthz(request: Request):
    engine = request.app.state.engine
    return HealthResponse(ok=True, connections=len(engine.registry), voice_peers=len(engine.presence))


@chat_router.get("/api/history", response_model=list[ChatMessage])
async def get_history(request: Request, limit: int = Query(HISTORY_LIMIT, ge=1, le=HISTORY_MAX_LIMIT)):
    """Last ``limit`` chat messages of the room, oldest first."""
    engine = request.app.state.engine
    if engine.storage is None:
        return []
    loop = asyncio.get_running_loop()
    try:
        rows = await loop.run_in_executor(None, engine.storage.recent_messages, engine.room, limit)
    except Exception as e:
        logger.error(f"History query failed for room {engine.room}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="db_fail")

    messages = []
    for row in rows:
        try:
            messages.append(ChatMessage(ts=row["ts"], user=row["user"], text=row["text"], cid=row.get("cid")))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed history row in room {engine.room}: {e}")
    return messages


@chat_router.post("/api/send", response_model=SendMessageResponse)
async def send_message(body: SendMessageRequest, request: Request):
    # Same path as a WebSocket "send": persist, then broadcast to every connection
    engine = request.app.state.engine
    client_host = request.client.host if request.client else "unknown"
    result = await engine.publish_chat(body.user, body.text, body.cid)
    if result is None:
        logger.info(f"Rejected empty chat message from {client_host}")
        return JSONResponse(status_code=400, content={"ok": False, "error": "empty"})
    logger.info(f"Chat message from {result.message['user']} via REST ({client_host}), persisted={result.persisted}")
    return SendMessageResponse(ok=True, persisted=result.persisted, ts=result.message["ts"])

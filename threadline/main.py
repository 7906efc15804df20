"""
FastAPI application: the threadline entry point.

Thin HTTP layer over ConversationService. Authentication is handled
upstream; the caller's identity arrives in the X-User-Id header.
Streaming replies are Server-Sent Events: one `data: <json>` frame per
event, a single error frame if the exchange fails, then `data: [DONE]`.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from threadline.backends.router import ModelRouter
from threadline.config import get_config
from threadline.context import ContextManager
from threadline.conversation import ConversationService
from threadline.errors import ThreadlineError, ValidationError
from threadline.orchestrator import Orchestrator
from threadline.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

SSE_DONE = "data: [DONE]\n\n"


# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
store: SQLiteStore | None = None
orchestrator: Orchestrator | None = None
context_manager: ContextManager | None = None
service: ConversationService | None = None


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, log_cfg.get("level", "INFO").upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        from pathlib import Path
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def sse_frame(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


async def _sweep_contexts(interval: float, idle_minutes: float):
    """Periodically evict contexts nobody has touched for idle_minutes."""
    while True:
        await asyncio.sleep(interval)
        try:
            context_manager.cleanup_old_contexts(idle_minutes)
        except Exception:
            logger.exception("Idle context sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global store, orchestrator, context_manager, service

    cfg = get_config()
    _setup_logging(cfg)

    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    router = ModelRouter.from_config(cfg)
    orchestrator = Orchestrator.from_config(cfg, router=router)
    context_manager = ContextManager.from_config(cfg)
    service = ConversationService.from_config(cfg, orchestrator, context_manager, store)

    ctx_cfg = cfg.get("context", {})
    sweeper = asyncio.create_task(
        _sweep_contexts(
            ctx_cfg.get("sweep_interval_seconds", 300),
            ctx_cfg.get("idle_minutes", 60),
        )
    )

    logger.info(
        "threadline started with default model %s, available models: %s",
        orchestrator.default_model,
        orchestrator.get_available_models() or "none (no provider keys configured)",
    )
    logger.info(
        "Context limits: %d messages / %d tokens (floor %d), idle sweep after %s min",
        context_manager.max_messages,
        context_manager.max_tokens,
        context_manager.min_retained,
        ctx_cfg.get("idle_minutes", 60),
    )

    yield

    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    logger.info("threadline shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="threadline",
    description="Multi-provider conversational backend.",
    version="0.3.0",
    lifespan=lifespan,
)


@app.exception_handler(ThreadlineError)
async def threadline_error_handler(request: Request, exc: ThreadlineError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        {"success": False, "error": exc.__class__.__name__, "message": str(exc)},
        status_code=exc.status_code,
    )


def _user_id(request: Request) -> str | None:
    return request.headers.get("x-user-id") or None


def _unauthenticated() -> JSONResponse:
    return JSONResponse(
        {"success": False, "message": "Authentication required"}, status_code=401
    )


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("invalid JSON")
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {"status": "ok", "active_contexts": len(context_manager)}


@app.get("/api/models")
async def list_models():
    """Models of every provider with a configured key."""
    return {
        "success": True,
        "data": orchestrator.get_available_models(),
        "default": orchestrator.default_model,
    }


@app.get("/api/contexts")
async def list_contexts():
    """Live context windows, for monitoring."""
    return {"success": True, "data": context_manager.get_active_contexts()}


@app.get("/api/conversations")
async def list_conversations(request: Request, workspace_id: str | None = None, limit: int = 50):
    user_id = _user_id(request)
    if not user_id:
        return _unauthenticated()
    convs = service.list_conversations(user_id, workspace_id, limit)
    return {"success": True, "data": [c.to_dict() for c in convs]}


@app.post("/api/conversations")
async def create_conversation(request: Request):
    user_id = _user_id(request)
    if not user_id:
        return _unauthenticated()
    body = await _json_body(request)
    workspace_id = body.get("workspace_id")
    if not workspace_id:
        raise ValidationError("workspace_id is required")

    conv = service.create_conversation(user_id, workspace_id, body.get("title"))
    return JSONResponse({"success": True, "data": conv.to_dict()}, status_code=201)


@app.get("/api/conversations/{conv_id}")
async def get_conversation(conv_id: str, request: Request):
    user_id = _user_id(request)
    if not user_id:
        return _unauthenticated()
    conv = service.get_conversation(conv_id, user_id)
    data = conv.to_dict()
    data["context"] = context_manager.get_context_summary(conv_id)
    return {"success": True, "data": data}


@app.patch("/api/conversations/{conv_id}")
async def rename_conversation(conv_id: str, request: Request):
    user_id = _user_id(request)
    if not user_id:
        return _unauthenticated()
    body = await _json_body(request)
    title = (body.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required")
    service.update_title(conv_id, user_id, title)
    return {"success": True}


@app.post("/api/conversations/{conv_id}/archive")
async def archive_conversation(conv_id: str, request: Request):
    user_id = _user_id(request)
    if not user_id:
        return _unauthenticated()
    service.archive_conversation(conv_id, user_id)
    return {"success": True}


@app.delete("/api/conversations/{conv_id}")
async def delete_conversation(conv_id: str, request: Request):
    user_id = _user_id(request)
    if not user_id:
        return _unauthenticated()
    service.delete_conversation(conv_id, user_id)
    return {"success": True}


@app.post("/api/conversations/{conv_id}/messages")
async def send_message(conv_id: str, request: Request):
    user_id = _user_id(request)
    if not user_id:
        return _unauthenticated()
    body = await _json_body(request)
    result = await service.send_message(
        conv_id, user_id, body.get("content", ""), body.get("model")
    )
    return {"success": True, "data": result}


@app.post("/api/conversations/{conv_id}/messages/stream")
async def stream_message(conv_id: str, request: Request):
    """
    Stream an exchange as SSE.

    Frames:
        {type:"user",  content, message_id}
        {type:"ai",    content}
        {type:"done",  content:"", message_id}
        {type:"error", error, message}      instead of "done" on failure
    Always terminated by `data: [DONE]`.
    """
    user_id = _user_id(request)
    if not user_id:
        return _unauthenticated()
    body = await _json_body(request)
    content = body.get("content", "")
    model = body.get("model")

    async def _event_stream():
        try:
            async for event in service.stream_message(conv_id, user_id, content, model):
                yield sse_frame(event)
        except ThreadlineError as e:
            logger.warning("Stream for conversation %s failed: %s", conv_id, e)
            yield sse_frame({"type": "error", "error": e.__class__.__name__, "message": str(e)})
        except Exception as e:
            logger.exception("Stream for conversation %s crashed", conv_id)
            yield sse_frame({"type": "error", "error": "InternalError", "message": str(e)})
        yield SSE_DONE

    return StreamingResponse(
        _event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# Run with: python -m threadline.main
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn

    cfg = get_config()
    uvicorn.run(
        "threadline.main:app",
        host=cfg["server"]["host"],
        port=cfg["server"]["port"],
        reload=False,
    )

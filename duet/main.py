"""Duet — FastAPI app that pairs a code-generation CLI with a review CLI.

Loads config.yaml on startup. Exposes /api/generate for SSE streaming and
/api/history for stored conversations, plus operational endpoints for
health, config viewing, and hot-reload.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from duet.config import get_config, load_config, reload_config
from duet.conversations import ConversationStore
from duet.errors import ServiceError
from duet.health import check_health
from duet.pipeline import Generation
from duet.schemas import Conversation, GenerateRequest, HealthStatus, Message
from duet.streaming import SSE_HEADERS, sse_stream

# Load config early so we can read log level and allowed_origins.
_boot_config = load_config()

logging.basicConfig(
    level=_boot_config.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the conversation store on startup."""
    config = get_config()
    app.state.store = ConversationStore()
    logger.info(
        f"Duet started (origins={config.allowed_origins}, "
        f"auth={'enabled' if config.api_key else 'disabled'}, "
        f"workspace={config.cli.workspace_dir})"
    )
    yield
    logger.info("Duet shutting down")


app = FastAPI(title="Duet", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_boot_config.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Conversation-Id"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.monotonic()
    logger.info(f"{request.method} {request.url.path} - started")
    try:
        response = await call_next(request)
    except Exception as e:
        duration = int((time.monotonic() - start) * 1000)
        logger.error(f"{request.method} {request.url.path} - {duration}ms - {e}")
        raise
    duration = int((time.monotonic() - start) * 1000)
    logger.info(f"{request.method} {request.url.path} - {duration}ms")
    return response


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# ---------------------------------------------------------------------------
# Auth dependency
# ---------------------------------------------------------------------------


async def verify_api_key(request: Request) -> None:
    """Validate X-API-Key header against the configured key.
    If no api_key is set in config, auth is disabled (dev mode).
    """
    config = get_config()
    if not config.api_key:
        return

    key = request.headers.get("X-API-Key")
    if key != config.api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


# ---------------------------------------------------------------------------
# Generation endpoint
# ---------------------------------------------------------------------------


@app.post("/api/generate", dependencies=[Depends(verify_api_key)])
async def generate(
    body: GenerateRequest, store: ConversationStore = Depends(get_store)
):
    """Run gemini (and, unless skipped, the claude review) for a prompt.

    Streams response as Server-Sent Events (SSE).
    """
    config = get_config()
    generation = Generation(
        config.cli, store, body.prompt, skip_review=body.skip_review
    )

    return StreamingResponse(
        sse_stream(generation),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, "X-Conversation-Id": generation.conversation_id},
    )


# ---------------------------------------------------------------------------
# History endpoints
# ---------------------------------------------------------------------------


@app.get("/api/history", response_model=list[Conversation])
async def list_conversations(store: ConversationStore = Depends(get_store)):
    logger.debug("Fetching all conversations")
    return store.get_all_conversations()


@app.get("/api/history/{conversation_id}", response_model=list[Message])
async def get_messages(
    conversation_id: str, store: ConversationStore = Depends(get_store)
):
    return store.get_messages(conversation_id)


@app.delete(
    "/api/history/{conversation_id}/messages",
    status_code=204,
    dependencies=[Depends(verify_api_key)],
)
async def clear_messages(
    conversation_id: str, store: ConversationStore = Depends(get_store)
):
    store.clear_messages(conversation_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------


@app.get("/api/health", response_model=HealthStatus)
async def health():
    """Report whether both CLIs are resolvable."""
    return check_health(get_config().cli)


@app.get("/config")
async def get_current_config():
    """Return current config as JSON, without the API key."""
    config = get_config()
    return config.model_dump(exclude={"api_key"})


@app.post("/reload", dependencies=[Depends(verify_api_key)])
async def reload():
    """Hot-reload config.yaml without restarting the server.

    CLI commands, workspace and timeout apply to the next generation;
    CORS origins and log level only change on restart.
    """
    try:
        new_config = reload_config()
    except Exception as e:
        logger.error(f"Reload failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Reload failed: {e}")

    return {
        "status": "reloaded",
        "gemini": new_config.cli.gemini,
        "claude": new_config.cli.claude,
    }

# Companion chat backend: FastAPI routes and notification WebSocket
from contextlib import asynccontextmanager
import logging
import random
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from companion.auth import user_id_from_authorization, user_id_from_token
from companion.config_loader import CONFIG
from companion.database import connect, init_indexes, verify_database_health
from companion.outcome import ApiResponse
from companion.pipeline import CompletionPipeline
from companion.services import Services, build_services
from companion.suggestions import SuggestionService

logging.basicConfig(
    level=getattr(logging, str(CONFIG["server"].get("log_level", "INFO")).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def install_services(app: FastAPI, services: Services) -> None:
    """Attach a service container and the components built on it."""
    app.state.services = services
    app.state.pipeline = CompletionPipeline(services)
    app.state.suggestions = SuggestionService(services)


@asynccontextmanager
async def lifespan(app: FastAPI):
    http_client = None
    if getattr(app.state, "services", None) is None:
        db = connect(CONFIG)
        if not verify_database_health(db):
            logger.warning("[STARTUP] MongoDB health check failed - app may not function correctly")
        init_indexes(db)
        http_client = httpx.AsyncClient(timeout=CONFIG["completion"].get("timeout", 60.0))
        services = build_services(db, CONFIG, http_client=http_client, rng=random.Random())
        providers, models = services.registry.seed_defaults()
        logger.info(f"[STARTUP] Seeded {providers} providers, {models} models")
        install_services(app, services)

    yield

    services = app.state.services
    logger.info(f"[SHUTDOWN] Waiting for {services.runner.pending} background tasks")
    await services.runner.drain()
    if http_client is not None:
        await http_client.aclose()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CONFIG["server"].get("cors_origins", ["*"]),
    allow_methods=["*"],
    allow_headers=["*"],
)


def _respond(result: ApiResponse) -> JSONResponse:
    return JSONResponse(result.body, status_code=result.status_code)


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


# ============================================================================
# CHAT COMPLETION
# ============================================================================

@app.post("/api/openai-chat-completion")
async def openai_chat_completion(request: Request, authorization: Optional[str] = Header(None)):
    """Start a chat turn. The assistant reply is pushed over /ws."""
    body = await _json_body(request)
    auth_user_id = user_id_from_authorization(authorization, request.app.state.services.config)
    result = await request.app.state.pipeline.start_turn(body, auth_user_id)
    return _respond(result)


# ============================================================================
# SUGGESTIONS
# ============================================================================

@app.post("/api/chat-suggestions")
async def chat_suggestions(request: Request):
    return _respond(await request.app.state.suggestions.suggest(await _json_body(request)))


@app.post("/api/chat-suggestions/send")
async def chat_suggestions_send(request: Request):
    return _respond(await request.app.state.suggestions.send(await _json_body(request)))


@app.post("/api/chat-suggestions/preferences")
async def chat_suggestions_preferences(request: Request):
    return _respond(await request.app.state.suggestions.update_preferences(await _json_body(request)))


# ============================================================================
# CATALOG / HEALTH
# ============================================================================

@app.get("/api/models")
async def list_models(request: Request, premium: Optional[bool] = None, include_inactive: bool = False):
    registry = request.app.state.services.registry
    return {"models": registry.get_available_models_formatted(include_inactive, is_premium=premium)}


@app.get("/api/health")
async def health(request: Request):
    mongo_ok = verify_database_health(request.app.state.services.db)
    return {"status": "ok" if mongo_ok else "degraded", "mongo": mongo_ok}


# ============================================================================
# NOTIFICATIONS
# ============================================================================

@app.websocket("/ws")
async def notifications_ws(websocket: WebSocket, userId: Optional[str] = None, token: Optional[str] = None):
    """Notification channel. Browsers pass the JWT as ?token=, other clients may send a Bearer header."""
    services = websocket.app.state.services
    auth_user_id = (user_id_from_token(token, services.config)
                    or user_id_from_authorization(websocket.headers.get("authorization"), services.config))
    if not auth_user_id or (userId and userId != auth_user_id):
        logger.warning(f"[WS] Rejected connection for userId={userId!r}")
        await websocket.close(code=1008)
        return
    hub = services.hub
    await websocket.accept()
    await hub.register(auth_user_id, websocket)
    try:
        while True:
            # Client messages are keep-alives only
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await hub.unregister(auth_user_id, websocket)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=CONFIG["server"].get("host", "0.0.0.0"), port=int(CONFIG["server"].get("port", 8000)))

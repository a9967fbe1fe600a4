"""FastAPI application serving the assistant page and its JSON API."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import load_config
from .llm import create_from_config, generate_reply
from .memory import DiskConversationStore, Message, StoreError

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).resolve().parent / "static"
DEFAULT_USER_ID = "default-user"
DEFAULT_SYSTEM_PROMPT = "You are a helpful personal assistant. Be concise and friendly."
EMPTY_MESSAGE_ERROR = 'Missing or empty "message" in request body'
STORAGE_MISSING_ERROR = (
    "Conversation storage is unavailable. Set memory.data_dir in the config file "
    "(or ASSISTANT_SERVER__MEMORY__DATA_DIR) to a writable directory and restart the server."
)
CORS_METHODS = ["GET", "POST", "OPTIONS"]
CORS_HEADERS = ["Content-Type"]


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId", description="Conversation key.")


class ClearRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(default=None, alias="userId")


class ChatResponse(BaseModel):
    response: str


# -----------------------------
# Utilities
# -----------------------------
def _get_system_prompt(cfg: Dict[str, Any]) -> str:
    sys_prompt = (cfg.get("assistant") or {}).get("system_prompt") or DEFAULT_SYSTEM_PROMPT
    return str(sys_prompt).strip()


def _make_store(cfg: Dict[str, Any]) -> Optional[DiskConversationStore]:
    data_dir = (cfg.get("memory") or {}).get("data_dir")
    if data_dir is None or not str(data_dir).strip():
        logger.error("memory.data_dir is not configured; API requests will get 503.")
        return None
    try:
        return DiskConversationStore(str(data_dir))
    except StoreError:
        logger.exception("Conversation storage failed to initialise; API requests will get 503.")
        return None


def _make_model(cfg: Dict[str, Any]) -> Tuple[Optional[Any], Optional[str]]:
    """Build the configured chat model, or return the reason it is unavailable."""
    try:
        return create_from_config(cfg), None
    except (ValueError, FileNotFoundError, ImportError) as e:
        logger.error("Chat model unavailable; /api/chat will get 503: %s", e)
        return None, f"Chat model is unavailable: {e}"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _cors_headers(origins: List[str], request: Request) -> Dict[str, str]:
    headers = {
        "Access-Control-Allow-Methods": ", ".join(CORS_METHODS),
        "Access-Control-Allow-Headers": ", ".join(CORS_HEADERS),
    }
    origin = request.headers.get("origin")
    if "*" in origins:
        headers["Access-Control-Allow-Origin"] = "*"
    elif origin in origins:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Vary"] = "Origin"
    return headers


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    model: Optional[Any] = None,
    store: Optional[DiskConversationStore] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    cors_origins = list((cfg.get("server") or {}).get("cors_origins") or ["*"])
    assistant_cfg = cfg.get("assistant") or {}
    default_user = str(assistant_cfg.get("default_user_id") or DEFAULT_USER_ID)

    # Services
    model_error: Optional[str] = None
    if model is None:
        model, model_error = _make_model(cfg)
    store = store or _make_store(cfg)
    system_prompt = _get_system_prompt(cfg)
    provider = getattr(model, "provider", type(model).__name__) if model is not None else None
    logger.info(
        "Assistant server ready: provider=%s storage=%s",
        provider,
        store.root if store is not None else None,
    )

    def resolve_user(user_id: Optional[str]) -> str:
        # Absent or blank ids fall back to the shared sentinel key.
        return user_id.strip() if user_id and user_id.strip() else default_user

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        close = getattr(model, "close", None)
        if callable(close):
            close()

    app = FastAPI(
        title="Personal Assistant Server",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    if store is None:
        @app.middleware("http")
        async def storage_unavailable(request: Request, call_next):
            return _error(503, STORAGE_MISSING_ERROR)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_methods=CORS_METHODS,
        allow_headers=CORS_HEADERS,
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        # Unknown paths and wrong methods look the same to clients.
        if exc.status_code in (404, 405):
            return PlainTextResponse("Not found", status_code=404)
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        detail = first.get("msg", "invalid value")
        return _error(400, f"Invalid request body: {where + ': ' if where else ''}{detail}")

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(500, str(exc) or type(exc).__name__)

    app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")

    @app.get("/", include_in_schema=False)
    @app.get("/index.html", include_in_schema=False)
    def index() -> FileResponse:
        return FileResponse(str(STATIC_DIR / "index.html"), media_type="text/html")

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "provider": provider,
            "storage": str(store.root),
        }

    @app.post("/api/chat", response_model=ChatResponse)
    def chat(req: Optional[ChatRequest] = Body(default=None)):
        if model is None:
            raise HTTPException(status_code=503, detail=model_error or "Chat model is unavailable.")
        msg = ((req.message if req else None) or "").strip()
        if not msg:
            raise HTTPException(status_code=400, detail=EMPTY_MESSAGE_ERROR)
        user_id = resolve_user(req.user_id)

        try:
            store.append(user_id, Message(role="user", content=msg))
            history = store.read(user_id)
            logger.debug("chat user=%s history=%d", user_id, len(history))
            reply = generate_reply(model, system_prompt, history)
            store.append(user_id, Message(role="assistant", content=reply))
        except Exception as e:
            logger.exception("chat failed for user=%s", user_id)
            raise HTTPException(status_code=500, detail=str(e) or type(e).__name__) from e

        return ChatResponse(response=reply)

    @app.get("/api/history")
    def history(user_id: Optional[str] = Query(default=None, alias="userId")) -> List[Dict[str, str]]:
        key = resolve_user(user_id)
        try:
            return [m.to_dict() for m in store.read(key)]
        except StoreError as e:
            logger.exception("history failed for user=%s", key)
            raise HTTPException(status_code=500, detail=str(e)) from e

    @app.post("/api/clear")
    def clear(req: Optional[ClearRequest] = Body(default=None)) -> Dict[str, bool]:
        key = resolve_user(req.user_id if req else None)
        try:
            store.clear(key)
        except StoreError as e:
            logger.exception("clear failed for user=%s", key)
            raise HTTPException(status_code=500, detail=str(e)) from e
        return {"success": True}

    # Plain OPTIONS (not a CORS preflight) on any path.
    @app.options("/{path:path}", include_in_schema=False)
    def options(request: Request) -> Response:
        return Response(status_code=200, headers=_cors_headers(cors_origins, request))

    return app

"""
FastAPI application for passkey-protected polling chat rooms.
Security-hardened with rate limiting, CORS, trusted hosts and security headers.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from typing import Callable, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from keyroom.cleanup import cleanup_loop
from keyroom.config import Settings
from keyroom.errors import ErrorKind, RoomError
from keyroom.room_manager import RoomManager
from keyroom.room_models import (
    AdminRequest,
    ClearRequest,
    DeleteMessageRequest,
    EditRequest,
    JoinRequest,
    LeaveRequest,
    PinRequest,
    RoomsResponse,
    SendRequest,
)
from keyroom.storage import SnapshotError, SnapshotStore, SnapshotWriter

# ============ ENVIRONMENT CONFIG ============
settings = Settings.from_env()

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Rate limiter setup
limiter = Limiter(key_func=get_remote_address)

router = APIRouter()


def persist(request: Request):
    """Schedule a full registry snapshot; does not block the response."""
    state = request.app.state
    state.writer.schedule(state.manager.snapshot())


def room_manager(request: Request) -> RoomManager:
    return request.app.state.manager


# ============ LIFESPAN CONTEXT ============
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the registry snapshot and start the cleanup worker."""
    state = app.state
    try:
        payload = state.store.load()
        if payload is not None:
            count = state.manager.restore(payload)
            logger.info(f"Loaded {count} rooms from {state.store.path}")
    except (SnapshotError, ValueError, KeyError, TypeError) as e:
        logger.error(f"Ignoring unusable snapshot: {e}")

    cleanup_task = asyncio.create_task(
        cleanup_loop(state.manager, state.writer, state.settings.cleanup_interval_s)
    )
    logger.info("keyroom started successfully")
    yield
    cleanup_task.cancel()
    with suppress(asyncio.CancelledError):
        await cleanup_task
    state.writer.schedule(state.manager.snapshot())
    await state.writer.close()
    logger.info("keyroom shutting down")


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, debug: bool = False):
        super().__init__(app)
        self.debug = debug

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON only, nothing to load or frame
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        response.headers["Cache-Control"] = "no-store"
        if not self.debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


# ============ ERROR HANDLERS ============
async def room_error_handler(request: Request, exc: RoomError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
    logger.debug(f"Rejected request to {request.url.path}: {fields}")
    return JSONResponse(
        {
            "success": False,
            "error": f"Missing or invalid fields: {', '.join(fields)}." if fields else "Invalid request.",
            "code": ErrorKind.VALIDATION.value,
        },
        status_code=400,
    )


async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        {"success": False, "error": "An unexpected server error occurred."},
        status_code=500,
    )


# ============ ROOM ENDPOINTS ============

@router.post("/join")
@limiter.limit(settings.join_rate_limit)
async def join(request: Request, body: JoinRequest):
    """Join a room, creating it on first use when an admin code is supplied."""
    token, room = room_manager(request).join(
        body.room_id, body.passkey, body.username,
        session_token=body.session_token, admin_code=body.admin_code,
    )
    persist(request)
    member = room.members[body.username.strip()]
    return {
        "success": True,
        "sessionToken": token,
        "roomId": room.id,
        "creator": room.creator,
        "isAdmin": member.is_admin,
    }


@router.get("/poll")
async def poll(
    request: Request,
    room_id: str = Query(..., alias="roomId", min_length=1),
    passkey: str = Query(..., min_length=1),
    username: str = Query(..., min_length=1),
    session_token: str = Query(..., alias="sessionToken", min_length=1),
    since: int = Query(0),
    is_typing: bool = Query(False, alias="isTyping"),
):
    """Presence heartbeat plus everything that changed after `since`."""
    payload, evicted = room_manager(request).poll(
        room_id, passkey, username, session_token, since=since, is_typing=is_typing,
    )
    if evicted:
        persist(request)
    return payload


@router.post("/send")
@limiter.limit(settings.send_rate_limit)
async def send(request: Request, body: SendRequest):
    message = room_manager(request).send(
        body.room_id, body.passkey, body.user, body.text,
        reply_to=body.reply_to.model_dump() if body.reply_to else None,
        is_announcement=body.is_announcement,
        session_token=body.session_token,
    )
    persist(request)
    return {"success": True, "message": message.to_public()}


@router.post("/edit")
async def edit(request: Request, body: EditRequest):
    room_manager(request).edit(
        body.room_id, body.passkey, body.username, body.message_id, body.new_text,
        session_token=body.session_token,
    )
    persist(request)
    return {"success": True}


@router.post("/delete-message")
async def delete_message(request: Request, body: DeleteMessageRequest):
    room_manager(request).delete_message(
        body.room_id, body.passkey, body.username, body.message_id,
        session_token=body.session_token,
    )
    persist(request)
    return {"success": True}


@router.post("/pin")
async def pin(request: Request, body: PinRequest):
    manager = room_manager(request)
    if body.action == "pin":
        if not body.message:
            raise RoomError(ErrorKind.VALIDATION, "Message required to pin.")
        room = manager.pin(
            body.room_id, body.passkey, body.username, body.message,
            session_token=body.session_token,
        )
    else:
        room = manager.unpin(
            body.room_id, body.passkey, body.username,
            session_token=body.session_token,
        )
    persist(request)
    return {"success": True, "pinnedMessage": room.pinned_message, "pinnedBy": list(room.pinned_by)}


@router.post("/admin")
async def admin(request: Request, body: AdminRequest):
    manager = room_manager(request)
    if body.action == "kick":
        manager.kick(
            body.room_id, body.passkey, body.admin_user, body.target_user,
            session_token=body.session_token,
        )
        persist(request)
        return {"success": True}

    purge_at = manager.delete_room(
        body.room_id, body.passkey, body.admin_user,
        session_token=body.session_token,
    )
    persist(request)
    return {"success": True, "message": "Room deleted.", "deletionScheduledAt": purge_at}


@router.post("/leave")
async def leave(request: Request, body: LeaveRequest):
    """Always succeeds; a bad room or passkey is ignored."""
    left = room_manager(request).leave(
        body.room_id, body.passkey, body.username,
        explicit=body.explicit, session_token=body.session_token,
    )
    if left:
        persist(request)
    return {"success": True}


@router.post("/clear")
async def clear(request: Request, body: ClearRequest):
    notice = room_manager(request).clear(body.room_id, body.passkey)
    persist(request)
    return {"success": True, "message": notice.to_public()}


@router.get("/rooms", response_model=RoomsResponse)
async def list_rooms(request: Request):
    return {"success": True, "rooms": room_manager(request).list_rooms()}


# ============ APPLICATION ============

def create_app(app_settings: Optional[Settings] = None,
               clock: Callable[[], float] = time.time) -> FastAPI:
    cfg = app_settings or settings
    app = FastAPI(title="keyroom", docs_url=None, redoc_url=None, lifespan=lifespan)

    store = SnapshotStore(cfg.snapshot_path)
    app.state.settings = cfg
    app.state.manager = RoomManager(cfg, clock=clock)
    app.state.store = store
    app.state.writer = SnapshotWriter(store)

    limiter.enabled = cfg.rate_limit_enabled
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(RoomError, room_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware, debug=cfg.debug)
    # Trusted Host Middleware - prevent host header attacks
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=cfg.trusted_hosts)

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

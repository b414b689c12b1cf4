# context_auth/core/app.py
import asyncio
import base64
import logging
import secrets
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.sessions import SessionMiddleware

from context_auth.core.config import Settings, load_settings
from context_auth.models.schemas import ContextItem, MessageResponse, PrimaryContext, SecurityLogItem
from context_auth.services.context_auth_service import ContextAuthService

log = logging.getLogger(__name__)


# ---------------- Security / request-id middleware ----------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    CSP_DEFAULT = (
        "default-src 'none'; "
        "base-uri 'none'; "
        "form-action 'self'"
    )
    # Docs page CSP (allows Swagger UI external resources)
    CSP_DOCS = (
        "default-src 'none'; "
        "script-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
        "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
        "img-src 'self' data: https:; "
        "connect-src 'self'; "
        "base-uri 'none'"
    )

    async def dispatch(self, request: Request, call_next):
        resp = await call_next(request)
        path = request.url.path or "/"
        csp = self.CSP_DOCS if path in ("/docs", "/redoc", "/openapi.json") else self.CSP_DEFAULT
        resp.headers.setdefault("Content-Security-Policy", csp)
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains; preload")
        return resp

class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or base64.urlsafe_b64encode(secrets.token_bytes(9)).rstrip(b"=").decode()
        request.state.request_id = rid
        resp = await call_next(request)
        resp.headers["X-Request-ID"] = rid
        return resp


# ---------------- Dependencies ----------------
def get_service(req: Request) -> ContextAuthService:
    return req.app.state.context_auth

def current_user_id(req: Request) -> str:
    """User id put in the signed session cookie by the sign-in flow."""
    user_id = req.session.get("user_id")
    if not user_id:
        raise HTTPException(status_code=401, detail="User not authenticated")
    return str(user_id)


# ---------------- Routes ----------------
router = APIRouter()

@router.get("/health", tags=["ops"], summary="Liveness probe")
async def health():
    return {"ok": True}

@router.post("/auth/context-data/primary", response_model=MessageResponse,
             tags=["context-data"],
             summary="Record Primary Context",
             description="Record the current request's context as the user's primary context (after email verification)")
async def add_context_data(req: Request,
                           user_id: str = Depends(current_user_id),
                           service: ContextAuthService = Depends(get_service)):
    try:
        fingerprint = await service.fingerprint(req)
        await service.establish_canonical_context(user_id, req.session.get("email"), fingerprint)
        return {"message": "Email verification process was successful"}
    except HTTPException:
        raise
    except Exception as e:
        log.error("Recording primary context failed for user %s: %s", user_id, e, exc_info=True)
        raise HTTPException(status_code=500, detail="Error occurred while saving context data")

@router.get("/auth/context-data/primary", response_model=PrimaryContext,
            tags=["context-data"],
            summary="Get Primary Context",
            description="The user's primary (canonical) login context")
async def get_auth_context_data(user_id: str = Depends(current_user_id),
                                service: ContextAuthService = Depends(get_service)):
    try:
        context = await service.primary_context(user_id)
    except Exception as e:
        log.error("Get primary context failed for user %s: %s", user_id, e, exc_info=True)
        raise HTTPException(status_code=500, detail="Error occurred while reading context data")
    if context is None:
        raise HTTPException(status_code=404, detail="Not found")
    return context

@router.get("/auth/context-data/trusted", response_model=List[ContextItem],
            tags=["context-data"],
            summary="List Trusted Contexts")
async def get_trusted_auth_context_data(user_id: str = Depends(current_user_id),
                                        service: ContextAuthService = Depends(get_service)):
    try:
        return await service.trusted_contexts(user_id)
    except Exception as e:
        log.error("List trusted contexts failed for user %s: %s", user_id, e, exc_info=True)
        raise HTTPException(status_code=500, detail="Error occurred while reading context data")

@router.get("/auth/context-data/blocked", response_model=List[ContextItem],
            tags=["context-data"],
            summary="List Blocked Contexts")
async def get_blocked_auth_context_data(user_id: str = Depends(current_user_id),
                                        service: ContextAuthService = Depends(get_service)):
    try:
        return await service.blocked_contexts(user_id)
    except Exception as e:
        log.error("List blocked contexts failed for user %s: %s", user_id, e, exc_info=True)
        raise HTTPException(status_code=500, detail="Error occurred while reading context data")

@router.delete("/auth/context-data/{context_id}", response_model=MessageResponse,
               tags=["context-data"],
               summary="Delete Login Context")
async def delete_context_auth_data(context_id: int,
                                   user_id: str = Depends(current_user_id),
                                   service: ContextAuthService = Depends(get_service)):
    try:
        deleted = await service.policy.delete(context_id, user_id)
    except Exception as e:
        log.error("Delete context %s failed: %s", context_id, e, exc_info=True)
        raise HTTPException(status_code=500, detail="Error occurred while deleting context data")
    if not deleted:
        raise HTTPException(status_code=404, detail="Not found")
    return {"message": "Data deleted successfully"}

@router.patch("/auth/context-data/block/{context_id}", response_model=MessageResponse,
              tags=["context-data"],
              summary="Block Login Context")
async def block_context_auth_data(context_id: int,
                                  user_id: str = Depends(current_user_id),
                                  service: ContextAuthService = Depends(get_service)):
    try:
        record = await service.policy.block(context_id, user_id)
    except Exception as e:
        log.error("Block context %s failed: %s", context_id, e, exc_info=True)
        raise HTTPException(status_code=500, detail="Error occurred while blocking context")
    if record is None:
        raise HTTPException(status_code=404, detail="Not found")
    return {"message": "Blocked successfully"}

@router.patch("/auth/context-data/unblock/{context_id}", response_model=MessageResponse,
              tags=["context-data"],
              summary="Unblock Login Context",
              description="Unblocking also marks the context as trusted")
async def unblock_context_auth_data(context_id: int,
                                    user_id: str = Depends(current_user_id),
                                    service: ContextAuthService = Depends(get_service)):
    try:
        record = await service.policy.unblock(context_id, user_id)
    except Exception as e:
        log.error("Unblock context %s failed: %s", context_id, e, exc_info=True)
        raise HTTPException(status_code=500, detail="Error occurred while unblocking context")
    if record is None:
        raise HTTPException(status_code=404, detail="Not found")
    return {"message": "Unblocked successfully"}

@router.patch("/auth/context-data/trust/{context_id}", response_model=MessageResponse,
              tags=["context-data"],
              summary="Trust Login Context",
              description="Called by the verification flow once the user confirmed the sign-in")
async def trust_context_auth_data(context_id: int,
                                  user_id: str = Depends(current_user_id),
                                  service: ContextAuthService = Depends(get_service)):
    try:
        record = await service.policy.promote_to_trusted(context_id, user_id)
    except Exception as e:
        log.error("Trust context %s failed: %s", context_id, e, exc_info=True)
        raise HTTPException(status_code=500, detail="Error occurred while trusting context")
    if record is None:
        raise HTTPException(status_code=404, detail="Not found")
    return {"message": "Login verified successfully"}

@router.patch("/auth/context-data/primary/{context_id}", response_model=MessageResponse,
              tags=["context-data"],
              summary="Make Context Primary",
              description="Replace the primary context with a trusted login context")
async def adopt_primary_context(context_id: int,
                                user_id: str = Depends(current_user_id),
                                service: ContextAuthService = Depends(get_service)):
    try:
        canonical = await service.adopt_as_canonical(context_id, user_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        log.error("Adopt context %s as primary failed: %s", context_id, e, exc_info=True)
        raise HTTPException(status_code=500, detail="Error occurred while updating primary context")
    if canonical is None:
        raise HTTPException(status_code=404, detail="Not found")
    return {"message": "Primary context updated successfully"}

@router.get("/auth/security-logs", response_model=List[SecurityLogItem],
            tags=["context-data"],
            summary="Security Log",
            description="Security relevant events for the user's login contexts")
async def get_security_logs(user_id: str = Depends(current_user_id),
                            service: ContextAuthService = Depends(get_service)):
    try:
        return await service.security_logs(user_id)
    except Exception as e:
        log.error("Read security logs failed for user %s: %s", user_id, e, exc_info=True)
        raise HTTPException(status_code=500, detail="Error occurred while reading security logs")


# ---------------- FastAPI app ----------------
async def _periodic_log_sweep(service: ContextAuthService, settings: Settings):
    """Background task to drop expired security log entries"""
    while True:
        try:
            await asyncio.sleep(settings.audit_sweep_interval_seconds)
            deleted = await service.store.purge_security_logs(settings.audit_retention_seconds)
            if deleted > 0:
                log.info("Periodic sweep: removed %d expired security log entries", deleted)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Error in periodic security log sweep: %s", e)


def create_app(settings: Optional[Settings] = None, service: Optional[ContextAuthService] = None) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s [%(name)s.%(funcName)s] %(message)s")
    log.info("Loaded config from: %s", settings.cfg_file_used or "<defaults>")

    if not settings.session_secret_key:
        log.warning("No session secret configured; generated ephemeral dev key.")

    app = FastAPI(
        title="Context Auth API",
        description="""Context-based login anomaly detection and device trust""",
        version="1.0.0",
        middleware=[
            Middleware(RequestIDMiddleware),
            Middleware(SecurityHeadersMiddleware),
            Middleware(SessionMiddleware,
                       secret_key=(settings.session_secret_key or base64.urlsafe_b64encode(secrets.token_bytes(32)).decode()),
                       session_cookie=settings.session_cookie_name,
                       https_only=settings.https_only,
                       same_site=settings.session_samesite),
        ]
    )
    app.state.settings = settings
    app.state.context_auth = service or ContextAuthService.from_settings(settings)
    app.state.sweep_task = None
    app.include_router(router)

    @app.on_event("startup")
    async def _init_db():
        svc: ContextAuthService = app.state.context_auth
        await svc.init()
        log.info("DB initialized at %s", svc.store.path)
        deleted = await svc.store.purge_security_logs(settings.audit_retention_seconds)
        if deleted > 0:
            log.info("Initial sweep: removed %d expired security log entries", deleted)
        app.state.sweep_task = asyncio.create_task(_periodic_log_sweep(svc, settings))

    @app.on_event("shutdown")
    async def _shutdown_cleanup():
        task = app.state.sweep_task
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            log.info("Security log sweep task cancelled")
        await app.state.context_auth.close()

    return app

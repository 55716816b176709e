# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_certflow

"""
FastAPI surface for the certificate-authenticated sign-in flow.

The browser only carries an opaque session identifier in a signed cookie
(Starlette `SessionMiddleware`). Tokens and claims stay in the server-side
`SessionStore`.
"""

import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from starlette.middleware.sessions import SessionMiddleware

from coreason_certflow.config import CertflowConfig
from coreason_certflow.credentials import CredentialBundle, load_credentials
from coreason_certflow.models import FlowResult, Session
from coreason_certflow.orchestrator import FlowOrchestratorAsync
from coreason_certflow.session import MemorySessionStore, SessionStore
from coreason_certflow.sinks import AuditSink
from coreason_certflow.utils.logger import logger

SESSION_COOKIE_KEY = "sid"

SECURITY_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Referrer-Policy": "no-referrer",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
}


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def create_auth_router(orchestrator: FlowOrchestratorAsync, store: SessionStore, config: CertflowConfig) -> APIRouter:
    """
    Builds the `/auth` router.

    Args:
        orchestrator: The flow orchestrator shared by all requests.
        store: Server-side session store.
        config: The configuration object.

    Returns:
        APIRouter: Routes for login, callback, refresh and logout.
    """
    router = APIRouter(prefix="/auth", tags=["authentication"])

    def load_session(request: Request) -> tuple[Session, bool]:
        """Returns the caller's session and whether it ended through inactivity."""
        session_id = request.session.get(SESSION_COOKIE_KEY)
        session = store.get(session_id) if session_id else None
        if session is None:
            fresh = Session(session_id=secrets.token_urlsafe(32))
            if session_id:
                # Signed cookie for a session the store already evicted
                logger.info("Session cookie refers to an evicted session")
                forget(request, session_id)
                return fresh, True
            orchestrator.begin_request(fresh)
            return fresh, False

        if orchestrator.begin_request(session):
            forget(request, session.session_id)
            return session, True
        return session, False

    def forget(request: Request, session_id: str) -> None:
        store.clear(session_id)
        orchestrator.locks.discard(session_id)
        request.session.pop(SESSION_COOKIE_KEY, None)

    def respond(request: Request, result: FlowResult, session: Session) -> Response:
        # A session is persisted only once it holds state, so anonymous traffic costs no storage
        if session.is_empty:
            forget(request, session.session_id)
        else:
            store.set(session)
            request.session[SESSION_COOKIE_KEY] = session.session_id

        response: Response
        if result.location is not None:
            response = RedirectResponse(url=result.location, status_code=result.status_code)
        else:
            response = JSONResponse(result.body, status_code=result.status_code)

        if session.is_authenticated or not result.is_redirect:
            response.headers.update(SECURITY_HEADERS)
        return response

    @router.get("/login")
    async def login(request: Request) -> Response:
        session, expired = load_session(request)
        if expired:
            return RedirectResponse(url=config.timeout_redirect, status_code=302)
        return respond(request, orchestrator.login(session), session)

    @router.get("/callback")
    async def callback(
        request: Request,
        code: str | None = Query(None),
        state: str | None = Query(None),
        error: str | None = Query(None),
        error_description: str | None = Query(None),
    ) -> Response:
        session, expired = load_session(request)
        if expired:
            return RedirectResponse(url=config.timeout_redirect, status_code=302)
        result = await orchestrator.callback(
            session,
            code=code,
            state=state,
            error=error,
            error_description=error_description,
            client_ip=_client_ip(request),
        )
        return respond(request, result, session)

    @router.api_route("/refresh", methods=["GET", "POST"])
    async def refresh(request: Request) -> Response:
        session, expired = load_session(request)
        if expired:
            return JSONResponse(
                {"status": "error", "message": "Session expired due to inactivity."},
                status_code=401,
                headers=SECURITY_HEADERS,
            )
        result = await orchestrator.refresh(session, client_ip=_client_ip(request))
        return respond(request, result, session)

    @router.get("/logout")
    async def logout(request: Request) -> Response:
        session, _ = load_session(request)
        result = orchestrator.logout(session)
        forget(request, session.session_id)
        response = RedirectResponse(url=result.location or config.anonymous_redirect, status_code=result.status_code)
        response.headers.update(SECURITY_HEADERS)
        return response

    return router


def create_app(
    config: CertflowConfig,
    credentials: CredentialBundle | None = None,
    store: SessionStore | None = None,
    audit: AuditSink | None = None,
    client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """
    Application factory.

    Args:
        config: The configuration object.
        credentials: Preloaded credentials. Read from `config` paths when omitted.
        store: Session store. Defaults to an in-memory store that evicts sessions idle
            for longer than `config.inactivity_timeout`.
        audit: Audit sink. Defaults to the file sink at `config.audit_log_path`.
        client: External async HTTP client for the token endpoint.

    Returns:
        FastAPI: The configured application. The orchestrator and store are on `app.state`.
    """
    credentials = credentials or load_credentials(config)
    orchestrator = FlowOrchestratorAsync(config, credentials, client=client, audit=audit)
    session_store: SessionStore
    if store is None:
        session_store = MemorySessionStore(ttl=config.inactivity_timeout, on_remove=orchestrator.locks.discard)
    else:
        session_store = store
        if isinstance(store, MemorySessionStore) and store.on_remove is None:
            store.on_remove = orchestrator.locks.discard

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        async with orchestrator:
            yield

    app = FastAPI(title="coreason-certflow", lifespan=lifespan)
    app.add_middleware(
        SessionMiddleware,
        secret_key=config.session_secret.get_secret_value(),
        same_site="lax",
        https_only=not config.unsafe_local_dev,
    )
    app.include_router(create_auth_router(orchestrator, session_store, config))

    app.state.orchestrator = orchestrator
    app.state.session_store = session_store
    return app

from __future__ import annotations

import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware

from . import schemas
from .backend import BackendError, HTTPBackendClient
from .board import (
    BoardRegistry,
    BoardSession,
    InvalidTransitionError,
    OrderNotFoundError,
    StaleOrderError,
)
from .config import Settings
from .database import init_db
from .lifecycle import KNOWN_STATUSES, order_history
from .metrics import RATING_BUCKETS, summarize_reviews
from .repository import CanteenRepository

logger = logging.getLogger("canteen-dashboard")

Backend = Union[CanteenRepository, HTTPBackendClient]


def build_backend(settings: Settings) -> Backend:
    if settings.backend_mode == "http":
        if not settings.supabase_url:
            raise RuntimeError("SUPABASE_URL must be set when BACKEND_MODE=http")
        return HTTPBackendClient(
            settings.supabase_url,
            settings.supabase_key,
            timeout=settings.backend_timeout,
        )
    init_db()
    return CanteenRepository()


def get_registry(request: Request) -> BoardRegistry:
    return request.app.state.registry


def _matches(provided: Optional[str], expected: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def require_owner(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    x_api_key: Optional[str] = Header(default=None),
    x_owner_id: Optional[str] = Header(default=None),
) -> str:
    """Identify the canteen owner behind the request.

    Against the hosted backend the owner is the user of the bearer session
    token. The SQL backend has no auth service, so callers present the shared
    ``X-API-Key`` and name the owner in ``X-Owner-Id``.
    """
    backend = request.app.state.backend
    if isinstance(backend, HTTPBackendClient):
        token = _bearer_token(authorization)
        if token is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
        try:
            owner_id = await asyncio.to_thread(backend.fetch_user_id, token)
        except BackendError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
        if owner_id is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session token")
        return owner_id

    if not _matches(x_api_key, request.app.state.settings.api_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if not x_owner_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Owner-Id header")
    return x_owner_id


async def get_session(
    owner_id: str = Depends(require_owner),
    registry: BoardRegistry = Depends(get_registry),
) -> Optional[BoardSession]:
    try:
        return await registry.session_for_owner(owner_id)
    except BackendError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


def _parse_rating_filter(rating: str) -> Union[str, int]:
    if rating == "all":
        return rating
    try:
        value = int(rating)
    except ValueError:
        value = 0
    if not 1 <= value <= RATING_BUCKETS:
        raise HTTPException(status_code=400, detail=f"Invalid rating filter {rating!r}")
    return value


def create_app(settings: Settings | None = None, backend: Backend | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    backend = backend or build_backend(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.registry = BoardRegistry(backend, tz=settings.timezone)
        logger.info("Canteen dashboard ready (backend=%s)", type(backend).__name__)
        try:
            yield
        finally:
            await app.state.registry.close()

    app = FastAPI(
        title="Canteen Dashboard",
        version="0.1.0",
        description="Live order board and statistics for canteen operators.",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.backend = backend

    @app.get("/healthz", response_model=schemas.HealthResponse, tags=["system"])
    async def healthz() -> schemas.HealthResponse:
        return schemas.HealthResponse(status="ok")

    @app.get("/dashboard", response_model=schemas.DashboardResponse, tags=["dashboard"])
    async def dashboard(
        session: Optional[BoardSession] = Depends(get_session),
    ) -> schemas.DashboardResponse:
        if session is None:
            return schemas.DashboardResponse()
        return schemas.DashboardResponse.from_snapshot(session.snapshot, stale=session.stale)

    @app.post(
        "/orders/{order_id}/advance",
        response_model=schemas.DashboardResponse,
        tags=["orders"],
    )
    async def advance_order(
        order_id: str,
        payload: schemas.AdvanceOrderRequest,
        session: Optional[BoardSession] = Depends(get_session),
    ) -> schemas.DashboardResponse:
        if session is None:
            raise HTTPException(status_code=404, detail="No canteen registered for this owner")
        try:
            snapshot = await session.advance(order_id, payload.status)
        except OrderNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        except (InvalidTransitionError, StaleOrderError) as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
        except BackendError as exc:
            logger.warning("Status update failed for order=%s: %s", order_id, exc)
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
        return schemas.DashboardResponse.from_snapshot(snapshot, stale=session.stale)

    @app.get("/orders", response_model=schemas.OrderHistoryResponse, tags=["orders"])
    async def list_orders(
        status_filter: str = Query(default="all", alias="status"),
        search: str = "",
        session: Optional[BoardSession] = Depends(get_session),
    ) -> schemas.OrderHistoryResponse:
        if status_filter != "all" and status_filter not in KNOWN_STATUSES:
            raise HTTPException(status_code=400, detail=f"Unknown status {status_filter!r}")
        if session is None:
            return schemas.OrderHistoryResponse(status_filter=status_filter, search=search)
        orders = order_history(session.snapshot.orders, status=status_filter, search=search)
        return schemas.OrderHistoryResponse(
            canteen_id=session.canteen_id,
            status_filter=status_filter,
            search=search,
            orders=[schemas.OrderCard.from_order(order) for order in orders],
        )

    @app.get("/reviews", response_model=schemas.ReviewSummaryResponse, tags=["reviews"])
    async def list_reviews(
        rating: str = "all",
        session: Optional[BoardSession] = Depends(get_session),
    ) -> schemas.ReviewSummaryResponse:
        rating_filter = _parse_rating_filter(rating)
        if session is None:
            return schemas.ReviewSummaryResponse(rating_filter=rating_filter)
        summary = summarize_reviews(session.snapshot.reviews, rating_filter)
        return schemas.ReviewSummaryResponse.from_summary(session.canteen_id, summary)

    @app.post("/hooks/order-changes", response_model=schemas.WebhookAck, tags=["system"])
    async def order_changes_hook(
        payload: schemas.WebhookPayload,
        x_webhook_secret: Optional[str] = Header(default=None),
    ) -> schemas.WebhookAck:
        if settings.webhook_secret and not _matches(x_webhook_secret, settings.webhook_secret):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        canteen_id = payload.canteen_id()
        if canteen_id is None:
            raise HTTPException(status_code=400, detail="Webhook payload carries no canteen_id")
        delivered = backend.feed.publish(canteen_id)
        logger.info("Change hook for canteen=%s delivered to %d session(s)", canteen_id, delivered)
        return schemas.WebhookAck(canteen_id=canteen_id, delivered=delivered)

    return app

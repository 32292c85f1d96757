import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ordercore import idempotency, inventory, orders, schemas, tokens, webhooks, workers
from ordercore.config import settings
from ordercore.db import AsyncSessionLocal, create_schema, run_serializable
from ordercore.errors import BadRequestError, ForbiddenError, NotFoundError, OrderCoreError, UnauthorizedError
from ordercore.locks import DatabaseLockService, LockService
from ordercore.messaging import build_publisher
from ordercore.outbox import OutboxDispatcher

logger = logging.getLogger("ordercore.main")

ADMIN_ROLE = "ADMIN"

bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    id: UUID
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> CurrentUser:
    if credentials is None:
        raise UnauthorizedError("Missing bearer token")
    claims = tokens.decode_access_token(credentials.credentials)
    return CurrentUser(id=UUID(claims["sub"]), role=claims.get("role", "CUSTOMER"))


def admin_user(user: CurrentUser = Depends(current_user)) -> CurrentUser:
    if not user.is_admin:
        raise ForbiddenError("Admin role required")
    return user


def _factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


def create_app(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    locks: Optional[LockService] = None,
    publisher=None,
    run_workers: Optional[bool] = None,
    create_tables: bool = True,
) -> FastAPI:
    session_factory = session_factory or AsyncSessionLocal
    locks = locks or DatabaseLockService(session_factory)
    publisher = publisher or build_publisher()
    run_workers = settings.RUN_WORKERS if run_workers is None else run_workers

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if create_tables:
            await create_schema(session_factory.kw["bind"])
        tasks = workers.start_workers(app.state.jobs) if run_workers else []
        logger.info("[Main] Started with %d background workers", len(tasks))
        yield
        await workers.stop_workers(tasks)
        await publisher.close()

    app = FastAPI(title="Order Core", lifespan=lifespan)
    app.state.session_factory = session_factory
    app.state.locks = locks
    app.state.publisher = publisher
    app.state.dispatcher = OutboxDispatcher(session_factory, locks, publisher)
    app.state.jobs = workers.build_jobs(session_factory, locks, app.state.dispatcher)

    @app.exception_handler(OrderCoreError)
    async def handle_domain_error(request: Request, exc: OrderCoreError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "code": exc.code},
        )

    @app.get("/health")
    async def health(request: Request):
        async with _factory(request)() as session:
            await session.execute(text("SELECT 1"))
        return {"status": "ok"}

    # ── Inventory ──────────────────────────────────────────────

    @app.post("/inventory/reservations", status_code=201, response_model=schemas.ReserveStockResponse)
    async def reserve_stock(
        body: schemas.ReserveStockRequest,
        request: Request,
        user: CurrentUser = Depends(current_user),
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    ):
        async def operation():
            ids = await inventory.reserve_stock(
                _factory(request), user.id, body.items, session_id=body.session_id
            )
            return schemas.ReserveStockResponse(reservation_ids=ids)

        status_code, content = await idempotency.run_idempotent(
            _factory(request), idempotency_key, body, operation, status_code=201
        )
        return JSONResponse(status_code=status_code, content=content)

    @app.delete("/inventory/reservations", response_model=schemas.ReleaseResponse)
    async def release_reservations(request: Request, user: CurrentUser = Depends(current_user)):
        async def work(session: AsyncSession) -> int:
            return await inventory.release_user_reservations(session, user.id, unattached_only=True)

        released = await run_serializable(_factory(request), work)
        return schemas.ReleaseResponse(released=released)

    # ── Orders ─────────────────────────────────────────────────

    @app.post("/orders", status_code=201, response_model=schemas.OrderRead)
    async def create_order(
        body: schemas.OrderCreateRequest,
        request: Request,
        user: CurrentUser = Depends(current_user),
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    ):
        async def operation():
            order = await orders.place_order(_factory(request), user.id, body)
            return schemas.OrderRead.model_validate(order)

        status_code, content = await idempotency.run_idempotent(
            _factory(request), idempotency_key, body, operation, status_code=201
        )
        return JSONResponse(status_code=status_code, content=content)

    @app.get("/orders/{order_id}", response_model=schemas.OrderRead)
    async def get_order(order_id: UUID, request: Request, user: CurrentUser = Depends(current_user)):
        owner = None if user.is_admin else user.id
        return await orders.load_order(_factory(request), order_id, owner)

    @app.post("/orders/{order_id}/cancel", response_model=schemas.OrderRead)
    async def cancel_order(
        order_id: UUID,
        body: schemas.CancelRequest,
        request: Request,
        user: CurrentUser = Depends(current_user),
    ):
        return await orders.cancel_order(_factory(request), order_id, user.id, body.reason)

    @app.patch("/admin/orders/{order_id}/status", response_model=schemas.OrderRead)
    async def update_order_status(
        order_id: UUID,
        body: schemas.StatusUpdateRequest,
        request: Request,
        admin: CurrentUser = Depends(admin_user),
    ):
        return await orders.update_status(
            _factory(request), order_id, body.status, notes=body.notes, changed_by=str(admin.id)
        )

    @app.post("/admin/orders/{order_id}/partial-fulfillment", response_model=schemas.PartialFulfillmentResult)
    async def partial_fulfillment(
        order_id: UUID,
        body: schemas.PartialFulfillmentRequest,
        request: Request,
        admin: CurrentUser = Depends(admin_user),
    ):
        return await orders.partial_fulfillment(_factory(request), order_id, body.item_ids, str(admin.id))

    # ── Payments ───────────────────────────────────────────────

    @app.post("/payments/webhook/{provider}")
    async def payment_webhook(
        provider: str,
        request: Request,
        signature: Optional[str] = Header(None, alias="X-Webhook-Signature"),
    ):
        raw = await request.body()
        webhooks.verify_signature(provider, raw, signature)
        try:
            event = schemas.PaymentWebhook.model_validate_json(raw)
        except ValidationError:
            raise BadRequestError("Malformed webhook payload")

        outcome = await webhooks.handle_payment_webhook(_factory(request), provider, event)
        if outcome == webhooks.DUPLICATE:
            return {"status": "ok", "message": "Already processed"}
        return {"status": "ok"}

    # ── Auth ───────────────────────────────────────────────────

    @app.post("/auth/refresh", response_model=schemas.TokenPair)
    async def refresh_tokens(body: schemas.RefreshRequest, request: Request):
        async with _factory(request)() as session:
            return await tokens.refresh(session, body.refresh_token)

    @app.post("/auth/logout")
    async def logout(
        body: schemas.LogoutRequest,
        request: Request,
        user: CurrentUser = Depends(current_user),
    ):
        async with _factory(request)() as session:
            revoked = await tokens.logout(session, user.id, body.refresh_token)
        return {"revoked": revoked}

    # ── Jobs ───────────────────────────────────────────────────

    @app.post("/admin/jobs/{job}", response_model=schemas.JobRunResult)
    async def run_job(job: str, request: Request, admin: CurrentUser = Depends(admin_user)):
        entry = request.app.state.jobs.get(job)
        if entry is None:
            raise NotFoundError(f"Unknown job {job}")
        run, _ = entry
        logger.info("[Main] Job %s triggered by %s", job, admin.id)
        return schemas.JobRunResult(job=job, result=await run())

    return app


app = create_app()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    uvicorn.run("ordercore.main:app", host="0.0.0.0", port=8000)

# paypost/app.py
import logging
from datetime import datetime, timezone
from typing import List, Optional

import httpx
from fastapi import FastAPI, Depends, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

from .config import Settings
from .db import open_pool, init_schema, get_conn, fetch_one
from .erid import ErdResolver, OrdClient
from .errors import InvalidState, NotFound, PublishFailed, ValidationError
from .media import MediaPublisher, VkClient
from .models import (
    ConfirmPaymentIn, CreateOrderOut, Order, OrderFilters, OrderStatus, OrderStatusOut,
    PhotoUpload, PublishOut,
)
from .orders import MAX_PHOTOS, MAX_PHOTO_BYTES, OrderLifecycleController
from .storage import PhotoStorage
from .store import PostgresOrderStore

load_dotenv()

log = logging.getLogger(__name__)

SERVICE = "paypost-backend"
VERSION = "1.0.0"


def configure_logging(level):
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def get_controller(request: Request) -> OrderLifecycleController:
    return request.app.state.controller


def _error(status, message):
    return JSONResponse(status_code=status, content={"error": message})


def create_app(settings: Optional[Settings] = None, store=None, storage=None,
               http: Optional[httpx.AsyncClient] = None) -> FastAPI:
    """Build the API. Connections are opened on startup, not here.

    `store`, `storage` and `http` replace the Postgres store, the on-disk
    photo storage and the outbound HTTP client when given.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = FastAPI(title="PayPost Orders API", version=VERSION)
    app.state.settings = settings
    app.state.pool = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url] if settings.frontend_url else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup():
        nonlocal store, storage, http
        if store is None:
            app.state.pool = await open_pool(settings.database_url, settings.pool_min, settings.pool_max)
            await init_schema(app.state.pool)
            store = PostgresOrderStore(app.state.pool)
        if storage is None:
            storage = PhotoStorage(settings.uploads_dir).ensure_ready()
        if http is None:
            http = httpx.AsyncClient(timeout=httpx.Timeout(settings.http_timeout))
            app.state.owns_http = True
        app.state.http = http
        if not settings.vk_access_token:
            log.warning("VK_ACCESS_TOKEN is not set, posts cannot be published")
        app.state.controller = OrderLifecycleController(
            store=store,
            storage=storage,
            resolver=ErdResolver(OrdClient(http, settings)),
            publisher=MediaPublisher(VkClient(http, settings)),
            settings=settings,
        )
        log.info("%s %s started", SERVICE, VERSION)

    @app.on_event("shutdown")
    async def shutdown():
        if getattr(app.state, "owns_http", False):
            await app.state.http.aclose()
        if app.state.pool is not None:
            await app.state.pool.close()

    # Errors

    @app.exception_handler(ValidationError)
    async def on_validation_error(request, exc):
        return _error(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def on_request_validation_error(request, exc):
        return _error(400, "invalid request: " + "; ".join(e["msg"] for e in exc.errors()))

    @app.exception_handler(NotFound)
    async def on_not_found(request, exc):
        return _error(404, str(exc))

    @app.exception_handler(InvalidState)
    async def on_invalid_state(request, exc):
        return _error(409, str(exc))

    @app.exception_handler(PublishFailed)
    async def on_publish_failed(request, exc):
        return _error(502, f"publication failed: {exc}")

    # Health

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": SERVICE,
            "version": VERSION,
        }

    @app.get("/health/db")
    async def health_db():
        if app.state.pool is None:
            return JSONResponse(status_code=500, content={"db_ok": False, "error": "database pool is not open"})
        try:
            async with get_conn(app.state.pool) as conn:
                row = await fetch_one(conn, "SELECT 1 AS ok")
                return {"db_ok": row["ok"] == 1}
        except Exception as e:
            return JSONResponse(status_code=500, content={"db_ok": False, "error": str(e)})

    # Orders

    @app.post("/api/create-order", response_model=CreateOrderOut)
    async def create_order(
        text: Optional[str] = Form(None),
        group_id: Optional[str] = Form(None),
        user_id: Optional[str] = Form(None),
        price: Optional[str] = Form(None),
        custom_erid: Optional[str] = Form(None),
        photos: Optional[List[UploadFile]] = File(None),
        controller: OrderLifecycleController = Depends(get_controller),
    ):
        photos = photos or []
        if len(photos) > MAX_PHOTOS:
            raise ValidationError(f"at most {MAX_PHOTOS} photos are allowed")
        uploads = []
        for f in photos:
            mimetype = f.content_type or ""
            if not mimetype.startswith("image/"):
                raise ValidationError("only images are allowed")
            data = await f.read(MAX_PHOTO_BYTES + 1)
            if len(data) > MAX_PHOTO_BYTES:
                raise ValidationError(f"photo {f.filename} exceeds 10MB")
            uploads.append(PhotoUpload(filename=f.filename or "photo.jpg", mimetype=mimetype, data=data))

        try:
            uid = int(user_id) if user_id else None
        except ValueError:
            raise ValidationError("user_id must be an integer")

        _, payment = await controller.create_order(
            text=text,
            group_id=group_id,
            user_id=uid,
            price=price or None,
            photos=uploads,
            custom_erid=custom_erid,
        )
        return payment

    @app.post("/api/confirm-payment", response_model=PublishOut)
    async def confirm_payment(body: ConfirmPaymentIn,
                              controller: OrderLifecycleController = Depends(get_controller)):
        result = await controller.confirm_and_publish(body.order_id, body.payment_id)
        return PublishOut(post_id=result.post_id, erid=result.erid)

    @app.post("/api/publish/{order_id}", response_model=PublishOut)
    async def retry_publish(order_id: str,
                            controller: OrderLifecycleController = Depends(get_controller)):
        # manual retry for paid orders whose publication failed
        result = await controller.publish(order_id)
        return PublishOut(post_id=result.post_id, erid=result.erid)

    @app.post("/api/webhook/payment")
    async def payment_webhook(request: Request):
        # acknowledge only; orders are confirmed through /api/confirm-payment
        return {"received": True}

    @app.get("/api/order/{order_id}", response_model=OrderStatusOut)
    async def get_order(order_id: str, controller: OrderLifecycleController = Depends(get_controller)):
        return await controller.get_order_status(order_id)

    @app.get("/api/orders", response_model=List[Order])
    async def list_orders(
        status: Optional[OrderStatus] = None,
        group_id: Optional[int] = None,
        user_id: Optional[int] = None,
        limit: int = Query(50, ge=1, le=500),
        controller: OrderLifecycleController = Depends(get_controller),
    ):
        filters = OrderFilters(status=status, group_id=group_id, user_id=user_id, limit=limit)
        return await controller.list_orders(filters)

    @app.post("/admin/cleanup")
    async def cleanup(days: Optional[int] = Query(None, ge=0),
                      controller: OrderLifecycleController = Depends(get_controller)):
        return {"deleted": await controller.cleanup(days)}

    return app


app = create_app()

# paypost/orders.py
"""Order lifecycle: intake -> payment confirmation -> ERID -> publication.

States only move forward (pending -> paid -> published). Every transition
is a compare-and-set against the store so that two concurrent callers can
never both advance the same order. Publication also takes a claim on the
order first, so only one caller talks to VK for it at a time.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Sequence, Tuple

from .erid import ErdResolver, format_post_with_erid, validate_erid
from .errors import AlreadyPaid, InvalidState, NotFound, PublishFailed, ValidationError
from .media import ImageBuffer, MediaPublisher
from .models import (
    CreateOrderOut, Order, OrderFilters, OrderPhoto, OrderStatus, OrderStatusOut,
    PhotoUpload, PublishResult,
)
from .payments import build_payment_payload
from .storage import PhotoStorage
from .store import OrderStore

log = logging.getLogger(__name__)

MAX_PHOTOS = 10
MAX_PHOTO_BYTES = 10 * 1024 * 1024
DEFAULT_PRICE = Decimal("100")
# a publish claim older than this is treated as abandoned
CLAIM_TTL = timedelta(minutes=10)


def _now():
    return datetime.now(timezone.utc)


def _validate_intake(text, group_id, price, photos, custom_erid):
    if not text or not str(text).strip():
        raise ValidationError("text is required")
    if group_id is None:
        raise ValidationError("group_id is required")
    try:
        group_id = int(group_id)
    except (TypeError, ValueError):
        raise ValidationError("group_id must be an integer")
    try:
        price = Decimal(str(price)) if price is not None else DEFAULT_PRICE
    except InvalidOperation:
        raise ValidationError("price must be a number")
    if not price.is_finite() or price <= 0:
        raise ValidationError("price must be positive")
    if custom_erid and not validate_erid(custom_erid):
        raise ValidationError("invalid ERID format")
    if len(photos) > MAX_PHOTOS:
        raise ValidationError(f"at most {MAX_PHOTOS} photos are allowed")
    for p in photos:
        if not p.mimetype.startswith("image/"):
            raise ValidationError("only images are allowed")
        if len(p.data) > MAX_PHOTO_BYTES:
            raise ValidationError(f"photo {p.filename} exceeds 10MB")
    return group_id, price


class OrderLifecycleController:
    def __init__(self, store: OrderStore, storage: PhotoStorage, resolver: ErdResolver,
                 publisher: MediaPublisher, settings):
        self.store = store
        self.storage = storage
        self.resolver = resolver
        self.publisher = publisher
        self.settings = settings

    async def _get(self, order_id) -> Order:
        order = await self.store.get_order_with_photos(order_id)
        if order is None:
            raise NotFound(f"order {order_id} not found")
        return order

    async def create_order(self, text: str, group_id: int, price=DEFAULT_PRICE,
                           photos: Sequence[PhotoUpload] = (), user_id: Optional[int] = None,
                           custom_erid: Optional[str] = None) -> Tuple[Order, CreateOrderOut]:
        custom_erid = (custom_erid or "").strip() or None
        group_id, price = _validate_intake(text, group_id, price, photos, custom_erid)

        order = Order(
            id=f"order_{uuid.uuid4().hex}",
            text=text,
            group_id=group_id,
            user_id=int(user_id) if user_id is not None else None,
            price=price,
            custom_erid=custom_erid,
            status=OrderStatus.PENDING,
            created_at=_now(),
        )
        await self.store.insert_order(order)

        for p in photos:
            locator = await self.storage.save(p.filename, p.data)
            photo = OrderPhoto(filename=p.filename, mimetype=p.mimetype, storage_locator=locator)
            await self.store.insert_photo(order.id, photo)
            order.photos.append(photo)

        log.info("order %s created (group=%s, user=%s, price=%s, photos=%s)",
                 order.id, order.group_id, order.user_id, order.price, len(order.photos))
        return order, build_payment_payload(order, self.settings)

    async def confirm_payment(self, order_id: str, payment_id: Optional[str] = None) -> Order:
        order = await self._get(order_id)
        if order.status != OrderStatus.PENDING:
            raise AlreadyPaid(f"order {order_id} is already {order.status.value}")
        updated = await self.store.transition(
            order_id, OrderStatus.PENDING, OrderStatus.PAID,
            {"payment_id": payment_id, "paid_at": _now()},
        )
        if updated is None:
            # lost the race to a concurrent confirmation
            raise AlreadyPaid(f"order {order_id} is already paid")
        log.info("payment confirmed for order %s (payment_id=%s)", order_id, payment_id)
        return updated

    async def _ensure_erid(self, order: Order) -> str:
        if order.erid:
            return order.erid
        erid = await self.resolver.resolve(order)
        if not await self.store.set_erid_once(order.id, erid):
            stored = await self._get(order.id)
            log.info("order %s already has ERID %s, keeping it", order.id, stored.erid)
            return stored.erid
        return erid

    async def _load_buffers(self, order: Order) -> List[ImageBuffer]:
        buffers = []
        for photo in order.photos:
            try:
                data = await self.storage.load(photo.storage_locator)
                buffers.append(ImageBuffer(data=data, mimetype=photo.mimetype, filename=photo.filename))
            except Exception as e:
                log.error("order %s: cannot read photo %s: %r", order.id, photo.storage_locator, e)
        return buffers

    async def publish(self, order_id: str) -> PublishResult:
        order = await self._get(order_id)
        if order.status != OrderStatus.PAID:
            raise InvalidState(f"order {order_id} is {order.status.value}, expected paid")

        if not await self.store.claim_publication(order_id, _now() - CLAIM_TTL):
            raise InvalidState(f"order {order_id} is already being published")

        try:
            erid = await self._ensure_erid(order)
            text = format_post_with_erid(order.text, erid)
            buffers = await self._load_buffers(order)

            log.info("publishing order %s to group %s", order_id, order.group_id)
            post_id = await self.publisher.upload_and_publish(text, order.group_id, buffers)
        except PublishFailed as e:
            log.error("order %s: publish failed: %s", order_id, e)
            await self.store.update_order_fields(order_id, {
                "last_error": str(e),
                "publish_failed_at": _now(),
            })
            await self.store.release_publication(order_id)
            raise
        except Exception:
            await self.store.release_publication(order_id)
            raise

        updated = await self.store.transition(
            order_id, OrderStatus.PAID, OrderStatus.PUBLISHED,
            {"post_id": post_id, "published_at": _now()},
        )
        if updated is None:
            raise InvalidState(f"order {order_id} changed state during publication")
        log.info("order %s published: post=%s erid=%s", order_id, post_id, erid)
        return PublishResult(post_id=post_id, erid=erid)

    async def confirm_and_publish(self, order_id: str, payment_id: Optional[str] = None) -> PublishResult:
        await self.confirm_payment(order_id, payment_id)
        return await self.publish(order_id)

    async def get_order_status(self, order_id: str) -> OrderStatusOut:
        order = await self._get(order_id)
        return OrderStatusOut(order_id=order.id, status=order.status, order_data=order)

    async def list_orders(self, filters: OrderFilters) -> List[Order]:
        return await self.store.list_orders(filters)

    async def cleanup(self, days: Optional[int] = None) -> int:
        """Retention: drop orders older than `days` along with their photo files."""
        days = self.settings.retention_days if days is None else days
        cutoff = _now() - timedelta(days=days)
        deleted, locators = await self.store.delete_older_than(cutoff)
        for locator in locators:
            await self.storage.remove(locator)
        log.info("cleanup removed %s orders and %s photos older than %s days",
                 deleted, len(locators), days)
        return deleted

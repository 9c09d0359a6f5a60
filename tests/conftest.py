"""
Shared fixtures: an in-memory order store and a fake VK / ORD backend
served through httpx.MockTransport.
"""

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from paypost.config import Settings
from paypost.erid import ErdResolver, OrdClient
from paypost.errors import NotFound
from paypost.media import MediaPublisher, VkClient
from paypost.models import OrderFilters, OrderStatus, PhotoUpload, check_transition
from paypost.orders import OrderLifecycleController
from paypost.storage import PhotoStorage

API = "https://api.vk.test/method"
UPLOAD_HOST = "upload.vk.test"
BROKEN = b"BROKEN-IMAGE"


class MemoryOrderStore:
    """OrderStore with the same contract as PostgresOrderStore."""

    def __init__(self):
        self.orders = {}

    async def insert_order(self, order):
        if order.id in self.orders:
            raise ValueError(f"duplicate order id {order.id}")
        self.orders[order.id] = order.model_copy(deep=True, update={"photos": []})

    async def insert_photo(self, order_id, photo):
        if order_id not in self.orders:
            raise NotFound(f"order {order_id} not found")
        self.orders[order_id].photos.append(photo.model_copy())

    async def get_order_with_photos(self, order_id):
        order = self.orders.get(order_id)
        snapshot = order.model_copy(deep=True) if order else None
        # yield like a real round-trip so concurrent readers see the same snapshot
        await asyncio.sleep(0)
        return snapshot

    async def update_order_fields(self, order_id, fields):
        order = self.orders[order_id]
        for key, value in fields.items():
            if value is not None:
                setattr(order, key, value)

    async def transition(self, order_id, expected, new, fields=None):
        check_transition(expected, new)
        order = self.orders.get(order_id)
        if order is None or order.status != expected:
            return None
        update = {k: v for k, v in (fields or {}).items() if v is not None}
        update["status"] = new
        self.orders[order_id] = order.model_copy(update=update)
        return self.orders[order_id].model_copy(deep=True)

    async def set_erid_once(self, order_id, erid):
        order = self.orders[order_id]
        if order.erid is not None:
            return False
        order.erid = erid
        return True

    async def claim_publication(self, order_id, stale_before):
        order = self.orders.get(order_id)
        if order is None or order.status != OrderStatus.PAID:
            return False
        if order.publishing_at is not None and order.publishing_at >= stale_before:
            return False
        order.publishing_at = datetime.now(timezone.utc)
        return True

    async def release_publication(self, order_id):
        order = self.orders.get(order_id)
        if order is not None and order.status == OrderStatus.PAID:
            order.publishing_at = None

    async def list_orders(self, filters: OrderFilters):
        rows = sorted(self.orders.values(), key=lambda o: o.created_at, reverse=True)
        if filters.status is not None:
            rows = [o for o in rows if o.status == filters.status]
        if filters.group_id is not None:
            rows = [o for o in rows if o.group_id == filters.group_id]
        if filters.user_id is not None:
            rows = [o for o in rows if o.user_id == filters.user_id]
        if filters.limit:
            rows = rows[:filters.limit]
        return [o.model_copy(deep=True, update={"photos": []}) for o in rows]

    async def delete_older_than(self, cutoff):
        doomed = [o for o in self.orders.values() if o.created_at < cutoff]
        locators = [p.storage_locator for o in doomed for p in o.photos]
        for o in doomed:
            del self.orders[o.id]
        return len(doomed), locators


class FakeVk:
    """Stands in for api.vk.com (ORD registration, photo upload, wall.post).

    ord_mode: "ok" | "error" | "down" | "timeout" | "garbage" | "invalid"
    """

    def __init__(self):
        self.ord_mode = "ok"
        self.ord_erid = "2VtzqxABCD1"
        self.post_error = None
        self.calls = []
        self.posts = []
        self.last_params = {}
        self.upload_url = f"https://{UPLOAD_HOST}/upload"
        self.uploads = []
        self._uploads = 0

    def count(self, method):
        return sum(1 for c in self.calls if c == method)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == UPLOAD_HOST:
            self.calls.append("upload")
            body = request.read()
            self.uploads.append(body)
            if BROKEN in body:
                return httpx.Response(500, text="cannot decode image")
            self._uploads += 1
            return httpx.Response(200, json={"server": 1, "photo": str(self._uploads), "hash": "h"})

        method = request.url.path.rsplit("/", 1)[-1]
        params = request.url.params
        self.calls.append(method)
        self.last_params[method] = dict(params)

        if method == "ads.registerAd":
            return self._register(request)
        if method == "ads.getAds":
            return httpx.Response(200, json={"response": [{"id": params["ad_ids"], "status": 1}]})
        if method == "photos.getWallUploadServer":
            return httpx.Response(200, json={"response": {"upload_url": self.upload_url}})
        if method == "photos.saveWallPhoto":
            return httpx.Response(200, json={"response": [{"id": int(params["photo"]), "owner_id": -42}]})
        if method == "wall.post":
            if self.post_error:
                return httpx.Response(200, json={"error": {"error_code": 15, "error_msg": self.post_error}})
            self.posts.append(dict(params))
            return httpx.Response(200, json={"response": {"post_id": 700 + len(self.posts)}})
        return httpx.Response(404)

    def _register(self, request):
        if self.ord_mode == "down":
            raise httpx.ConnectError("unreachable", request=request)
        if self.ord_mode == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if self.ord_mode == "error":
            return httpx.Response(200, json={"error": {"error_code": 100, "error_msg": "One of the parameters specified was missing or invalid"}})
        if self.ord_mode == "garbage":
            return httpx.Response(200, text="<html>oops</html>")
        if self.ord_mode == "invalid":
            return httpx.Response(200, json={"response": {"erid": "x"}})
        return httpx.Response(200, json={"response": {"erid": self.ord_erid}})


@pytest.fixture
def make_photo():
    def make(name="a.jpg", data=b"\xff\xd8jpeg-bytes", mimetype="image/jpeg"):
        return PhotoUpload(filename=name, mimetype=mimetype, data=data)
    return make


@pytest.fixture
def settings(tmp_path):
    return Settings(
        vk_access_token="vk-token",
        ord_token="ord-token",
        vk_api_url=API,
        ord_api_url=f"{API}/ads.registerAd",
        uploads_dir=str(tmp_path / "uploads"),
        frontend_url="https://paypost.test",
        http_timeout=2.0,
    )


@pytest.fixture
def fake_vk():
    return FakeVk()


@pytest.fixture
def http(fake_vk):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_vk))


@pytest.fixture
def store():
    return MemoryOrderStore()


@pytest.fixture
def storage(settings):
    return PhotoStorage(settings.uploads_dir).ensure_ready()


@pytest.fixture
def ord_client(http, settings):
    return OrdClient(http, settings)


@pytest.fixture
def publisher(http, settings):
    return MediaPublisher(VkClient(http, settings))


@pytest.fixture
def controller(store, storage, ord_client, publisher, settings):
    return OrderLifecycleController(
        store=store,
        storage=storage,
        resolver=ErdResolver(ord_client),
        publisher=publisher,
        settings=settings,
    )


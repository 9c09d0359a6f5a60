# paypost/media.py
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Sequence, Union

import httpx

from .errors import PublishFailed, UploadFailed

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class HostedPhoto:
    owner_id: int
    id: int

    @property
    def attachment(self) -> str:
        return f"photo{self.owner_id}_{self.id}"


@dataclass(frozen=True)
class ImageBuffer:
    data: bytes
    mimetype: str = "image/jpeg"
    filename: str = "photo.jpg"


@dataclass(frozen=True)
class Uploaded:
    index: int
    photo: HostedPhoto


@dataclass(frozen=True)
class UploadRejected:
    index: int
    reason: str


UploadOutcome = Union[Uploaded, UploadRejected]


class VkClient:
    """Minimal VK API client: wall photo upload and wall posting."""

    def __init__(self, http: httpx.AsyncClient, settings):
        self.http = http
        self.settings = settings

    async def _call(self, method, params, error_cls):
        token = self.settings.vk_access_token
        if not token:
            raise error_cls("VK_ACCESS_TOKEN is not set")
        url = f"{self.settings.vk_api_url.rstrip('/')}/{method}"
        query = {k: v for k, v in params.items() if v is not None}
        query.update(access_token=token, v=self.settings.vk_api_version)
        try:
            resp = await self.http.get(url, params=query)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise error_cls(f"{method} failed: {e!r}") from e
        except ValueError as e:
            raise error_cls(f"{method} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise error_cls(f"{method} returned an unexpected payload")
        if data.get("error"):
            err = data["error"]
            msg = err.get("error_msg") if isinstance(err, dict) else err
            raise error_cls(f"{method}: {msg}")
        if "response" not in data:
            raise error_cls(f"{method} returned no response")
        return data["response"]

    async def upload_photo(self, data: bytes, filename: str = "photo.jpg",
                           mimetype: str = "image/jpeg") -> HostedPhoto:
        server = await self._call("photos.getWallUploadServer", {}, UploadFailed)
        try:
            upload_url = server["upload_url"]
        except (KeyError, TypeError) as e:
            raise UploadFailed("upload server response has no upload_url") from e

        try:
            resp = await self.http.post(upload_url, files={"photo": (filename, data, mimetype)})
            resp.raise_for_status()
            uploaded = resp.json()
            params = {"server": uploaded["server"], "photo": uploaded["photo"], "hash": uploaded["hash"]}
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise UploadFailed(f"photo upload failed: {e!r}") from e
        except (ValueError, KeyError, TypeError) as e:
            raise UploadFailed("photo upload returned an unexpected body") from e

        saved = await self._call("photos.saveWallPhoto", params, UploadFailed)
        try:
            photo = HostedPhoto(owner_id=int(saved[0]["owner_id"]), id=int(saved[0]["id"]))
        except (IndexError, KeyError, TypeError, ValueError) as e:
            raise UploadFailed("saveWallPhoto returned no photo") from e
        log.info("photo uploaded: %s", photo.attachment)
        return photo

    async def wall_post(self, group_id: int, text: str, photos: Sequence[HostedPhoto] = ()) -> int:
        if not text or not group_id:
            raise PublishFailed("text and group_id are required")
        attachments = ",".join(p.attachment for p in photos)
        response = await self._call("wall.post", {
            "owner_id": -abs(group_id),  # negative id addresses a community
            "from_group": 1,
            "message": text,
            "attachments": attachments or None,
        }, PublishFailed)
        try:
            return int(response["post_id"])
        except (KeyError, TypeError, ValueError) as e:
            raise PublishFailed("wall.post returned no post_id") from e


class MediaPublisher:
    def __init__(self, vk: VkClient):
        self.vk = vk

    async def _upload_one(self, index, image: ImageBuffer) -> UploadOutcome:
        try:
            photo = await self.vk.upload_photo(image.data, image.filename, image.mimetype)
        except UploadFailed as e:
            log.warning("photo %s dropped: %s", index + 1, e)
            return UploadRejected(index, str(e))
        except Exception as e:
            # one bad photo never aborts the batch
            log.exception("photo %s dropped on unexpected error", index + 1)
            return UploadRejected(index, repr(e))
        return Uploaded(index, photo)

    async def upload_all(self, buffers: Sequence[ImageBuffer]) -> List[UploadOutcome]:
        """Upload every buffer concurrently; one outcome per buffer, in order."""
        return list(await asyncio.gather(*(self._upload_one(i, b) for i, b in enumerate(buffers))))

    async def upload_and_publish(self, text: str, group_id: int, buffers: Sequence[ImageBuffer]) -> int:
        outcomes = await self.upload_all(buffers)
        hosted = [o.photo for o in outcomes if isinstance(o, Uploaded)]
        if len(hosted) < len(outcomes):
            log.warning("publishing to group %s with %s of %s photos",
                        group_id, len(hosted), len(outcomes))
        post_id = await self.vk.wall_post(group_id, text, hosted)
        log.info("post %s published to group %s (%s photos)", post_id, group_id, len(hosted))
        return post_id

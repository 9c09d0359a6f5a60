# paypost/storage.py
import asyncio
import logging
import secrets
import time
from pathlib import Path

log = logging.getLogger(__name__)


class PhotoStorage:
    """Keeps uploaded order photos on local disk until they are published."""

    def __init__(self, root):
        self.root = Path(root)

    def ensure_ready(self) -> "PhotoStorage":
        self.root.mkdir(parents=True, exist_ok=True)
        return self

    async def save(self, filename: str, data: bytes) -> str:
        ext = Path(filename or "").suffix or ".jpg"
        name = f"{int(time.time() * 1000)}_{secrets.token_hex(4)}{ext}"
        path = self.root / name
        await asyncio.to_thread(path.write_bytes, data)
        return str(path)

    async def load(self, locator: str) -> bytes:
        return await asyncio.to_thread(Path(locator).read_bytes)

    async def remove(self, locator: str) -> None:
        try:
            await asyncio.to_thread(Path(locator).unlink)
        except FileNotFoundError:
            log.debug("photo already gone: %s", locator)

"""On-disk photo storage."""

import os

import pytest

from paypost.storage import PhotoStorage


async def test_save_load_remove(tmp_path):
    storage = PhotoStorage(tmp_path / "uploads").ensure_ready()
    locator = await storage.save("cat.png", b"png-bytes")
    assert locator.endswith(".png")
    assert await storage.load(locator) == b"png-bytes"

    await storage.remove(locator)
    assert not os.path.exists(locator)
    await storage.remove(locator)  # already gone


async def test_default_extension_and_unique_names(tmp_path):
    storage = PhotoStorage(tmp_path).ensure_ready()
    a = await storage.save("", b"1")
    b = await storage.save("", b"2")
    assert a.endswith(".jpg")
    assert a != b


async def test_load_missing_raises(tmp_path):
    storage = PhotoStorage(tmp_path)
    with pytest.raises(FileNotFoundError):
        await storage.load(str(tmp_path / "nope.jpg"))


def test_directory_created_on_demand(tmp_path):
    storage = PhotoStorage(tmp_path / "a" / "b")
    assert not (tmp_path / "a").exists()
    storage.ensure_ready()
    assert (tmp_path / "a" / "b").is_dir()

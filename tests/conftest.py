from __future__ import annotations

import io
import json
from collections import defaultdict
from pathlib import Path

import pytest
from PIL import Image

from common.errors import UpstreamUnavailable
from common.messages import QueueMessage
from common.queue import Handler, MessageQueue
from common.storage import LocalImageStorage
from post_service.db import PostStore

BASE_URL = "http://images.test"


class FakeQueue(MessageQueue):
    """In-memory transport: messages are kept as decoded wire payloads."""

    def __init__(self, fail: bool = False) -> None:
        self.messages: dict[str, list[dict]] = defaultdict(list)
        self.fail = fail
        self.connected = False
        self.closed = False

    def connect(self) -> None:
        self.connected = True

    def enqueue(self, queue_name: str, message: QueueMessage) -> None:
        if self.fail:
            raise UpstreamUnavailable("broker down")
        self.messages[queue_name].append(json.loads(message.to_body()))

    def consume(self, queue_name: str, handler: Handler) -> None:
        # Drains what is queued, then returns
        while self.messages[queue_name]:
            handler(self.messages[queue_name].pop(0))

    def close(self) -> None:
        self.closed = True


def image_bytes(width: int, height: int, fmt: str = "PNG", mode: str = "RGB") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, (width, height), color=(200, 30, 30, 255)[: len(mode)]).save(buf, format=fmt)
    return buf.getvalue()


def write_image(path: Path, width: int, height: int, fmt: str = "PNG", mode: str = "RGB") -> Path:
    path.write_bytes(image_bytes(width, height, fmt, mode))
    return path


@pytest.fixture()
def queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture()
def store(tmp_path: Path) -> PostStore:
    s = PostStore(f"sqlite:///{tmp_path / 'posts.db'}")
    s.init_db()
    return s


@pytest.fixture()
def storage(tmp_path: Path) -> LocalImageStorage:
    return LocalImageStorage(tmp_path / "processed")


@pytest.fixture()
def uploads_dir(tmp_path: Path) -> Path:
    return tmp_path / "uploads"

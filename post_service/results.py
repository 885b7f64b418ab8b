import logging
import threading
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from pydantic import ValidationError

from common.config import IMAGE_RESULT_QUEUE, IMAGE_SERVICE_BASE_URL
from common.errors import MalformedMessage
from common.messages import ImageProcessingResult
from common.queue import MessageQueue
from post_service.db import ImageState, Post, PostStore

logger = logging.getLogger(__name__)


class ImageResultHandler:
    """Applies worker results to the matching post.

    A successful result resolves the image to ``base_url + locator``; a failed
    one marks it absent. Only pending posts change, so a duplicate or stale
    result is a no-op.
    """

    def __init__(self, store: PostStore, base_url: str = IMAGE_SERVICE_BASE_URL):
        self.store = store
        self.base_url = base_url.rstrip("/")

    def __call__(self, payload: Dict[str, Any]) -> Optional[Post]:
        return self.handle(payload)

    def public_url(self, locator: str) -> str:
        if urlsplit(locator).scheme in ("http", "https"):
            return locator
        if not locator.startswith("/"):
            locator = "/" + locator
        return f"{self.base_url}{locator}"

    def handle(self, payload: Dict[str, Any]) -> Optional[Post]:
        try:
            result = ImageProcessingResult.model_validate(payload)
        except ValidationError as exc:
            raise MalformedMessage(f"invalid image processing result: {exc}") from exc
        return self.apply(result)

    def apply(self, result: ImageProcessingResult) -> Optional[Post]:
        if result.success and result.processed_image_url:
            state, url = ImageState.RESOLVED, self.public_url(result.processed_image_url)
        else:
            state, url = ImageState.ABSENT, None
            logger.error("Image processing failed for post %s: %s", result.post_id, result.error or "no image locator")

        post = self.store.update_image_field(result.post_id, state, url)
        if post is None:
            logger.warning("Post %s not found, image result ignored", result.post_id)
        elif post.image_state != state.value or post.image_url != url:
            logger.info(
                "Post %s already has image state %s, result (%s) ignored",
                result.post_id, post.image_state, state.value,
            )
        else:
            logger.info("Post %s image %s%s", result.post_id, state.value, f" at {url}" if url else "")
        return post


class ResultConsumer:
    """Runs the result handler on a background thread, off the request path."""

    def __init__(self, queue: MessageQueue, handler: ImageResultHandler, queue_name: str = IMAGE_RESULT_QUEUE):
        self.queue = queue
        self.handler = handler
        self.queue_name = queue_name
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self.queue.consume,
            args=(self.queue_name, self.handler),
            name="image-result-consumer",
            daemon=True,
        )
        self._thread.start()
        logger.info("Waiting for image processing results in %s", self.queue_name)

    def stop(self, timeout: float = 5.0) -> None:
        self.queue.stop()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

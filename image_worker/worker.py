import logging
import signal
import sys
from typing import Any, Dict

from pydantic import ValidationError

from common.config import IMAGE_PROCESSING_QUEUE, IMAGE_RESULT_QUEUE, MAX_IMAGE_WIDTH, PROCESSED_IMAGES_PREFIX
from common.errors import MalformedMessage, UpstreamUnavailable
from common.logging_setup import setup_logging
from common.messages import ImageProcessingTask
from common.queue import MessageQueue, RabbitMQClient
from common.storage import ImageStorage, get_image_storage
from image_worker.processor import process_task

logger = logging.getLogger(__name__)


class TaskHandler:
    """Consumer callback: process a task, then publish its result.

    The transport acknowledges the task only after this returns, so a result
    is always durably published before its task disappears from the queue.
    """

    def __init__(
        self,
        storage: ImageStorage,
        results: MessageQueue,
        result_queue: str = IMAGE_RESULT_QUEUE,
        max_width: int = MAX_IMAGE_WIDTH,
        url_prefix: str = PROCESSED_IMAGES_PREFIX,
    ):
        self.storage = storage
        self.results = results
        self.result_queue = result_queue
        self.max_width = max_width
        self.url_prefix = url_prefix

    def __call__(self, payload: Dict[str, Any]) -> None:
        try:
            task = ImageProcessingTask.model_validate(payload)
        except ValidationError as exc:
            raise MalformedMessage(f"invalid image processing task: {exc}") from exc

        logger.info("Post %s: received task for %s", task.post_id, task.original_file_name)
        result = process_task(task, self.storage, self.max_width, self.url_prefix)
        self.results.enqueue(self.result_queue, result)
        logger.info("Post %s: published result (success=%s)", task.post_id, result.success)


def main():
    setup_logging()
    logger.info("Worker started...")

    storage = get_image_storage()
    tasks = RabbitMQClient()
    results = RabbitMQClient()
    try:
        tasks.connect()
        results.connect()
    except UpstreamUnavailable as exc:
        logger.critical("Failed to start: %s", exc.message)
        sys.exit(1)

    def _shutdown(signum, frame):
        logger.info("Received signal %s, stopping", signum)
        tasks.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        tasks.consume(IMAGE_PROCESSING_QUEUE, TaskHandler(storage, results))
    finally:
        tasks.close()
        results.close()


if __name__ == "__main__":
    main()

"""Post creation, worker and result handler wired through one in-memory queue."""

import io
import re

from PIL import Image

from common.config import IMAGE_PROCESSING_QUEUE, IMAGE_RESULT_QUEUE
from image_worker.worker import TaskHandler
from post_service.db import ImageState
from post_service.posts import ImageUpload, PostService
from post_service.results import ImageResultHandler
from conftest import BASE_URL, image_bytes


def _run_pipeline(queue, storage, store):
    queue.consume(IMAGE_PROCESSING_QUEUE, TaskHandler(storage, queue))
    queue.consume(IMAGE_RESULT_QUEUE, ImageResultHandler(store, BASE_URL))


def test_text_post_enqueues_nothing(store, queue, uploads_dir):
    post = PostService(store, queue, uploads_dir).create_post("user-1", "hello")

    assert post.image_state == ImageState.UNSET.value
    assert dict(queue.messages) == {}


def test_wide_image_is_resized_and_attached(store, queue, storage, uploads_dir):
    service = PostService(store, queue, uploads_dir)

    post = service.create_post("user-1", "hi", ImageUpload("a.png", io.BytesIO(image_bytes(2000, 500))))

    assert post.image_state == ImageState.PENDING.value
    assert store.get(post.id).image_url is None
    [task] = queue.messages[IMAGE_PROCESSING_QUEUE]
    staged = task["originalImagePath"]

    queue.consume(IMAGE_PROCESSING_QUEUE, TaskHandler(storage, queue))
    [result] = queue.messages[IMAGE_RESULT_QUEUE]
    assert result["success"] is True
    assert re.fullmatch(r"/processed_images/[0-9a-f]{32}\.png", result["processedImageUrl"])

    queue.consume(IMAGE_RESULT_QUEUE, ImageResultHandler(store, BASE_URL))
    updated = store.get(post.id)
    assert updated.image_state == ImageState.RESOLVED.value
    assert updated.image_url == BASE_URL + result["processedImageUrl"]

    name = result["processedImageUrl"].rsplit("/", 1)[1]
    with Image.open(storage.fetch(name)) as img:
        assert img.width == 1200
    assert not (uploads_dir / staged).exists()
    assert list(uploads_dir.iterdir()) == []


def test_missing_source_marks_post_absent(store, queue, storage, uploads_dir):
    service = PostService(store, queue, uploads_dir)
    post = service.create_post("user-1", None, ImageUpload("b.jpg", io.BytesIO(image_bytes(300, 300, "JPEG"))))
    # Producer and worker without shared storage
    for staged in uploads_dir.iterdir():
        staged.unlink()

    _run_pipeline(queue, storage, store)

    updated = store.get(post.id)
    assert updated.image_state == ImageState.ABSENT.value
    assert updated.image_url is None

"""Post creation flow and the other post operations exposed over HTTP."""
import logging
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, List, Optional

from common.config import IMAGE_PROCESSING_QUEUE, TEMPORARY_UPLOADS_PATH
from common.errors import InvalidArgument, NotFoundError, Unauthorized, UpstreamUnavailable
from common.messages import ImageProcessingTask
from common.queue import MessageQueue
from post_service.db import Comment, ImageState, Post, PostStore

logger = logging.getLogger(__name__)


@dataclass
class ImageUpload:
    filename: str
    file: BinaryIO


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _require_user(user_id: Optional[str]) -> str:
    user_id = _clean(user_id)
    if not user_id:
        raise Unauthorized("Authentication required - X-User-ID header missing")
    return user_id


class PostService:
    def __init__(
        self,
        store: PostStore,
        queue: MessageQueue,
        uploads_dir: Path = TEMPORARY_UPLOADS_PATH,
        task_queue: str = IMAGE_PROCESSING_QUEUE,
    ):
        self.store = store
        self.queue = queue
        self.uploads_dir = Path(uploads_dir)
        self.task_queue = task_queue

    def create_post(self, user_id: Optional[str], text: Optional[str] = None, image: Optional[ImageUpload] = None) -> Post:
        """Insert the post now and hand its image, if any, to the worker.

        The returned post never carries a processed image yet: its image is
        pending until the result handler applies the worker's result.
        """
        user_id = _require_user(user_id)
        text = _clean(text)
        if image is not None and not image.filename:
            image = None
        if text is None and image is None:
            raise InvalidArgument("Text or image is required")

        # Staged before the insert so a failed upload never leaves a pending row
        staged = self._stage(image) if image is not None else None
        try:
            post = self.store.insert(user_id, text, ImageState.PENDING if image else ImageState.UNSET)
        except Exception:
            if staged is not None:
                staged.unlink(missing_ok=True)
            raise
        logger.info("Post %s created by user %s (image=%s)", post.id, user_id, bool(image))

        if staged is not None:
            task = ImageProcessingTask(
                post_id=post.id,
                original_image_path=str(staged.resolve()),
                original_file_name=image.filename,
            )
            try:
                self.queue.enqueue(self.task_queue, task)
            except UpstreamUnavailable:
                logger.error("Post %s: enqueue failed, removing staged upload %s", post.id, staged)
                staged.unlink(missing_ok=True)
                raise
            logger.info("Post %s: image task enqueued (%s)", post.id, staged)
        return post

    def _stage(self, image: ImageUpload) -> Path:
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        # The original name only contributes its extension
        suffix = Path(image.filename).suffix.lower()
        if not suffix[1:].isalnum():
            suffix = ""
        staged = self.uploads_dir / f"{uuid.uuid4().hex}{suffix}"
        try:
            with open(staged, "wb") as out:
                shutil.copyfileobj(image.file, out)
        except OSError:
            logger.error("Could not stage upload %r at %s", image.filename, staged)
            staged.unlink(missing_ok=True)
            raise
        return staged

    def get_post(self, post_id: str) -> Post:
        post = self.store.get(post_id)
        if post is None:
            raise NotFoundError("Post not found")
        return post

    def list_posts(self, skip: int = 0, limit: Optional[int] = None) -> List[Post]:
        return self.store.list_posts(skip=skip, limit=limit)

    def add_comment(self, post_id: str, user_id: Optional[str], text: Optional[str]) -> Comment:
        user_id = _require_user(user_id)
        text = _clean(text)
        if text is None:
            raise InvalidArgument("Comment text is required")
        comment = self.store.add_comment(post_id, user_id, text)
        logger.info("Post %s: comment %s added by user %s", post_id, comment.id, user_id)
        return comment

    def list_comments(self, post_id: str) -> List[Comment]:
        return self.store.list_comments(post_id)

    def toggle_like(self, post_id: str, user_id: Optional[str]) -> bool:
        user_id = _require_user(user_id)
        liked = self.store.toggle_like(post_id, user_id)
        logger.info("Post %s: like %s by user %s", post_id, "added" if liked else "removed", user_id)
        return liked

    def count_likes(self, post_id: str) -> int:
        return self.store.count_likes(post_id)

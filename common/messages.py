"""Wire messages exchanged over the task and result queues.

Bodies are UTF-8 JSON with camelCase keys (``postId``, ``originalImagePath``,
...). Fields can be populated by either their Python or their wire name.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class QueueMessage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_body(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


class ImageProcessingTask(QueueMessage):
    post_id: str
    original_image_path: str  # staged upload, owned by the worker once dequeued
    original_file_name: str  # only its extension is used


class ImageProcessingResult(QueueMessage):
    post_id: str
    success: bool
    processed_image_url: Optional[str] = None  # locator, relative to the image service
    error: Optional[str] = None

    @classmethod
    def ok(cls, post_id: str, locator: str) -> "ImageProcessingResult":
        return cls(post_id=post_id, success=True, processed_image_url=locator)

    @classmethod
    def failed(cls, post_id: str, error: str) -> "ImageProcessingResult":
        return cls(post_id=post_id, success=False, error=error)

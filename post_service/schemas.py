from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from post_service.db import ImageState


# --------------------------
# Post Schemas
# --------------------------
class PostResponse(BaseModel):
    id: str
    user_id: str
    text: Optional[str] = None
    image_status: ImageState
    image_url: Optional[str] = None  # set only once the image is resolved
    created_at: datetime

    @classmethod
    def from_row(cls, post) -> "PostResponse":
        return cls(
            id=post.id,
            user_id=post.user_id,
            text=post.text,
            image_status=ImageState(post.image_state),
            image_url=post.image_url if post.image_state == ImageState.RESOLVED.value else None,
            created_at=post.created_at,
        )


# --------------------------
# Comment / Like Schemas
# --------------------------
class CommentCreate(BaseModel):
    text: str


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    post_id: str
    user_id: str
    text: str
    created_at: datetime


class LikeResponse(BaseModel):
    post_id: str
    liked: bool


class LikesCount(BaseModel):
    post_id: str
    likes: int

from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Header, Query, Request, Response, UploadFile, status

from post_service.posts import ImageUpload, PostService
from post_service.schemas import CommentCreate, CommentResponse, LikeResponse, LikesCount, PostResponse

router = APIRouter(prefix="/posts", tags=["Posts"])


def get_post_service(request: Request) -> PostService:
    return request.app.state.post_service


# ----------------------
# Posts
# ----------------------
@router.post("", response_model=PostResponse, status_code=status.HTTP_201_CREATED)
def create_post(
    response: Response,
    text: Optional[str] = Form(None),
    image_file: Optional[UploadFile] = File(None, alias="imageFile"),
    x_user_id: Optional[str] = Header(None),
    service: PostService = Depends(get_post_service),
):
    """
    Create a post from multipart form data.
    The image, if any, is processed asynchronously: the returned post has a
    pending image status and no image_url yet.
    Trusts the X-User-ID header set by the API Gateway.
    """
    image = ImageUpload(image_file.filename or "", image_file.file) if image_file is not None else None
    post = service.create_post(x_user_id, text, image)
    response.headers["Location"] = f"/posts/{post.id}"
    return PostResponse.from_row(post)


@router.get("", response_model=List[PostResponse])
def list_posts(
    skip: int = Query(0, ge=0, description="Number of posts to skip"),
    limit: Optional[int] = Query(None, ge=1, le=100, description="Number of posts to return"),
    service: PostService = Depends(get_post_service),
):
    return [PostResponse.from_row(post) for post in service.list_posts(skip=skip, limit=limit)]


@router.get("/{post_id}", response_model=PostResponse)
def get_post(post_id: str, service: PostService = Depends(get_post_service)):
    return PostResponse.from_row(service.get_post(post_id))


# ----------------------
# Comments and likes
# ----------------------
@router.post("/{post_id}/comments", response_model=CommentResponse, status_code=status.HTTP_201_CREATED)
def add_comment(
    post_id: str,
    comment: CommentCreate,
    x_user_id: Optional[str] = Header(None),
    service: PostService = Depends(get_post_service),
):
    return service.add_comment(post_id, x_user_id, comment.text)


@router.get("/{post_id}/comments", response_model=List[CommentResponse])
def list_comments(post_id: str, service: PostService = Depends(get_post_service)):
    return service.list_comments(post_id)


@router.post("/{post_id}/like", response_model=LikeResponse)
def toggle_like(
    post_id: str,
    response: Response,
    x_user_id: Optional[str] = Header(None),
    service: PostService = Depends(get_post_service),
):
    """Like a post, or remove the like if the user already liked it."""
    liked = service.toggle_like(post_id, x_user_id)
    response.status_code = status.HTTP_201_CREATED if liked else status.HTTP_200_OK
    return LikeResponse(post_id=post_id, liked=liked)


@router.get("/{post_id}/likes", response_model=LikesCount)
def count_likes(post_id: str, service: PostService = Depends(get_post_service)):
    return LikesCount(post_id=post_id, likes=service.count_likes(post_id))

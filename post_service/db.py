"""Relational storage for posts, comments and likes."""
import enum
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from sqlalchemy import DateTime, ForeignKey, String, Text, UniqueConstraint, create_engine, func, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from common.config import DATABASE_URL
from common.errors import NotFoundError, UpstreamUnavailable


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImageState(str, enum.Enum):
    """Lifecycle of a post's image: unset -> pending -> resolved | absent."""

    UNSET = "unset"  # no image was supplied
    PENDING = "pending"  # task enqueued, result not applied yet
    RESOLVED = "resolved"  # image_url holds the public address
    ABSENT = "absent"  # processing failed, the post renders without image

    @property
    def terminal(self) -> bool:
        return self in (ImageState.RESOLVED, ImageState.ABSENT)


class Base(DeclarativeBase):
    pass


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_state: Mapped[str] = mapped_column(String(16), nullable=False, default=ImageState.UNSET.value)
    image_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Comment(Base):
    __tablename__ = "comments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    post_id: Mapped[str] = mapped_column(String(36), ForeignKey("posts.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Like(Base):
    __tablename__ = "likes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    post_id: Mapped[str] = mapped_column(String(36), ForeignKey("posts.id", ondelete="CASCADE"))
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (UniqueConstraint("post_id", "user_id", name="uq_likes_post_user"),)


class PostStore:
    """Post Record Store. Every method runs in its own transaction.

    Returned rows are detached from their session and safe to read anywhere.
    """

    def __init__(self, url: str = DATABASE_URL):
        connect_args = {}
        db_url = make_url(url)
        if db_url.get_backend_name() == "sqlite":
            # Result consumer thread and request threads share the engine
            connect_args["check_same_thread"] = False
            if db_url.database and db_url.database != ":memory:":
                Path(db_url.database).parent.mkdir(parents=True, exist_ok=True)
        self._engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)

    @property
    def engine(self):
        return self._engine

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except OperationalError as exc:
            session.rollback()
            raise UpstreamUnavailable(f"database unavailable: {exc.orig}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self) -> None:
        try:
            Base.metadata.create_all(self._engine)
        except OperationalError as exc:
            raise UpstreamUnavailable(f"database unavailable: {exc.orig}") from exc

    def insert(self, user_id: str, text: Optional[str], image_state: ImageState = ImageState.UNSET) -> Post:
        with self.session_scope() as session:
            post = Post(id=_new_uuid(), user_id=user_id, text=text, image_state=image_state.value, created_at=_utcnow())
            session.add(post)
        return post

    def get(self, post_id: str) -> Optional[Post]:
        with self.session_scope() as session:
            return session.get(Post, post_id)

    def list_posts(self, skip: int = 0, limit: Optional[int] = None) -> List[Post]:
        query = select(Post).order_by(Post.created_at.desc()).offset(skip)
        if limit is not None:
            query = query.limit(limit)
        with self.session_scope() as session:
            return list(session.scalars(query))

    def update_image_field(self, post_id: str, state: ImageState, url: Optional[str] = None) -> Optional[Post]:
        """Move a pending post to its final image state.

        Returns None when the post does not exist. Posts that are not pending
        are returned unchanged, so the first applied result wins.
        """
        with self.session_scope() as session:
            post = session.get(Post, post_id, with_for_update=True)
            if post is None:
                return None
            if post.image_state == ImageState.PENDING.value:
                post.image_state = state.value
                post.image_url = url if state is ImageState.RESOLVED else None
            return post

    def _require_post(self, session: Session, post_id: str) -> Post:
        post = session.get(Post, post_id)
        if post is None:
            raise NotFoundError("Post not found")
        return post

    def add_comment(self, post_id: str, user_id: str, text: str) -> Comment:
        with self.session_scope() as session:
            self._require_post(session, post_id)
            comment = Comment(id=_new_uuid(), post_id=post_id, user_id=user_id, text=text, created_at=_utcnow())
            session.add(comment)
        return comment

    def list_comments(self, post_id: str) -> List[Comment]:
        with self.session_scope() as session:
            self._require_post(session, post_id)
            query = select(Comment).where(Comment.post_id == post_id).order_by(Comment.created_at.asc())
            return list(session.scalars(query))

    def toggle_like(self, post_id: str, user_id: str) -> bool:
        """Like the post, or remove an existing like. Returns True when liked."""
        with self.session_scope() as session:
            self._require_post(session, post_id)
            existing = session.scalars(
                select(Like).where(Like.post_id == post_id, Like.user_id == user_id)
            ).first()
            if existing is not None:
                session.delete(existing)
                return False
            session.add(Like(id=_new_uuid(), post_id=post_id, user_id=user_id, created_at=_utcnow()))
            return True

    def count_likes(self, post_id: str) -> int:
        with self.session_scope() as session:
            self._require_post(session, post_id)
            return session.scalar(select(func.count()).select_from(Like).where(Like.post_id == post_id))

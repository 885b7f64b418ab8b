import pytest
from sqlalchemy import func, inspect, select

from common.errors import NotFoundError
from post_service.db import ImageState, Post, PostStore


class TestInitDB:
    def test_init_creates_tables(self, store):
        table_names = inspect(store.engine).get_table_names()
        assert {"posts", "comments", "likes"} <= set(table_names)

    def test_creates_parent_directory(self, tmp_path):
        PostStore(f"sqlite:///{tmp_path / 'nested' / 'dir' / 'posts.db'}").init_db()
        assert (tmp_path / "nested" / "dir" / "posts.db").exists()


class TestPosts:
    def test_insert_and_get(self, store):
        post = store.insert("user-1", "hello", ImageState.PENDING)

        loaded = store.get(post.id)
        assert loaded is not None
        assert loaded.user_id == "user-1"
        assert loaded.text == "hello"
        assert loaded.image_state == ImageState.PENDING.value
        assert loaded.image_url is None
        assert loaded.created_at is not None

    def test_ids_are_unique(self, store):
        ids = {store.insert("u", f"post {i}").id for i in range(20)}
        assert len(ids) == 20

    def test_get_missing(self, store):
        assert store.get("nope") is None

    def test_list_newest_first(self, store):
        first = store.insert("u", "first")
        second = store.insert("u", "second")

        assert [p.id for p in store.list_posts()] == [second.id, first.id]
        assert [p.id for p in store.list_posts(skip=1, limit=1)] == [first.id]


class TestUpdateImageField:
    def test_pending_becomes_resolved(self, store):
        post = store.insert("u", None, ImageState.PENDING)

        updated = store.update_image_field(post.id, ImageState.RESOLVED, "http://img/x.png")

        assert updated.image_state == ImageState.RESOLVED.value
        assert updated.image_url == "http://img/x.png"
        assert store.get(post.id).image_url == "http://img/x.png"

    def test_absent_never_stores_url(self, store):
        post = store.insert("u", None, ImageState.PENDING)

        updated = store.update_image_field(post.id, ImageState.ABSENT, "http://ignored")

        assert updated.image_state == ImageState.ABSENT.value
        assert updated.image_url is None

    def test_terminal_state_wins(self, store):
        post = store.insert("u", None, ImageState.PENDING)
        store.update_image_field(post.id, ImageState.RESOLVED, "http://img/first.png")

        again = store.update_image_field(post.id, ImageState.ABSENT)

        assert again.image_state == ImageState.RESOLVED.value
        assert again.image_url == "http://img/first.png"

    def test_unset_is_left_alone(self, store):
        post = store.insert("u", "text only")

        updated = store.update_image_field(post.id, ImageState.RESOLVED, "http://img/x.png")

        assert updated.image_state == ImageState.UNSET.value
        assert updated.image_url is None

    def test_missing_post_creates_nothing(self, store):
        assert store.update_image_field("ghost", ImageState.RESOLVED, "http://img/x.png") is None
        with store.session_scope() as session:
            assert session.scalar(select(func.count()).select_from(Post)) == 0


class TestCommentsAndLikes:
    def test_comments_in_order(self, store):
        post = store.insert("u", "hi")
        store.add_comment(post.id, "a", "first")
        store.add_comment(post.id, "b", "second")

        assert [c.text for c in store.list_comments(post.id)] == ["first", "second"]

    def test_comment_on_missing_post(self, store):
        with pytest.raises(NotFoundError):
            store.add_comment("ghost", "a", "hello")

    def test_toggle_like(self, store):
        post = store.insert("u", "hi")

        assert store.toggle_like(post.id, "a") is True
        assert store.toggle_like(post.id, "b") is True
        assert store.count_likes(post.id) == 2
        assert store.toggle_like(post.id, "a") is False
        assert store.count_likes(post.id) == 1

    def test_like_missing_post(self, store):
        with pytest.raises(NotFoundError):
            store.toggle_like("ghost", "a")

import pytest

from teleblog.conversation import IDLE, ConversationState, StateStore, Step, parse_reference
from teleblog.models import Post


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1", 0),
        ("3", 2),
        (" 2 ", 1),
        ("0", None),
        ("-1", None),
        ("abc", None),
        ("1.5", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_reference(raw, expected):
    assert parse_reference(raw) == expected


def make_posts(n):
    return [Post(id=f"p{i}", blog_id="b1", content=f"post {i}") for i in range(n)]


def test_post_at_bounds():
    state = ConversationState.managing("b1", make_posts(2))

    assert state.post_at(0).id == "p0"
    assert state.post_at(1).id == "p1"
    assert state.post_at(2) is None
    assert state.post_at(-1) is None
    assert state.post_at(None) is None


def test_post_at_without_snapshot():
    assert ConversationState.authoring("b1").post_at(0) is None
    assert IDLE.post_at(0) is None


def test_editing_keeps_snapshot_and_blog():
    managing = ConversationState.managing("b1", make_posts(3))

    editing = managing.editing("p1")

    assert editing.step is Step.EDITING_POST
    assert editing.blog_id == "b1"
    assert editing.post_id == "p1"
    assert editing.posts == managing.posts
    assert not editing.accepts_content


def test_accepts_content():
    assert ConversationState.authoring("b1").accepts_content
    assert ConversationState.managing("b1", []).accepts_content
    assert not ConversationState.awaiting_blog_name().accepts_content
    assert not IDLE.accepts_content


class TestStateStore:
    def test_missing_user_is_idle(self):
        store = StateStore()
        assert store.get(1) is IDLE
        assert store.get(1).is_idle

    def test_set_and_get(self):
        store = StateStore()
        state = ConversationState.awaiting_blog_description("My Blog", "myblog")

        store.set(1, state)

        assert store.get(1) == state
        assert store.get(2).is_idle
        assert len(store) == 1

    def test_setting_idle_drops_entry(self):
        store = StateStore()
        store.set(1, ConversationState.authoring("b1"))

        store.set(1, ConversationState.idle())

        assert len(store) == 0
        assert store.get(1).is_idle

    def test_clear(self):
        store = StateStore()
        store.set(1, ConversationState.authoring("b1"))
        store.clear(1)
        store.clear(99)

        assert store.get(1) is IDLE

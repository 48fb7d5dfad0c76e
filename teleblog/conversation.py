"""Per-user conversation state.

Each user is in exactly one ``Step``. ``IDLE`` is a real value: the store hands
it back for users it holds nothing for, and storing it drops the entry.
States are immutable; every transition builds a new one.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Iterable, Optional, Tuple

from .models import Post


class Step(IntEnum):
    IDLE = 0
    AWAITING_BLOG_NAME = 1
    AWAITING_BLOG_DESCRIPTION = 2
    AUTHORING_POST = 3
    MANAGING_POSTS = 4
    EDITING_POST = 5
    CONFIRMING_BLOG_DELETION = 6


@dataclass(frozen=True)
class ConversationState:
    step: Step = Step.IDLE
    blog_id: Optional[str] = None
    post_id: Optional[str] = None
    # Snapshot the numbered list was rendered from; None when no list was shown
    posts: Optional[Tuple[Post, ...]] = None
    blog_name: str = ""
    subdomain: str = ""

    @property
    def is_idle(self) -> bool:
        return self.step is Step.IDLE

    @property
    def accepts_content(self) -> bool:
        return self.step in (Step.AUTHORING_POST, Step.MANAGING_POSTS)

    def post_at(self, index: Optional[int]) -> Optional[Post]:
        """Return the snapshot entry at a 0-based index, or None when out of range."""
        if index is None or self.posts is None:
            return None
        if 0 <= index < len(self.posts):
            return self.posts[index]
        return None

    # ----- Constructors for each step -----

    @classmethod
    def idle(cls) -> "ConversationState":
        return IDLE

    @classmethod
    def awaiting_blog_name(cls) -> "ConversationState":
        return cls(step=Step.AWAITING_BLOG_NAME)

    @classmethod
    def awaiting_blog_description(cls, blog_name: str, subdomain: str) -> "ConversationState":
        return cls(step=Step.AWAITING_BLOG_DESCRIPTION, blog_name=blog_name, subdomain=subdomain)

    @classmethod
    def authoring(cls, blog_id: str) -> "ConversationState":
        return cls(step=Step.AUTHORING_POST, blog_id=blog_id)

    @classmethod
    def managing(cls, blog_id: str, posts: Iterable[Post]) -> "ConversationState":
        return cls(step=Step.MANAGING_POSTS, blog_id=blog_id, posts=tuple(posts))

    def editing(self, post_id: str) -> "ConversationState":
        return ConversationState(
            step=Step.EDITING_POST, blog_id=self.blog_id, post_id=post_id, posts=self.posts
        )

    @classmethod
    def confirming_deletion(cls, blog_id: str, blog_name: str) -> "ConversationState":
        return cls(step=Step.CONFIRMING_BLOG_DELETION, blog_id=blog_id, blog_name=blog_name)


IDLE = ConversationState()


def parse_reference(raw: Optional[str]) -> Optional[int]:
    """Turn a user-visible 1-based list number into a 0-based index.

    Returns None for missing, non-numeric, zero or negative input.
    """
    if raw is None:
        return None
    raw = raw.strip()
    if not raw.isdecimal():
        return None
    number = int(raw)
    if number < 1:
        return None
    return number - 1


class StateStore:
    """In-process state keyed by user id. Lost on restart."""

    def __init__(self) -> None:
        self._states: Dict[int, ConversationState] = {}

    def get(self, user_id: int) -> ConversationState:
        return self._states.get(user_id, IDLE)

    def set(self, user_id: int, state: ConversationState) -> None:
        if state.is_idle:
            self._states.pop(user_id, None)
        else:
            self._states[user_id] = state

    def clear(self, user_id: int) -> None:
        self._states.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._states)

"""Transport-independent command dispatcher.

The Telegram adapter turns every update into an ``Event`` and hands it to
``Dispatcher.handle``; the returned ``Reply`` says what to send back. The
dispatcher is the only place that reads and writes conversation state, and it
writes the new state only once the repository work for the event succeeded.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .conversation import ConversationState, StateStore, Step, parse_reference
from .models import Post, derive_subdomain
from .repository import (
    BlogExistsError,
    BlogNotFoundError,
    DuplicateSubdomainError,
    InvalidBlogNameError,
    Repository,
)
from .storage import StorageError

logger = logging.getLogger(__name__)

SKIP_DESCRIPTION = "-"

# ---------- Messages ----------
MESSAGES: Dict[str, str] = {
    # Generic/system
    "START": (
        "🎉 Welcome to TeleBlog!\n\n"
        "I'll help you run a personal blog straight from Telegram.\n\n"
        "Commands:\n"
        "/create - Create a new blog\n"
        "/posts - Manage your posts\n"
        "/help - Help\n\n"
        "Start with /create to set up your blog!"
    ),
    "HELP_TEXT": (
        "📚 Commands:\n\n"
        "/create - Create a new blog\n"
        "/posts - List and manage your posts\n"
        "/edit <number> - Edit a post\n"
        "/delete <number> - Delete a post\n"
        "/deleteblog - Delete your blog\n"
        "/cancel - Cancel the current action\n"
        "/help - Show this help\n\n"
        "💡 Just send a message or a photo to publish a new post!"
    ),
    "GUIDANCE": "Use /create to create a blog or /posts to manage your posts.",
    "UNKNOWN_COMMAND": "Unknown command. Use /help to see what I can do.",
    "STORAGE_ERROR": "❌ Something went wrong while saving. Please try again.",
    "OP_CANCELLED": "Operation cancelled.",
    "NOTHING_TO_CANCEL": "Nothing to cancel.",
    "INVALID_ACTION": "Invalid action.",
    "ACTION_UNAVAILABLE": "This action is no longer available.",

    # Blog creation
    "ALREADY_HAVE_BLOG": "You already have a blog! Use /posts to manage your posts.",
    "ENTER_BLOG_NAME": "📝 Enter a name for your blog:",
    "INVALID_BLOG_NAME": "The name must contain at least one latin letter or digit. Try another name:",
    "BLOG_NAME_TAKEN": "A blog with this name already exists. Try another name:",
    "ENTER_DESCRIPTION": f'Great! Now enter a description for your blog (or send "{SKIP_DESCRIPTION}" to skip):',
    "BLOG_CREATED": (
        '🎉 Blog "{name}" created!\n\n'
        "Your blog is available at: {url}\n\n"
        "Now send messages to publish posts!"
    ),

    # Posts
    "NO_BLOG": "You don't have a blog yet. Use /create to create one.",
    "BLOG_NOT_FOUND": "Blog not found. Use /create to create a new blog.",
    "NO_POSTS_YET": "Your blog has no posts yet. Send a message to publish the first one!",
    "LIST_HEADER": "📝 Your posts:\n",
    "LIST_FOOTER": (
        "\nSend a message to publish a new post, or use:\n"
        "/edit <number> - Edit a post\n"
        "/delete <number> - Delete a post"
    ),
    "POST_CREATED": "✅ Post published to your blog!",
    "POST_WITH_IMAGE_CREATED": "✅ Post with image published to your blog!",
    "USAGE_EDIT": "Usage: /edit <post_number>",
    "USAGE_DELETE": "Usage: /delete <post_number>",
    "POST_NOT_FOUND": "Post not found. Use /posts to see the list of posts.",
    "EDITING_PROMPT": 'Editing post "{title}". Send the new content:',
    "POST_UPDATED": "✅ Post updated!",
    "POST_WITH_IMAGE_UPDATED": "✅ Post with image updated!",
    "POST_DELETED": "✅ Post deleted!",

    # Blog deletion
    "NO_BLOG_TO_DELETE": "You don't have a blog to delete. Use /create to create one.",
    "CONFIRM_DELETE_BLOG": (
        '⚠️ WARNING! You are about to delete the blog "{name}".\n\n'
        "This will:\n"
        "• Delete ALL posts in the blog\n"
        "• Delete the blog itself\n"
        "• Cannot be undone\n\n"
        "Are you sure you want to delete your blog?"
    ),
    "CONFIRM_PENDING": "Please confirm or cancel the blog deletion using the buttons above.",
    "BLOG_DELETED": '🗑️ Blog "{name}" was deleted together with all its posts.\n\nYou can create a new blog with /create',
    "BLOG_DELETION_CANCELLED": "❌ Blog deletion cancelled.",

    # Buttons/labels
    "BUTTON_CANCEL_DELETE": "❌ No, cancel",
    "BUTTON_CONFIRM_DELETE": "✅ Yes, delete blog",
}

# ---------- Callback Data Tokens ----------
CB_DELETEBLOG_PREFIX = "deleteblog:"
CB_DELETEBLOG_CONFIRM = "deleteblog:confirm"
CB_DELETEBLOG_CANCEL = "deleteblog:cancel"

# name -> description, in menu order
BOT_COMMANDS: List[Tuple[str, str]] = [
    ("start", "Start the bot"),
    ("create", "Create a new blog"),
    ("posts", "Manage posts"),
    ("edit", "Edit a post"),
    ("delete", "Delete a post"),
    ("deleteblog", "Delete your blog"),
    ("cancel", "Cancel the current action"),
    ("help", "Help"),
]


class EventKind(Enum):
    COMMAND = "command"
    TEXT = "text"
    PHOTO = "photo"
    CALLBACK = "callback"


@dataclass
class Event:
    user_id: int
    kind: EventKind
    command: str = ""
    args: List[str] = field(default_factory=list)
    text: str = ""
    image_ref: Optional[str] = None
    callback_data: str = ""

    @classmethod
    def for_command(cls, user_id: int, command: str, *args: str) -> "Event":
        return cls(user_id=user_id, kind=EventKind.COMMAND, command=command.lower(), args=list(args))

    @classmethod
    def for_text(cls, user_id: int, text: str) -> "Event":
        return cls(user_id=user_id, kind=EventKind.TEXT, text=text)

    @classmethod
    def for_photo(cls, user_id: int, image_ref: str, caption: str = "") -> "Event":
        return cls(user_id=user_id, kind=EventKind.PHOTO, text=caption, image_ref=image_ref)

    @classmethod
    def for_callback(cls, user_id: int, data: str) -> "Event":
        return cls(user_id=user_id, kind=EventKind.CALLBACK, callback_data=data)


Button = Tuple[str, str]  # (label, callback data)


@dataclass
class Reply:
    """What to send back. Empty text means only the callback answer is sent."""

    text: str
    buttons: List[List[Button]] = field(default_factory=list)
    edit: bool = False
    answer: Optional[str] = None


def render_post_list(posts: List[Post]) -> str:
    lines = [MESSAGES["LIST_HEADER"]]
    for number, post in enumerate(posts, start=1):
        lines.append(f"{number}. {post.title} ({post.created_date})")
    lines.append(MESSAGES["LIST_FOOTER"])
    return "\n".join(lines)


def delete_blog_keyboard() -> List[List[Button]]:
    return [
        [
            (MESSAGES["BUTTON_CANCEL_DELETE"], CB_DELETEBLOG_CANCEL),
            (MESSAGES["BUTTON_CONFIRM_DELETE"], CB_DELETEBLOG_CONFIRM),
        ]
    ]


Handler = Callable[[Event, ConversationState], Awaitable[Reply]]


class Dispatcher:
    def __init__(self, repository: Repository, states: Optional[StateStore] = None) -> None:
        self.repository = repository
        self.states = states if states is not None else StateStore()
        self._locks: Dict[int, asyncio.Lock] = {}
        self._pending: Dict[int, int] = {}
        self._commands: Dict[str, Handler] = {
            "start": self._start,
            "help": self._help,
            "create": self._create,
            "posts": self._posts,
            "edit": self._edit,
            "delete": self._delete,
            "deleteblog": self._delete_blog,
            "cancel": self._cancel,
        }

    def _acquire_slot(self, user_id: int) -> asyncio.Lock:
        self._pending[user_id] = self._pending.get(user_id, 0) + 1
        return self._locks.setdefault(user_id, asyncio.Lock())

    def _release_slot(self, user_id: int) -> None:
        # The lock goes away only when no other event of the user holds or awaits it
        self._pending[user_id] -= 1
        if not self._pending[user_id]:
            del self._pending[user_id]
            del self._locks[user_id]

    async def handle(self, event: Event) -> Reply:
        """Handle one event; events of the same user run one at a time."""
        lock = self._acquire_slot(event.user_id)
        try:
            async with lock:
                return await self._route(event)
        except StorageError:
            logger.exception("Storage failure for user %s (%s)", event.user_id, event.kind.value)
            if event.kind is EventKind.CALLBACK:
                return Reply(MESSAGES["STORAGE_ERROR"], edit=True, answer="")
            return Reply(MESSAGES["STORAGE_ERROR"])
        finally:
            self._release_slot(event.user_id)

    async def _route(self, event: Event) -> Reply:
        state = self.states.get(event.user_id)
        if event.kind is EventKind.COMMAND:
            handler = self._commands.get(event.command)
            if handler is None:
                return Reply(MESSAGES["UNKNOWN_COMMAND"])
            return await handler(event, state)
        if event.kind is EventKind.CALLBACK:
            return await self._callback(event, state)
        return await self._content(event, state)

    async def _refresh(self, user_id: int, blog_id: str) -> List[Post]:
        posts = await self.repository.list_posts_for_blog(blog_id)
        self.states.set(user_id, ConversationState.managing(blog_id, posts))
        return posts

    # ----- Commands -----

    async def _start(self, event: Event, state: ConversationState) -> Reply:
        return Reply(MESSAGES["START"])

    async def _help(self, event: Event, state: ConversationState) -> Reply:
        return Reply(MESSAGES["HELP_TEXT"])

    async def _cancel(self, event: Event, state: ConversationState) -> Reply:
        if state.is_idle:
            return Reply(MESSAGES["NOTHING_TO_CANCEL"])
        self.states.clear(event.user_id)
        return Reply(MESSAGES["OP_CANCELLED"])

    async def _create(self, event: Event, state: ConversationState) -> Reply:
        if await self.repository.find_blog_by_user(event.user_id) is not None:
            return Reply(MESSAGES["ALREADY_HAVE_BLOG"])
        self.states.set(event.user_id, ConversationState.awaiting_blog_name())
        return Reply(MESSAGES["ENTER_BLOG_NAME"])

    async def _posts(self, event: Event, state: ConversationState) -> Reply:
        blog = await self.repository.find_blog_by_user(event.user_id)
        if blog is None:
            return Reply(MESSAGES["NO_BLOG"])
        posts = await self.repository.list_posts_for_blog(blog.id)
        if not posts:
            self.states.set(event.user_id, ConversationState.authoring(blog.id))
            return Reply(MESSAGES["NO_POSTS_YET"])
        self.states.set(event.user_id, ConversationState.managing(blog.id, posts))
        return Reply(render_post_list(posts))

    async def _edit(self, event: Event, state: ConversationState) -> Reply:
        if not event.args:
            return Reply(MESSAGES["USAGE_EDIT"])
        post = state.post_at(parse_reference(event.args[0]))
        if post is None:
            return Reply(MESSAGES["POST_NOT_FOUND"])
        if await self.repository.get_post_in_blog(state.blog_id, post.id) is None:
            logger.info("Stale edit reference from user %s: post %s", event.user_id, post.id)
            await self._refresh(event.user_id, state.blog_id)
            return Reply(MESSAGES["POST_NOT_FOUND"])
        self.states.set(event.user_id, state.editing(post.id))
        return Reply(MESSAGES["EDITING_PROMPT"].format(title=post.title))

    async def _delete(self, event: Event, state: ConversationState) -> Reply:
        if not event.args:
            return Reply(MESSAGES["USAGE_DELETE"])
        post = state.post_at(parse_reference(event.args[0]))
        if post is None:
            return Reply(MESSAGES["POST_NOT_FOUND"])
        if post.blog_id != state.blog_id or not await self.repository.delete_post(post.id):
            # Stale snapshot: the entry no longer exists, so show a fresh list next time
            logger.info("Stale delete reference from user %s: post %s", event.user_id, post.id)
            await self._refresh(event.user_id, state.blog_id)
            return Reply(MESSAGES["POST_NOT_FOUND"])
        logger.info("Post %s deleted by user %s", post.id, event.user_id)
        await self._refresh(event.user_id, state.blog_id)
        return Reply(MESSAGES["POST_DELETED"])

    async def _delete_blog(self, event: Event, state: ConversationState) -> Reply:
        blog = await self.repository.find_blog_by_user(event.user_id)
        if blog is None:
            return Reply(MESSAGES["NO_BLOG_TO_DELETE"])
        self.states.set(event.user_id, ConversationState.confirming_deletion(blog.id, blog.name))
        return Reply(MESSAGES["CONFIRM_DELETE_BLOG"].format(name=blog.name), buttons=delete_blog_keyboard())

    # ----- Callbacks -----

    async def _callback(self, event: Event, state: ConversationState) -> Reply:
        data = event.callback_data
        if data not in (CB_DELETEBLOG_CONFIRM, CB_DELETEBLOG_CANCEL):
            return Reply("", answer=MESSAGES["INVALID_ACTION"])
        if state.step is not Step.CONFIRMING_BLOG_DELETION:
            return Reply("", answer=MESSAGES["ACTION_UNAVAILABLE"])
        if data == CB_DELETEBLOG_CANCEL:
            self.states.clear(event.user_id)
            return Reply(MESSAGES["BLOG_DELETION_CANCELLED"], edit=True, answer="")
        logger.info("Deleting blog %s (%s) for user %s", state.blog_id, state.blog_name, event.user_id)
        await self.repository.delete_blog(state.blog_id)
        self.states.clear(event.user_id)
        return Reply(MESSAGES["BLOG_DELETED"].format(name=state.blog_name), edit=True, answer="")

    # ----- Free-form content -----

    async def _content(self, event: Event, state: ConversationState) -> Reply:
        if state.is_idle:
            return Reply(MESSAGES["GUIDANCE"])
        if state.step is Step.AWAITING_BLOG_NAME:
            return await self._receive_blog_name(event)
        if state.step is Step.AWAITING_BLOG_DESCRIPTION:
            return await self._receive_blog_description(event, state)
        if state.accepts_content:
            return await self._publish(event, state)
        if state.step is Step.EDITING_POST:
            return await self._apply_edit(event, state)
        return Reply(MESSAGES["CONFIRM_PENDING"])

    async def _receive_blog_name(self, event: Event) -> Reply:
        name = event.text.strip()
        subdomain = derive_subdomain(name)
        if not subdomain:
            return Reply(MESSAGES["INVALID_BLOG_NAME"])
        if await self.repository.is_subdomain_taken(subdomain):
            return Reply(MESSAGES["BLOG_NAME_TAKEN"])
        self.states.set(event.user_id, ConversationState.awaiting_blog_description(name, subdomain))
        return Reply(MESSAGES["ENTER_DESCRIPTION"])

    async def _receive_blog_description(self, event: Event, state: ConversationState) -> Reply:
        text = event.text.strip()
        description = "" if text == SKIP_DESCRIPTION else text
        try:
            blog = await self.repository.create_blog(event.user_id, state.blog_name, description)
        except (DuplicateSubdomainError, InvalidBlogNameError):
            self.states.set(event.user_id, ConversationState.awaiting_blog_name())
            return Reply(MESSAGES["BLOG_NAME_TAKEN"])
        except BlogExistsError:
            self.states.clear(event.user_id)
            return Reply(MESSAGES["ALREADY_HAVE_BLOG"])
        self.states.set(event.user_id, ConversationState.authoring(blog.id))
        return Reply(MESSAGES["BLOG_CREATED"].format(name=blog.name, url=blog.url))

    async def _publish(self, event: Event, state: ConversationState) -> Reply:
        try:
            await self.repository.create_post(state.blog_id, event.text, event.image_ref)
        except BlogNotFoundError:
            logger.info("User %s posted to missing blog %s", event.user_id, state.blog_id)
            self.states.clear(event.user_id)
            return Reply(MESSAGES["BLOG_NOT_FOUND"])
        await self._refresh(event.user_id, state.blog_id)
        return Reply(MESSAGES["POST_WITH_IMAGE_CREATED" if event.image_ref else "POST_CREATED"])

    async def _apply_edit(self, event: Event, state: ConversationState) -> Reply:
        post = await self.repository.update_post_content(state.post_id, event.text, event.image_ref)
        await self._refresh(event.user_id, state.blog_id)
        if post is None:
            return Reply(MESSAGES["POST_NOT_FOUND"])
        return Reply(MESSAGES["POST_WITH_IMAGE_UPDATED" if event.image_ref else "POST_UPDATED"])

import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

TITLE_MAX_LENGTH = 60
EXCERPT_MAX_LENGTH = 150
ELLIPSIS = "..."
DEFAULT_TITLE = "Untitled"

_NON_SLUG_RE = re.compile(r"[^a-z0-9]")
_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    s = ""
    while n:
        n, r = divmod(n, 36)
        s = _ALPHABET[r] + s
    return s or "0"


def new_id() -> str:
    """Return an opaque id: base36 millisecond clock followed by 40 random bits."""
    return _base36(int(time.time() * 1000)) + _base36(secrets.randbits(40)).rjust(8, "0")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def derive_subdomain(name: str) -> str:
    """Lowercase the name and drop every character outside [a-z0-9]."""
    return _NON_SLUG_RE.sub("", (name or "").strip().lower())


def derive_title(content: str) -> str:
    first_line = (content or "").split("\n")[0].strip()
    if not first_line:
        return DEFAULT_TITLE
    if len(first_line) > TITLE_MAX_LENGTH:
        return first_line[:TITLE_MAX_LENGTH] + ELLIPSIS
    return first_line


def derive_excerpt(content: str) -> str:
    content = content or ""
    if len(content) > EXCERPT_MAX_LENGTH:
        return content[:EXCERPT_MAX_LENGTH] + ELLIPSIS
    return content


@dataclass(frozen=True)
class Blog:
    id: str
    user_id: int
    name: str
    subdomain: str
    url: str = ""
    description: str = ""
    theme: str = "default"
    is_active: bool = True
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "name": self.name,
            "subdomain": self.subdomain,
            "url": self.url,
            "description": self.description,
            "theme": self.theme,
            "isActive": self.is_active,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Blog":
        return cls(
            id=str(record["id"]),
            user_id=int(record["userId"]),
            name=str(record.get("name", "")),
            subdomain=str(record.get("subdomain", "")),
            url=str(record.get("url", "") or ""),
            description=str(record.get("description", "") or ""),
            theme=str(record.get("theme", "default") or "default"),
            is_active=bool(record.get("isActive", True)),
            created_at=str(record.get("createdAt", "")),
            updated_at=str(record.get("updatedAt", "")),
        )


@dataclass(frozen=True)
class Post:
    id: str
    blog_id: str
    content: str
    title: str = DEFAULT_TITLE
    excerpt: str = ""
    image_file_id: Optional[str] = None
    is_published: bool = True
    published_at: str = field(default_factory=utc_now)
    view_count: int = 0
    likes: int = 0
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def created_date(self) -> str:
        return self.created_at[:10]

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "blogId": self.blog_id,
            "title": self.title,
            "content": self.content,
            "excerpt": self.excerpt,
            "imageFileId": self.image_file_id,
            "isPublished": self.is_published,
            "publishedAt": self.published_at,
            "viewCount": self.view_count,
            "likes": self.likes,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Post":
        # Records written before isPublished existed count as published
        published = record.get("isPublished")
        if published is None:
            published = True
        return cls(
            id=str(record["id"]),
            blog_id=str(record["blogId"]),
            content=str(record.get("content", "") or ""),
            title=str(record.get("title") or DEFAULT_TITLE),
            excerpt=str(record.get("excerpt", "") or ""),
            image_file_id=record.get("imageFileId") or None,
            is_published=bool(published),
            published_at=str(record.get("publishedAt") or record.get("createdAt", "")),
            view_count=int(record.get("viewCount", 0) or 0),
            likes=int(record.get("likes", 0) or 0),
            created_at=str(record.get("createdAt", "")),
            updated_at=str(record.get("updatedAt", "")),
        )

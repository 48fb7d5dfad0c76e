import logging
from typing import Dict, List, Optional

from .models import Blog, Post, derive_excerpt, derive_subdomain, derive_title, new_id, utc_now
from .storage import BLOGS, POSTS, DuplicateRecordError, StorageBackend

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    pass


class BlogExistsError(RepositoryError):
    """The user already owns a blog."""


class DuplicateSubdomainError(RepositoryError):
    def __init__(self, subdomain: str) -> None:
        super().__init__(f"Subdomain already taken: {subdomain}")
        self.subdomain = subdomain


class InvalidBlogNameError(RepositoryError):
    """The name derives an empty subdomain."""


class BlogNotFoundError(RepositoryError):
    pass


def newest_first(posts: List[Post]) -> List[Post]:
    # Reverse insertion order first so that equal timestamps still list the newest post first
    return sorted(reversed(posts), key=lambda p: p.created_at, reverse=True)


class Repository:
    """Typed access to blogs and posts on top of a StorageBackend."""

    def __init__(self, backend: StorageBackend, url_template: str = "https://{subdomain}.yourdomain.com") -> None:
        self.backend = backend
        self.url_template = url_template

    # ----- Blogs -----

    async def get_blog(self, blog_id: str) -> Optional[Blog]:
        record = await self.backend.read(BLOGS, blog_id)
        return Blog.from_record(record) if record else None

    async def find_blog_by_user(self, user_id: int) -> Optional[Blog]:
        found = await self.backend.find(BLOGS, {"userId": user_id})
        return Blog.from_record(found[0]) if found else None

    async def find_blog_by_subdomain(self, subdomain: str) -> Optional[Blog]:
        found = await self.backend.find(BLOGS, {"subdomain": (subdomain or "").lower()})
        return Blog.from_record(found[0]) if found else None

    async def is_subdomain_taken(self, subdomain: str) -> bool:
        return await self.find_blog_by_subdomain(subdomain) is not None

    async def create_blog(self, user_id: int, name: str, description: str = "") -> Blog:
        name = name.strip()
        subdomain = derive_subdomain(name)
        if not subdomain:
            raise InvalidBlogNameError(name)
        if await self.find_blog_by_user(user_id) is not None:
            raise BlogExistsError(str(user_id))
        if await self.is_subdomain_taken(subdomain):
            raise DuplicateSubdomainError(subdomain)
        now = utc_now()
        blog = Blog(
            id=new_id(),
            user_id=user_id,
            name=name,
            subdomain=subdomain,
            url=self.url_template.format(subdomain=subdomain),
            description=description.strip(),
            created_at=now,
            updated_at=now,
        )
        try:
            await self.backend.create(BLOGS, blog.to_record())
        except DuplicateRecordError as e:
            # Lost a race against another creation; the unique indexes decided
            raise DuplicateSubdomainError(subdomain) from e
        logger.info("Blog %s created for user %s (%s)", blog.id, user_id, subdomain)
        return blog

    async def delete_blog(self, blog_id: str) -> bool:
        """Delete every post of the blog, then the blog itself."""
        removed = await self.backend.delete_where(POSTS, {"blogId": blog_id})
        deleted = await self.backend.delete(BLOGS, blog_id)
        logger.info("Blog %s deleted (found=%s) with %d posts", blog_id, deleted, removed)
        return deleted

    # ----- Posts -----

    async def list_posts_for_blog(self, blog_id: str, published_only: bool = False) -> List[Post]:
        criteria: Dict[str, object] = {"blogId": blog_id}
        posts = [Post.from_record(r) for r in await self.backend.find(POSTS, criteria)]
        if published_only:
            posts = [p for p in posts if p.is_published]
        return newest_first(posts)

    async def get_post(self, post_id: str) -> Optional[Post]:
        record = await self.backend.read(POSTS, post_id)
        return Post.from_record(record) if record else None

    async def get_post_in_blog(self, blog_id: str, post_id: str) -> Optional[Post]:
        post = await self.get_post(post_id)
        if post is None or post.blog_id != blog_id:
            return None
        return post

    async def create_post(self, blog_id: str, content: str, image_file_id: Optional[str] = None) -> Post:
        if await self.get_blog(blog_id) is None:
            raise BlogNotFoundError(blog_id)
        now = utc_now()
        post = Post(
            id=new_id(),
            blog_id=blog_id,
            content=content,
            title=derive_title(content),
            excerpt=derive_excerpt(content),
            image_file_id=image_file_id,
            published_at=now,
            created_at=now,
            updated_at=now,
        )
        await self.backend.create(POSTS, post.to_record())
        logger.info("Post %s created in blog %s", post.id, blog_id)
        return post

    async def update_post_content(
        self, post_id: str, content: str, image_file_id: Optional[str] = None
    ) -> Optional[Post]:
        """Overwrite content, derived fields, image and updatedAt; None if the post is gone."""
        record = await self.backend.update(
            POSTS,
            post_id,
            {
                "content": content,
                "title": derive_title(content),
                "excerpt": derive_excerpt(content),
                "imageFileId": image_file_id,
                "updatedAt": utc_now(),
            },
        )
        return Post.from_record(record) if record else None

    async def delete_post(self, post_id: str) -> bool:
        return await self.backend.delete(POSTS, post_id)

    # ----- Public page counters -----

    async def record_blog_view(self, blog_id: str) -> int:
        return await self.backend.increment_where(POSTS, {"blogId": blog_id}, "viewCount")

    async def like_post(self, post_id: str) -> Optional[int]:
        return await self.backend.increment(POSTS, post_id, "likes")

    async def stats(self) -> Dict[str, int]:
        return {
            "blogs": len(await self.backend.list(BLOGS)),
            "posts": len(await self.backend.list(POSTS)),
        }

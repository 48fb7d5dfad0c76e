"""JSON API consumed by the public blog pages."""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .images import ImageStore
from .models import Post
from .repository import Repository
from .storage import StorageError

logger = logging.getLogger(__name__)


def not_found(message: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": message})


def create_app(repository: Repository, images: Optional[ImageStore] = None) -> FastAPI:
    app = FastAPI(title="TeleBlog API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"], allow_credentials=True,
        allow_methods=["*"], allow_headers=["*"]
    )

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("Storage error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": "Server error"})

    async def post_payload(post: Post) -> Dict[str, Any]:
        payload = post.to_record()
        payload["imageUrl"] = None
        if post.image_file_id and images is not None:
            payload["imageUrl"] = await images.resolve_url(post.image_file_id)
        return payload

    async def published_post(subdomain: str, post_id: str):
        blog = await repository.find_blog_by_subdomain(subdomain)
        if blog is None:
            return None, not_found("Blog not found")
        post = await repository.get_post_in_blog(blog.id, post_id)
        if post is None or not post.is_published:
            return None, not_found("Post not found")
        return post, None

    @app.get("/api/stats")
    async def stats():
        return await repository.stats()

    @app.get("/api/blogs/{subdomain}")
    async def get_blog(subdomain: str):
        blog = await repository.find_blog_by_subdomain(subdomain)
        if blog is None:
            return not_found("Blog not found")
        posts = await repository.list_posts_for_blog(blog.id, published_only=True)
        return {"blog": blog.to_record(), "posts": [await post_payload(p) for p in posts]}

    @app.get("/api/blogs/{subdomain}/posts/{post_id}")
    async def get_post(subdomain: str, post_id: str):
        post, error = await published_post(subdomain, post_id)
        if error is not None:
            return error
        return {"post": await post_payload(post)}

    @app.post("/api/blogs/{subdomain}/view")
    async def record_view(subdomain: str):
        blog = await repository.find_blog_by_subdomain(subdomain)
        if blog is None:
            return not_found("Blog not found")
        await repository.record_blog_view(blog.id)
        return {"success": True}

    @app.post("/api/blogs/{subdomain}/posts/{post_id}/like")
    async def like_post(subdomain: str, post_id: str):
        post, error = await published_post(subdomain, post_id)
        if error is not None:
            return error
        likes = await repository.like_post(post.id)
        if likes is None:
            return not_found("Post not found")
        return {"success": True, "likes": likes}

    return app

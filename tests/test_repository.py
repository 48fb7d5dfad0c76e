import pytest

from teleblog.models import Post
from teleblog.repository import (
    BlogExistsError,
    BlogNotFoundError,
    DuplicateSubdomainError,
    InvalidBlogNameError,
    newest_first,
)
from teleblog.storage import BLOGS, POSTS


@pytest.mark.asyncio
async def test_create_blog_derives_subdomain_and_url(repository):
    blog = await repository.create_blog(42, "  My Blog! ", "about things")

    assert blog.name == "My Blog!"
    assert blog.subdomain == "myblog"
    assert blog.url == "https://myblog.example.com"
    assert blog.description == "about things"
    assert blog.user_id == 42
    assert (await repository.find_blog_by_user(42)) == blog
    assert (await repository.find_blog_by_subdomain("MyBlog")) == blog


@pytest.mark.asyncio
async def test_subdomain_is_unique_across_users(repository):
    await repository.create_blog(1, "Notes")

    assert await repository.is_subdomain_taken("notes")
    with pytest.raises(DuplicateSubdomainError) as exc:
        await repository.create_blog(2, "NOTES!!")
    assert exc.value.subdomain == "notes"
    assert await repository.find_blog_by_user(2) is None


@pytest.mark.asyncio
async def test_one_blog_per_user(repository):
    await repository.create_blog(1, "First")

    with pytest.raises(BlogExistsError):
        await repository.create_blog(1, "Second")


@pytest.mark.asyncio
async def test_name_without_latin_characters_is_rejected(repository):
    with pytest.raises(InvalidBlogNameError):
        await repository.create_blog(1, "Мой блог")


@pytest.mark.asyncio
async def test_create_post_requires_blog(repository):
    with pytest.raises(BlogNotFoundError):
        await repository.create_post("missing", "text")


@pytest.mark.asyncio
async def test_create_post_fills_derived_fields(repository):
    blog = await repository.create_blog(1, "Blog")
    post = await repository.create_post(blog.id, "Title line\n" + "x" * 200, image_file_id="img-1")

    assert post.title == "Title line"
    assert post.excerpt.endswith("...")
    assert len(post.excerpt) == 153
    assert post.image_file_id == "img-1"
    assert post.is_published is True
    assert post.view_count == 0
    assert post.likes == 0
    assert (await repository.get_post(post.id)) == post


@pytest.mark.asyncio
async def test_list_posts_newest_first(repository):
    blog = await repository.create_blog(1, "Blog")
    other = await repository.create_blog(2, "Other")
    first = await repository.create_post(blog.id, "one")
    second = await repository.create_post(blog.id, "two")
    await repository.create_post(other.id, "elsewhere")

    posts = await repository.list_posts_for_blog(blog.id)

    assert [p.id for p in posts] == [second.id, first.id]


def test_newest_first_breaks_ties_by_insertion_order():
    same = "2024-05-01T10:00:00+00:00"
    a = Post(id="a", blog_id="b", content="", created_at=same)
    b = Post(id="b", blog_id="b", content="", created_at=same)
    c = Post(id="c", blog_id="b", content="", created_at="2024-04-01T10:00:00+00:00")

    assert [p.id for p in newest_first([c, a, b])] == ["b", "a", "c"]


@pytest.mark.asyncio
async def test_published_only_filter(repository, backend):
    blog = await repository.create_blog(1, "Blog")
    visible = await repository.create_post(blog.id, "visible")
    hidden = await repository.create_post(blog.id, "hidden")
    await backend.update(POSTS, hidden.id, {"isPublished": False})

    posts = await repository.list_posts_for_blog(blog.id, published_only=True)

    assert [p.id for p in posts] == [visible.id]


@pytest.mark.asyncio
async def test_update_post_content_keeps_identity(repository):
    blog = await repository.create_blog(1, "Blog")
    post = await repository.create_post(blog.id, "old", image_file_id="img-old")
    await repository.like_post(post.id)

    updated = await repository.update_post_content(post.id, "new title\nbody")

    assert updated.id == post.id
    assert updated.blog_id == blog.id
    assert updated.created_at == post.created_at
    assert updated.likes == 1
    assert updated.title == "new title"
    assert updated.content == "new title\nbody"
    assert updated.image_file_id is None


@pytest.mark.asyncio
async def test_update_missing_post(repository):
    assert await repository.update_post_content("ghost", "x") is None


@pytest.mark.asyncio
async def test_get_post_in_blog_checks_owner(repository):
    blog = await repository.create_blog(1, "Blog")
    other = await repository.create_blog(2, "Other")
    post = await repository.create_post(blog.id, "mine")

    assert await repository.get_post_in_blog(blog.id, post.id) == post
    assert await repository.get_post_in_blog(other.id, post.id) is None


@pytest.mark.asyncio
async def test_delete_blog_cascades_to_posts(repository, backend):
    blog = await repository.create_blog(1, "Blog")
    other = await repository.create_blog(2, "Other")
    for text in ["a", "b", "c"]:
        await repository.create_post(blog.id, text)
    kept = await repository.create_post(other.id, "kept")

    assert await repository.delete_blog(blog.id) is True

    assert await repository.get_blog(blog.id) is None
    assert await repository.find_blog_by_user(1) is None
    assert [r["id"] for r in await backend.list(POSTS)] == [kept.id]
    assert len(await backend.list(BLOGS)) == 1
    # The subdomain is free again
    assert not await repository.is_subdomain_taken("blog")


@pytest.mark.asyncio
async def test_views_and_likes(repository):
    blog = await repository.create_blog(1, "Blog")
    p1 = await repository.create_post(blog.id, "one")
    p2 = await repository.create_post(blog.id, "two")

    assert await repository.record_blog_view(blog.id) == 2
    assert await repository.like_post(p1.id) == 1
    assert await repository.like_post(p1.id) == 2
    assert await repository.like_post("ghost") is None

    assert (await repository.get_post(p1.id)).view_count == 1
    assert (await repository.get_post(p2.id)).view_count == 1
    assert (await repository.get_post(p1.id)).likes == 2


@pytest.mark.asyncio
async def test_stats(repository):
    blog = await repository.create_blog(1, "Blog")
    await repository.create_post(blog.id, "one")
    await repository.create_blog(2, "Other")

    assert await repository.stats() == {"blogs": 2, "posts": 1}

import httpx
import pytest

from teleblog.images import ImageStore

TOKEN = "123:abc"


def make_store(handler, **kwargs):
    return ImageStore(TOKEN, base_url="https://tg.test", transport=httpx.MockTransport(handler), **kwargs)


def ok(file_path="photos/file_1.jpg"):
    return httpx.Response(200, json={"ok": True, "result": {"file_id": "f1", "file_path": file_path}})


@pytest.mark.asyncio
async def test_resolves_download_url():
    seen = []

    def handler(request):
        seen.append(request)
        return ok()

    url = await make_store(handler).resolve_url("f1")

    assert url == "https://tg.test/file/bot123:abc/photos/file_1.jpg"
    assert seen[0].url.path == "/bot123:abc/getFile"
    assert seen[0].url.params["file_id"] == "f1"


@pytest.mark.asyncio
async def test_urls_are_cached():
    calls = []

    def handler(request):
        calls.append(request)
        return ok()

    store = make_store(handler)
    first = await store.resolve_url("f1")
    second = await store.resolve_url("f1")

    assert first == second
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_expired_cache_entry_is_refetched():
    calls = []

    def handler(request):
        calls.append(request)
        return ok()

    store = make_store(handler, cache_ttl=0)
    await store.resolve_url("f1")
    await store.resolve_url("f1")

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_retries_once_on_server_error():
    responses = [httpx.Response(502, text="bad gateway"), ok()]

    def handler(request):
        return responses.pop(0)

    assert await make_store(handler).resolve_url("f1") == "https://tg.test/file/bot123:abc/photos/file_1.jpg"
    assert responses == []


@pytest.mark.asyncio
async def test_retries_once_on_transport_error():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("refused", request=request)
        return ok()

    assert await make_store(handler).resolve_url("f1") is not None
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_gives_up_after_second_transport_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    assert await make_store(handler).resolve_url("f1") is None


@pytest.mark.asyncio
async def test_api_rejection_returns_none():
    def handler(request):
        return httpx.Response(400, json={"ok": False, "description": "Bad Request: invalid file_id"})

    store = make_store(handler)

    assert await store.resolve_url("bogus") is None
    assert store._cache == {}


@pytest.mark.asyncio
async def test_missing_file_path_returns_none():
    def handler(request):
        return httpx.Response(200, json={"ok": True, "result": {"file_id": "f1"}})

    assert await make_store(handler).resolve_url("f1") is None


@pytest.mark.asyncio
async def test_empty_file_id_skips_network():
    def handler(request):
        raise AssertionError("no request expected")

    store = make_store(handler)

    assert await store.resolve_url(None) is None
    assert await store.resolve_url("") is None


@pytest.mark.asyncio
async def test_server_error_then_transport_error_makes_two_requests():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) == 1:
            return httpx.Response(503, text="unavailable")
        raise httpx.ConnectError("refused", request=request)

    assert await make_store(handler).resolve_url("f1") is None
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_repeated_server_errors_give_up_after_retry():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(500, text="oops")

    assert await make_store(handler).resolve_url("f1") is None
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_expired_entries_are_dropped():
    def handler(request):
        return ok(f"photos/{request.url.params['file_id']}.jpg")

    store = make_store(handler, cache_ttl=0)
    await store.resolve_url("f1")
    await store.resolve_url("f2")

    assert list(store._cache) == ["f2"]

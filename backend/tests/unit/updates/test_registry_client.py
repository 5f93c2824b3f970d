"""
Unit tests for the registry tags client.

HTTP round trips are replaced by patching RegistryTagsClient._get, which
returns (status, headers, json_body) exactly as the aiohttp response
would be read.
"""

import pytest
from unittest.mock import AsyncMock, patch

from errors import RegistryMetadataError, TransientRegistryError
from updates.registry_client import (
    RegistryTagsClient,
    TagListCache,
    parse_next_link,
    parse_retry_after,
    parse_www_authenticate,
    registry_base_url,
)
from utils.retry import RetryPolicy
from versioning.parser import parse_image_ref


def _client(max_attempts=3):
    return RegistryTagsClient(retry_policy=RetryPolicy(max_attempts=max_attempts, initial_delay=0, jitter=False))


class TestHeaderParsing:

    @pytest.mark.unit
    def test_www_authenticate(self):
        header = 'Bearer realm="https://ghcr.io/token",service="ghcr.io",scope="repository:user/app:pull"'

        assert parse_www_authenticate(header) == {
            "realm": "https://ghcr.io/token",
            "service": "ghcr.io",
            "scope": "repository:user/app:pull",
        }

    @pytest.mark.unit
    def test_www_authenticate_not_bearer(self):
        assert parse_www_authenticate('Basic realm="x"') is None
        assert parse_www_authenticate('Bearer service="x"') is None
        assert parse_www_authenticate(None) is None

    @pytest.mark.unit
    def test_next_link(self):
        header = '</v2/library/nginx/tags/list?n=100&last=1.25>; rel="next"'

        assert parse_next_link(header) == "/v2/library/nginx/tags/list?n=100&last=1.25"
        assert parse_next_link(None) is None

    @pytest.mark.unit
    def test_retry_after(self):
        assert parse_retry_after("12") == 12.0
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
        assert parse_retry_after("soon") is None
        assert parse_retry_after(None) is None

    @pytest.mark.unit
    def test_base_urls(self):
        assert registry_base_url("docker.io") == "https://registry-1.docker.io"
        assert registry_base_url("ghcr.io") == "https://ghcr.io"
        assert registry_base_url("localhost:5000") == "http://localhost:5000"


class TestTagListCache:

    @pytest.mark.unit
    def test_keyed_by_repository(self):
        cache = TagListCache(ttl_seconds=300)
        cache.put(parse_image_ref("nginx:1.25"), ["1.25", "1.26"])

        assert cache.get(parse_image_ref("docker.io/library/nginx:latest")) == ("1.25", "1.26")
        assert cache.get(parse_image_ref("ghcr.io/library/nginx")) is None

    @pytest.mark.unit
    def test_expired_entry_is_dropped(self):
        cache = TagListCache(ttl_seconds=60)
        ref = parse_image_ref("nginx")

        with patch("updates.registry_client.time.monotonic", return_value=1000.0):
            cache.put(ref, ["1.0"])
        with patch("updates.registry_client.time.monotonic", return_value=1060.0):
            assert cache.get(ref) is None

    @pytest.mark.unit
    def test_zero_ttl_disables_caching(self):
        cache = TagListCache(ttl_seconds=0)
        cache.put(parse_image_ref("nginx"), ["1.0"])

        assert cache.get(parse_image_ref("nginx")) is None

    @pytest.mark.unit
    def test_evicts_oldest_repository_when_full(self, monkeypatch):
        monkeypatch.setattr(TagListCache, "MAX_REPOSITORIES", 2)
        cache = TagListCache(ttl_seconds=300)
        for i, name in enumerate(["a", "b", "c"]):
            with patch("updates.registry_client.time.monotonic", return_value=100.0 + i):
                cache.put(parse_image_ref(f"example/{name}"), [name])

        with patch("updates.registry_client.time.monotonic", return_value=110.0):
            assert cache.get(parse_image_ref("example/a")) is None
            assert cache.get(parse_image_ref("example/c")) == ("c",)

    @pytest.mark.unit
    def test_invalidate(self):
        cache = TagListCache(ttl_seconds=300)
        cache.put(parse_image_ref("nginx"), ["1.0"])
        cache.put(parse_image_ref("redis"), ["7.2"])

        cache.invalidate(parse_image_ref("nginx"))
        assert cache.get(parse_image_ref("nginx")) is None
        assert cache.get(parse_image_ref("redis")) == ("7.2",)
        cache.invalidate()
        assert cache.get(parse_image_ref("redis")) is None


class TestListTags:

    @pytest.mark.asyncio
    async def test_single_page_is_cached(self):
        client = _client()
        get = AsyncMock(return_value=(200, {}, {"tags": ["1.25.3", "1.25.4-alpine"]}))

        with patch.object(client, '_get', get):
            first = await client.list_tags("nginx:1.25.3")
            second = await client.list_tags("nginx")

        assert first == ["1.25.3", "1.25.4-alpine"]
        assert second == first
        assert get.await_count == 1
        assert get.await_args.args[1] == "https://registry-1.docker.io/v2/library/nginx/tags/list?n=100"

    @pytest.mark.asyncio
    async def test_follows_pagination(self):
        client = _client()
        get = AsyncMock(side_effect=[
            (200, {"Link": '</v2/user/app/tags/list?n=100&last=b>; rel="next"'}, {"tags": ["a", "b"]}),
            (200, {}, {"tags": ["b", "c"]}),
        ])

        with patch.object(client, '_get', get):
            tags = await client.list_tags("ghcr.io/user/app:a")

        assert tags == ["a", "b", "c"]
        assert get.await_args_list[1].args[1] == "https://ghcr.io/v2/user/app/tags/list?n=100&last=b"

    @pytest.mark.asyncio
    async def test_negotiates_anonymous_token(self):
        client = _client()
        challenge = 'Bearer realm="https://auth.docker.io/token",service="registry.docker.io"'
        get = AsyncMock(side_effect=[
            (401, {"WWW-Authenticate": challenge}, None),
            (200, {}, {"tags": ["1.0"]}),
        ])
        fetch_token = AsyncMock(return_value="Bearer abc")

        with patch.object(client, '_get', get), patch.object(client, '_fetch_token', fetch_token):
            tags = await client.list_tags("nginx")

        assert tags == ["1.0"]
        assert fetch_token.await_args.args[2]["realm"] == "https://auth.docker.io/token"
        assert get.await_args_list[1].args[2] == "Bearer abc"

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self):
        client = _client()
        get = AsyncMock(return_value=(404, {}, None))

        with patch.object(client, '_get', get):
            with pytest.raises(RegistryMetadataError) as exc_info:
                await client.list_tags("example/private")

        assert exc_info.value.status == 404
        assert get.await_count == 1

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self):
        client = _client(max_attempts=3)
        get = AsyncMock(side_effect=[
            (503, {}, None),
            (429, {"Retry-After": "0"}, None),
            (200, {}, {"tags": ["2.0"]}),
        ])

        with patch.object(client, '_get', get):
            tags = await client.list_tags("example/app")

        assert tags == ["2.0"]
        assert get.await_count == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_surface_as_transient(self):
        client = _client(max_attempts=2)
        get = AsyncMock(return_value=(502, {}, None))

        with patch.object(client, '_get', get):
            with pytest.raises(TransientRegistryError) as exc_info:
                await client.list_tags("example/app")

        assert exc_info.value.status == 502
        assert get.await_count == 2

"""
Registry Tags Client

Lists the tags of an image repository through the Registry v2 API
(/v2/<repo>/tags/list). Works against Docker Hub, GHCR and any
OCI-compliant registry:

- Anonymous bearer tokens are discovered from the WWW-Authenticate header
- Results are paginated with the Link header (rel="next")
- Tag lists are cached for a short TTL
- 429, 5xx and connection errors are retried with exponential backoff,
  honoring Retry-After
- 401 (after token negotiation) and 404 mean the registry has no metadata
  for the image and are never retried
"""

import asyncio
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import urljoin

import aiohttp

from errors import RegistryMetadataError, TransientRegistryError
from utils.retry import RetryPolicy, retry_async
from versioning.parser import DEFAULT_REGISTRY, ImageRef, parse_image_ref

logger = logging.getLogger(__name__)

_LINK_NEXT_PATTERN = re.compile(r'<([^>]+)>\s*;\s*rel="?next"?')
_AUTH_PARAM_PATTERN = re.compile(r'(\w+)="([^"]*)"')


class TagListCache:
    """
    Tag lists per repository, kept for ttl_seconds.

    Keyed by (registry, repository) so "nginx" and "docker.io/library/nginx"
    share an entry. A ttl of 0 disables caching.
    """

    MAX_REPOSITORIES = 1000

    def __init__(self, ttl_seconds: int = 300):
        self.ttl = ttl_seconds
        self._entries: Dict[Tuple[str, str], Tuple[Tuple[str, ...], float]] = {}

    def get(self, ref: ImageRef) -> Optional[Tuple[str, ...]]:
        entry = self._entries.get((ref.registry, ref.repository))
        if entry is None:
            return None
        tags, stored_at = entry
        if time.monotonic() - stored_at >= self.ttl:
            del self._entries[(ref.registry, ref.repository)]
            return None
        return tags

    def put(self, ref: ImageRef, tags: List[str]):
        if self.ttl <= 0:
            return
        if len(self._entries) >= self.MAX_REPOSITORIES:
            # Evict the repository fetched longest ago
            oldest = min(self._entries, key=lambda key: self._entries[key][1])
            del self._entries[oldest]
        self._entries[(ref.registry, ref.repository)] = (tuple(tags), time.monotonic())

    def invalidate(self, ref: Optional[ImageRef] = None):
        """Forget one repository, or everything"""
        if ref is None:
            self._entries.clear()
        else:
            self._entries.pop((ref.registry, ref.repository), None)


def parse_www_authenticate(header: Optional[str]) -> Optional[Dict[str, str]]:
    """
    Parse a Bearer WWW-Authenticate header.

    Example:
        'Bearer realm="https://ghcr.io/token",service="ghcr.io",scope="repository:user/app:pull"'
        -> {"realm": "https://ghcr.io/token", "service": "ghcr.io", "scope": "repository:user/app:pull"}
    """
    if not header or not header.lower().startswith("bearer "):
        return None
    params = dict(_AUTH_PARAM_PATTERN.findall(header[7:]))
    if "realm" not in params:
        logger.warning("WWW-Authenticate missing 'realm' parameter")
        return None
    return params


def parse_next_link(header: Optional[str]) -> Optional[str]:
    """Extract the rel="next" target from a Link header"""
    if not header:
        return None
    match = _LINK_NEXT_PATTERN.search(header)
    return match.group(1) if match else None


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After is either delta-seconds or an HTTP date"""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def registry_base_url(registry: str) -> str:
    """
    Base URL for the v2 API of a registry.

    Examples:
        docker.io -> https://registry-1.docker.io
        localhost:5000 -> http://localhost:5000
    """
    if registry in (DEFAULT_REGISTRY, "index.docker.io", "registry-1.docker.io"):
        return "https://registry-1.docker.io"
    if registry == "localhost" or registry.startswith("localhost:") or registry.startswith("127.0.0.1"):
        return f"http://{registry}"
    return f"https://{registry}"


class RegistryTagsClient:
    """Lists repository tags from Registry v2 compatible registries."""

    PAGE_SIZE = 100
    MAX_PAGES = 50
    MAX_AUTH_CACHE_SIZE = 500

    def __init__(
        self,
        cache_ttl: int = 300,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0
    ):
        self.cache = TagListCache(cache_ttl)
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self._auth_cache: Dict[str, Dict[str, Any]] = {}

    async def list_tags(self, image: Union[str, ImageRef]) -> List[str]:
        """
        List all tags of an image repository.

        Args:
            image: Image reference ("nginx:1.25", "ghcr.io/org/app") or parsed ImageRef

        Returns:
            Tags in registry order

        Raises:
            RegistryMetadataError: 404, or 401 after token negotiation
            TransientRegistryError: 429 / 5xx / network errors after all retries
        """
        ref = parse_image_ref(image) if isinstance(image, str) else image
        cached = self.cache.get(ref)
        if cached is not None:
            logger.debug(f"Cache hit for tags of {ref.registry}/{ref.repository}")
            return list(cached)

        tags = await self._fetch_all_tags(ref)
        self.cache.put(ref, tags)
        logger.info(f"Fetched {len(tags)} tags for {ref.registry}/{ref.repository}")
        return tags

    async def _fetch_all_tags(self, ref: ImageRef) -> List[str]:
        base_url = registry_base_url(ref.registry)
        url = f"{base_url}/v2/{ref.repository}/tags/list?n={self.PAGE_SIZE}"
        tags: List[str] = []

        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            for _ in range(self.MAX_PAGES):
                page_url = url
                page_tags, next_link = await retry_async(
                    lambda: self._fetch_page(session, ref, page_url),
                    self.retry_policy,
                    retry_on=(TransientRegistryError,),
                    description=f"tag listing for {ref.registry}/{ref.repository}",
                )
                tags.extend(t for t in page_tags if t not in tags)
                if not next_link:
                    break
                url = urljoin(base_url, next_link)
            else:
                logger.warning(f"Stopped paginating tags of {ref.repository} after {self.MAX_PAGES} pages")

        return tags

    async def _fetch_page(
        self,
        session: aiohttp.ClientSession,
        ref: ImageRef,
        url: str
    ) -> Tuple[List[str], Optional[str]]:
        token = self._get_cached_token(ref)

        try:
            status, headers, data = await self._get(session, url, token)

            if status == 401:
                challenge = parse_www_authenticate(headers.get("WWW-Authenticate"))
                if challenge is None:
                    raise RegistryMetadataError(f"Authentication required for {ref.repository}", status=401)
                token = await self._fetch_token(session, ref, challenge)
                status, headers, data = await self._get(session, url, token)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientRegistryError(f"Registry {ref.registry} unreachable: {e}")

        if status == 200:
            page_tags = (data or {}).get("tags") or []
            return [str(t) for t in page_tags], parse_next_link(headers.get("Link"))

        if status in (401, 403, 404):
            raise RegistryMetadataError(
                f"Registry {ref.registry} has no tag metadata for {ref.repository} (HTTP {status})",
                status=status
            )

        if status == 429 or status >= 500:
            raise TransientRegistryError(
                f"Registry {ref.registry} returned HTTP {status}",
                status=status,
                retry_after=parse_retry_after(headers.get("Retry-After"))
            )

        raise RegistryMetadataError(f"Unexpected HTTP {status} listing tags of {ref.repository}", status=status)

    async def _get(
        self,
        session: aiohttp.ClientSession,
        url: str,
        token: Optional[str]
    ) -> Tuple[int, Mapping[str, str], Optional[Dict]]:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = token
        async with session.get(url, headers=headers) as response:
            data = None
            if response.status == 200:
                data = await response.json(content_type=None)
            return response.status, response.headers.copy(), data

    def _get_cached_token(self, ref: ImageRef) -> Optional[str]:
        cache_key = f"{ref.registry}:{ref.repository}"
        cached = self._auth_cache.get(cache_key)
        if cached:
            if datetime.now(timezone.utc) < cached["expires_at"]:
                return cached["token"]
            del self._auth_cache[cache_key]
        return None

    async def _fetch_token(
        self,
        session: aiohttp.ClientSession,
        ref: ImageRef,
        challenge: Dict[str, str]
    ) -> Optional[str]:
        """Fetch an anonymous pull token from the realm named in the challenge."""
        params = {}
        if challenge.get("service"):
            params["service"] = challenge["service"]
        params["scope"] = challenge.get("scope") or f"repository:{ref.repository}:pull"

        async with session.get(challenge["realm"], params=params) as response:
            if response.status != 200:
                text = await response.text()
                logger.error(f"Token request to {challenge['realm']} failed with status {response.status}: {text[:200]}")
                raise RegistryMetadataError(
                    f"Could not obtain token for {ref.repository} (HTTP {response.status})",
                    status=response.status
                )
            data = await response.json(content_type=None)

        raw_token = data.get("token") or data.get("access_token")
        if not raw_token:
            raise RegistryMetadataError(f"Token endpoint for {ref.registry} returned no token")

        token = f"Bearer {raw_token}"
        # Expire a little early so a token is never used at its boundary
        expires_in = int(data.get("expires_in") or 300)
        if len(self._auth_cache) >= self.MAX_AUTH_CACHE_SIZE:
            self._auth_cache.clear()
        self._auth_cache[f"{ref.registry}:{ref.repository}"] = {
            "token": token,
            "expires_at": datetime.now(timezone.utc) + timedelta(seconds=max(expires_in - 30, 30)),
        }
        logger.debug(f"Obtained registry token for {ref.registry}/{ref.repository}")
        return token


# Global instance
_registry_client = None


def get_registry_client() -> RegistryTagsClient:
    """Get or create global RegistryTagsClient instance"""
    global _registry_client
    if _registry_client is None:
        from config.settings import AppConfig
        _registry_client = RegistryTagsClient(
            cache_ttl=AppConfig.REGISTRY_CACHE_TTL,
            retry_policy=RetryPolicy(
                max_attempts=AppConfig.REGISTRY_MAX_ATTEMPTS,
                max_delay=AppConfig.REGISTRY_MAX_DELAY,
            )
        )
    return _registry_client

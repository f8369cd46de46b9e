"""
Reverse Proxy
=============
Forwards requests under PROXY_PREFIX/<id>/... to the run's host port.

Request side:
    - method, body, query and headers are forwarded, minus hop-by-hop
      headers (and host / accept-encoding, so the upstream answers
      uncompressed for the local host).
    - redirects are not followed; they are relayed with Location rewritten.

Response side:
    - x-frame-options and content-security-policy are dropped so the
      preview can be framed by the UI.
    - Location is rewritten to PROXY_PREFIX/<id><path><query>.

Target resolution (run id → host port) is cached for META_CACHE_TTL
seconds. Only positive answers are cached, and an entry is dropped as
soon as its run stops or fails (``invalidate`` is registered as an
orchestrator terminal listener), before the port can be reused.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urljoin, urlsplit

import httpx

from launchpad.core.config import META_CACHE_TTL, PROXY_PREFIX, PROXY_UPSTREAM_HOST
from launchpad.core.constants import FRAME_BLOCKING_HEADERS, HOP_BY_HOP_HEADERS
from launchpad.core.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

# Recomputed by the ASGI server for the decoded body we relay
_RESPONSE_DROP = HOP_BY_HOP_HEADERS | FRAME_BLOCKING_HEADERS | {"content-length", "content-encoding"}


@dataclass
class ProxiedResponse:
    status_code: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    content: bytes = b""

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return None


def filter_request_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}


def rewrite_location(location: str, upstream_url: str, run_id: str, prefix: str = PROXY_PREFIX) -> str:
    """Map an upstream redirect target back under the proxy prefix."""
    target = urlsplit(urljoin(upstream_url, location))
    rewritten = f"{prefix.rstrip('/')}/{run_id}{target.path or '/'}"
    if target.query:
        rewritten += f"?{target.query}"
    return rewritten


class ReverseProxy:

    def __init__(
        self,
        resolver: Callable[[str], Optional[int]],
        upstream_host: str = PROXY_UPSTREAM_HOST,
        prefix: str = PROXY_PREFIX,
        cache_ttl: float = META_CACHE_TTL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.resolver = resolver
        self.upstream_host = upstream_host
        self.prefix = prefix
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self._transport = transport
        self._clock = clock
        self._cache: Dict[str, Tuple[int, float]] = {}
        self._http: Optional[httpx.AsyncClient] = None

    # ------------------------------------------------------------------
    # Target resolution
    # ------------------------------------------------------------------
    def resolve(self, run_id: str) -> Optional[int]:
        """Host port for ``run_id`` or None when it is not serving. May raise RunNotFound."""
        now = self._clock()
        hit = self._cache.get(run_id)
        if hit is not None and now - hit[1] < self.cache_ttl:
            return hit[0]
        port = self.resolver(run_id)
        if port:
            self._cache[run_id] = (port, now)
        else:
            self._cache.pop(run_id, None)
        return port

    def invalidate(self, run_id: str) -> None:
        self._cache.pop(run_id, None)

    # ------------------------------------------------------------------
    # Forwarding
    # ------------------------------------------------------------------
    async def _get_http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
                follow_redirects=False,
            )
        return self._http

    def upstream_url(self, port: int, path: str) -> str:
        return f"http://{self.upstream_host}:{port}/{path.lstrip('/')}"

    async def forward(
        self,
        run_id: str,
        port: int,
        method: str,
        path: str,
        query: str = "",
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> ProxiedResponse:
        """
        Relay one request to the workload on ``port``.

        Raises
        ------
        UpstreamUnavailable
            Connection refused / reset, or the upstream timed out.
        """
        url = self.upstream_url(port, path)
        if query:
            url = f"{url}?{query}"
        client = await self._get_http()
        content = body if method.upper() not in ("GET", "HEAD") else None
        try:
            response = await client.request(
                method,
                url,
                headers=filter_request_headers(headers or {}),
                content=content,
            )
        except httpx.TimeoutException as e:
            logger.warning("Proxy timeout for %s -> %s: %s", run_id, url, e)
            raise UpstreamUnavailable(f"upstream timed out: {e}", timed_out=True)
        except httpx.HTTPError as e:
            # Stale cache entry is the usual cause
            self.invalidate(run_id)
            logger.warning("Proxy error for %s -> %s: %s", run_id, url, e)
            raise UpstreamUnavailable(f"upstream unreachable: {e}")

        out: List[Tuple[str, str]] = []
        for key, value in response.headers.multi_items():
            lowered = key.lower()
            if lowered in _RESPONSE_DROP:
                continue
            if lowered == "location":
                value = rewrite_location(value, url, run_id, self.prefix)
            out.append((key, value))

        return ProxiedResponse(status_code=response.status_code, headers=out, content=response.content)

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

"""
Outbound HTTP client guarded against server-side request forgery.

Every hop of a request is checked before it is sent:

- the scheme must be http or https
- the host must be on the configured allowlist
- the host must not be, or resolve to, a loopback, private, link-local or
  otherwise reserved address

Redirects are never followed automatically. Up to ``max_redirects`` are
followed by hand, each target going through the same checks. Requests to
one host share a small concurrency cap.
"""
import asyncio
import ipaddress
import socket
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from facesearch.core.config import settings
from facesearch.core.exceptions import BlockedUrlError
from facesearch.core.logging import get_logger

logger = get_logger(__name__)

ALLOWED_SCHEMES = {"http", "https"}
MAX_URL_LENGTH = 2048

BLOCKED_NETWORKS = [
    ipaddress.ip_network("0.0.0.0/8"),       # "This" network
    ipaddress.ip_network("10.0.0.0/8"),      # Private
    ipaddress.ip_network("100.64.0.0/10"),   # Carrier-grade NAT
    ipaddress.ip_network("127.0.0.0/8"),     # Localhost
    ipaddress.ip_network("169.254.0.0/16"),  # Link-local, cloud metadata
    ipaddress.ip_network("172.16.0.0/12"),   # Private
    ipaddress.ip_network("192.168.0.0/16"),  # Private
    ipaddress.ip_network("::1/128"),         # IPv6 localhost
    ipaddress.ip_network("fe80::/10"),       # IPv6 link-local
    ipaddress.ip_network("fc00::/7"),        # IPv6 private
]

Resolver = Callable[[str, int], Awaitable[List[str]]]


class ResponseTooLargeError(Exception):
    """Raised when a response body exceeds the caller's byte cap."""

    def __init__(self, url: str, limit: int):
        super().__init__(f"Response from {url} exceeds {limit} bytes")
        self.url = url
        self.limit = limit


async def system_resolver(host: str, port: int) -> List[str]:
    """Resolve a hostname to its addresses with the event loop resolver."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


def is_blocked_address(address: str) -> bool:
    """True for loopback, private, link-local and other non-public addresses."""
    ip = ipaddress.ip_address(address.split("%", 1)[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if ip.is_unspecified or ip.is_multicast or ip.is_reserved:
        return True
    return any(ip in network for network in BLOCKED_NETWORKS if network.version == ip.version)


def host_allowed(host: str, allowed_hosts: Iterable[str]) -> bool:
    """Match a host against the allowlist, subdomains included."""
    host = host.lower().rstrip(".")
    return any(host == domain or host.endswith("." + domain) for domain in allowed_hosts)


class GuardedHttpClient:
    """
    Allowlisted async HTTP client for scraping and thumbnail downloads.

    Example:
        ```python
        client = GuardedHttpClient(allowed_hosts=["videos.example.com"])
        async with client.stream("https://videos.example.com/latest") as response:
            body = await response.aread()
        await client.aclose()
        ```
    """

    def __init__(
        self,
        allowed_hosts: Optional[Iterable[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        resolver: Optional[Resolver] = None,
        per_host_concurrency: Optional[int] = None,
        max_redirects: int = 3,
        user_agent: Optional[str] = None,
    ) -> None:
        hosts = settings.allowed_video_hosts if allowed_hosts is None else allowed_hosts
        self.allowed_hosts = [host.strip().lower() for host in hosts if host.strip()]
        self.per_host_concurrency = per_host_concurrency or settings.PER_HOST_CONCURRENCY
        self.max_redirects = max_redirects
        self._resolver = resolver or system_resolver
        self._host_slots: Dict[str, asyncio.Semaphore] = {}
        self.client = httpx.AsyncClient(
            transport=transport,
            follow_redirects=False,
            headers={"User-Agent": user_agent or settings.SCRAPER_USER_AGENT},
        )

    def validate_url(self, url: str) -> str:
        """
        Check scheme, allowlist and literal addresses without touching DNS.

        Returns:
            The lowercased hostname

        Raises:
            BlockedUrlError: If the URL may not be fetched or cannot be parsed
        """
        host, _ = self._split(url)
        return host

    def _split(self, url: str) -> Tuple[str, int]:
        if not url or len(url) > MAX_URL_LENGTH:
            raise BlockedUrlError("URL is empty or too long", details={"url": url[:200] if url else ""})
        try:
            parts = urlsplit(url)
            scheme = parts.scheme.lower()
            host = (parts.hostname or "").lower()
            port = parts.port
        except ValueError as e:
            raise BlockedUrlError(
                "URL is malformed", details={"url": url[:200], "reason": "malformed", "error": str(e)}
            )
        if scheme not in ALLOWED_SCHEMES:
            raise BlockedUrlError("URL scheme is not allowed", details={"url": url, "reason": "scheme"})
        if not host:
            raise BlockedUrlError("URL has no host", details={"url": url, "reason": "host"})

        try:
            literal = is_blocked_address(host)
        except ValueError:
            literal = False
        if literal or host in ("localhost", "localhost.localdomain"):
            raise BlockedUrlError("URL points to a private address", details={"url": url, "reason": "address"})
        if not host_allowed(host, self.allowed_hosts):
            raise BlockedUrlError("URL host is not allowlisted", details={"url": url, "reason": "allowlist"})
        return host, port or (443 if scheme == "https" else 80)

    async def check_url(self, url: str) -> str:
        """Validate a URL and every address its host resolves to."""
        host, port = self._split(url)
        try:
            addresses = await self._resolver(host, port)
        except OSError as e:
            raise BlockedUrlError(
                "URL host could not be resolved", details={"url": url, "reason": "dns", "error": str(e)}
            )
        if not addresses or any(is_blocked_address(address) for address in addresses):
            raise BlockedUrlError(
                "URL resolves to a private address", details={"url": url, "reason": "resolution"}
            )
        return host

    def _slot(self, host: str) -> asyncio.Semaphore:
        slot = self._host_slots.get(host)
        if slot is None:
            slot = asyncio.Semaphore(self.per_host_concurrency)
            self._host_slots[host] = slot
        return slot

    @asynccontextmanager
    async def stream(self, url: str, timeout: Optional[float] = None) -> AsyncIterator[httpx.Response]:
        """
        Issue a guarded GET and yield the streaming response.

        The host's concurrency slot is held until the context exits.

        Raises:
            BlockedUrlError: If any hop fails the checks or redirects run out
            httpx.HTTPError: On transport failures
        """
        current = url
        for _ in range(self.max_redirects + 1):
            host = await self.check_url(current)
            async with self._slot(host):
                try:
                    request = self.client.build_request("GET", current, timeout=timeout)
                except httpx.InvalidURL as e:
                    raise BlockedUrlError(
                        "URL is malformed", details={"url": current[:200], "reason": "malformed", "error": str(e)}
                    )
                response = await self.client.send(request, stream=True)
                if response.is_redirect:
                    location = response.headers.get("location", "")
                    await response.aclose()
                    try:
                        current = str(response.url.join(location))
                    except httpx.InvalidURL as e:
                        raise BlockedUrlError(
                            "Redirect target is malformed",
                            details={"url": location[:200], "reason": "malformed", "error": str(e)},
                        )
                    logger.debug("Following redirect", url=current)
                    continue
                try:
                    yield response
                finally:
                    await response.aclose()
                return
        raise BlockedUrlError("Too many redirects", details={"url": url, "reason": "redirects"})

    async def get_text(self, url: str, max_bytes: int, timeout: Optional[float] = None) -> Tuple[int, str]:
        """
        GET a page and read at most ``max_bytes`` of its body.

        Returns:
            Status code and decoded body. The status is not checked.

        Raises:
            ResponseTooLargeError: If the body exceeds ``max_bytes``
        """
        async with self.stream(url, timeout=timeout) as response:
            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > max_bytes:
                    raise ResponseTooLargeError(url, max_bytes)
            return response.status_code, body.decode(response.encoding or "utf-8", errors="replace")

    async def aclose(self) -> None:
        await self.client.aclose()

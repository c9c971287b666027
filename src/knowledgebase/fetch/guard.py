"""URL policy checks applied before any outbound request.

Only ``https`` targets on the default port are allowed. Hostnames are checked
against a blocklist, literal addresses against private and reserved ranges,
and DNS names are resolved so that every returned address can be checked
before a connection is made.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from urllib.parse import SplitResult, urlsplit, urlunsplit

from knowledgebase.ingestion.errors import UrlNotAllowed

logger = logging.getLogger(__name__)

Resolver = Callable[[str], Awaitable[Sequence[str]]]

BLOCKED_HOSTS = frozenset(
    {
        "localhost",
        "metadata",
        "metadata.google.internal",
        "169.254.169.254",
    }
)
BLOCKED_SUFFIXES = (".local", ".localhost")


async def system_resolver(host: str) -> list[str]:
    """Resolve ``host`` to every address returned by the system resolver."""

    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, 443, type=socket.SOCK_STREAM)
    return sorted({str(info[4][0]) for info in infos})


def is_disallowed_address(value: str) -> bool:
    """Return True when ``value`` is not a public unicast address.

    Anything that does not parse as an IP address is treated as disallowed.
    """

    try:
        address = ipaddress.ip_address(value.split("%", 1)[0])
    except ValueError:
        return True

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped

    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    )


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.split("%", 1)[0])
    except ValueError:
        return False
    return True


def check_url_syntax(url: str) -> SplitResult:
    """Validate scheme, credentials, port and hostname without network access."""

    try:
        parsed = urlsplit(url.strip())
        port = parsed.port
    except ValueError as exc:
        raise UrlNotAllowed(f"invalid URL: {exc}") from exc

    if parsed.scheme.lower() != "https":
        raise UrlNotAllowed("only https URLs are allowed")
    if parsed.username is not None or parsed.password is not None:
        raise UrlNotAllowed("URLs with embedded credentials are not allowed")
    if port is not None and port != 443:
        raise UrlNotAllowed(f"port {port} is not allowed")

    host = (parsed.hostname or "").rstrip(".").lower()
    if not host:
        raise UrlNotAllowed("URL has no hostname")
    if host in BLOCKED_HOSTS or host.endswith(BLOCKED_SUFFIXES):
        raise UrlNotAllowed(f"host {host} is not allowed")
    if _is_ip_literal(host) and is_disallowed_address(host):
        raise UrlNotAllowed(f"address {host} is not allowed")
    return parsed


@dataclass(slots=True, frozen=True)
class ValidatedUrl:
    """A URL that passed the policy, with the address it must be fetched from.

    ``address`` is ``None`` for IP literals, which are checked as written.
    """

    url: str
    host: str
    address: str | None = None

    def pinned_url(self) -> str:
        """Return ``url`` with its host replaced by the validated address."""

        if self.address is None:
            return self.url
        parsed = urlsplit(self.url)
        netloc = f"[{self.address}]" if ":" in self.address else self.address
        if parsed.port is not None:
            netloc = f"{netloc}:{parsed.port}"
        return urlunsplit(parsed._replace(netloc=netloc))


class UrlGuard:
    """Validates URLs, resolving DNS names with a bounded timeout."""

    def __init__(
        self,
        *,
        resolver: Resolver | None = None,
        dns_timeout: float = 1.5,
    ) -> None:
        self._resolver = resolver or system_resolver
        self._dns_timeout = dns_timeout

    async def resolve(self, url: str) -> ValidatedUrl:
        """Validate ``url`` and choose the checked address to connect to.

        Raises :class:`UrlNotAllowed` when the URL or any resolved address
        violates the policy.
        """

        parsed = check_url_syntax(url)
        host = (parsed.hostname or "").rstrip(".").lower()
        if _is_ip_literal(host):
            return ValidatedUrl(url=parsed.geturl(), host=host)

        try:
            addresses = await asyncio.wait_for(self._resolver(host), self._dns_timeout)
        except TimeoutError as exc:
            raise UrlNotAllowed(f"DNS lookup for {host} timed out") from exc
        except OSError as exc:
            raise UrlNotAllowed(f"failed to resolve {host}") from exc

        if not addresses:
            raise UrlNotAllowed(f"{host} did not resolve to any address")

        blocked = [address for address in addresses if is_disallowed_address(address)]
        if blocked:
            logger.warning(
                "blocked url resolving to non-public address",
                extra={"host": host, "addresses": blocked},
            )
            raise UrlNotAllowed(f"{host} resolves to a non-public address")
        return ValidatedUrl(url=parsed.geturl(), host=host, address=str(addresses[0]))

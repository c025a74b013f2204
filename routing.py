import logging
import urllib.parse
from dataclasses import dataclass, field
from typing import NamedTuple, Optional, Tuple

LOG = logging.getLogger(__name__)

DEFAULT_RELAY_URL = "https://corsproxy.io/?"

# Hosts known to answer without permissive CORS headers.
CORS_HOSTILE_DOMAINS = (
    "moveonjoy.com",
    "tvpass.org",
    "streamlock.net",
)


@dataclass
class RoutePolicy:
    relay_url: str = DEFAULT_RELAY_URL
    page_is_secure: bool = False
    hostile_domains: Tuple[str, ...] = CORS_HOSTILE_DOMAINS
    # Other relay prefixes we may see wrapped around an address (e.g. the local relay).
    known_relays: Tuple[str, ...] = field(default_factory=tuple)

    def relay_prefixes(self) -> Tuple[str, ...]:
        prefixes = [self.relay_url] + [p for p in self.known_relays if p]
        return tuple(p for p in prefixes if p)


class Route(NamedTuple):
    url: str
    via_relay: bool


def wrap_relay(address: str, relay_url: str = DEFAULT_RELAY_URL) -> str:
    return f"{relay_url}{urllib.parse.quote(address, safe='')}"


def unwrap_relay(address: str, policy: Optional[RoutePolicy] = None) -> str:
    """Strip relay wrappers (possibly nested) and return the real target."""
    prefixes = (policy or RoutePolicy()).relay_prefixes()
    current = address
    while True:
        for prefix in prefixes:
            if current.startswith(prefix):
                current = urllib.parse.unquote(current[len(prefix):])
                break
        else:
            return current


def _host(address: str) -> str:
    try:
        return (urllib.parse.urlparse(address).hostname or "").lower()
    except ValueError:
        return ""


def _is_hostile(host: str, domains: Tuple[str, ...]) -> bool:
    for domain in domains:
        d = domain.lower().lstrip(".")
        if host == d or host.endswith("." + d):
            return True
    return False


def select_route(address: str, page_is_secure: bool, already_routed: bool,
                 policy: Optional[RoutePolicy] = None) -> Route:
    """Decide whether a request goes direct or through the fallback relay.

    A routed session never gets wrapped twice. Otherwise any stale relay
    wrapper is removed and the decision is made on the real target: mixed
    content (secure page, insecure target) or a host that refuses cross-origin
    access sends the request through the relay.
    """
    policy = policy or RoutePolicy()
    if already_routed:
        return Route(address, True)

    target = unwrap_relay(address, policy)
    mixed = page_is_secure and target.lower().startswith("http://")
    hostile = _is_hostile(_host(target), policy.hostile_domains)
    if mixed or hostile:
        LOG.debug("Routing via relay (mixed=%s, hostile=%s): %s", mixed, hostile, target)
        return Route(wrap_relay(target, policy.relay_url), True)
    return Route(target, False)


def force_relay(address: str, policy: Optional[RoutePolicy] = None) -> str:
    policy = policy or RoutePolicy()
    return wrap_relay(unwrap_relay(address, policy), policy.relay_url)

"""
Following of 307/308 responses on behalf of the caller.

Each hop is inspected here rather than by the HTTP client so the proxy can
bound the chain, detect a hop that redirects to itself, and anchor relative
locations and request headers to the request that started the chain.
"""
import enum
import logging
import time
from typing import Tuple
from urllib.parse import urljoin

from urllib3 import HTTPHeaderDict

from .config import ProxyConfig
from .context import RequestContext
from .errors import RedirectLimitExceeded, UpstreamTransportError
from .models import HTTPResponse, ProxyRequest, RedirectState
from .target import has_scheme

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = (307, 308)

# Describe the original payload, which follow-ups never carry
_BODY_HEADERS = ('Host', 'Content-Length', 'Content-Type', 'Transfer-Encoding')


class RedirectOutcome(enum.Enum):
    DONE = "done"
    LOOP_DETECTED = "loop_detected"


def should_follow(response: HTTPResponse, config: ProxyConfig) -> bool:
    return (config.enable_redirect
            and response.status_code in REDIRECT_STATUSES
            and bool(response.headers.get('Location')))


def resolve_location(location: str, origin: ProxyRequest) -> str:
    """Resolve a Location header against the scheme and host of the origin request."""
    if has_scheme(location):
        return location
    base = urljoin(origin.url, '/')
    try:
        return urljoin(base, location)
    except ValueError as e:
        raise UpstreamTransportError(location, e) from e


def loop_response(url: str) -> HTTPResponse:
    return HTTPResponse.create(
        400, f"redirect loop detected: redirect URL is the same as previous: {url}")


def follow_up_request(origin: ProxyRequest, url: str) -> ProxyRequest:
    """Bodiless request for the next hop, carrying the origin's method and headers."""
    headers = HTTPHeaderDict(origin.headers)
    for name in _BODY_HEADERS:
        headers.discard(name)
    return ProxyRequest(method=origin.method, url=url, headers=headers, body=None)


def follow_redirects(response: HTTPResponse, origin: ProxyRequest,
                     config: ProxyConfig, state: RedirectState,
                     transport, context: RequestContext
                     ) -> Tuple[HTTPResponse, RedirectState, RedirectOutcome]:
    """
    Follow a chain of 307/308 responses.

    Args:
        response: Response to the origin request
        origin: Outbound request that produced `response`
        config: Proxy configuration
        state: Redirect state for this inbound request
        transport: Object with a send(request, context, deadline) method
        context: Cancellation scope of the inbound request

    Returns:
        The final response, the updated state and how the chain ended

    Raises:
        RedirectLimitExceeded: more than config.max_redirects hops required
        UpstreamTransportError: a hop failed at the network level or ran
            past config.timeout
        RequestCancelled: the inbound request went away mid-chain
    """
    while should_follow(response, config):
        if state.redirect_count >= config.max_redirects:
            raise RedirectLimitExceeded(config.max_redirects)

        url = resolve_location(response.headers['Location'], origin)
        if url == state.previous_url:
            logger.info(f"Redirect loop detected at {url}")
            return loop_response(url), state, RedirectOutcome.LOOP_DETECTED

        state = RedirectState(previous_url=url,
                              redirect_count=state.redirect_count + 1)
        logger.debug(f"Following {response.status_code} to {url} "
                     f"({state.redirect_count}/{config.max_redirects})")
        # Each hop as a whole must finish within the configured timeout
        response = transport.send(follow_up_request(origin, url), context,
                                  deadline=time.monotonic() + config.timeout)

    return response, state, RedirectOutcome.DONE

import logging
from typing import Optional, Tuple

from .config import ProxyConfig
from .context import RequestContext
from .cors import preflight_response, stamp_cors_headers
from .director import direct
from .errors import (InvalidTargetURL, MissingOrigin, RedirectLimitExceeded,
                     UpstreamTransportError)
from .models import HTTPRequest, HTTPResponse, RedirectState
from .redirects import follow_redirects
from .target import resolve_target
from .transport import Transport

logger = logging.getLogger(__name__)

USAGE = """cors-anywhere usage:

http://localhost:<port>/http(s)://your-domain.com/endpoint

Inspired by https://github.com/Redocly/cors-anywhere
"""

# Statuses whose responses never carry a body
_BODILESS_STATUSES = (204, 304)


class ProxyPipeline:
    """Validates an inbound request, forwards it and shapes the response."""

    def __init__(self, config: ProxyConfig, transport: Optional[Transport] = None):
        """
        Args:
            config: Proxy configuration
            transport: Upstream transport; one is built from config.timeout if omitted
        """
        self._config = config
        self._transport = transport or Transport(config.timeout)

    @property
    def config(self) -> ProxyConfig:
        return self._config

    @property
    def transport(self):
        return self._transport

    def handle(self, request: HTTPRequest, context: RequestContext,
               client_address: Optional[Tuple[str, int]] = None) -> HTTPResponse:
        """
        Produce the response for one inbound request.

        Raises:
            RequestCancelled: the caller went away before a response was ready
        """
        if request.path == '/' and request.method == 'GET':
            return HTTPResponse.create(200, USAGE)

        try:
            target = resolve_target(request.path.removeprefix('/'), request.query)
        except InvalidTargetURL as e:
            logger.info(f"Rejected invalid target {e}")
            return self._reject(request, InvalidTargetURL.message)

        if request.method == 'OPTIONS':
            return preflight_response(request)

        if self._config.require_origin and not request.headers.get('Origin'):
            return self._reject(request, MissingOrigin.message)

        outbound = direct(request, target, client_address)
        try:
            response = self._transport.send(outbound, context)
            response, state, outcome = follow_redirects(
                response, outbound, self._config,
                RedirectState(previous_url=outbound.url),
                self._transport, context)
        except (RedirectLimitExceeded, UpstreamTransportError) as e:
            logger.warning(f"Proxying {request.method} {target.url} failed: {e}")
            response = HTTPResponse.create_error(502)
        else:
            logger.info(f"{request.method} {target.url} -> {response.status_code} "
                        f"({outcome.value}, {state.redirect_count} redirects)")

        stamp_cors_headers(response)
        return frame(response, request.method)

    def _reject(self, request: HTTPRequest, message: str) -> HTTPResponse:
        return stamp_cors_headers(HTTPResponse.create(422, message), request)


def frame(response: HTTPResponse, method: str) -> HTTPResponse:
    """Make Content-Length match the body that will actually be written."""
    if method == 'HEAD' or response.status_code in _BODILESS_STATUSES:
        return response
    response.headers['Content-Length'] = str(len(response.body))
    return response

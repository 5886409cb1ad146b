import logging
import socket
import threading
import time
from http.cookiejar import DefaultCookiePolicy
from typing import Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3 import HTTPHeaderDict
from urllib3.connection import HTTPConnection
from urllib3.exceptions import HTTPError as URLLib3HTTPError

from .context import RequestContext
from .errors import UpstreamTransportError
from .models import HTTPResponse, ProxyRequest, reason_phrase, strip_hop_by_hop

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def keepalive_socket_options(interval: float) -> list:
    """TCP keep-alive probing every `interval` seconds, where the platform allows."""
    seconds = max(1, int(interval))
    options = HTTPConnection.default_socket_options + [
        (socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1),
    ]
    if hasattr(socket, 'TCP_KEEPIDLE'):
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, seconds))
    if hasattr(socket, 'TCP_KEEPINTVL'):
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, seconds))
    return options


class KeepAliveAdapter(HTTPAdapter):
    """HTTPAdapter whose pooled connections use TCP keep-alive."""

    def __init__(self, keepalive: float, **kwargs):
        self._socket_options = keepalive_socket_options(keepalive)
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs['socket_options'] = self._socket_options
        super().init_poolmanager(*args, **kwargs)


class Transport:
    """
    Connection pool shared by every request the proxy forwards.

    A single timeout covers connecting (TLS handshake included), reading,
    TCP keep-alive and the whole of each redirect hop. Redirects are never
    followed here and no cookies are kept between calls.
    """

    def __init__(self, timeout: float, pool_maxsize: int = 32):
        """
        Initialize the transport.

        Args:
            timeout: Timeout in seconds for every upstream round trip
            pool_maxsize: Connections kept alive per upstream host
        """
        self._timeout = timeout
        self._session = requests.Session()
        self._session.headers.clear()
        self._session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))

        adapter = KeepAliveAdapter(timeout, pool_maxsize=pool_maxsize, max_retries=0)
        self._session.mount('http://', adapter)
        self._session.mount('https://', adapter)

    @property
    def timeout(self) -> float:
        return self._timeout

    def send(self, request: ProxyRequest, context: RequestContext,
             deadline: Optional[float] = None) -> HTTPResponse:
        """
        Perform one upstream round trip.

        Args:
            request: Outbound request; its URL is sent exactly as given
            context: Cancellation scope of the inbound request
            deadline: Absolute time.monotonic() value bounding the whole
                round trip, body included

        Returns:
            Upstream response with hop-by-hop headers removed

        Raises:
            UpstreamTransportError: invalid URL, connection, TLS or read
                failure, or the deadline passed
            RequestCancelled: the inbound request was cancelled
        """
        context.check()
        timeout = context.hop_timeout(self._timeout)
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise UpstreamTransportError(request.url, TimeoutError("deadline exceeded"))
            timeout = min(timeout, remaining)

        logger.debug(f"{request.method} {request.url}")
        try:
            prepared = self._session.prepare_request(requests.Request(
                method=request.method,
                url=request.url,
                headers=flatten_headers(request.headers),
                data=request.body,
            ))
            # requests re-quotes the URL; keep the caller's path and query bytes
            prepared.url = request.url
            settings = self._session.merge_environment_settings(
                prepared.url, {}, True, None, None)
            settings['stream'] = True

            upstream = self._session.send(
                prepared, allow_redirects=False, timeout=timeout, **settings)
        except requests.RequestException as e:
            raise UpstreamTransportError(request.url, e) from e

        expired = threading.Event()
        watchdog = None
        if deadline is not None:
            watchdog = threading.Timer(max(deadline - time.monotonic(), 0),
                                       _expire, args=(upstream, expired))
            watchdog.daemon = True
            watchdog.start()

        try:
            body = bytearray()
            for chunk in upstream.raw.stream(CHUNK_SIZE, decode_content=False):
                context.check()
                body.extend(chunk)
        except (requests.RequestException, URLLib3HTTPError, OSError) as e:
            if expired.is_set():
                e = TimeoutError(f"no complete response within {self._timeout}s")
            raise UpstreamTransportError(request.url, e) from e
        finally:
            if watchdog is not None:
                watchdog.cancel()
            upstream.close()

        if expired.is_set():
            raise UpstreamTransportError(
                request.url, TimeoutError(f"no complete response within {self._timeout}s"))

        headers = HTTPHeaderDict(upstream.raw.headers)
        strip_hop_by_hop(headers)
        return HTTPResponse(
            status_code=upstream.status_code,
            status_message=upstream.reason or reason_phrase(upstream.status_code),
            headers=headers,
            body=bytes(body),
        )

    def close(self) -> None:
        self._session.close()


def flatten_headers(headers: HTTPHeaderDict) -> Dict[str, str]:
    """One value per header name; repeated cookies are joined with '; '."""
    flat = {}
    for name in headers:
        separator = '; ' if name.lower() == 'cookie' else ', '
        flat[name] = separator.join(headers.getlist(name))
    return flat


def _expire(upstream: requests.Response, expired: threading.Event) -> None:
    # Shutting the socket down unblocks a read stuck on a slow upstream
    expired.set()
    sock = getattr(upstream.raw.connection, 'sock', None)
    if sock is not None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

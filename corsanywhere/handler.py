import socket
import select
import logging
from typing import Optional, Tuple

from .context import RequestContext
from .errors import RequestCancelled
from .models import HTTPRequest, HTTPResponse
from .pipeline import ProxyPipeline

logger = logging.getLogger(__name__)

MAX_HEADER_BYTES = 64 * 1024


class RequestRejected(Exception):
    """The inbound request cannot be read; answered with `status_code`."""

    def __init__(self, status_code: int):
        super().__init__(status_code)
        self.status_code = status_code


class RequestHandler:
    """Handles processing of individual HTTP requests."""

    def __init__(self, pipeline: ProxyPipeline, timeout: float = 30):
        """
        Initialize the request handler.

        Args:
            pipeline: Proxy pipeline producing responses
            timeout: Socket timeout in seconds for the client connection
        """
        self._pipeline = pipeline
        self._timeout = timeout

    def handle_client(self, client_socket: socket.socket,
                      client_address: Tuple[str, int]) -> None:
        """
        Handle an individual client connection.

        Args:
            client_socket: Socket object for client connection
            client_address: Tuple of client's IP and port
        """
        client_socket.settimeout(self._timeout)

        try:
            try:
                request_data = self._read_request(client_socket)
            except RequestRejected as e:
                self._send(client_socket, HTTPResponse.create_error(e.status_code))
                return
            if not request_data:
                return

            request = HTTPRequest.from_raw_data(request_data)
            if not request:
                self._send(client_socket, HTTPResponse.create_error(400))
                return
            if 'chunked' in request.headers.get('Transfer-Encoding', '').lower():
                self._send(client_socket, HTTPResponse.create_error(411))
                return

            context = RequestContext(disconnected=lambda: _client_gone(client_socket))
            response = self._pipeline.handle(request, context, client_address)
            self._send(client_socket, response)

        except RequestCancelled:
            logger.info(f"Client {client_address} went away, request abandoned")
        except Exception as e:
            logger.error(f"Error handling client {client_address}: {e}")
        finally:
            client_socket.close()

    def _send(self, client_socket: socket.socket, response: HTTPResponse) -> None:
        # One request per connection
        response.headers['Connection'] = 'close'
        client_socket.sendall(response.to_bytes())

    def _read_request(self, client_socket: socket.socket) -> Optional[bytes]:
        """Read the complete HTTP request from the client socket."""
        request_data = bytearray()

        while b'\r\n\r\n' not in request_data:
            ready = select.select([client_socket], [], [], self._timeout)
            if not ready[0]:  # Timeout
                return None

            chunk = client_socket.recv(4096)
            if not chunk:
                return None
            request_data.extend(chunk)
            if len(request_data) > MAX_HEADER_BYTES and b'\r\n\r\n' not in request_data:
                raise RequestRejected(431)

        head, _, _ = request_data.partition(b'\r\n\r\n')
        content_length = 0
        expect_continue = False
        for line in head.split(b'\r\n')[1:]:
            name, _, value = line.partition(b':')
            name = name.strip().lower()
            if name == b'content-length':
                try:
                    content_length = int(value.strip())
                except ValueError:
                    raise RequestRejected(400)
                if content_length < 0:
                    raise RequestRejected(400)
            elif name == b'expect' and value.strip().lower() == b'100-continue':
                expect_continue = True

        # Headers, the separator (\r\n\r\n), then the body
        total_length = len(head) + 4 + content_length
        if expect_continue and len(request_data) < total_length:
            client_socket.sendall(b'HTTP/1.1 100 Continue\r\n\r\n')

        while len(request_data) < total_length:
            chunk = client_socket.recv(4096)
            if not chunk:  # Connection closed
                break
            request_data.extend(chunk)

        return bytes(request_data[:total_length])


def _client_gone(client_socket: socket.socket) -> bool:
    """True once the peer has closed its side of the connection."""
    try:
        ready, _, _ = select.select([client_socket], [], [], 0)
        if not ready:
            return False
        return client_socket.recv(1, socket.MSG_PEEK) == b''
    except OSError:
        return True

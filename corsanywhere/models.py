from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Optional

from urllib3 import HTTPHeaderDict

# Connection-scoped headers, never forwarded in either direction
HOP_BY_HOP_HEADERS = (
    'Connection',
    'Keep-Alive',
    'Proxy-Connection',
    'Proxy-Authenticate',
    'Proxy-Authorization',
    'TE',
    'Trailer',
    'Transfer-Encoding',
    'Upgrade',
)


def strip_hop_by_hop(headers: HTTPHeaderDict) -> None:
    """Remove hop-by-hop headers, including any listed in Connection."""
    for value in headers.getlist('Connection'):
        for name in value.split(','):
            headers.discard(name.strip())
    for name in HOP_BY_HOP_HEADERS:
        headers.discard(name)


@dataclass
class HTTPRequest:
    """Model representing an inbound HTTP request."""
    method: str
    path: str
    protocol: str
    headers: HTTPHeaderDict
    query: str = ''
    body: bytes = b''

    @classmethod
    def from_raw_data(cls, request_data: bytes) -> Optional['HTTPRequest']:
        """Create HTTPRequest instance from raw request bytes."""
        head, _, body = request_data.partition(b'\r\n\r\n')
        try:
            lines = head.decode('iso-8859-1').split('\r\n')
            method, target, protocol = lines[0].split(' ')
            if not protocol.startswith('HTTP/'):
                return None

            headers = HTTPHeaderDict()
            for line in lines[1:]:
                if not line:
                    continue
                key, value = line.split(':', 1)
                headers.add(key.strip(), value.strip())
        except ValueError:
            return None

        path, _, query = target.partition('?')
        return cls(
            method=method.upper(),
            path=path,
            protocol=protocol,
            headers=headers,
            query=query,
            body=body,
        )


@dataclass(frozen=True)
class TargetURL:
    """Absolute upstream URL taken from the inbound path."""
    scheme: str
    host: str
    path: str
    query: str = ''

    @property
    def origin(self) -> str:
        return f"{self.scheme}://{self.host}"

    @property
    def url(self) -> str:
        url = self.origin + self.path
        if self.query:
            url += '?' + self.query
        return url


@dataclass
class ProxyRequest:
    """Outbound request sent to an upstream."""
    method: str
    url: str
    headers: HTTPHeaderDict
    body: Optional[bytes] = None


@dataclass
class RedirectState:
    """Per-request bookkeeping for redirect following."""
    previous_url: str
    redirect_count: int = 0


@dataclass
class HTTPResponse:
    """Model representing an HTTP response."""
    status_code: int
    status_message: str
    headers: HTTPHeaderDict = field(default_factory=HTTPHeaderDict)
    body: bytes = b''

    def to_bytes(self) -> bytes:
        """Serialize the response for the wire."""
        lines = [f"HTTP/1.1 {self.status_code} {self.status_message}"]
        lines.extend(f"{k}: {v}" for k, v in self.headers.iteritems())
        head = '\r\n'.join(lines) + '\r\n\r\n'
        return head.encode('iso-8859-1') + self.body

    @classmethod
    def create(cls, status_code: int, body: str = '',
               content_type: str = 'text/plain; charset=utf-8') -> 'HTTPResponse':
        """Create a locally generated response."""
        payload = body.encode('utf-8')
        headers = HTTPHeaderDict()
        if payload:
            headers['Content-Type'] = content_type
        headers['Content-Length'] = str(len(payload))
        return cls(
            status_code=status_code,
            status_message=reason_phrase(status_code),
            headers=headers,
            body=payload,
        )

    @classmethod
    def create_error(cls, status_code: int, message: str = None) -> 'HTTPResponse':
        """Create an error response; the body defaults to the reason phrase."""
        return cls.create(status_code, message or reason_phrase(status_code))


def reason_phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return ''

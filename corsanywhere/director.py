from typing import Optional, Tuple

from urllib3 import HTTPHeaderDict

from .models import HTTPRequest, ProxyRequest, TargetURL, strip_hop_by_hop

# Response-only headers a caller could try to smuggle towards the upstream
SMUGGLED_HEADERS = ('set-cookie', 'set-cookie2')


def direct(request: HTTPRequest, target: TargetURL,
           client_address: Optional[Tuple[str, int]] = None) -> ProxyRequest:
    """
    Rewrite an inbound request so it targets the upstream URL.

    Args:
        request: Inbound request received by the proxy
        target: Validated upstream URL
        client_address: Caller address, appended to X-Forwarded-For

    Returns:
        Outbound request for the transport
    """
    headers = HTTPHeaderDict(request.headers)
    strip_hop_by_hop(headers)
    for name in SMUGGLED_HEADERS:
        headers.discard(name)

    headers['Host'] = target.host
    if client_address:
        prior = headers.get('X-Forwarded-For')
        ip = client_address[0]
        headers['X-Forwarded-For'] = f"{prior}, {ip}" if prior else ip

    return ProxyRequest(
        method=request.method,
        url=target.url,
        headers=headers,
        body=request.body or None,
    )

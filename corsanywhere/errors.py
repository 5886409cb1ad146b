class ProxyError(Exception):
    """Base class for failures raised by the proxy pipeline."""


class InvalidTargetURL(ProxyError):
    """The target embedded in the request path is not a usable URL."""

    message = "invalid cors proxy url"


class MissingOrigin(ProxyError):
    """The Origin header is required but absent."""

    message = "origin header is required on the request"


class RedirectLimitExceeded(ProxyError):
    """Redirect following hit the configured maximum."""

    def __init__(self, max_redirects: int):
        super().__init__(f"maximum redirect limit ({max_redirects}) reached")
        self.max_redirects = max_redirects


class UpstreamTransportError(ProxyError):
    """Network, DNS or TLS failure while talking to the upstream."""

    def __init__(self, url: str, reason: Exception):
        super().__init__(f"upstream request to {url} failed: {reason}")
        self.url = url
        self.reason = reason


class RequestCancelled(ProxyError):
    """The caller went away or its deadline passed."""

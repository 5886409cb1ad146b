import re
from urllib.parse import urlsplit

from .errors import InvalidTargetURL
from .models import TargetURL

_SCHEMES = ('http://', 'https://')
_FORBIDDEN = re.compile(r'[\x00-\x20\x7f]')
# Wildcard or empty leading labels are not resolvable host names
_BAD_LABEL_PREFIXES = ('*', '.')


def has_scheme(raw_url: str) -> bool:
    return raw_url.startswith(_SCHEMES)


def resolve_target(raw_target: str, query: str = '') -> TargetURL:
    """
    Turn the path suffix of a proxy request into an absolute URL.

    Args:
        raw_target: Inbound path with the leading slash removed
        query: Inbound query string, attached to the result untouched

    Returns:
        TargetURL with a non-empty scheme and host

    Raises:
        InvalidTargetURL: the suffix does not parse as a URL with a host
    """
    if not has_scheme(raw_target):
        raw_target = 'http://' + raw_target
    if _FORBIDDEN.search(raw_target):
        raise InvalidTargetURL(raw_target)

    try:
        parts = urlsplit(raw_target)
        parts.port  # raises on a non-numeric or out of range port
    except ValueError as e:
        raise InvalidTargetURL(raw_target) from e

    hostname = parts.hostname
    if not hostname or hostname.startswith(_BAD_LABEL_PREFIXES) or '..' in hostname:
        raise InvalidTargetURL(raw_target)

    return TargetURL(
        scheme=parts.scheme,
        # userinfo is not forwarded
        host=parts.netloc.rpartition('@')[2],
        path=parts.path,
        query=query,
    )

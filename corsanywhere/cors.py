from typing import Optional

from .models import HTTPRequest, HTTPResponse

MAX_AGE = "3000000"


def stamp_cors_headers(response: HTTPResponse,
                       request: Optional[HTTPRequest] = None) -> HTTPResponse:
    """
    Add permissive CORS headers to a response.

    When the inbound request is given, the preflight request headers are
    mirrored back as the allowed methods and headers.
    """
    response.headers['Access-Control-Allow-Origin'] = '*'
    response.headers['Access-Control-Max-Age'] = MAX_AGE

    if request is not None:
        method = request.headers.get('Access-Control-Request-Method')
        if method:
            response.headers['Access-Control-Allow-Methods'] = method
        headers = request.headers.get('Access-Control-Request-Headers')
        if headers:
            response.headers['Access-Control-Allow-Headers'] = headers
    return response


def preflight_response(request: HTTPRequest) -> HTTPResponse:
    """Answer an OPTIONS request locally with an empty 200."""
    return stamp_cors_headers(HTTPResponse.create(200), request)

"""
A CORS proxy: fetches any URL embedded in the request path and adds
permissive cross-origin headers to the response.
"""

from .server import ProxyServer
from .handler import RequestHandler
from .pipeline import ProxyPipeline
from .models import HTTPRequest, HTTPResponse
from .config import ProxyConfig

__all__ = ['ProxyServer', 'RequestHandler', 'ProxyPipeline', 'HTTPRequest',
           'HTTPResponse', 'ProxyConfig']

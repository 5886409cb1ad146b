import unittest
import threading
import requests
import json
import logging
import http.client
import socket
import time
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
import sys
import os

# Add the parent directory to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from corsanywhere.config import ProxyConfig
from corsanywhere.context import RequestContext
from corsanywhere.models import HTTPRequest
from corsanywhere.pipeline import ProxyPipeline
from corsanywhere.server import ProxyServer

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ORIGIN = {"Origin": "https://app.example"}


def free_port() -> int:
    """A local port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


class TestBackendHandler(BaseHTTPRequestHandler):
    """Simple HTTP handler for testing backend server."""

    hits = []

    def do_GET(self):
        self.handle_request()

    def do_POST(self):
        self.handle_request()

    def do_PUT(self):
        self.handle_request()

    def do_HEAD(self):
        self.handle_request()

    def handle_request(self):
        """Handle the request based on the path."""
        TestBackendHandler.hits.append(self.path)
        path = self.path.split('?', 1)[0]

        if path.startswith("/echo"):
            content_length = int(self.headers.get('Content-Length', 0))
            body = self.rfile.read(content_length) if content_length > 0 else b''
            self._send_json_response(200, {
                "method": self.command,
                "path": self.path,
                "headers": {k.lower(): v for k, v in self.headers.items()},
                "body": body.decode('utf-8'),
            })
        elif path.startswith("/chain/"):
            remaining = int(path.rsplit('/', 1)[1])
            if remaining == 0:
                self._send_json_response(200, {"message": "end of chain", "method": self.command})
            else:
                self._send_redirect(307, f"/chain/{remaining - 1}")
        elif path == "/loop-start":
            self._send_redirect(307, "/loop")
        elif path == "/loop":
            self._send_redirect(308, "/loop")
        elif path == "/bad-location":
            self._send_redirect(307, "http://.bad/")
        elif path == "/to-slow":
            self._send_redirect(307, "/slow")
        elif path == "/slow":
            self._send_slowly(b"xxxxxx", delay=0.5)
        elif path == "/teapot":
            self._send_json_response(418, {"error": "teapot"})
        else:
            self._send_json_response(404, {"error": "Not found"})

    def _send_redirect(self, status_code: int, location: str):
        self.send_response(status_code)
        self.send_header('Location', location)
        self.send_header('Content-Length', '0')
        self.end_headers()

    def _send_slowly(self, payload: bytes, delay: float):
        """Send the body one byte at a time."""
        self.send_response(200)
        self.send_header('Content-Length', str(len(payload)))
        self.end_headers()
        try:
            for i in range(len(payload)):
                self.wfile.write(payload[i:i + 1])
                self.wfile.flush()
                time.sleep(delay)
        except (BrokenPipeError, ConnectionResetError):
            logger.info("Slow response abandoned by the proxy")

    def _send_json_response(self, status_code: int, data: dict):
        """Send JSON response with proper headers."""
        response_data = json.dumps(data).encode('utf-8')

        self.send_response(status_code)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(response_data)))
        self.send_header('Set-Cookie', 'a=1')
        self.send_header('Set-Cookie', 'b=2')
        self.end_headers()
        if self.command != 'HEAD':
            self.wfile.write(response_data)

    def log_message(self, format, *args):
        """Override to use our logger."""
        logger.info(f"{self.address_string()} - {format % args}")


class TestCORSProxyIntegration(unittest.TestCase):
    """Integration tests for the CORS proxy."""

    @classmethod
    def setUpClass(cls):
        """Set up test environment once before all tests."""
        logger.info("Starting test setup...")

        # Start backend server
        cls.backend_server = ThreadingHTTPServer(('127.0.0.1', 0), TestBackendHandler)
        cls.backend_port = cls.backend_server.server_address[1]
        cls.backend_thread = threading.Thread(target=cls.backend_server.serve_forever)
        cls.backend_thread.daemon = True
        cls.backend_thread.start()
        logger.info("Backend server started")

        # Start proxy server
        cls.proxy = ProxyServer(ProxyConfig(
            host="127.0.0.1",
            port=0,
            require_origin=True,
            enable_redirect=True,
            max_redirects=3,
            timeout=5,
        ))
        cls.proxy_thread = threading.Thread(target=cls.proxy.start)
        cls.proxy_thread.daemon = True
        cls.proxy_thread.start()
        cls.proxy.wait_until_ready(timeout=5)
        logger.info("Proxy server started")

    def setUp(self):
        TestBackendHandler.hits.clear()

    def proxy_url(self, path: str, scheme: bool = True) -> str:
        backend = f"127.0.0.1:{self.backend_port}{path}"
        if scheme:
            backend = "http://" + backend
        return f"http://127.0.0.1:{self.proxy.port}/{backend}"

    def test_usage_page(self):
        response = requests.get(f"http://127.0.0.1:{self.proxy.port}/", timeout=10)

        self.assertEqual(response.status_code, 200)
        self.assertIn("cors-anywhere usage", response.text)

    def test_get_request_through_proxy(self):
        """Test GET request through proxy to backend server."""
        # Act
        response = requests.get(self.proxy_url("/echo"), headers=ORIGIN, timeout=10)
        data = response.json()

        # Assert
        self.assertEqual(response.status_code, 200)
        self.assertEqual(data["method"], "GET")
        self.assertEqual(data["path"], "/echo")
        self.assertEqual(data["headers"]["host"], f"127.0.0.1:{self.backend_port}")
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "*")
        self.assertEqual(response.headers["Access-Control-Max-Age"], "3000000")
        logger.info(f"[PASSED] test_get_request_through_proxy")

    def test_scheme_defaults_to_http(self):
        response = requests.get(self.proxy_url("/echo", scheme=False), headers=ORIGIN,
                                timeout=10)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["path"], "/echo")

    def test_post_request_through_proxy(self):
        """Test POST request through proxy to backend server."""
        # Arrange
        post_data = {"key": "value", "test": 123}

        # Act
        response = requests.post(self.proxy_url("/echo"), json=post_data,
                                 headers=ORIGIN, timeout=10)
        data = response.json()

        # Assert
        self.assertEqual(response.status_code, 200)
        self.assertEqual(data["method"], "POST")
        self.assertEqual(json.loads(data["body"]), post_data)
        logger.info(f"[PASSED] test_post_request_through_proxy")

    def test_query_string_is_forwarded_verbatim(self):
        # requests would normalize the escapes, so talk to the proxy directly
        conn = http.client.HTTPConnection("127.0.0.1", self.proxy.port, timeout=10)
        target = f"/http://127.0.0.1:{self.backend_port}/echo?q=a%2Fb&x=%41+y&e="
        conn.request("GET", target, headers=ORIGIN)
        response = conn.getresponse()
        data = json.loads(response.read())
        conn.close()

        self.assertEqual(response.status, 200)
        self.assertEqual(data["path"], "/echo?q=a%2Fb&x=%41+y&e=")

    def test_set_cookie_request_headers_are_not_forwarded(self):
        headers = dict(ORIGIN, **{"Set-Cookie": "session=1", "Set-Cookie2": "x=2",
                                  "X-Custom": "kept"})

        data = requests.get(self.proxy_url("/echo"), headers=headers, timeout=10).json()

        self.assertNotIn("set-cookie", data["headers"])
        self.assertNotIn("set-cookie2", data["headers"])
        self.assertEqual(data["headers"]["x-custom"], "kept")

    def test_upstream_status_and_headers_pass_through(self):
        response = requests.get(self.proxy_url("/teapot"), headers=ORIGIN, timeout=10)

        self.assertEqual(response.status_code, 418)
        self.assertEqual(response.json(), {"error": "teapot"})
        self.assertEqual(response.raw.headers.getlist("Set-Cookie"), ["a=1", "b=2"])
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "*")

    def test_not_found_request(self):
        """Test request to non-existent endpoint."""
        response = requests.get(self.proxy_url("/api/nonexistent"), headers=ORIGIN,
                                timeout=10)

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"], "Not found")

    def test_head_request(self):
        response = requests.head(self.proxy_url("/echo"), headers=ORIGIN, timeout=10)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, b"")
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "*")

    def test_missing_origin_is_rejected(self):
        response = requests.get(self.proxy_url("/echo"), timeout=10)

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.text, "origin header is required on the request")
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "*")
        self.assertEqual(TestBackendHandler.hits, [])

    def test_invalid_target_is_rejected(self):
        url = f"http://127.0.0.1:{self.proxy.port}/http://example.com:port/"

        response = requests.get(url, headers=ORIGIN, timeout=10)

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.text, "invalid cors proxy url")

    def test_preflight_is_answered_locally(self):
        # Arrange
        headers = {
            "Access-Control-Request-Method": "PUT",
            "Access-Control-Request-Headers": "X-Token",
        }

        # Act
        response = requests.options(self.proxy_url("/echo"), headers=headers, timeout=10)

        # Assert
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, b"")
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "*")
        self.assertEqual(response.headers["Access-Control-Allow-Methods"], "PUT")
        self.assertEqual(response.headers["Access-Control-Allow-Headers"], "X-Token")
        self.assertEqual(TestBackendHandler.hits, [])

    def test_redirect_chain_within_limit(self):
        response = requests.put(self.proxy_url("/chain/3"), headers=ORIGIN, data=b"x",
                                timeout=10)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"message": "end of chain", "method": "PUT"})
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "*")
        self.assertEqual(len(TestBackendHandler.hits), 4)

    def test_redirect_chain_beyond_limit(self):
        response = requests.get(self.proxy_url("/chain/4"), headers=ORIGIN, timeout=10)

        self.assertEqual(response.status_code, 502)

    def test_redirect_to_unresolvable_host(self):
        response = requests.get(self.proxy_url("/bad-location"), headers=ORIGIN, timeout=10)

        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "*")

    def test_unresolvable_target_host(self):
        url = f"http://127.0.0.1:{self.proxy.port}/http://.example.com/"

        response = requests.get(url, headers=ORIGIN, timeout=10)

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.text, "invalid cors proxy url")

    def test_redirect_loop(self):
        response = requests.get(self.proxy_url("/loop-start"), headers=ORIGIN, timeout=10)

        self.assertEqual(response.status_code, 400)
        self.assertIn(f"http://127.0.0.1:{self.backend_port}/loop", response.text)
        self.assertEqual(TestBackendHandler.hits, ["/loop-start", "/loop"])

    def test_unreachable_upstream(self):
        port = free_port()
        url = f"http://127.0.0.1:{self.proxy.port}/http://127.0.0.1:{port}/"

        response = requests.get(url, headers=ORIGIN, timeout=10)

        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "*")

    def test_multiple_concurrent_requests(self):
        """Test handling multiple concurrent requests."""
        # Arrange
        def make_request():
            try:
                response = requests.get(self.proxy_url("/echo"), headers=ORIGIN, timeout=30)
                return response.status_code
            except requests.RequestException as e:
                logger.error(f"Concurrent request failed: {e}")
                return None

        # Act
        num_requests = 5
        threads = []
        results = []
        for _ in range(num_requests):
            thread = threading.Thread(
                target=lambda: results.append(make_request())
            )
            threads.append(thread)
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        # Assert
        self.assertEqual(results, [200] * num_requests)
        logger.info(f"[PASSED] test_multiple_concurrent_requests")

    @classmethod
    def tearDownClass(cls):
        """Clean up after all tests."""
        logger.info("Shutting down proxy server...")
        cls.proxy.shutdown()
        cls.proxy_thread.join(timeout=5)

        logger.info("Shutting down backend server...")
        cls.backend_server.shutdown()
        cls.backend_server.server_close()
        cls.backend_thread.join(timeout=5)


class TestRedirectHopTimeout(unittest.TestCase):
    """A redirect hop must complete, body included, within the configured timeout."""

    @classmethod
    def setUpClass(cls):
        cls.backend_server = ThreadingHTTPServer(('127.0.0.1', 0), TestBackendHandler)
        cls.backend_port = cls.backend_server.server_address[1]
        cls.backend_thread = threading.Thread(target=cls.backend_server.serve_forever)
        cls.backend_thread.daemon = True
        cls.backend_thread.start()

        cls.pipeline = ProxyPipeline(ProxyConfig(
            require_origin=False,
            enable_redirect=True,
            timeout=1,
        ))

    def make_request(self, path: str) -> HTTPRequest:
        raw = (f"GET /http://127.0.0.1:{self.backend_port}{path} HTTP/1.1\r\n"
               f"Host: localhost\r\n\r\n").encode()
        return HTTPRequest.from_raw_data(raw)

    def test_slow_redirect_hop_becomes_bad_gateway(self):
        # Act
        started = time.monotonic()
        response = self.pipeline.handle(self.make_request("/to-slow"), RequestContext())
        elapsed = time.monotonic() - started

        # Assert
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "*")
        self.assertLess(elapsed, 2.5)
        logger.info(f"[PASSED] test_slow_redirect_hop_becomes_bad_gateway")

    @classmethod
    def tearDownClass(cls):
        cls.pipeline.transport.close()
        cls.backend_server.shutdown()
        cls.backend_server.server_close()
        cls.backend_thread.join(timeout=5)


if __name__ == '__main__':
    unittest.main()

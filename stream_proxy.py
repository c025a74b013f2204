import http.server
import socketserver
import threading
import urllib.error
import urllib.request
import urllib.parse
import logging
from typing import Optional

from playlist import DEFAULT_UA

LOG = logging.getLogger(__name__)

_HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade", "content-length",
}


class RelayHandler(http.server.BaseHTTPRequestHandler):
    """GET /proxy?url=<target> re-issues the request and returns the body verbatim."""

    protocol_version = "HTTP/1.0"
    upstream_timeout = 15

    def log_message(self, format, *args):  # noqa: A002
        LOG.debug("relay: " + format, *args)

    def _cors_headers(self):
        self.send_header('Access-Control-Allow-Origin', '*')
        self.send_header('Access-Control-Allow-Methods', 'GET, OPTIONS')
        self.send_header('Access-Control-Allow-Headers', '*')

    def do_OPTIONS(self):
        self.send_response(200)
        self._cors_headers()
        self.end_headers()

    def do_GET(self):
        parsed = urllib.parse.urlparse(self.path)
        if parsed.path != '/proxy':
            return self.send_error(404)
        query = urllib.parse.parse_qs(parsed.query)
        target_url = query.get('url', [None])[0]
        if not target_url or not target_url.lower().startswith(("http://", "https://")):
            return self.send_error(400, "missing or invalid url")

        req = urllib.request.Request(target_url, headers={'User-Agent': self.headers.get('User-Agent') or DEFAULT_UA})
        try:
            resp = urllib.request.urlopen(req, timeout=self.upstream_timeout)
        except urllib.error.HTTPError as e:
            LOG.info("Relay upstream HTTP %d for %s", e.code, target_url)
            return self.send_error(e.code)
        except (urllib.error.URLError, OSError, ValueError) as e:
            LOG.warning("Relay upstream failed for %s: %s", target_url, e)
            return self.send_error(502)

        with resp:
            self.send_response(resp.status)
            for key, value in resp.headers.items():
                if key.lower() not in _HOP_BY_HOP and not key.lower().startswith("access-control-"):
                    self.send_header(key, value)
            self._cors_headers()
            self.send_header('Connection', 'close')
            self.end_headers()
            try:
                while True:
                    chunk = resp.read(32768)
                    if not chunk:
                        break
                    self.wfile.write(chunk)
            except (BrokenPipeError, ConnectionResetError):
                LOG.debug("Relay client went away for %s", target_url)


class _ThreadingServer(socketserver.ThreadingMixIn, http.server.HTTPServer):
    daemon_threads = True
    allow_reuse_address = True


class RelayServer:
    """Local fallback relay implementing ``<prefix><encoded target>``."""

    def __init__(self, host: str = "127.0.0.1", port: int = 0):
        self.host = host
        self.port = port
        self.server: Optional[_ThreadingServer] = None
        self.thread: Optional[threading.Thread] = None

    @property
    def relay_url(self) -> str:
        return f"http://{self.host}:{self.port}/proxy?url="

    def start(self) -> str:
        if self.server:
            return self.relay_url
        self.server = _ThreadingServer((self.host, self.port), RelayHandler)
        self.port = self.server.server_address[1]
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        LOG.info("Relay started at %s", self.relay_url)
        return self.relay_url

    def stop(self):
        server, self.server = self.server, None
        if server:
            server.shutdown()
            server.server_close()
            LOG.info("Relay stopped")

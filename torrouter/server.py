"""tor-router agent HTTP API server (stdlib http.server).

Binds to localhost by default; nginx proxies the dashboard and API to the LAN
and enforces LAN-only access.
"""

import argparse
import json
import logging
import socket
import time
from email import policy
from email.parser import BytesParser
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlsplit

from torrouter import settings
from torrouter.actions import ActionDispatcher
from torrouter.contract import ActionRequest, UploadedFile
from torrouter.errors import MalformedRequestError
from torrouter.log import setup_logging
from torrouter.status import StatusAggregator

logger = logging.getLogger(__name__)

STATUS_PATHS = ("/api/status", "/api/status.php")
CONTROL_PATHS = ("/api/control", "/api/control.php")
HEALTH_PATH = "/api/health"


def _read_token(path):
    """Read the API bearer token from disk; None when no token is set."""
    try:
        with open(path) as f:
            return f.read().strip() or None
    except FileNotFoundError:
        return None


def parse_multipart(content_type, body):
    """Split a multipart/form-data body into (fields, files)."""
    header = b"Content-Type: " + content_type.encode("latin-1") + b"\r\n\r\n"
    msg = BytesParser(policy=policy.HTTP).parsebytes(header + body)
    if not msg.is_multipart():
        raise MalformedRequestError("Invalid multipart body.")
    fields, files = {}, {}
    for part in msg.iter_parts():
        name = part.get_param("name", header="content-disposition")
        if not name:
            continue
        payload = part.get_payload(decode=True) or b""
        filename = part.get_filename()
        if filename is not None:
            files[name] = UploadedFile(filename=filename, content=payload)
        else:
            fields[name] = payload.decode("utf-8", "replace")
    return fields, files


class AgentHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the status and control endpoints."""

    server_version = "tor-router-agent"

    def log_message(self, format, *args):
        logger.debug("%s %s", self.address_string(), format % args)

    @property
    def route(self):
        return urlsplit(self.path).path

    def _send_json(self, data, status=200, headers=None):
        body = json.dumps(data, indent=2).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        for key, value in (headers or {}).items():
            self.send_header(key, value)
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _send_error(self, message, status):
        self._send_json({"ok": False, "message": message}, status)

    def _check_token(self):
        """Verify bearer token for the control endpoint. Returns True if OK."""
        token = _read_token(self.server.token_file)
        if not token:
            return True
        if self.headers.get("Authorization", "") == f"Bearer {token}":
            return True
        self._send_error("Unauthorized", 401)
        return False

    def _read_body(self):
        try:
            length = int(self.headers.get("Content-Length", 0))
        except ValueError:
            raise MalformedRequestError("Invalid Content-Length.")
        if length < 0:
            raise MalformedRequestError("Invalid Content-Length.")
        if length > self.server.max_body_bytes:
            raise MalformedRequestError("Request body too large.", 413)
        return self.rfile.read(length) if length else b""

    def _parse_control_request(self, raw):
        query_action = parse_qs(urlsplit(self.path).query).get("action", [""])[0]
        content_type = self.headers.get("Content-Type", "")

        upload = None
        if content_type.lower().startswith("multipart/form-data"):
            params, files = parse_multipart(content_type, raw)
            upload = files.get("file")
        elif raw.strip():
            try:
                params = json.loads(raw)
            except (UnicodeDecodeError, json.JSONDecodeError):
                raise MalformedRequestError("Invalid JSON body.")
            if not isinstance(params, dict):
                raise MalformedRequestError("JSON body must be an object.")
        else:
            params = {}

        action = params.pop("action", None) or query_action
        if not isinstance(action, str):
            action = json.dumps(action)
        return ActionRequest(action=action, params=params, upload=upload)

    # ─── methods ─────────────────────────────────────────────

    def do_GET(self):
        route = self.route
        if route == HEALTH_PATH:
            self._send_json({
                "status": "ok",
                "hostname": socket.gethostname(),
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            })
        elif route in STATUS_PATHS:
            snapshot = self.server.aggregator.get_snapshot()
            self._send_json(snapshot.to_dict(), headers={"Cache-Control": "no-cache"})
        elif route in CONTROL_PATHS:
            self._send_error("Method not allowed", 405)
        else:
            self._send_error("Not found", 404)

    def do_POST(self):
        route = self.route
        if route in CONTROL_PATHS:
            try:
                raw = self._read_body()
                if not self._check_token():
                    return
                request = self._parse_control_request(raw)
            except MalformedRequestError as e:
                logger.warning("malformed control request: %s", e)
                self._send_error(str(e), e.http_status)
                return
            result = self.server.dispatcher.dispatch(request)
            self._send_json(result.to_dict(), result.http_status)
        elif route in STATUS_PATHS or route == HEALTH_PATH:
            self._send_error("Method not allowed", 405)
        else:
            self._send_error("Not found", 404)

    def _reject_method(self):
        if self.route in CONTROL_PATHS + STATUS_PATHS + (HEALTH_PATH,):
            self._send_error("Method not allowed", 405)
        else:
            self._send_error("Not found", 404)

    do_PUT = _reject_method
    do_DELETE = _reject_method
    do_PATCH = _reject_method
    do_HEAD = _reject_method
    do_OPTIONS = _reject_method


class AgentServer(ThreadingHTTPServer):
    """One thread per request; aggregator and dispatcher are shared."""

    daemon_threads = True

    def __init__(
        self,
        address,
        aggregator=None,
        dispatcher=None,
        token_file=settings.TOKEN_FILE,
        max_body_bytes=settings.MAX_BODY_BYTES,
    ):
        super().__init__(address, AgentHandler)
        self.aggregator = aggregator or StatusAggregator()
        self.dispatcher = dispatcher or ActionDispatcher()
        self.token_file = token_file
        self.max_body_bytes = max_body_bytes


def main(argv=None):
    parser = argparse.ArgumentParser(description="tor-router status and control agent")
    parser.add_argument(
        "--bind", default=settings.BIND_HOST,
        help=f"Bind address (default: {settings.BIND_HOST})",
    )
    parser.add_argument(
        "--port", type=int, default=settings.BIND_PORT,
        help=f"Port (default: {settings.BIND_PORT})",
    )
    parser.add_argument("--log-level", default=settings.LOG_LEVEL_STR)
    parser.add_argument("--log-file", default=settings.LOG_FILE or None)
    args = parser.parse_args(argv)

    setup_logging(args.log_level, args.log_file)
    logger.info("configuration: %s", settings.get_config_summary())

    server = AgentServer((args.bind, args.port))
    logger.info("tor-router agent listening on %s:%s", args.bind, args.port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


if __name__ == "__main__":
    main()

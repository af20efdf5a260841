#!/usr/bin/env python3
"""
Cordon Administrative Server

HTTP server exposing the quarantine administration endpoints and a gate
check endpoint for the registry front-end (for example an nginx
``auth_request`` sub-request).

Endpoints (prefix /-/quarantine):
    GET  /requests            - All package records
    PUT  /approve/<package>   - Approve a package
    PUT  /reject/<package>    - Reject a package
    GET  /scan/<package>      - Latest risk assessment
    POST /scan/<package>      - Scan an archive in the background {"archive": path}
    GET  /blocked             - Blocked fetch attempts
    GET  /check/<package>     - Gate decision: 204 allowed, 403 denied
    GET  /health              - Health check

Package segments are percent-decoded, so scoped names may be sent either
as ``@scope%2fname`` or ``@scope/name``.
"""

import json
import logging
import signal
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlsplit

from cordon import __version__
from cordon.errors import AssessmentUnavailableError, PackageNotFoundError
from cordon.quarantine import Quarantine

logger = logging.getLogger(__name__)

API_PREFIX = "/-/quarantine"

# Maximum request body size (64 KB); bodies only carry an archive path
MAX_REQUEST_SIZE = 64 * 1024


class QuarantineRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the quarantine administration API."""

    server_version = f"cordon/{__version__}"

    @property
    def quarantine(self) -> Quarantine:
        return self.server.quarantine

    def _route(self):
        """Split the request path into (endpoint, decoded package or None)."""
        path = urlsplit(self.path).path
        if not path.startswith(API_PREFIX + "/"):
            return None, None
        rest = path[len(API_PREFIX) + 1:]
        endpoint, _, package = rest.partition("/")
        return endpoint, (unquote(package) if package else None)

    def do_GET(self):
        endpoint, package = self._route()

        if endpoint == "health" and package is None:
            self._respond(200, {"status": "ok", "service": "cordon", "version": __version__})
        elif endpoint == "requests" and package is None:
            self._call(lambda: (200, self.quarantine.list_requests()), "Failed to retrieve requests")
        elif endpoint == "blocked" and package is None:
            self._call(
                lambda: (200, [a.to_dict() for a in self.quarantine.list_blocked()]),
                "Failed to get blocked attempts",
            )
        elif endpoint == "scan" and package:
            self._call(
                lambda: (200, self.quarantine.get_assessment(package)),
                f"Failed to get risk assessment for package {package}",
            )
        elif endpoint == "check" and package:
            self._handle_check(package)
        elif endpoint in ("scan", "check"):
            self._missing_package()
        else:
            self._respond(404, {"error": "Not found"})

    def do_PUT(self):
        endpoint, package = self._route()

        if endpoint not in ("approve", "reject"):
            self._respond(404, {"error": "Not found"})
            return
        if not package:
            self._missing_package()
            return

        if endpoint == "approve":
            self._call(
                lambda: self._transition(self.quarantine.approve, package, "approved"),
                f"Failed to approve package {package}",
            )
        else:
            self._call(
                lambda: self._transition(self.quarantine.reject, package, "rejected"),
                f"Failed to reject package {package}",
            )

    def do_POST(self):
        endpoint, package = self._route()

        if endpoint != "scan":
            self._respond(404, {"error": "Not found"})
            return
        if not package:
            self._missing_package()
            return

        data = self._read_json()
        if data is None:
            return  # Error already sent

        archive = data.get("archive", "")
        if not archive:
            self._respond(400, {"error": "Missing 'archive' field"})
            return
        if not Path(archive).is_file():
            self._respond(400, {"error": f"Archive not found: {archive}"})
            return

        self.quarantine.submit_scan(package, Path(archive), requested_by="admin")
        self._respond(202, {"message": f"Scan of {package} started", "package": package})

    # =========================================================================
    # Handlers
    # =========================================================================

    def _handle_check(self, package: str):
        user_agent = self.headers.get("X-Original-User-Agent") or self.headers.get("User-Agent")
        ip = self.headers.get("X-Real-IP") or self.client_address[0]
        decision = self.quarantine.gate.check(package, ip=ip, user_agent=user_agent)
        if decision.allowed:
            self.send_response(204)
            self.end_headers()
        else:
            self._respond(403, decision.to_response())

    @staticmethod
    def _transition(action, package: str, verb: str):
        action(package)
        logger.info("Package %s via API: %s", verb, package)
        return 201, {"message": f"Package {package} {verb}"}

    def _call(self, fn, failure_message: str):
        """Run an API operation, mapping known errors to client responses."""
        try:
            status, body = fn()
        except (PackageNotFoundError, AssessmentUnavailableError) as e:
            self._respond(404, {"error": str(e)})
            return
        except Exception:
            logger.exception("%s (path=%s)", failure_message, self.path)
            self._respond(500, {"error": failure_message})
            return
        self._respond(status, body)

    def _missing_package(self):
        self._respond(400, {
            "error": "Package parameter is missing",
            "message": "Package name must be provided in the URL",
        })

    def _read_json(self) -> Optional[Dict]:
        """Read and parse JSON from request body with size limit."""
        try:
            content_length = int(self.headers.get("Content-Length", 0))
        except (ValueError, TypeError):
            self._respond(400, {"error": "Invalid Content-Length"})
            return None

        # rfile.read(-1) would block until the client closes the socket
        if content_length < 0:
            self._respond(400, {"error": "Invalid Content-Length"})
            return None

        if content_length > MAX_REQUEST_SIZE:
            self._respond(413, {"error": "Request too large"})
            return None

        try:
            body = self.rfile.read(content_length)
            data = json.loads(body or b"{}")
        except (json.JSONDecodeError, ValueError) as e:
            self._respond(400, {"error": f"Invalid JSON: {e}"})
            return None

        if not isinstance(data, dict):
            self._respond(400, {"error": "Request body must be a JSON object"})
            return None
        return data

    def _respond(self, status: int, data: Any):
        """Send a JSON response."""
        body = json.dumps(data).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)


def create_server(
    quarantine: Quarantine,
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> ThreadingHTTPServer:
    """Build (but do not start) the administrative server."""
    address = (
        host if host is not None else quarantine.config.host,
        port if port is not None else quarantine.config.port,
    )
    server = ThreadingHTTPServer(address, QuarantineRequestHandler)
    server.daemon_threads = True
    server.quarantine = quarantine
    return server


def run_server(
    quarantine: Quarantine,
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> None:
    """Start the administrative server and block until interrupted."""
    quarantine.ensure_directories()
    server = create_server(quarantine, host, port)

    # SIGTERM handler for graceful shutdown
    def _handle_signal(signum, frame):
        logger.info("Received signal %s, shutting down", signum)
        # shutdown() blocks until serve_forever returns, which runs on this thread
        threading.Thread(target=server.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _handle_signal)

    bound_host, bound_port = server.server_address[:2]
    logger.info("Cordon quarantine server running on http://%s:%s%s", bound_host, bound_port, API_PREFIX)

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
        logger.info("Shutting down")

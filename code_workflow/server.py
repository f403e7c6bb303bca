import json
import logging
import os
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, unquote, urlparse

from code_workflow.auth import AuthResolver
from code_workflow.scheduler import ReminderScheduler
from code_workflow.service import AppService, RequestContext

logger = logging.getLogger(__name__)

MAX_REQUEST_BODY = 10 * 1024 * 1024  # 10 MB


def _error_message(exc: Exception) -> str:
    return str(exc.args[0]) if exc.args else exc.__class__.__name__


class ApiHandler(BaseHTTPRequestHandler):
    server_version = "CodeWorkflow/1.0"

    @property
    def service(self) -> AppService:
        return self.server.service

    def log_message(self, format, *args):  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)

    def _read_json(self):
        length = int(self.headers.get("Content-Length", "0"))
        if length == 0:
            return {}
        if length > MAX_REQUEST_BODY:
            raise ValueError(f"Request body too large (max {MAX_REQUEST_BODY} bytes)")
        body = self.rfile.read(length)
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError("Request body must be valid JSON") from exc
        if not isinstance(data, dict):
            raise ValueError("Request body must be a JSON object")
        return data

    def _ctx(self, require_user: bool = False) -> RequestContext:
        ident = self.server.auth_resolver.resolve(self.headers)
        if require_user and ident.user == "anonymous":
            raise PermissionError("Authentication required")
        return RequestContext(user=ident.user, roles=ident.roles)

    def _security_headers(self):
        self.send_header("X-Content-Type-Options", "nosniff")
        self.send_header("X-Frame-Options", "DENY")
        self.send_header("Referrer-Policy", "strict-origin-when-cross-origin")

    def _send(self, status: int, payload):
        raw = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.send_header("Cache-Control", "no-store")
        self._security_headers()
        self.end_headers()
        self.wfile.write(raw)

    def _check_csrf(self) -> bool:
        """Validate Origin header for state-changing requests."""
        origin = self.headers.get("Origin", "")
        if not origin:
            return True  # non-browser clients (curl, etc.) don't send Origin
        parsed_origin = urlparse(origin)
        host_header = self.headers.get("Host", "")
        if parsed_origin.netloc == host_header:
            return True
        logger.warning("CSRF check failed: Origin=%s Host=%s", origin, host_header)
        return False

    def _handle(self, fn):
        try:
            payload = fn()
            self._send(HTTPStatus.OK, payload)
        except KeyError as exc:
            self._send(HTTPStatus.NOT_FOUND, {"error": _error_message(exc)})
        except PermissionError as exc:
            self._send(HTTPStatus.FORBIDDEN, {"error": _error_message(exc)})
        except ValueError as exc:
            self._send(HTTPStatus.BAD_REQUEST, {"error": _error_message(exc)})
        except Exception:  # noqa: BLE001
            logger.exception("Unhandled error for %s %s", self.command, self.path)
            self._send(HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "Internal server error"})

    def do_GET(self):  # noqa: N802
        parsed = urlparse(self.path)
        path = parsed.path
        query = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        parts = path.strip("/").split("/")

        def run():
            ctx = self._ctx()
            if path == "/api/me":
                return {"user": ctx.user, "roles": sorted(ctx.roles)}
            if path == "/api/requests":
                return self.service.list_requests(
                    {
                        "status": query.get("status"),
                        "type": query.get("type"),
                        "created_by": query.get("createdBy"),
                        "search": query.get("search"),
                        "date_range": query.get("dateRange"),
                        "sort_by": query.get("sortBy"),
                        "order": query.get("order"),
                    }
                )
            if path == "/api/requests/mine":
                return self.service.list_requests_by_user(ctx.user)
            if len(parts) == 3 and parts[:2] == ["api", "requests"]:
                return self.service.get_request(parts[2])
            if path == "/api/approvals/pending":
                pending = []
                for role in sorted(ctx.roles):
                    pending.extend(self.service.pending_for_role(role))
                return pending
            if path == "/api/sap/queue":
                return {
                    "awaiting": self.service.list_requests({"status": "approved"}),
                    "updated": self.service.list_requests({"status": "sap-updated"}),
                }
            if path == "/api/analytics":
                return self.service.analytics(ctx, query.get("range", "30d"))
            if path == "/api/users":
                return self.service.list_users(query.get("role"), query.get("search"))
            if path == "/api/users/stats":
                return self.service.role_stats()
            if path == "/api/notifications":
                return self.service.get_notifications(ctx.user)
            if path == "/api/admin/settings":
                return self.service.get_settings()
            if len(parts) == 3 and parts[:2] == ["api", "attachments"]:
                return self.service.get_attachment(parts[2])
            raise KeyError("Route not found")

        self._handle(run)

    def do_POST(self):  # noqa: N802
        if not self._check_csrf():
            return self._send(HTTPStatus.FORBIDDEN, {"error": "Origin not allowed"})
        path = urlparse(self.path).path
        parts = path.strip("/").split("/")

        def run():
            data = self._read_json()
            ctx = self._ctx(require_user=True)
            if path == "/api/requests":
                return self.service.create_request(data, ctx)
            if len(parts) == 4 and parts[:2] == ["api", "requests"]:
                request_id, action = parts[2], parts[3]
                if action == "submit":
                    return self.service.submit_request(request_id, ctx)
                if action == "change":
                    return self.service.create_change_request(request_id, data, ctx)
                if action == "decide":
                    return self.service.decide(request_id, data, ctx)
                if action == "sap-update":
                    return self.service.mark_sap_updated(request_id, data, ctx)
                if action == "complete":
                    return self.service.complete_request(request_id, ctx)
                if action == "attachments":
                    return self.service.add_attachment(request_id, data, ctx)
            if path == "/api/users":
                return self.service.create_user(data, ctx)
            if len(parts) == 4 and parts[:2] == ["api", "notifications"] and parts[3] == "read":
                return self.service.mark_notification_read(int(parts[2]), ctx)
            if path == "/api/system/run-reminders":
                return self.service.run_aging_reminders(ctx)
            raise KeyError("Route not found")

        self._handle(run)

    def do_PUT(self):  # noqa: N802
        if not self._check_csrf():
            return self._send(HTTPStatus.FORBIDDEN, {"error": "Origin not allowed"})
        path = urlparse(self.path).path
        parts = path.strip("/").split("/")

        def run():
            data = self._read_json()
            ctx = self._ctx(require_user=True)
            if len(parts) == 3 and parts[:2] == ["api", "requests"]:
                return self.service.update_request(parts[2], data, ctx)
            if path == "/api/admin/settings":
                return self.service.update_settings(data, ctx)
            raise KeyError("Route not found")

        self._handle(run)

    def do_DELETE(self):  # noqa: N802
        if not self._check_csrf():
            return self._send(HTTPStatus.FORBIDDEN, {"error": "Origin not allowed"})
        path = urlparse(self.path).path
        parts = path.strip("/").split("/")

        def run():
            ctx = self._ctx(require_user=True)
            if len(parts) == 3 and parts[:2] == ["api", "users"]:
                return self.service.delete_user(unquote(parts[2]), ctx)
            raise KeyError("Route not found")

        self._handle(run)


def build_server(service: AppService, port: int = 8000, host: str = "0.0.0.0") -> ThreadingHTTPServer:
    server = ThreadingHTTPServer((host, port), ApiHandler)
    server.service = service
    server.auth_resolver = AuthResolver(service.get_user_role)
    return server


def run_server(port: int | None = None):
    if port is None:
        port = int(os.environ.get("PORT", "8000"))
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    service = AppService()
    server = build_server(service, port)
    scheduler = ReminderScheduler(service)
    scheduler.start()
    logger.info("Code workflow API listening on %s", port)
    try:
        server.serve_forever()
    finally:
        scheduler.stop()
        server.server_close()


if __name__ == "__main__":
    run_server()

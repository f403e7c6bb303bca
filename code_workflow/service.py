import base64
import binascii
import functools
import json
import logging
import os
import secrets
import sqlite3
import string
import threading
import time
import uuid
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from code_workflow import workflow
from code_workflow.changes import compare_objects, format_changes_for_notification, generate_changes_summary
from code_workflow.mailer import EMAIL_RE, SmtpMailer

logger = logging.getLogger(__name__)

ISO = "%Y-%m-%dT%H:%M:%SZ"
MAX_FIELD_LENGTH = 500
MAX_COMMENT_LENGTH = 2000
MAX_ATTACHMENT_BYTES = 5 * 1024 * 1024
MIN_SHAREHOLDING = 51.0

PLANT_FIELDS = (
    "company_code",
    "gst_certificate",
    "plant_code",
    "name_of_plant",
    "address_of_plant",
    "purchase_organization",
    "name_of_purchase_organization",
    "sales_organization",
    "name_of_sales_organization",
    "profit_center",
    "name_of_profit_center",
    "cost_centers",
    "name_of_cost_centers",
    "project_code",
    "project_code_description",
    "storage_location_code",
    "storage_location_description",
)
COMPANY_FIELDS = (
    "company_code",
    "name_of_company_code",
    "shareholding_percentage",
    "gst_certificate",
    "cin",
    "pan",
    "segment",
    "controlling_area",
    "plant_code",
    "name_of_plant",
    "address_of_plant",
    "purchase_organization",
    "name_of_purchase_organization",
    "sales_organization",
    "name_of_sales_organization",
    "profit_center",
    "name_of_profit_center",
    "cost_centers",
    "name_of_cost_centers",
)
DETAIL_FIELDS = {"plant": PLANT_FIELDS, "company": COMPANY_FIELDS}
DETAIL_TABLES = {"plant": "plant_code_details", "company": "company_code_details"}
SEARCH_FIELDS = ("company_code", "plant_code")

DEFAULT_USERS = {
    "it@pel.com": "it",
    "sec@pel.com": "secretary",
    "fin@pel.com": "finance",
    "raghu@pel.com": "raghu",
    "siva@pel.com": "siva",
    "manoj@pel.com": "manoj",
    "aarnav@pel.com": "admin",
}
DEFAULT_SETTINGS = {
    "approval_chain": workflow.DEFAULT_CHAIN,
    "aging_threshold_1": "2",
    "aging_threshold_2": "5",
    "aging_threshold_3": "10",
}
ALLOWED_SETTING_KEYS = set(DEFAULT_SETTINGS)
DATE_RANGES = {"7d": 7, "30d": 30, "90d": 90}
SORT_COLUMNS = {"created_at", "updated_at", "status", "type"}

# --- RBAC Permission Constants ---
PERM_REQUEST_MANAGE_ALL = "request:manage_all"
PERM_SAP_UPDATE = "sap:update"
PERM_ANALYTICS_VIEW = "analytics:view"
PERM_USERS_MANAGE = "users:manage"
PERM_ADMIN_SETTINGS = "admin:settings"
PERM_SYSTEM_REMINDERS = "system:reminders"

ROLE_PERMISSIONS: dict[str, set[str]] = {
    "admin": {
        PERM_REQUEST_MANAGE_ALL,
        PERM_SAP_UPDATE,
        PERM_ANALYTICS_VIEW,
        PERM_USERS_MANAGE,
        PERM_ADMIN_SETTINGS,
        PERM_SYSTEM_REMINDERS,
    },
    "it": {
        PERM_SAP_UPDATE,
        PERM_ANALYTICS_VIEW,
    },
}


@dataclass
class RequestContext:
    user: str
    roles: set[str]


class DatabaseError(RuntimeError):
    pass


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime(ISO)


def parse_ts(value: str) -> datetime:
    return datetime.strptime(value, ISO).replace(tzinfo=timezone.utc)


def generate_request_id() -> str:
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(6))
    return f"REQ-{int(time.time() * 1000)}-{suffix}"


def camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


class DbClient:
    """Small wrapper around a sqlite connection returning plain dict rows.

    The connection is shared by every server thread; callers hold ``lock`` for
    the whole of a transaction or a multi-statement read.
    """

    def __init__(self, connection_string: str):
        self.connection_string = connection_string
        self.lock = threading.RLock()
        self.conn = self._connect()

    def _connect(self):
        try:
            conn = sqlite3.connect(self.connection_string, check_same_thread=False)
        except sqlite3.Error as exc:
            raise DatabaseError(f"Cannot open database at {self.connection_string}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    def execute(self, sql: str, params: tuple[Any, ...] = ()):
        cur = self.conn.cursor()
        cur.execute(sql, params)
        return cur

    def executescript(self, script: str) -> None:
        self.conn.executescript(script)

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    def fetchone_dict(self, cur):
        row = cur.fetchone()
        if row is None:
            return None
        return dict(row)

    def fetchall_dict(self, cur):
        return [dict(r) for r in cur.fetchall()]


def synchronized(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self.db.lock:
            return method(self, *args, **kwargs)

    return wrapper


def _details_ddl(table: str, fields: tuple[str, ...]) -> str:
    columns = ",\n".join(
        f"            {name} {'REAL' if name == 'shareholding_percentage' else 'TEXT'}" for name in fields
    )
    return f"""
        CREATE TABLE IF NOT EXISTS {table} (
            request_id TEXT NOT NULL,
            version INTEGER NOT NULL,
{columns},
            PRIMARY KEY(request_id, version),
            FOREIGN KEY(request_id) REFERENCES requests(request_id)
        );"""


class AppService:
    def __init__(self, connection_string: str | None = None):
        if connection_string is None:
            connection_string = os.environ.get("CODE_WORKFLOW_DB", "code_workflow.db")
        if connection_string != ":memory:":
            Path(connection_string).parent.mkdir(parents=True, exist_ok=True)
        self.db = DbClient(connection_string)
        self.mailer = SmtpMailer()
        self._outbox: list[tuple[str | None, str, str, str, str]] = []
        self._init_db()

    def _init_db(self) -> None:
        schema = """
        CREATE TABLE IF NOT EXISTS users (
            email TEXT PRIMARY KEY,
            role TEXT NOT NULL,
            created_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS requests (
            request_id TEXT PRIMARY KEY,
            type TEXT NOT NULL,
            title TEXT NOT NULL,
            status TEXT NOT NULL,
            approval_chain TEXT NOT NULL,
            created_by TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            version INTEGER NOT NULL,
            original_request_id TEXT,
            sap_updated_at TEXT,
            completed_at TEXT,
            tat_days REAL
        );
        CREATE INDEX IF NOT EXISTS ix_requests_status ON requests(status);
        CREATE INDEX IF NOT EXISTS ix_requests_created_by ON requests(created_by);
        CREATE TABLE IF NOT EXISTS attachments (
            attachment_id TEXT PRIMARY KEY,
            request_id TEXT NOT NULL,
            file_name TEXT NOT NULL,
            file_content TEXT NOT NULL,
            file_type TEXT NOT NULL,
            version INTEGER NOT NULL,
            title TEXT NOT NULL,
            uploaded_by TEXT NOT NULL,
            uploaded_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS approvals (
            approval_id INTEGER PRIMARY KEY AUTOINCREMENT,
            request_id TEXT NOT NULL,
            approver_email TEXT NOT NULL,
            role TEXT NOT NULL,
            decision TEXT NOT NULL,
            comment TEXT NOT NULL,
            attachment_id TEXT,
            timestamp TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS history_logs (
            log_id INTEGER PRIMARY KEY AUTOINCREMENT,
            request_id TEXT NOT NULL,
            action TEXT NOT NULL,
            user TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            metadata TEXT
        );
        CREATE TABLE IF NOT EXISTS notifications (
            notification_id INTEGER PRIMARY KEY AUTOINCREMENT,
            request_id TEXT,
            recipient TEXT NOT NULL,
            type TEXT NOT NULL,
            title TEXT NOT NULL,
            message TEXT NOT NULL,
            read INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS audit_log (
            audit_id INTEGER PRIMARY KEY AUTOINCREMENT,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            action TEXT NOT NULL,
            actor TEXT NOT NULL,
            details TEXT,
            created_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS system_settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS reminder_log (
            reminder_id INTEGER PRIMARY KEY AUTOINCREMENT,
            request_id TEXT NOT NULL,
            threshold_days INTEGER NOT NULL,
            reminded_at TEXT NOT NULL
        );
        """
        schema += "".join(_details_ddl(DETAIL_TABLES[t], DETAIL_FIELDS[t]) for t in ("plant", "company"))
        self.db.executescript(schema)

        for key, value in DEFAULT_SETTINGS.items():
            self.db.execute("INSERT OR IGNORE INTO system_settings(key, value) VALUES (?, ?)", (key, value))
        now = utc_now()
        for email, role in DEFAULT_USERS.items():
            self.db.execute("INSERT OR IGNORE INTO users(email, role, created_at) VALUES (?, ?, ?)", (email, role, now))
        self.db.commit()

    def _upsert_setting(self, key: str, value: str) -> None:
        row = self.db.fetchone_dict(self.db.execute("SELECT key FROM system_settings WHERE key = ?", (key,)))
        if row:
            self.db.execute("UPDATE system_settings SET value = ? WHERE key = ?", (value, key))
        else:
            self.db.execute("INSERT INTO system_settings(key, value) VALUES (?, ?)", (key, value))

    def _audit(self, entity_type: str, entity_id: str, action: str, actor: str, details: dict[str, Any] | None = None) -> None:
        self.db.execute(
            "INSERT INTO audit_log(entity_type, entity_id, action, actor, details, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (entity_type, entity_id, action, actor, json.dumps(details or {}), utc_now()),
        )

    def _history(self, request_id: str, action: str, user: str, metadata: dict[str, Any] | None = None) -> None:
        self.db.execute(
            "INSERT INTO history_logs(request_id, action, user, timestamp, metadata) VALUES (?, ?, ?, ?, ?)",
            (request_id, action, user, utc_now(), json.dumps(metadata or {})),
        )

    @contextmanager
    def _transaction(self):
        """Run a block as one transaction under the connection lock.

        Emails queued by ``_notify`` go out only after the commit, once the
        lock is released; a rollback discards them.
        """
        with self.db.lock:
            self._outbox = []
            try:
                yield
                self.db.commit()
            except Exception:
                self.db.rollback()
                self._outbox = []
                raise
            outbox, self._outbox = self._outbox, []
        self._send_emails(outbox)

    def _notify(self, request_id: str | None, recipients: list[str], kind: str, title: str, message: str) -> None:
        now = utc_now()
        for recipient in dict.fromkeys(r for r in recipients if r):
            self.db.execute(
                "INSERT INTO notifications(request_id, recipient, type, title, message, read, created_at) VALUES (?, ?, ?, ?, ?, 0, ?)",
                (request_id, recipient, kind, title, message, now),
            )
            self._outbox.append((request_id, recipient, kind, title, message))

    def _send_emails(self, outbox: list[tuple[str | None, str, str, str, str]]) -> None:
        if not outbox:
            return
        outcomes = []
        for request_id, recipient, kind, title, message in outbox:
            email_sent = False
            email_error = None
            try:
                email_sent = self.mailer.send_notification(recipient, title, message, {"requestId": request_id})
            except Exception as exc:  # noqa: BLE001
                logger.warning("Notification email to %s failed: %s", recipient, exc)
                email_error = str(exc)
            outcomes.append((f"{request_id}:{recipient}:{kind}", {"emailSent": email_sent, "error": email_error}))
        with self.db.lock:
            for entity_id, details in outcomes:
                self._audit("notification", entity_id, "smtp_dispatch", "system", details)
            self.db.commit()

    def _users_with_role(self, role: str) -> list[str]:
        return [r["email"] for r in self.db.fetchall_dict(self.db.execute("SELECT email FROM users WHERE role = ? ORDER BY email", (role,)))]

    # --- RBAC helpers ---

    def _get_permissions(self, ctx: RequestContext) -> set[str]:
        perms: set[str] = set()
        for role in ctx.roles:
            perms.update(ROLE_PERMISSIONS.get(role, set()))
        return perms

    def _has_permission(self, ctx: RequestContext, permission: str) -> bool:
        return permission in self._get_permissions(ctx)

    def _require_permission(self, ctx: RequestContext, permission: str, message: str) -> None:
        if not self._has_permission(ctx, permission):
            raise PermissionError(message)

    def _require_owner(self, row: dict[str, Any], ctx: RequestContext) -> None:
        if row["created_by"] != ctx.user and not self._has_permission(ctx, PERM_REQUEST_MANAGE_ALL):
            raise PermissionError("Only the requestor or an admin can modify this request")

    def _require_participant(self, row: dict[str, Any], ctx: RequestContext) -> None:
        """Creator, admin/IT staff, or any approver on the request's chain."""
        if row["created_by"] == ctx.user or self._has_permission(ctx, PERM_SAP_UPDATE):
            return
        if ctx.roles & set(workflow.APPROVAL_CHAINS.get(row["approval_chain"], ())):
            return
        raise PermissionError("Access denied to this request")

    # --- field handling ---

    def _extract_fields(self, request_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(payload, dict):
            raise ValueError("details must be an object")
        fields: dict[str, Any] = {}
        for name in DETAIL_FIELDS[request_type]:
            raw = payload.get(camel_case(name), payload.get(name))
            fields[name] = "" if raw is None else str(raw).strip()
        return fields

    def _validate_fields(self, request_type: str, fields: dict[str, Any], require_all: bool) -> dict[str, Any]:
        too_long = [camel_case(k) for k, v in fields.items() if isinstance(v, str) and len(v) > MAX_FIELD_LENGTH]
        if too_long:
            raise ValueError(f"Fields must be at most {MAX_FIELD_LENGTH} characters: {', '.join(too_long)}")
        if require_all:
            missing = [camel_case(k) for k, v in fields.items() if v is None or not str(v).strip()]
            if missing:
                raise ValueError(f"All fields are mandatory. Missing: {', '.join(missing)}")
        if request_type == "company":
            share = fields.get("shareholding_percentage")
            if share in (None, ""):
                fields["shareholding_percentage"] = None
            else:
                try:
                    percentage = float(share)
                except (TypeError, ValueError):
                    raise ValueError("Shareholding percentage must be a number") from None
                if percentage < MIN_SHAREHOLDING or percentage > 100:
                    raise ValueError("PEL must hold at least 51% shareholding percentage")
                fields["shareholding_percentage"] = percentage
        return fields

    def _title(self, request_type: str, fields: dict[str, Any], change: bool = False) -> str:
        if request_type == "plant":
            title = f"Plant Code: {fields['plant_code']} - {fields['name_of_plant']}"
        else:
            title = f"Company Code: {fields['company_code']} - {fields['name_of_company_code']}"
        return f"Change Request - {title}" if change else title

    def _insert_details(self, request_type: str, request_id: str, version: int, fields: dict[str, Any]) -> None:
        names = DETAIL_FIELDS[request_type]
        columns = ", ".join(("request_id", "version", *names))
        placeholders = ", ".join("?" for _ in range(len(names) + 2))
        self.db.execute(
            f"INSERT INTO {DETAIL_TABLES[request_type]}({columns}) VALUES ({placeholders})",
            (request_id, version, *(fields.get(n) for n in names)),
        )

    def _get_request_row(self, request_id: str) -> dict[str, Any]:
        row = self.db.fetchone_dict(self.db.execute("SELECT * FROM requests WHERE request_id = ?", (request_id,)))
        if not row:
            raise KeyError("Request not found")
        return row

    def _settings_chain(self) -> str:
        return self.get_settings().get("approval_chain", workflow.DEFAULT_CHAIN)

    def _notify_approvers(self, request_id: str, status: str, kind: str, title: str, message: str) -> None:
        role = workflow.approver_role(status)
        if role:
            self._notify(request_id, self._users_with_role(role), kind, title, message)

    # --- requests ---

    def create_request(self, payload: dict[str, Any], ctx: RequestContext) -> dict[str, Any]:
        request_type = payload.get("type")
        if not isinstance(request_type, str) or request_type not in workflow.REQUEST_TYPES:
            raise ValueError(f"type must be one of: {', '.join(sorted(workflow.REQUEST_TYPES))}")
        draft = bool(payload.get("draft", False))
        fields = self._validate_fields(request_type, self._extract_fields(request_type, payload.get("details") or {}), require_all=not draft)
        request_id = generate_request_id()
        title = self._title(request_type, fields)
        now = utc_now()
        with self._transaction():
            chain = self._settings_chain()
            status = workflow.STATUS_DRAFT if draft else workflow.first_status(chain)
            self.db.execute(
                "INSERT INTO requests(request_id, type, title, status, approval_chain, created_by, created_at, updated_at, version) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1)",
                (request_id, request_type, title, status, chain, ctx.user, now, now),
            )
            self._insert_details(request_type, request_id, 1, fields)
            self._history(request_id, "create", ctx.user, {"type": request_type, "title": title, "draft": draft})
            if not draft:
                self._notify_approvers(request_id, status, "request_submitted", "New request awaiting approval", f"{title} submitted by {ctx.user}")
        logger.info("Request %s created by %s (%s)", request_id, ctx.user, status)
        return self.get_request(request_id)

    def update_request(self, request_id: str, payload: dict[str, Any], ctx: RequestContext) -> dict[str, Any]:
        with self._transaction():
            row = self._get_request_row(request_id)
            self._require_owner(row, ctx)
            if row["status"] not in workflow.EDITABLE_STATUSES:
                raise ValueError("Only draft or pending requests can be edited")
            request_type = row["type"]
            keep_draft = row["status"] == workflow.STATUS_DRAFT and not payload.get("submit", False)
            fields = self._validate_fields(request_type, self._extract_fields(request_type, payload.get("details") or {}), require_all=not keep_draft)
            previous = self.get_latest_details(request_id, request_type)
            comparison = compare_objects(previous, fields, request_type)
            version = int(row["version"]) + 1
            status = workflow.STATUS_DRAFT if keep_draft else workflow.first_status(row["approval_chain"])
            title = self._title(request_type, fields)
            self.db.execute(
                "UPDATE requests SET title = ?, status = ?, version = ?, updated_at = ? WHERE request_id = ?",
                (title, status, version, utc_now(), request_id),
            )
            self._insert_details(request_type, request_id, version, fields)
            self._history(
                request_id,
                "edit",
                ctx.user,
                {
                    "type": request_type,
                    "title": title,
                    "version": version,
                    "changes": [c.to_dict() for c in comparison.changes],
                    "changesSummary": format_changes_for_notification(comparison.changes),
                },
            )
            if not keep_draft:
                kind = "request_submitted" if row["status"] == workflow.STATUS_DRAFT else "request_updated"
                self._notify_approvers(request_id, status, kind, "Request updated" if kind == "request_updated" else "New request awaiting approval", f"{title} (version {version})")
        return self.get_request(request_id)

    def submit_request(self, request_id: str, ctx: RequestContext) -> dict[str, Any]:
        with self._transaction():
            row = self._get_request_row(request_id)
            self._require_owner(row, ctx)
            if row["status"] != workflow.STATUS_DRAFT:
                raise ValueError("Only draft requests can be submitted")
            details = self.get_latest_details(request_id, row["type"]) or {}
            fields = {name: details.get(name) for name in DETAIL_FIELDS[row["type"]]}
            self._validate_fields(row["type"], fields, require_all=True)
            status = workflow.first_status(row["approval_chain"])
            self.db.execute("UPDATE requests SET status = ?, updated_at = ? WHERE request_id = ?", (status, utc_now(), request_id))
            self._history(request_id, "submit", ctx.user, {"status": status})
            self._notify_approvers(request_id, status, "request_submitted", "New request awaiting approval", f"{row['title']} submitted by {ctx.user}")
        return self.get_request(request_id)

    def create_change_request(self, original_request_id: str, payload: dict[str, Any], ctx: RequestContext) -> dict[str, Any]:
        request_id = generate_request_id()
        now = utc_now()
        with self._transaction():
            source = self._get_request_row(original_request_id)
            if source["status"] not in workflow.CHANGE_SOURCE_STATUSES:
                raise ValueError("Change requests can only be raised against approved codes")
            request_type = source["type"]
            fields = self._validate_fields(request_type, self._extract_fields(request_type, payload.get("details") or {}), require_all=True)
            original = self.get_latest_details(original_request_id, request_type)
            comparison = compare_objects(original, fields, request_type)
            if not comparison.has_changes:
                raise ValueError("Change request does not modify any field")
            summary = format_changes_for_notification(comparison.changes)
            chain = self._settings_chain()
            status = workflow.first_status(chain)
            title = self._title(request_type, fields, change=True)
            self.db.execute(
                """INSERT INTO requests(request_id, type, title, status, approval_chain, created_by, created_at, updated_at, version, original_request_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?)""",
                (request_id, request_type, title, status, chain, ctx.user, now, now, original_request_id),
            )
            self._insert_details(request_type, request_id, 1, fields)
            self._history(
                request_id,
                "create",
                ctx.user,
                {
                    "type": request_type,
                    "title": title,
                    "isChangeRequest": True,
                    "originalRequestId": original_request_id,
                    "changes": [c.to_dict() for c in comparison.changes],
                    "changesSummary": summary,
                },
            )
            self._notify_approvers(request_id, status, "change_request", "Change request awaiting approval", f"{title}\n{generate_changes_summary(comparison.changes)}")
        logger.info("Change request %s raised against %s by %s", request_id, original_request_id, ctx.user)
        return self.get_request(request_id)

    @synchronized
    def get_latest_details(self, request_id: str, request_type: str) -> dict[str, Any] | None:
        if request_type not in DETAIL_TABLES:
            raise ValueError("Unknown request type")
        return self.db.fetchone_dict(self.db.execute(
            f"SELECT * FROM {DETAIL_TABLES[request_type]} WHERE request_id = ? ORDER BY version DESC LIMIT 1", (request_id,)))

    @synchronized
    def get_request(self, request_id: str) -> dict[str, Any]:
        request = self._get_request_row(request_id)
        request["status_label"] = workflow.status_label(request["status"])
        request["details"] = self.get_latest_details(request_id, request["type"])
        request["approvals"] = self.get_approvals(request_id)
        request["history"] = self.get_history(request_id)
        request["attachments"] = self.db.fetchall_dict(self.db.execute(
            "SELECT attachment_id, file_name, file_type, version, title, uploaded_by, uploaded_at FROM attachments WHERE request_id = ? ORDER BY uploaded_at, attachment_id",
            (request_id,)))
        return request

    @synchronized
    def get_approvals(self, request_id: str) -> list[dict[str, Any]]:
        return self.db.fetchall_dict(self.db.execute("SELECT * FROM approvals WHERE request_id = ? ORDER BY timestamp, approval_id", (request_id,)))

    @synchronized
    def get_history(self, request_id: str) -> list[dict[str, Any]]:
        rows = self.db.fetchall_dict(self.db.execute("SELECT * FROM history_logs WHERE request_id = ? ORDER BY timestamp DESC, log_id DESC", (request_id,)))
        for row in rows:
            row["metadata"] = json.loads(row["metadata"] or "{}")
        return rows

    @synchronized
    def list_requests(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        filters = filters or {}
        conditions: list[str] = []
        params: list[Any] = []
        for column in ("status", "type", "created_by"):
            value = filters.get(column)
            if value and value != "all":
                conditions.append(f"{column} = ?")
                params.append(value)
        date_range = filters.get("date_range") or "all"
        if date_range != "all":
            if date_range not in DATE_RANGES:
                raise ValueError(f"Unknown date range: {date_range}")
            cutoff = datetime.now(timezone.utc) - timedelta(days=DATE_RANGES[date_range])
            conditions.append("created_at >= ?")
            params.append(cutoff.strftime(ISO))
        sort_by = filters.get("sort_by") or "created_at"
        if sort_by not in SORT_COLUMNS:
            raise ValueError(f"Cannot sort by {sort_by}")
        order = str(filters.get("order") or "desc").upper()
        if order not in {"ASC", "DESC"}:
            raise ValueError("Order must be asc or desc")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self.db.fetchall_dict(self.db.execute(
            f"SELECT * FROM requests {where} ORDER BY {sort_by} {order}, rowid {order}", tuple(params)))

        search = str(filters.get("search") or "").strip().lower()
        result = []
        for row in rows:
            row["status_label"] = workflow.status_label(row["status"])
            row["details"] = self.get_latest_details(row["request_id"], row["type"])
            if search:
                haystack = [row["created_by"]] + [str((row["details"] or {}).get(f) or "") for f in SEARCH_FIELDS]
                if not any(search in h.lower() for h in haystack):
                    continue
            result.append(row)
        return result

    def list_requests_by_user(self, email: str) -> list[dict[str, Any]]:
        return self.list_requests({"created_by": email})

    def pending_for_role(self, role: str) -> list[dict[str, Any]]:
        status = workflow.pending_status(role)
        if not status:
            return []
        return self.list_requests({"status": status})

    # --- decisions ---

    def decide(self, request_id: str, payload: dict[str, Any], ctx: RequestContext) -> dict[str, Any]:
        decision = str(payload.get("decision", "")).strip().lower()
        decision = {"approved": "approve", "rejected": "reject"}.get(decision, decision)
        if decision not in workflow.DECISIONS:
            raise ValueError("Decision must be approve or reject")
        comment = str(payload.get("comment", "")).strip()
        if not comment:
            raise ValueError("Comment is required for a decision")
        if len(comment) > MAX_COMMENT_LENGTH:
            raise ValueError(f"Comment must be at most {MAX_COMMENT_LENGTH} characters")
        attachment = payload.get("attachment")
        if attachment is not None and not isinstance(attachment, dict):
            raise ValueError("attachment must be an object")

        with self._transaction():
            row = self._get_request_row(request_id)
            role = workflow.approver_role(row["status"])
            if role is None:
                raise ValueError("Request is not awaiting approval")
            acting = any(workflow.can_approve(row["status"], r) for r in ctx.roles)
            if not acting and not self._has_permission(ctx, PERM_REQUEST_MANAGE_ALL):
                raise PermissionError(f"Role '{role}' is required to decide this request")
            new_status = workflow.next_status(row["approval_chain"], row["status"], decision)
            attachment_id = None
            if attachment:
                attachment_id = self._store_attachment(request_id, attachment, ctx, int(row["version"]))
            now = utc_now()
            self.db.execute(
                "INSERT INTO approvals(request_id, approver_email, role, decision, comment, attachment_id, timestamp) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (request_id, ctx.user, role, decision, comment, attachment_id, now),
            )
            self.db.execute("UPDATE requests SET status = ?, updated_at = ? WHERE request_id = ?", (new_status, now, request_id))
            self._history(request_id, decision, ctx.user, {"role": role, "comment": comment, "from": row["status"], "to": new_status})
            title = row["title"]
            if decision == "reject":
                self._notify(request_id, [row["created_by"]], "request_rejected", "Request rejected", f"{title} was rejected by {role}: {comment}")
            elif new_status == workflow.STATUS_APPROVED:
                self._notify(request_id, [row["created_by"]], "request_approved", "Request approved", f"{title} is fully approved and awaiting SAP update")
                self._notify(request_id, self._users_with_role("it"), "request_approved", "SAP update required", f"{title} is approved and ready for SAP")
            else:
                self._notify(request_id, [row["created_by"]], "request_approved", "Approval recorded", f"{title} was approved by {role}")
                self._notify_approvers(request_id, new_status, "request_submitted", "Request awaiting approval", title)
        logger.info("Request %s: %s by %s (%s -> %s)", request_id, decision, ctx.user, row["status"], new_status)
        return self.get_request(request_id)

    def mark_sap_updated(self, request_id: str, payload: dict[str, Any], ctx: RequestContext) -> dict[str, Any]:
        self._require_permission(ctx, PERM_SAP_UPDATE, "IT role required to record SAP updates")
        note = str(payload.get("note", "")).strip()
        if not note:
            raise ValueError("An update note is required")
        if len(note) > MAX_COMMENT_LENGTH:
            raise ValueError(f"Note must be at most {MAX_COMMENT_LENGTH} characters")
        with self._transaction():
            row = self._get_request_row(request_id)
            if row["status"] != workflow.STATUS_APPROVED:
                raise ValueError("Only approved requests can be marked as updated in SAP")
            now = utc_now()
            self.db.execute(
                "INSERT INTO approvals(request_id, approver_email, role, decision, comment, timestamp) VALUES (?, ?, 'it', 'approve', ?, ?)",
                (request_id, ctx.user, note, now),
            )
            self.db.execute(
                "UPDATE requests SET status = ?, sap_updated_at = ?, updated_at = ? WHERE request_id = ?",
                (workflow.STATUS_SAP_UPDATED, now, now, request_id),
            )
            self._history(request_id, "update-sap", ctx.user, {"note": note})
            self._notify(request_id, [row["created_by"]], "sap_updated", "SAP updated", f"{row['title']} has been updated in SAP")
        return self.get_request(request_id)

    def complete_request(self, request_id: str, ctx: RequestContext) -> dict[str, Any]:
        with self._transaction():
            row = self._get_request_row(request_id)
            if row["created_by"] != ctx.user and not self._has_permission(ctx, PERM_SAP_UPDATE):
                raise PermissionError("Only the requestor or IT can complete a request")
            if row["status"] != workflow.STATUS_SAP_UPDATED:
                raise ValueError("Only SAP-updated requests can be completed")
            completed = datetime.now(timezone.utc).replace(microsecond=0)
            tat_days = round((completed - parse_ts(row["created_at"])).total_seconds() / 86400, 2)
            now = completed.strftime(ISO)
            self.db.execute(
                "UPDATE requests SET status = ?, completed_at = ?, tat_days = ?, updated_at = ? WHERE request_id = ?",
                (workflow.STATUS_COMPLETED, now, tat_days, now, request_id),
            )
            self._history(request_id, "complete", ctx.user, {"tatDays": tat_days})
            self._notify(request_id, [row["created_by"]], "request_completed", "Request completed", f"{row['title']} completed in {tat_days} days")
        return self.get_request(request_id)

    # --- attachments ---

    def _store_attachment(self, request_id: str, payload: dict[str, Any], ctx: RequestContext, version: int) -> str:
        if not isinstance(payload, dict):
            raise ValueError("attachment must be an object")
        raw_filename = str(payload.get("fileName", ""))
        if "\x00" in raw_filename:
            raise ValueError("Invalid filename")
        filename = Path(raw_filename).name
        if filename != raw_filename or filename in {"", ".", ".."} or "\\" in filename:
            raise ValueError("Invalid filename")
        content = str(payload.get("fileContent", ""))
        try:
            decoded = base64.b64decode(content, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("Attachment content must be base64 encoded") from None
        if len(decoded) > MAX_ATTACHMENT_BYTES:
            raise ValueError(f"Attachment exceeds {MAX_ATTACHMENT_BYTES} bytes")
        attachment_id = uuid.uuid4().hex
        self.db.execute(
            """INSERT INTO attachments(attachment_id, request_id, file_name, file_content, file_type, version, title, uploaded_by, uploaded_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                attachment_id,
                request_id,
                filename,
                content,
                str(payload.get("fileType") or "application/octet-stream"),
                version,
                str(payload.get("title") or filename),
                ctx.user,
                utc_now(),
            ),
        )
        self._audit("attachment", attachment_id, "upload", ctx.user, {"requestId": request_id, "fileName": filename})
        return attachment_id

    def add_attachment(self, request_id: str, payload: dict[str, Any], ctx: RequestContext) -> dict[str, Any]:
        with self._transaction():
            row = self._get_request_row(request_id)
            self._require_participant(row, ctx)
            self._store_attachment(request_id, payload, ctx, int(row["version"]))
        return self.get_request(request_id)

    @synchronized
    def get_attachment(self, attachment_id: str) -> dict[str, Any]:
        row = self.db.fetchone_dict(self.db.execute("SELECT * FROM attachments WHERE attachment_id = ?", (attachment_id,)))
        if not row:
            raise KeyError("Attachment not found")
        return row

    # --- notifications ---

    @synchronized
    def get_notifications(self, email: str) -> list[dict[str, Any]]:
        rows = self.db.fetchall_dict(self.db.execute(
            "SELECT * FROM notifications WHERE recipient = ? ORDER BY created_at DESC, notification_id DESC", (email,)))
        for row in rows:
            row["read"] = bool(row["read"])
        return rows

    def mark_notification_read(self, notification_id: int, ctx: RequestContext) -> dict[str, Any]:
        with self._transaction():
            row = self.db.fetchone_dict(self.db.execute("SELECT * FROM notifications WHERE notification_id = ?", (notification_id,)))
            if not row:
                raise KeyError("Notification not found")
            if row["recipient"] != ctx.user:
                raise PermissionError("Notification belongs to another user")
            self.db.execute("UPDATE notifications SET read = 1 WHERE notification_id = ?", (notification_id,))
        row["read"] = True
        return row

    # --- analytics ---

    def analytics(self, ctx: RequestContext, time_filter: str = "30d") -> dict[str, Any]:
        self._require_permission(ctx, PERM_ANALYTICS_VIEW, "Analytics are restricted to IT and admins")
        rows = self.list_requests({"date_range": time_filter})
        by_status = Counter(r["status"] for r in rows)
        by_type = Counter(r["type"] for r in rows)
        completed = [r for r in rows if r["status"] == workflow.STATUS_COMPLETED]
        average_tat = round(sum(r["tat_days"] or 0 for r in completed) / len(completed), 2) if completed else 0

        monthly: dict[str, dict[str, Any]] = {}
        for r in rows:
            month = r["created_at"][:7]
            bucket = monthly.setdefault(month, {"month": month, "plant": 0, "company": 0, "total": 0})
            bucket[r["type"]] += 1
            bucket["total"] += 1

        activity: dict[str, dict[str, Any]] = {}
        for r in rows:
            entry = activity.setdefault(r["created_by"], {"user": r["created_by"], "requests": 0, "approved": 0, "rejected": 0})
            entry["requests"] += 1
            if r["status"] in workflow.CHANGE_SOURCE_STATUSES:
                entry["approved"] += 1
            elif r["status"] == workflow.STATUS_REJECTED:
                entry["rejected"] += 1

        return {
            "totalRequests": len(rows),
            "pendingRequests": sum(c for s, c in by_status.items() if workflow.is_pending(s)),
            "approvedRequests": by_status[workflow.STATUS_APPROVED],
            "rejectedRequests": by_status[workflow.STATUS_REJECTED],
            "sapUpdatedRequests": by_status[workflow.STATUS_SAP_UPDATED],
            "completedRequests": by_status[workflow.STATUS_COMPLETED],
            "averageTatDays": average_tat,
            "byStatus": dict(by_status),
            "byType": {t: by_type[t] for t in sorted(workflow.REQUEST_TYPES)},
            "monthly": [monthly[m] for m in sorted(monthly)],
            "userActivity": sorted(activity.values(), key=lambda e: (-e["requests"], e["user"])),
        }

    # --- reminders ---

    def run_aging_reminders(self, ctx: RequestContext) -> dict[str, Any]:
        self._require_permission(ctx, PERM_SYSTEM_REMINDERS, "Admin role required")
        placeholders = ",".join("?" for _ in workflow.PENDING_STATUSES)
        now = datetime.now(timezone.utc)
        sent = 0
        with self._transaction():
            settings = self.get_settings()
            thresholds = sorted(int(v) for k, v in settings.items() if k.startswith("aging_threshold_"))
            rows = self.db.fetchall_dict(self.db.execute(
                f"SELECT * FROM requests WHERE status IN ({placeholders}) ORDER BY created_at", tuple(sorted(workflow.PENDING_STATUSES))))
            for row in rows:
                days = (now - parse_ts(row["created_at"])).days
                level = max((t for t in thresholds if days >= t), default=0)
                if level == 0:
                    continue
                exists = self.db.fetchone_dict(self.db.execute(
                    "SELECT COUNT(*) AS c FROM reminder_log WHERE request_id = ? AND threshold_days = ?", (row["request_id"], level)))
                if int(exists["c"]) > 0:
                    continue
                self._notify_approvers(
                    row["request_id"],
                    row["status"],
                    "aging_reminder",
                    "Approval overdue",
                    f"{row['title']} has been waiting {days} days ({workflow.status_label(row['status'])})",
                )
                self.db.execute("INSERT INTO reminder_log(request_id, threshold_days, reminded_at) VALUES (?, ?, ?)", (row["request_id"], level, utc_now()))
                sent += 1
        if sent:
            logger.info("Sent %d aging reminders", sent)
        return {"sent": sent}

    # --- settings ---

    @synchronized
    def get_settings(self) -> dict[str, str]:
        return {r["key"]: r["value"] for r in self.db.fetchall_dict(self.db.execute("SELECT key, value FROM system_settings ORDER BY key"))}

    def update_settings(self, payload: dict[str, Any], ctx: RequestContext) -> dict[str, str]:
        self._require_permission(ctx, PERM_ADMIN_SETTINGS, "Admin role required")
        invalid_keys = set(payload.keys()) - ALLOWED_SETTING_KEYS
        if invalid_keys:
            raise ValueError(f"Unknown setting keys: {', '.join(sorted(invalid_keys))}")
        for key, value in payload.items():
            if key == "approval_chain":
                if not isinstance(value, str) or value not in workflow.APPROVAL_CHAINS:
                    raise ValueError(f"approval_chain must be one of: {', '.join(sorted(workflow.APPROVAL_CHAINS))}")
            elif isinstance(value, bool) or not str(value).isdigit() or int(value) <= 0:
                raise ValueError(f"{key} must be a positive number of days")
        with self._transaction():
            for key, value in payload.items():
                self._upsert_setting(key, str(value))
            self._audit("system_settings", "global", "update", ctx.user, payload)
        return self.get_settings()

    # --- users ---

    @synchronized
    def get_user(self, email: str) -> dict[str, Any] | None:
        return self.db.fetchone_dict(self.db.execute("SELECT * FROM users WHERE email = ?", (email.strip().lower(),)))

    def get_user_role(self, email: str) -> str:
        user = self.get_user(email)
        return user["role"] if user else "requestor"

    @synchronized
    def list_users(self, role: str | None = None, search: str | None = None) -> list[dict[str, Any]]:
        if role and role != "all":
            users = self.db.fetchall_dict(self.db.execute("SELECT * FROM users WHERE role = ? ORDER BY email", (role,)))
        else:
            users = self.db.fetchall_dict(self.db.execute("SELECT * FROM users ORDER BY email"))
        if search:
            users = [u for u in users if search.strip().lower() in u["email"]]
        return users

    def create_user(self, payload: dict[str, Any], ctx: RequestContext) -> dict[str, Any]:
        self._require_permission(ctx, PERM_USERS_MANAGE, "Admin role required")
        email = str(payload.get("email", "")).strip().lower()
        role = str(payload.get("role", "")).strip()
        if not EMAIL_RE.match(email):
            raise ValueError("A valid email address is required")
        if role not in workflow.ROLES:
            raise ValueError(f"role must be one of: {', '.join(sorted(workflow.ROLES))}")
        with self._transaction():
            if self.get_user(email):
                raise ValueError("User with this email already exists")
            self.db.execute("INSERT INTO users(email, role, created_at) VALUES (?, ?, ?)", (email, role, utc_now()))
            self._audit("user", email, "create", ctx.user, {"role": role})
        return self.get_user(email)

    def delete_user(self, email: str, ctx: RequestContext) -> list[dict[str, Any]]:
        self._require_permission(ctx, PERM_USERS_MANAGE, "Admin role required")
        email = email.strip().lower()
        if email == ctx.user.strip().lower():
            raise ValueError("Admins cannot delete their own account")
        with self._transaction():
            if not self.get_user(email):
                raise KeyError("User not found")
            self.db.execute("DELETE FROM users WHERE email = ?", (email,))
            self._audit("user", email, "delete", ctx.user)
        return self.list_users()

    def role_stats(self) -> dict[str, int]:
        counts = Counter(u["role"] for u in self.list_users())
        return {role: counts[role] for role in sorted(workflow.ROLES)}

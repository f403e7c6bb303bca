import json
import threading
import urllib.error
import urllib.request

import pytest

from code_workflow.server import build_server
from code_workflow.service import DETAIL_FIELDS, AppService, camel_case


@pytest.fixture
def api(tmp_path, monkeypatch):
    for name in ("REMOTE_USER", "LOGON_USER", "AUTH_USER", "ALLOW_DEV_HEADERS", "SMTP_HOST"):
        monkeypatch.delenv(name, raising=False)
    server = build_server(AppService(connection_string=str(tmp_path / "api.db")), port=0, host="127.0.0.1")
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    base = f"http://127.0.0.1:{server.server_address[1]}"

    def call(method, path, user=None, body=None, headers=None):
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(base + path, data=data, method=method)
        req.add_header("Content-Type", "application/json")
        if user:
            req.add_header("X-Remote-User", user)
        for key, value in (headers or {}).items():
            req.add_header(key, value)
        try:
            with urllib.request.urlopen(req, timeout=5) as resp:
                return resp.status, json.loads(resp.read())
        except urllib.error.HTTPError as exc:
            return exc.code, json.loads(exc.read())

    yield call
    server.shutdown()
    server.server_close()


def plant_payload():
    return {"type": "plant", "details": {camel_case(name): f"{name}-v" for name in DETAIL_FIELDS["plant"]}}


def test_request_roundtrip_over_http(api):
    status, created = api("POST", "/api/requests", user="priya@pel.com", body=plant_payload())
    assert status == 200
    request_id = created["request_id"]

    status, fetched = api("GET", f"/api/requests/{request_id}")
    assert status == 200
    assert fetched["status"] == "pending-secretary"

    status, pending = api("GET", "/api/approvals/pending", user="sec@pel.com")
    assert [r["request_id"] for r in pending] == [request_id]

    status, body = api("POST", f"/api/requests/{request_id}/decide", user="fin@pel.com", body={"decision": "approve", "comment": "ok"})
    assert status == 403
    assert "secretary" in body["error"]

    status, decided = api("POST", f"/api/requests/{request_id}/decide", user="sec@pel.com", body={"decision": "approve", "comment": "ok"})
    assert status == 200
    assert decided["status"] == "pending-finance"

    status, mine = api("GET", "/api/requests/mine", user="priya@pel.com")
    assert [r["request_id"] for r in mine] == [request_id]


def test_error_mapping(api):
    assert api("GET", "/api/requests/REQ-404")[0] == 404
    assert api("GET", "/api/nowhere")[0] == 404
    status, body = api("POST", "/api/requests", user="priya@pel.com", body={"type": "vendor"})
    assert status == 400
    assert "type" in body["error"]
    assert api("POST", "/api/requests", body=plant_payload())[0] == 403
    assert api("PUT", "/api/admin/settings", user="priya@pel.com", body={"approval_chain": "revised"})[0] == 403


def test_cross_origin_post_is_refused(api):
    status, body = api("POST", "/api/requests", user="priya@pel.com", body=plant_payload(), headers={"Origin": "http://evil.example"})
    assert status == 403
    assert body["error"] == "Origin not allowed"


def test_admin_routes(api):
    status, settings = api("PUT", "/api/admin/settings", user="aarnav@pel.com", body={"approval_chain": "revised"})
    assert status == 200
    assert settings["approval_chain"] == "revised"

    status, user = api("POST", "/api/users", user="aarnav@pel.com", body={"email": "kiran@pel.com", "role": "it"})
    assert status == 200
    status, me = api("GET", "/api/me", user="kiran@pel.com")
    assert me == {"user": "kiran@pel.com", "roles": ["it"]}

    status, users = api("DELETE", "/api/users/kiran%40pel.com", user="aarnav@pel.com")
    assert status == 200
    assert "kiran@pel.com" not in [u["email"] for u in users]


def test_wrong_typed_values_are_bad_requests(api):
    status, body = api("POST", "/api/requests", user="priya@pel.com", body={"type": ["plant"]})
    assert status == 400
    assert "type" in body["error"]

    status, created = api("POST", "/api/requests", user="priya@pel.com", body=plant_payload())
    decision = {"decision": "approve", "comment": "ok", "attachment": "file.pdf"}
    status, body = api("POST", f"/api/requests/{created['request_id']}/decide", user="sec@pel.com", body=decision)
    assert status == 400
    assert body["error"] == "attachment must be an object"

    assert api("PUT", "/api/admin/settings", user="aarnav@pel.com", body={"approval_chain": []})[0] == 400

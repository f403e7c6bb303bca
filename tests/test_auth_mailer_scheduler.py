import pytest

from code_workflow.auth import AuthResolver
from code_workflow.mailer import SmtpMailer
from code_workflow.scheduler import ReminderScheduler
from code_workflow.service import DETAIL_FIELDS, AppService, RequestContext, camel_case


class DummyHeaders(dict):
    def get(self, k, d=None):
        return super().get(k, d)


@pytest.fixture(autouse=True)
def clean_auth_env(monkeypatch):
    for name in ("REMOTE_USER", "LOGON_USER", "AUTH_USER", "ALLOW_DEV_HEADERS", "SMTP_HOST", "REMINDER_INTERVAL_SECONDS"):
        monkeypatch.delenv(name, raising=False)


def roles_from(directory):
    return lambda email: directory.get(email, "requestor")


def test_auth_resolver_uses_integrated_env(monkeypatch):
    monkeypatch.setenv("REMOTE_USER", "Sec@PEL.com")
    monkeypatch.setenv("ALLOW_DEV_HEADERS", "false")
    resolver = AuthResolver(roles_from({"sec@pel.com": "secretary"}))
    ident = resolver.resolve(DummyHeaders({"X-Remote-User": "ignored", "X-User-Role": "admin"}))
    assert ident.user == "sec@pel.com"
    assert ident.roles == {"secretary"}


def test_auth_resolver_dev_headers():
    resolver = AuthResolver(roles_from({}))
    assert resolver.resolve(DummyHeaders({"X-Remote-User": "priya@pel.com"})).roles == {"requestor"}
    assert resolver.resolve(DummyHeaders({"X-Remote-User": "priya@pel.com", "X-User-Role": "it"})).roles == {"it"}
    anon = resolver.resolve(DummyHeaders({}))
    assert anon.user == "anonymous"
    assert anon.roles == set()


def test_smtp_mailer_disabled_without_host():
    mailer = SmtpMailer()
    assert mailer.enabled is False
    assert mailer.send_notification("a@b.com", "Title", "Body") is False


def test_smtp_mailer_skips_invalid_recipient(monkeypatch):
    monkeypatch.setenv("SMTP_HOST", "smtp.invalid")
    mailer = SmtpMailer()
    assert mailer.enabled is True
    assert mailer.send_notification("not-an-address", "Title", "Body") is False


def test_failed_email_does_not_block_request(tmp_path):
    svc = AppService(connection_string=str(tmp_path / "mail.db"))

    def boom(*args, **kwargs):
        raise OSError("smtp down")

    svc.mailer.send_notification = boom
    details = {camel_case(name): "x" for name in DETAIL_FIELDS["plant"]}
    req = svc.create_request({"type": "plant", "details": details}, RequestContext(user="priya@pel.com", roles={"requestor"}))

    assert req["status"] == "pending-secretary"
    assert len(svc.get_notifications("sec@pel.com")) == 1
    audit = svc.db.fetchall_dict(svc.db.execute("SELECT details FROM audit_log WHERE action = 'smtp_dispatch'"))
    assert audit and "smtp down" in audit[0]["details"]


def test_scheduler_disabled_by_default(tmp_path):
    svc = AppService(connection_string=str(tmp_path / "sched.db"))
    scheduler = ReminderScheduler(svc)
    assert scheduler.enabled is False
    scheduler.start()
    assert scheduler._thread is None


def test_scheduler_run_once_uses_admin_context(tmp_path, monkeypatch):
    monkeypatch.setenv("REMINDER_INTERVAL_SECONDS", "3600")
    svc = AppService(connection_string=str(tmp_path / "sched.db"))
    scheduler = ReminderScheduler(svc)
    assert scheduler.enabled is True
    assert scheduler.run_once() == 0
    scheduler.start()
    scheduler.stop()

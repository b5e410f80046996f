import smtplib
from types import SimpleNamespace

from app.services import email as email_service
from app.services.profiles import FixedProfile, PackageProfile, UnderscoredPackageProfile


class FakeSMTP:
    instances: list["FakeSMTP"] = []

    def __init__(self, fail_with: Exception | None = None):
        self.fail_with = fail_with
        self.sent = []
        self.tls = False
        self.quit_called = False
        FakeSMTP.instances.append(self)

    def starttls(self):
        self.tls = True

    def login(self, username, password):
        pass

    def sendmail(self, sender, recipient, body):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((sender, recipient, body))

    def quit(self):
        self.quit_called = True


def test_send_email_delivers(monkeypatch):
    smtp = FakeSMTP()
    monkeypatch.setattr(email_service, "_create_smtp_client", lambda host, port: smtp)

    assert email_service.send_email("budi@example.com", "Tagihan", "Halo") is True

    assert smtp.sent[0][1] == "budi@example.com"
    assert "Subject: Tagihan" in smtp.sent[0][2]
    assert smtp.quit_called


def test_send_email_reports_smtp_failure(monkeypatch):
    smtp = FakeSMTP(fail_with=smtplib.SMTPRecipientsRefused({}))
    monkeypatch.setattr(email_service, "_create_smtp_client", lambda host, port: smtp)

    assert email_service.send_email("budi@example.com", "Tagihan", "Halo") is False
    assert smtp.quit_called


def test_send_email_connection_refused(monkeypatch):
    def refuse(host, port):
        raise ConnectionRefusedError("no smtp")

    monkeypatch.setattr(email_service, "_create_smtp_client", refuse)

    assert email_service.send_email("budi@example.com", "Tagihan", "Halo") is False


def _service(name="Home 20", override=None):
    return SimpleNamespace(package=SimpleNamespace(name=name, mikrotik_profile=override))


def test_package_profile_prefix_and_override():
    assert PackageProfile("Package-").resolve(_service()) == "Package-Home 20"
    assert PackageProfile("Package-").resolve(_service(override="HOME20")) == "HOME20"
    assert PackageProfile("Package-").resolve(SimpleNamespace(package=None)) is None


def test_underscored_and_fixed_profiles():
    assert UnderscoredPackageProfile().resolve(_service()) == "Home_20"
    assert FixedProfile("Isolir").resolve(_service()) == "Isolir"

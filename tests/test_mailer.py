import smtplib

import pytest
import requests

from email_pipeline.mailer import FailureKind, build_sender, format_address
from email_pipeline.mailer.http_sender import HTTPAPISender
from email_pipeline.mailer.smtp_sender import SMTPSender


class _Response:
    def __init__(self, status_code: int, body=None) -> None:
        self.status_code = status_code
        self._body = body
        self.text = str(body)

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body


class _Session:
    def __init__(self, outcome) -> None:
        self.outcome = outcome
        self.requests = []

    def post(self, url, json, headers, timeout):
        self.requests.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _http(outcome, **kwargs) -> HTTPAPISender:
    return HTTPAPISender(api_key="key", api_url="https://api.example.com/emails", session=_Session(outcome), **kwargs)


def test_http_success_returns_provider_id() -> None:
    sender = _http(_Response(200, {"id": "re_123"}))
    result = sender.send(
        "a@example.com", "Hi", "<p>x</p>", text="x", from_addr="Shop <shop@example.com>",
        headers={"X-Tracking-Id": "t1"},
    )
    assert result.success
    assert result.provider_message_id == "re_123"
    request = sender._session.requests[0]
    assert request["headers"] == {"Authorization": "Bearer key"}
    assert request["json"]["to"] == ["a@example.com"]
    assert request["json"]["headers"] == {"X-Tracking-Id": "t1"}


@pytest.mark.parametrize(
    "outcome, kind",
    [
        (_Response(503, {"message": "busy"}), FailureKind.TRANSIENT),
        (_Response(429, {"message": "slow down"}), FailureKind.TRANSIENT),
        (_Response(422, {"message": "invalid to"}), FailureKind.PERMANENT),
        (_Response(401, {"message": "bad key"}), FailureKind.CONFIGURATION),
        (requests.Timeout("timed out"), FailureKind.TRANSIENT),
    ],
)
def test_http_failure_classification(outcome, kind) -> None:
    result = _http(outcome).send("a@example.com", "Hi", "<p>x</p>", from_addr="shop@example.com")
    assert not result.success
    assert result.failure_kind is kind


def test_http_missing_configuration(monkeypatch) -> None:
    monkeypatch.delenv("EMAIL_API_KEY", raising=False)
    monkeypatch.delenv("EMAIL_FROM", raising=False)
    result = HTTPAPISender(session=_Session(None)).send("a@example.com", "Hi", "<p>x</p>")
    assert result.failure_kind is FailureKind.CONFIGURATION
    assert _http(None).send("a@example.com", "Hi", "<p>x</p>").failure_kind is FailureKind.CONFIGURATION


class _SMTP:
    sent = []
    error = None

    def __init__(self, host, port, timeout) -> None:
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        pass

    def has_extn(self, name):
        return False

    def login(self, user, password):
        pass

    def send_message(self, msg):
        if _SMTP.error is not None:
            raise _SMTP.error
        _SMTP.sent.append(msg)


@pytest.fixture
def fake_smtp(monkeypatch):
    _SMTP.sent = []
    _SMTP.error = None
    monkeypatch.setattr(smtplib, "SMTP", _SMTP)
    return _SMTP


def test_smtp_builds_multipart_message(fake_smtp) -> None:
    sender = SMTPSender(host="mail.example.com", port=25, use_ssl=False)
    result = sender.send(
        "a@example.com", "Hi", "<p>x</p>", text="x", from_addr="shop@example.com",
        reply_to="help@example.com", headers={"X-Tracking-Id": "t1"},
    )
    assert result.success
    [msg] = fake_smtp.sent
    assert msg["Message-ID"] == result.provider_message_id
    assert msg["X-Tracking-Id"] == "t1"
    assert msg["Reply-To"] == "help@example.com"
    assert msg.is_multipart()


@pytest.mark.parametrize(
    "error, kind",
    [
        (smtplib.SMTPRecipientsRefused({"a@example.com": (550, b"no such user")}), FailureKind.PERMANENT),
        (smtplib.SMTPAuthenticationError(535, b"bad credentials"), FailureKind.CONFIGURATION),
        (smtplib.SMTPDataError(451, b"try later"), FailureKind.TRANSIENT),
        (smtplib.SMTPDataError(554, b"rejected"), FailureKind.PERMANENT),
        (ConnectionRefusedError("refused"), FailureKind.TRANSIENT),
    ],
)
def test_smtp_failure_classification(fake_smtp, error, kind) -> None:
    fake_smtp.error = error
    result = SMTPSender(host="mail.example.com", use_ssl=False).send(
        "a@example.com", "Hi", "<p>x</p>", from_addr="shop@example.com"
    )
    assert result.failure_kind is kind


def test_smtp_host_inferred_from_username(monkeypatch) -> None:
    for name in ("SMTP_HOST", "SMTP_SERVER", "SMTP_PORT", "SMTP_SERVER_PORT"):
        monkeypatch.delenv(name, raising=False)
    sender = SMTPSender(username="me@gmail.com", password="pw", use_ssl=True)
    assert (sender._host, sender._port) == ("smtp.gmail.com", 465)


def test_build_sender_and_format_address(settings) -> None:
    assert isinstance(build_sender(settings), SMTPSender)
    assert isinstance(build_sender(settings.model_copy(update={"email_provider": "http"})), HTTPAPISender)
    assert format_address("a@example.com", "Ann") == "Ann <a@example.com>"
    assert format_address("a@example.com") == "a@example.com"

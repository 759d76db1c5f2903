"""Tests for verification code delivery and mailer selection."""
import json
import logging

import httpx
import pytest

from realchat.container import build_mailer
from realchat.errors import DeliveryError
from realchat.mail import BrevoMailer, LoggingMailer

from conftest import make_config


def _mailer(handler) -> BrevoMailer:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return BrevoMailer(
        api_key="brevo-key",
        sender_email="no-reply@realchat.test",
        sender_name="RealChat",
        code_ttl_seconds=300,
        client=client,
    )


class TestBrevoMailer:
    def test_posts_code_to_brevo(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["api_key"] = request.headers["api-key"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"messageId": "m-1"})

        _mailer(handler).send_verification_code("alice@x.com", "123456")

        assert captured["url"] == "https://api.brevo.com/v3/smtp/email"
        assert captured["api_key"] == "brevo-key"
        body = captured["body"]
        assert body["to"] == [{"email": "alice@x.com"}]
        assert body["sender"] == {"name": "RealChat", "email": "no-reply@realchat.test"}
        assert "123456" in body["htmlContent"]
        assert "5 minutes" in body["htmlContent"]

    def test_http_error_becomes_delivery_error(self):
        mailer = _mailer(lambda request: httpx.Response(401, json={"message": "Key not found"}))
        with pytest.raises(DeliveryError):
            mailer.send_verification_code("alice@x.com", "123456")

    def test_transport_error_becomes_delivery_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(DeliveryError):
            _mailer(handler).send_verification_code("alice@x.com", "123456")


class TestLoggingMailer:
    def test_logs_code(self, caplog):
        with caplog.at_level(logging.WARNING, logger="realchat.mail.service"):
            LoggingMailer().send_verification_code("alice@x.com", "654321")
        assert "654321" in caplog.text


class TestBuildMailer:
    def test_brevo_with_api_key(self):
        config = make_config()
        config.secrets.mail.api_key = "key"
        mailer = build_mailer(config)
        assert isinstance(mailer, BrevoMailer)
        mailer.close()

    def test_brevo_without_api_key_falls_back_to_log(self):
        assert isinstance(build_mailer(make_config()), LoggingMailer)

    def test_log_provider(self):
        config = make_config(mail={"provider": "log"})
        config.secrets.mail.api_key = "key"
        assert isinstance(build_mailer(config), LoggingMailer)

"""Code delivery senders and their selection."""

import json
from unittest.mock import patch

import httpx

from tenantauth.config import Settings
from tenantauth.service.delivery import (
    Channel,
    HttpSmsSender,
    LoggingCodeSender,
    SmtpEmailSender,
    select_sender,
)


class TestSelectSender:
    def test_unconfigured_channels_log_only(self):
        settings = Settings()

        assert isinstance(select_sender(Channel.EMAIL, settings), LoggingCodeSender)
        assert select_sender(Channel.PHONE, settings).name == "log-phone"

    def test_smtp_selected_when_configured(self):
        settings = Settings(smtp_host="smtp.example.com", email_from_address="auth@example.com")

        sender = select_sender(Channel.EMAIL, settings)

        assert isinstance(sender, SmtpEmailSender)
        assert sender.is_configured

    def test_sms_gateway_needs_url_and_key(self):
        assert isinstance(
            select_sender(Channel.PHONE, Settings(sms_gateway_url="https://sms.example.com/send")),
            LoggingCodeSender,
        )
        configured = Settings(
            sms_gateway_url="https://sms.example.com/send", sms_gateway_api_key="k-123"
        )
        assert isinstance(select_sender(Channel.PHONE, configured), HttpSmsSender)


class TestHttpSmsSender:
    async def test_posts_code_to_gateway(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202, json={"id": "msg-1"})

        sender = HttpSmsSender(
            gateway_url="https://sms.example.com/send",
            api_key="k-123",
            sender_id="ACME",
            transport=httpx.MockTransport(handler),
        )

        assert await sender.send_code("+15550001111", "482913") is True
        request = seen[0]
        assert request.headers["Authorization"] == "Bearer k-123"
        body = json.loads(request.content)
        assert body["to"] == "+15550001111"
        assert body["from"] == "ACME"
        assert "482913" in body["text"]

    async def test_gateway_rejection_reports_failure(self):
        sender = HttpSmsSender(
            gateway_url="https://sms.example.com/send",
            api_key="k-123",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )

        assert await sender.send_code("+15550001111", "482913") is False

    async def test_transport_error_reports_failure(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        sender = HttpSmsSender(
            gateway_url="https://sms.example.com/send",
            api_key="k-123",
            transport=httpx.MockTransport(handler),
        )

        assert await sender.send_code("+15550001111", "482913") is False


class TestLoggingSender:
    async def test_logs_masked_address_without_code(self):
        sender = LoggingCodeSender(Channel.EMAIL)
        with patch("tenantauth.service.delivery.logger") as mock_logger:
            assert await sender.send_code("alice@example.com", "482913") is True

        args, kwargs = mock_logger.info.call_args
        assert args[0] == "code_dev_mode"
        assert kwargs["to"] == "al***@example.com"
        assert "482913" not in str(kwargs)

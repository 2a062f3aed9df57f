from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.text import MIMEText
from enum import Enum
from typing import List, Optional, Protocol

import httpx

from tenantauth.config import Settings
from tenantauth.logging import get_logger, mask_address

logger = get_logger(__name__)


class Channel(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


class CodeSender(Protocol):
    name: str

    @property
    def is_configured(self) -> bool: ...

    async def send_code(self, address: str, code: str) -> bool: ...


class LoggingCodeSender:
    """Dev sender: records that a code went out without the code itself."""

    def __init__(self, channel: Channel) -> None:
        self.channel = channel
        self.name = f"log-{channel.value}"

    @property
    def is_configured(self) -> bool:
        return True

    async def send_code(self, address: str, code: str) -> bool:
        logger.info("code_dev_mode", channel=self.channel.value, to=mask_address(address))
        return True


class SmtpEmailSender:
    """Email delivery over SMTP with STARTTLS or implicit TLS."""

    name = "smtp"

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Tenant Auth",
        ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.ttl_minutes = ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send(self, to_email: str, code: str) -> bool:
        msg = MIMEText(
            f"Your verification code is {code}. It expires in {self.ttl_minutes} minutes.",
            "plain",
        )
        msg["Subject"] = "Your verification code"
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(e))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=mask_address(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("email_code_sent", to=mask_address(to_email))
        return True

    async def send_code(self, address: str, code: str) -> bool:
        return await asyncio.to_thread(self._send, address, code)


class HttpSmsSender:
    """SMS delivery through an HTTP gateway that accepts a JSON message."""

    name = "http-sms"

    def __init__(
        self,
        *,
        gateway_url: Optional[str] = None,
        api_key: Optional[str] = None,
        sender_id: str = "AUTH",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.gateway_url = gateway_url
        self.api_key = api_key
        self.sender_id = sender_id
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.gateway_url and self.api_key)

    async def send_code(self, address: str, code: str) -> bool:
        payload = {
            "to": address,
            "from": self.sender_id,
            "text": f"Your verification code is {code}",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.post(
                    self.gateway_url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "sms_gateway_rejected",
                to=mask_address(address),
                status_code=e.response.status_code,
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "sms_send_failed",
                to=mask_address(address),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("sms_code_sent", to=mask_address(address))
        return True


def _candidates(channel: Channel, settings: Settings) -> List[CodeSender]:
    if channel == Channel.EMAIL:
        return [
            SmtpEmailSender(
                smtp_host=settings.smtp_host,
                smtp_port=settings.smtp_port,
                smtp_user=settings.smtp_user,
                smtp_password=settings.smtp_password,
                smtp_use_tls=settings.smtp_use_tls,
                from_email=settings.email_from_address,
                from_name=settings.email_from_name,
                ttl_minutes=max(1, settings.verification_code_ttl_seconds // 60),
            )
        ]
    return [
        HttpSmsSender(
            gateway_url=settings.sms_gateway_url,
            api_key=settings.sms_gateway_api_key,
            sender_id=settings.sms_sender_id,
        )
    ]


def select_sender(channel: Channel, settings: Settings) -> CodeSender:
    """Pick the first configured sender for ``channel`` at startup."""
    for sender in _candidates(channel, settings):
        if sender.is_configured:
            logger.info("code_sender_selected", channel=channel.value, sender=sender.name)
            return sender
    if settings.is_production:
        logger.warning("code_sender_unconfigured", channel=channel.value)
    return LoggingCodeSender(channel)

from __future__ import annotations

import html
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Any, Awaitable, Callable, Protocol

import aiosmtplib
import httpx
import structlog

from line_checks.errors import NotificationDeliveryError
from line_checks.models import NotificationResult, utc_now


logger = structlog.get_logger(__name__)

TELEGRAM_MAX_MESSAGE_LEN = 3900


class Notifier(Protocol):
    async def send_failure_alert(
        self, recipient: str | None, line_phone: str | None, failure_reasons: list[str]
    ) -> NotificationResult: ...


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int = 587
    username: str | None = None
    password: str | None = None
    sender: str | None = None
    start_tls: bool = True
    timeout_seconds: float = 30.0

    @property
    def use_tls(self) -> bool:
        return int(self.port) == 465


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    chat_id: str


def build_alert_subject(line_phone: str | None) -> str:
    return f"Line down alert: {line_phone or 'unknown line'}"


def build_alert_text(line_phone: str | None, failure_reasons: list[str], *, at: datetime | None = None) -> str:
    when = (at or utc_now()).strftime("%Y-%m-%d %H:%M:%S UTC")
    lines = [
        "Line health check failed",
        f"line: {line_phone or '-'}",
        f"detected_at: {when}",
        "issues:",
    ]
    lines.extend(f"- {r}" for r in (failure_reasons or ["Unknown failure"]))
    lines.append("")
    lines.append("You will not be alerted again for this line until it has been healthy for 2 days.")
    return "\n".join(lines)


def build_alert_html(line_phone: str | None, failure_reasons: list[str], *, at: datetime | None = None) -> str:
    when = (at or utc_now()).strftime("%Y-%m-%d %H:%M:%S UTC")
    items = "".join(f"<li>{html.escape(r)}</li>" for r in (failure_reasons or ["Unknown failure"]))
    return (
        "<html><body style=\"font-family: Arial, sans-serif; padding: 20px;\">"
        "<h2 style=\"color: #c62828;\">Line health check failed</h2>"
        f"<p><strong>Line:</strong> {html.escape(line_phone or '-')}</p>"
        f"<p><strong>Detected at:</strong> {html.escape(when)}</p>"
        f"<p><strong>Issues:</strong></p><ul>{items}</ul>"
        "<hr style=\"margin: 20px 0;\">"
        "<p style=\"color: #666; font-size: 12px;\">"
        "You will not be alerted again for this line until it has been healthy for 2 days."
        "</p></body></html>"
    )


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    remaining = (text or "").strip()
    if not remaining:
        return [""]
    max_len = max(1, int(max_len))
    parts: list[str] = []
    while len(remaining) > max_len:
        cut = remaining.rfind("\n", 0, max_len + 1)
        if cut < max_len * 0.6:
            cut = max_len
        parts.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    if remaining:
        parts.append(remaining)
    return parts


SendFunc = Callable[..., Awaitable[Any]]


class EmailNotifier:
    """SMTP alert transport. ``send`` defaults to ``aiosmtplib.send``."""

    def __init__(self, config: SmtpConfig, *, send: SendFunc | None = None) -> None:
        self.config = config
        self._send = send or aiosmtplib.send

    def build_message(
        self, recipient: str, line_phone: str | None, failure_reasons: list[str]
    ) -> EmailMessage:
        now = utc_now()
        msg = EmailMessage()
        msg["From"] = self.config.sender or self.config.username or "line-monitor@localhost"
        msg["To"] = recipient
        msg["Subject"] = build_alert_subject(line_phone)
        msg.set_content(build_alert_text(line_phone, failure_reasons, at=now))
        msg.add_alternative(build_alert_html(line_phone, failure_reasons, at=now), subtype="html")
        return msg

    async def deliver(self, recipient: str, line_phone: str | None, failure_reasons: list[str]) -> None:
        msg = self.build_message(recipient, line_phone, failure_reasons)
        try:
            await self._send(
                msg,
                hostname=self.config.host,
                port=int(self.config.port),
                username=self.config.username or None,
                password=self.config.password or None,
                use_tls=self.config.use_tls,
                start_tls=self.config.start_tls and not self.config.use_tls,
                timeout=self.config.timeout_seconds,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            raise NotificationDeliveryError(f"{type(e).__name__}: {e}") from e

    async def send_failure_alert(
        self, recipient: str | None, line_phone: str | None, failure_reasons: list[str]
    ) -> NotificationResult:
        if not (recipient or "").strip():
            return NotificationResult(success=False, error="No recipient email on line")
        try:
            await self.deliver(recipient.strip(), line_phone, failure_reasons)
        except NotificationDeliveryError as e:
            logger.error("Alert email failed", recipient=recipient, line_phone=line_phone, error=str(e))
            return NotificationResult(success=False, error=str(e))
        logger.info("Alert email sent", recipient=recipient, line_phone=line_phone)
        return NotificationResult(success=True)


class TelegramNotifier:
    def __init__(self, client: httpx.AsyncClient, config: TelegramConfig) -> None:
        self.client = client
        self.config = config

    def _redact(self, text: str) -> str:
        if self.config.bot_token:
            return text.replace(self.config.bot_token, "<redacted>")
        return text

    async def send_text(self, text: str) -> tuple[bool, list[dict]]:
        url = f"https://api.telegram.org/bot{self.config.bot_token}/sendMessage"
        ok_all = True
        responses: list[dict] = []
        for part in split_telegram_message(text):
            try:
                resp = await self.client.post(url, json={"chat_id": self.config.chat_id, "text": part}, timeout=15.0)
                data = resp.json()
                ok = bool(data.get("ok"))
            except (httpx.HTTPError, ValueError) as e:
                data = {"ok": False, "error": self._redact(f"{type(e).__name__}: {e}")}
                ok = False
            ok_all = ok_all and ok
            responses.append(data)
        return ok_all, responses

    async def send_failure_alert(
        self, recipient: str | None, line_phone: str | None, failure_reasons: list[str]
    ) -> NotificationResult:
        text = build_alert_text(line_phone, failure_reasons)
        if recipient:
            text = f"{text}\nowner: {recipient}"
        ok, responses = await self.send_text(text)
        if ok:
            return NotificationResult(success=True)
        errors = [str(r.get("error") or r.get("description") or "") for r in responses if not r.get("ok")]
        error = "; ".join(e for e in errors if e) or "telegram_send_failed"
        logger.warning("Telegram alert failed", line_phone=line_phone, error=error)
        return NotificationResult(success=False, error=error)


class FanoutNotifier:
    """Deliver through ``primary`` and mirror to ``mirrors``; only the primary decides success."""

    def __init__(self, primary: Notifier, mirrors: list[Notifier] | None = None) -> None:
        self.primary = primary
        self.mirrors = list(mirrors or [])

    async def send_failure_alert(
        self, recipient: str | None, line_phone: str | None, failure_reasons: list[str]
    ) -> NotificationResult:
        result = await self.primary.send_failure_alert(recipient, line_phone, failure_reasons)
        for mirror in self.mirrors:
            mirrored = await mirror.send_failure_alert(recipient, line_phone, failure_reasons)
            if not mirrored.success:
                logger.warning("Alert mirror failed", mirror=type(mirror).__name__, error=mirrored.error)
        return result


class LogOnlyNotifier:
    async def send_failure_alert(
        self, recipient: str | None, line_phone: str | None, failure_reasons: list[str]
    ) -> NotificationResult:
        logger.warning(
            "No alert transport configured",
            recipient=recipient,
            line_phone=line_phone,
            failure_reasons=failure_reasons,
        )
        return NotificationResult(success=False, error="no_transport_configured")

from __future__ import annotations

import html
from typing import Protocol

import httpx
from structlog.typing import FilteringBoundLogger

from .archive import byte_count_iec
from .config import TelegramConfig
from .errors import NotifyError, error_message
from .models import RunOutcome

TELEGRAM_API_URL = "https://api.telegram.org"
TELEGRAM_MESSAGE_LIMIT = 4096
TELEGRAM_TIMEOUT_SECONDS = 10.0
_TRUNCATION_MARKER = "…\n"


class Notifier(Protocol):
    def notify(self, outcome: RunOutcome, log: FilteringBoundLogger) -> None: ...


class NullNotifier:
    def notify(self, outcome: RunOutcome, log: FilteringBoundLogger) -> None:
        return None


class TelegramNotifier:
    """Sends the run report to a Telegram chat. Delivery failures are logged, never raised."""

    def __init__(
        self,
        *,
        bot_token: str,
        chat_id: int,
        http_client: httpx.Client,
        api_url: str = TELEGRAM_API_URL,
    ) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.http_client = http_client
        self.api_url = api_url.rstrip("/")

    def notify(self, outcome: RunOutcome, log: FilteringBoundLogger) -> None:
        text = format_report(outcome)
        log.info("sending_telegram_notification", chat_id=self.chat_id)
        try:
            self.send(text)
        except NotifyError as error:
            log.error("notification_failed", stage="notify", error=str(error))
            return
        log.info("sent_telegram_notification")

    def send(self, text: str) -> None:
        try:
            response = self.http_client.post(
                f"{self.api_url}/bot{self.bot_token}/sendMessage",
                json={"chat_id": self.chat_id, "text": text, "parse_mode": "HTML"},
                timeout=TELEGRAM_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as error:
            raise NotifyError(f"Telegram request failed: {self._redact(error_message(error))}") from error
        if response.is_error:
            raise NotifyError(
                f"Telegram API responded {response.status_code}: {_telegram_description(response)}"
            )

    def _redact(self, text: str) -> str:
        return text.replace(self.bot_token, "***")


def build_notifier(config: TelegramConfig, http_client: httpx.Client) -> Notifier:
    if not config.enabled or config.bot_token is None or config.chat_id is None:
        return NullNotifier()
    return TelegramNotifier(bot_token=config.bot_token, chat_id=config.chat_id, http_client=http_client)


def format_report(outcome: RunOutcome, *, limit: int = TELEGRAM_MESSAGE_LIMIT) -> str:
    name = html.escape(outcome.workload.name if outcome.workload else "workload")
    if outcome.succeeded:
        header = f"\N{SPOUTING WHALE} Backup of {name} has <b>succeeded</b>\n"
    else:
        header = f"\N{ALIEN MONSTER} Backup of {name} has <b>failed</b>\n"
    if outcome.archive_size_bytes is not None:
        header += f"Tarball size: {byte_count_iec(outcome.archive_size_bytes)}\n"
    header += "\nLog output was:\n<pre>"
    footer = "</pre>"
    return header + _fit_log(outcome.captured_log, limit - len(header) - len(footer)) + footer


def _fit_log(captured_log: str, budget: int) -> str:
    escaped = html.escape(captured_log)
    if len(escaped) <= budget:
        return escaped

    # Keep whole lines from the end; failures are reported last.
    kept: list[str] = []
    used = len(_TRUNCATION_MARKER)
    for line in reversed(captured_log.splitlines(keepends=True)):
        escaped_line = html.escape(line)
        if used + len(escaped_line) > budget:
            break
        kept.append(escaped_line)
        used += len(escaped_line)
    return _TRUNCATION_MARKER + "".join(reversed(kept))


def _telegram_description(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(payload, dict) and payload.get("description"):
        return str(payload["description"])
    return response.reason_phrase

"""Telegram Bot API client used as the single outbound chat transport.

Every public call returns a `SendResult`; nothing raises past this module.
Auth problems, timeouts, network errors, rate limits and malformed replies all
collapse into `SendResult(ok=False, ...)`.
"""

from dataclasses import dataclass
from time import perf_counter
from typing import Any, Protocol

import httpx

from eitcrm.common.logging import logger
from eitcrm.common.metrics import telegram_api_calls_total, telegram_api_latency_seconds
from eitcrm.common.tracing import get_tracer


PARSE_MODES = frozenset({"HTML", "MarkdownV2"})

# Lower-cased fragments of Bot API descriptions that will never succeed on retry.
PERMANENT_ERROR_MARKERS = (
    "chat not found",
    "bot was blocked by the user",
    "bot was kicked",
    "user is deactivated",
    "bot can't initiate conversation",
    "peer_id_invalid",
)

tracer = get_tracer(__name__)


@dataclass(frozen=True, slots=True)
class SendResult:
    """Normalized outcome of one Bot API call."""

    ok: bool
    message_id: int | None = None
    error: str | None = None
    payload: Any = None
    http_status: int | None = None
    permanent: bool = False

    @classmethod
    def failure(
        cls,
        error: str,
        payload: Any = None,
        http_status: int | None = None,
        permanent: bool = False,
    ) -> "SendResult":
        return cls(ok=False, error=error, payload=payload, http_status=http_status, permanent=permanent)


class ChatTransport(Protocol):
    """What the dispatcher, sweeper and webhook processor need from a chat API."""

    async def send_message(
        self,
        chat_id: str,
        text: str,
        parse_mode: str | None = None,
        reply_markup: dict | None = None,
    ) -> SendResult: ...

    async def answer_callback_query(self, callback_query_id: str, text: str) -> SendResult: ...


def normalize_parse_mode(mode: str | None) -> str | None:
    """Keep only parse modes the Bot API understands; drop anything else."""

    return mode if mode in PARSE_MODES else None


def is_permanent_error(http_status: int | None, description: str) -> bool:
    if http_status == 403:
        return True
    lowered = description.lower()
    return any(marker in lowered for marker in PERMANENT_ERROR_MARKERS)


def contact_request_keyboard(button_text: str) -> dict:
    """One-time reply keyboard whose single button shares the user's phone."""

    return {
        "keyboard": [[{"text": button_text, "request_contact": True}]],
        "resize_keyboard": True,
        "one_time_keyboard": True,
    }


def inline_keyboard(rows: list[list[dict]]) -> dict:
    return {"inline_keyboard": rows}


REMOVE_KEYBOARD = {"remove_keyboard": True}


def wire_chat_id(chat_id: str) -> int | str:
    """Convert the canonical string chat id to the Bot API wire type."""

    stripped = chat_id.strip()
    if stripped.lstrip("-").isdigit():
        return int(stripped)
    return stripped


class TelegramTransport:
    """Thin async Bot API client with an explicit per-call timeout."""

    def __init__(
        self,
        token: str,
        api_base: str = "https://api.telegram.org",
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.token = token
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def send_message(
        self,
        chat_id: str,
        text: str,
        parse_mode: str | None = None,
        reply_markup: dict | None = None,
    ) -> SendResult:
        body: dict[str, Any] = {
            "chat_id": wire_chat_id(chat_id),
            "text": text,
            "disable_web_page_preview": True,
        }
        mode = normalize_parse_mode(parse_mode)
        if mode:
            body["parse_mode"] = mode
        if reply_markup is not None:
            body["reply_markup"] = reply_markup
        return await self._call("sendMessage", body, expect_message=True)

    async def answer_callback_query(self, callback_query_id: str, text: str) -> SendResult:
        return await self._call(
            "answerCallbackQuery",
            {"callback_query_id": callback_query_id, "text": text},
            expect_message=False,
        )

    async def _post(self, url: str, body: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=body, timeout=self.timeout_seconds)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(url, json=body)

    async def _call(self, method: str, body: dict, expect_message: bool) -> SendResult:
        if not self.token:
            result = SendResult.failure("Missing TELEGRAM_BOT_TOKEN")
            telegram_api_calls_total.labels(method=method, outcome="config_error").inc()
            return result

        url = f"{self.api_base}/bot{self.token}/{method}"
        start = perf_counter()
        with tracer.start_as_current_span(f"telegram.{method}") as span:
            try:
                response = await self._post(url, body)
            except httpx.TimeoutException:
                result = SendResult.failure(f"Telegram {method} timed out after {self.timeout_seconds}s")
            except httpx.HTTPError as exc:
                result = SendResult.failure(str(exc) or exc.__class__.__name__)
            except Exception as exc:
                logger.exception("telegram_call_unexpected_error method=%s", method)
                result = SendResult.failure(
                    str(exc) or "Telegram call failed",
                    payload={"name": exc.__class__.__name__, "message": str(exc)},
                )
            else:
                result = self._interpret(response, expect_message)
            span.set_attribute("telegram.ok", result.ok)
            if result.http_status is not None:
                span.set_attribute("http.status_code", result.http_status)

        telegram_api_latency_seconds.labels(method=method).observe(max(0.0, perf_counter() - start))
        if result.ok:
            outcome = "ok"
        elif result.permanent:
            outcome = "permanent_error"
        else:
            outcome = "error"
        telegram_api_calls_total.labels(method=method, outcome=outcome).inc()
        if not result.ok:
            logger.warning(
                "telegram_call_failed method=%s status=%s permanent=%s error=%s",
                method,
                result.http_status,
                result.permanent,
                result.error,
            )
        return result

    def _interpret(self, response: httpx.Response, expect_message: bool) -> SendResult:
        # Bot API replies are {"ok": bool, "result"?: ..., "description"?: str}.
        try:
            data = response.json()
        except ValueError:
            data = None

        ok = isinstance(data, dict) and data.get("ok") is True
        if response.status_code >= 400 or not ok:
            description = data.get("description") if isinstance(data, dict) else None
            if not isinstance(description, str):
                description = f"HTTP {response.status_code}"
            return SendResult.failure(
                description,
                payload=data,
                http_status=response.status_code,
                permanent=is_permanent_error(response.status_code, description),
            )

        if not expect_message:
            return SendResult(ok=True, http_status=response.status_code)

        result = data.get("result")
        raw_id = result.get("message_id") if isinstance(result, dict) else None
        if isinstance(raw_id, str) and raw_id.isdigit():
            raw_id = int(raw_id)
        if not isinstance(raw_id, int) or isinstance(raw_id, bool):
            return SendResult.failure(
                "Telegram response missing message_id",
                payload=data,
                http_status=response.status_code,
            )
        return SendResult(ok=True, message_id=raw_id, http_status=response.status_code)

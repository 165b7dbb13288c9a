# ============================================================================
# WEBHOOK PARSERS
# ============================================================================
# STATUS: Core - Per-source callback payload parsing
# PURPOSE: Extract external task id, status, result and error from callbacks
# CREATED: 19 OCT 2026
# ============================================================================
"""
Webhook Parsers

Each provider calls back with its own JSON shape. A parser pulls out:

    external_id   provider task id (None when the event is not about a task)
    raw_status    provider status string, normalized later
    result_url    output location on success
    error         error text on failure

Sources (aliases kept for providers configured with the long name):
    rhub / runninghub    AI-app eventData format and legacy flat format
    kapi / kie           {"data": {"taskId", "state", "resultJson", "failMsg"}}
    jcut / jsoncut       flat task_id / status / output_url / error
    sapi / postforme     social post results
    anything else        generic flat parser

Provider error text is mapped to user-facing messages by
sanitize_error_message(); the raw text is logged.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from handlers.providers import normalize_status
from handlers.registry import ExternalResult
from core.contracts import ExternalOutcome

logger = logging.getLogger(__name__)


@dataclass
class ParsedWebhook:
    """Fields extracted from one callback payload."""
    external_id: Optional[str] = None
    raw_status: Optional[str] = None
    result_url: Optional[str] = None
    error: Optional[str] = None

    def to_result(self, source: str) -> ExternalResult:
        """Normalize into an ExternalResult."""
        outcome = normalize_status(self.raw_status)
        if outcome == ExternalOutcome.SUCCESS:
            return ExternalResult.success(
                {"result_url": self.result_url, "provider": source},
                raw_status=self.raw_status,
            )
        if outcome == ExternalOutcome.FAILURE:
            return ExternalResult.failure(self.error or "Task failed", raw_status=self.raw_status)
        return ExternalResult.pending(raw_status=self.raw_status)


# ============================================================================
# ERROR SANITIZING
# ============================================================================

_ERROR_PATTERNS = [
    (re.compile(r"SSL|SSLError|HTTPS|ConnectionPool|Max retries", re.I),
     "Connection error. Please try again later."),
    (re.compile(r"rate limit|too many requests|throttl", re.I),
     "Service busy. Please try again in a few minutes."),
    (re.compile(r"Failed to fetch|load image|LoadImageFromUrl", re.I),
     "Failed to load input media. Please check your file and try again."),
    (re.compile(r"[\u4e00-\u9fff]"),
     "Generation service temporarily unavailable. Please try again later."),
    (re.compile(r"content policy|moderation|nsfw|inappropriate", re.I),
     "Content could not be processed. Please adjust your input."),
    (re.compile(r"GPU|out of memory|resource|CUDA", re.I),
     "Service is experiencing high demand. Please try again later."),
    (re.compile(r"timeout|timed out", re.I),
     "Request timed out. Please try again."),
    (re.compile(r"APIKEY|API.?KEY", re.I),
     "Service configuration error. Please contact support."),
]

DEFAULT_ERROR_MESSAGE = "Generation failed. Please try again later."


def sanitize_error_message(raw_error: str) -> str:
    """Map raw provider error text onto a generic user-facing message (first match wins)."""
    for pattern, message in _ERROR_PATTERNS:
        if pattern.search(raw_error or ""):
            return message
    return DEFAULT_ERROR_MESSAGE


# ============================================================================
# PARSERS
# ============================================================================

def _maybe_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


def parse_runninghub(payload: Dict[str, Any]) -> ParsedWebhook:
    """RunningHub: AI-app eventData envelope, or the legacy flat format."""
    if "eventData" not in payload:
        return ParsedWebhook(
            external_id=_str_or_none(payload.get("task_id") or payload.get("id")),
            raw_status=_str_or_none(payload.get("status")),
            result_url=payload.get("result_url") or payload.get("output_url"),
            error=_str_or_none(payload.get("error")),
        )

    parsed = ParsedWebhook(external_id=_str_or_none(payload.get("taskId")))
    event_data = _maybe_json(payload["eventData"]) or {}
    event = payload.get("event", "")

    code = event_data.get("code") if isinstance(event_data, dict) else None
    if code not in (None, 0, "0"):
        raw_error = event_data.get("msg") or "Task failed"
        detail = event_data.get("data")
        if isinstance(detail, dict):
            raw_error = (detail.get("failedReason") or {}).get("exception_message") or raw_error
        logger.warning(f"RunningHub task {parsed.external_id} failed: code={code}, raw_msg={raw_error}")
        parsed.raw_status = "failed"
        parsed.error = sanitize_error_message(str(raw_error))
    elif event == "TASK_FAIL":
        raw_error = payload.get("msg") or "Task failed"
        logger.warning(f"RunningHub TASK_FAIL {parsed.external_id}: raw_msg={raw_error}")
        parsed.raw_status = "failed"
        parsed.error = sanitize_error_message(str(raw_error))
    elif event == "TASK_END":
        parsed.raw_status = "completed"
        files = event_data.get("data") if isinstance(event_data, dict) else None
        if isinstance(files, list):
            with_url = [item for item in files if isinstance(item, dict) and item.get("fileUrl")]
            videos = [item for item in with_url if item.get("fileType") == "mp4"]
            chosen = videos or with_url
            if chosen:
                parsed.result_url = chosen[0]["fileUrl"]
    else:
        parsed.raw_status = "processing"
    return parsed


def parse_kie(payload: Dict[str, Any]) -> ParsedWebhook:
    """KIE: state success/fail/waiting, result URLs inside a JSON-encoded resultJson."""
    data = payload.get("data") or {}
    parsed = ParsedWebhook(external_id=_str_or_none(data.get("taskId")))

    state = data.get("state", "")
    if state == "success":
        parsed.raw_status = "completed"
    elif state == "fail":
        parsed.raw_status = "failed"
        parsed.error = data.get("failMsg") or "Task failed"
    else:
        parsed.raw_status = "processing"

    result = _maybe_json(data.get("resultJson"))
    if isinstance(result, dict):
        urls = result.get("resultUrls")
        if isinstance(urls, list) and urls:
            parsed.result_url = urls[0]
    return parsed


def parse_jsoncut(payload: Dict[str, Any]) -> ParsedWebhook:
    """JsonCut: flat task_id / status / output_url / error."""
    return ParsedWebhook(
        external_id=_str_or_none(payload.get("task_id")),
        raw_status=_str_or_none(payload.get("status")),
        result_url=payload.get("output_url"),
        error=_str_or_none(payload.get("error")),
    )


def parse_postforme(payload: Dict[str, Any]) -> ParsedWebhook:
    """Postforme: social post results; account events carry no task."""
    event_type = payload.get("event_type") or payload.get("type") or ""
    data = payload.get("data") or payload

    if event_type != "social.post.result.created" and "post_id" not in data:
        logger.info(f"Postforme event without task: {event_type or 'unknown'}")
        return ParsedWebhook()

    success = data.get("success")
    if success is True or success == "true":
        raw_status = "completed"
    elif success is False or success == "false":
        raw_status = "failed"
    else:
        raw_status = data.get("status") or "completed"

    platform = data.get("platform_data") or {}
    error = data.get("error")
    if isinstance(error, dict):
        error = error.get("message") or json.dumps(error)

    return ParsedWebhook(
        external_id=_str_or_none(data.get("post_id") or data.get("social_post_id") or data.get("id")),
        raw_status=_str_or_none(raw_status),
        result_url=platform.get("url") or platform.get("post_url"),
        error=_str_or_none(error),
    )


def parse_generic(payload: Dict[str, Any]) -> ParsedWebhook:
    """Best-effort flat format for sources without a dedicated parser."""
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    return ParsedWebhook(
        external_id=_str_or_none(
            data.get("task_id") or data.get("taskId") or data.get("id") or payload.get("task_id")
        ),
        raw_status=_str_or_none(data.get("status") or data.get("state")),
        result_url=data.get("result_url") or data.get("output_url") or data.get("url"),
        error=_str_or_none(data.get("error") or data.get("error_message")),
    )


PARSERS: Dict[str, Callable[[Dict[str, Any]], ParsedWebhook]] = {
    "rhub": parse_runninghub,
    "runninghub": parse_runninghub,
    "kapi": parse_kie,
    "kie": parse_kie,
    "jcut": parse_jsoncut,
    "jsoncut": parse_jsoncut,
    "sapi": parse_postforme,
    "postforme": parse_postforme,
}


def parse_webhook(source: str, payload: Dict[str, Any]) -> ParsedWebhook:
    """Dispatch to the source's parser, falling back to the generic one."""
    parser = PARSERS.get(source.lower(), parse_generic)
    return parser(payload)


__all__ = [
    "ParsedWebhook",
    "parse_webhook",
    "sanitize_error_message",
    "DEFAULT_ERROR_MESSAGE",
    "PARSERS",
]

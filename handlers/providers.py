# ============================================================================
# HTTP PROVIDER ADAPTER
# ============================================================================
# STATUS: Core - Generic submit/poll client for asynchronous AI APIs
# PURPOSE: ExternalNode implementation over HTTP with error classification
# CREATED: 19 OCT 2026
# ============================================================================
"""
HTTP Provider Adapter

Async httpx client implementing ExternalNode.submit()/poll() for
providers that follow the usual "create task, then ask for its status"
shape. Field locations in the provider's JSON are configured as dotted
paths ("data.taskId", "data.resultJson.resultUrls.0").

Error classification:
    timeout, connection error, 429, 5xx  -> TransientProviderError
    other 4xx, missing task id           -> PermanentProviderError

Provider statuses are normalized at this boundary into the closed
ExternalOutcome set (success / failure / pending).
"""

import json
import logging
from typing import Any, Dict, Optional

import httpx

from core.contracts import ExternalOutcome
from handlers.registry import (
    ExternalNode,
    ExternalResult,
    NodeContext,
    PermanentProviderError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

# Timeout: 10s connect, 30s read; submit must return well inside a queue lease
DEFAULT_TIMEOUT = httpx.Timeout(connect=10.0, read=30.0, write=30.0, pool=10.0)


# ============================================================================
# STATUS NORMALIZATION
# ============================================================================

SUCCESS_STATUSES = frozenset({"success", "succeeded", "done", "completed", "complete", "finished"})
FAILURE_STATUSES = frozenset({"error", "failed", "fail", "failure", "cancelled", "canceled"})


def normalize_status(raw_status: Any) -> ExternalOutcome:
    """Map a provider status string onto success / failure / pending (case-insensitive)."""
    if raw_status is None:
        return ExternalOutcome.PENDING
    value = str(raw_status).strip().lower()
    if value in SUCCESS_STATUSES:
        return ExternalOutcome.SUCCESS
    if value in FAILURE_STATUSES:
        return ExternalOutcome.FAILURE
    return ExternalOutcome.PENDING


def dig(data: Any, path: Optional[str]) -> Any:
    """
    Follow a dotted path through dicts and lists.

    Numeric segments index lists. A string met mid-path is parsed as
    JSON (providers like to nest encoded JSON).
    """
    if not path:
        return None
    current = data
    for segment in path.split("."):
        if isinstance(current, str):
            try:
                current = json.loads(current)
            except ValueError:
                return None
        if isinstance(current, dict):
            current = current.get(segment)
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


# ============================================================================
# ADAPTER
# ============================================================================

class HttpProviderAdapter(ExternalNode):
    """ExternalNode speaking JSON over HTTP."""

    def __init__(
        self,
        provider: str,
        base_url: str,
        submit_path: str = "/tasks",
        status_path: str = "/tasks/{task_id}",
        api_key: Optional[str] = None,
        api_key_header: str = "Authorization",
        task_id_field: str = "task_id",
        status_field: str = "status",
        result_field: str = "result_url",
        error_field: str = "error",
        callback_url: Optional[str] = None,
        callback_field: str = "callback_url",
        static_body: Optional[Dict[str, Any]] = None,
        timeout: Optional[httpx.Timeout] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            provider: Provider name (also the webhook source)
            base_url: Provider API root
            submit_path: POST path that creates a task
            status_path: GET path template with {task_id}
            api_key: Sent in api_key_header (Bearer for Authorization)
            task_id_field: Dotted path of the task id in the submit response
            status_field: Dotted path of the status in the status response
            result_field: Dotted path of the result URL in the status response
            error_field: Dotted path of the error text in the status response
            callback_url: Webhook URL passed to the provider, if any
            callback_field: Body key the provider expects the callback under
            static_body: Extra fields merged into every submit body
            timeout: httpx timeout (defaults to DEFAULT_TIMEOUT)
            transport: httpx transport override (tests)
        """
        self.provider = provider
        self._base_url = base_url.rstrip("/")
        self.submit_path = submit_path
        self.status_path = status_path
        self.api_key = api_key
        self.api_key_header = api_key_header
        self.task_id_field = task_id_field
        self.status_field = status_field
        self.result_field = result_field
        self.error_field = error_field
        self.callback_url = callback_url
        self.callback_field = callback_field
        self.static_body = dict(static_body or {})
        self._timeout = timeout or DEFAULT_TIMEOUT
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            if self.api_key_header.lower() == "authorization":
                headers["Authorization"] = f"Bearer {self.api_key}"
            else:
                headers[self.api_key_header] = self.api_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make a request to the provider and return the JSON body.

        Raises:
            TransientProviderError: timeout, connection failure, 429, 5xx
            PermanentProviderError: other 4xx, non-JSON body
        """
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.request(method, url, json=json_body, headers=self._headers())
        except httpx.ConnectError as e:
            raise TransientProviderError(f"Cannot reach {self.provider} at {url}: {e}") from e
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"{self.provider} timeout: {url}: {e}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"{self.provider} transport error: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientProviderError(
                f"{self.provider} returned {resp.status_code}: {resp.text[:200]}"
            )
        if resp.status_code >= 400:
            raise PermanentProviderError(
                f"{self.provider} rejected request ({resp.status_code}): {resp.text[:200]}"
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise PermanentProviderError(f"{self.provider} returned non-JSON body") from e
        if not isinstance(body, dict):
            raise PermanentProviderError(f"{self.provider} returned {type(body).__name__}, expected object")
        return body

    async def submit(self, ctx: NodeContext) -> str:
        """
        POST the node inputs to the provider.

        Returns:
            The provider's task id
        """
        body = {**self.static_body, **ctx.inputs}
        if self.callback_url:
            body[self.callback_field] = self.callback_url

        response = await self._request("POST", self.submit_path, json_body=body)
        task_id = dig(response, self.task_id_field)
        if not task_id:
            error = dig(response, self.error_field)
            raise PermanentProviderError(
                f"{self.provider} did not return a task id"
                + (f": {error}" if error else "")
            )

        logger.info(f"Submitted node {ctx.node_id} to {self.provider}: task {task_id}")
        return str(task_id)

    async def poll(self, external_task_id: str) -> ExternalResult:
        """GET the task status and normalize it."""
        response = await self._request("GET", self.status_path.format(task_id=external_task_id))
        return self.interpret(response)

    def interpret(self, response: Dict[str, Any]) -> ExternalResult:
        """Turn a provider status document into an ExternalResult."""
        raw_status = dig(response, self.status_field)
        outcome = normalize_status(raw_status)
        if outcome == ExternalOutcome.SUCCESS:
            result_url = dig(response, self.result_field)
            return ExternalResult.success(
                {"result_url": result_url, "provider": self.provider},
                raw_status=str(raw_status),
            )
        if outcome == ExternalOutcome.FAILURE:
            error = dig(response, self.error_field) or f"{self.provider} reported {raw_status}"
            return ExternalResult.failure(str(error), raw_status=str(raw_status))
        return ExternalResult.pending(raw_status=str(raw_status) if raw_status is not None else None)


__all__ = [
    "HttpProviderAdapter",
    "normalize_status",
    "dig",
    "SUCCESS_STATUSES",
    "FAILURE_STATUSES",
    "DEFAULT_TIMEOUT",
]

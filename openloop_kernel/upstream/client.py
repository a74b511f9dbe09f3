"""
Upstream collaborators: the message source and the obligation classifier.

Both are pluggable behind Protocols; the HTTP implementations talk to the
message-source service and a classifier endpoint with httpx. Transient
failures (transport errors, 5xx) are retried a fixed number of times with
a short fixed backoff; anything left over surfaces as UpstreamError.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, TypeVar

import httpx

from openloop_kernel.models.extraction import ClassifierContext
from openloop_kernel.models.message import (
    BackfillTarget,
    ConversationHeat,
    CoverageSnapshot,
    FetchResult,
    HeatTier,
    Message,
    SourceStatus,
)
from openloop_kernel.timeutil import ensure_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_ATTEMPTS = 3
RETRY_BACKOFF_SECONDS = (0.25, 0.75, 1.5)


class UpstreamError(Exception):
    """An upstream call failed after retries, or failed permanently."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MessageSource(Protocol):
    async def fetch_since(
        self, since: datetime, limit: int, conversation_id: Optional[str] = None
    ) -> FetchResult: ...

    async def fetch_status(self) -> SourceStatus: ...

    async def fetch_coverage(self) -> CoverageSnapshot: ...

    async def set_backfill_targets(self, targets: List[BackfillTarget]) -> None: ...


class Classifier(Protocol):
    async def extract(self, context: ClassifierContext) -> List[Any]: ...


async def with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    attempts: int = RETRY_ATTEMPTS,
    backoff: Sequence[float] = RETRY_BACKOFF_SECONDS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "upstream",
) -> T:
    """Run `call`, retrying transport errors and 5xx responses."""
    for attempt in range(1, attempts + 1):
        try:
            return await call()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status < 500:
                raise UpstreamError(f"{label} rejected request: HTTP {status}", status) from exc
            if attempt >= attempts:
                raise UpstreamError(f"{label} failed: HTTP {status}", status) from exc
            logger.warning("%s returned HTTP %s (attempt %d/%d)", label, status, attempt, attempts)
        except httpx.TransportError as exc:
            if attempt >= attempts:
                raise UpstreamError(f"{label} unreachable: {exc}") from exc
            logger.warning("%s transport error (attempt %d/%d): %s", label, attempt, attempts, exc)
        await sleep(backoff[min(attempt - 1, len(backoff) - 1)])
    raise UpstreamError(f"{label} failed")


def _parse_wire_ts(value: Any) -> datetime:
    """Epoch seconds or milliseconds, or an ISO string."""
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def message_from_wire(data: Dict[str, Any], conversation_id: Optional[str] = None) -> Message:
    return Message(
        id=str(data["id"]),
        conversation_id=str(data.get("chatId") or data.get("conversationId") or conversation_id),
        ts=_parse_wire_ts(data["ts"]),
        from_me=bool(data.get("fromMe", False)),
        body=data.get("body") or "",
        sender=data.get("senderName"),
    )


def message_to_wire(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "chatId": message.conversation_id,
        "ts": int(message.ts.timestamp() * 1000),
        "fromMe": message.from_me,
        "body": message.body,
        "senderName": message.sender,
    }


class HttpMessageSource:
    """MessageSource backed by the message-source service's HTTP API."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff: Sequence[float] = RETRY_BACKOFF_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {"x-api-key": api_key} if api_key else {}
        self._transport = transport
        self._backoff = backoff

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        async def call():
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()
                if not response.content:
                    return {}
                try:
                    data = response.json()
                except ValueError as exc:
                    raise UpstreamError(f"{method} {path} returned invalid JSON") from exc
                return data if isinstance(data, dict) else {}

        return await with_retry(call, backoff=self._backoff, label=f"{method} {path}")

    async def fetch_since(
        self, since: datetime, limit: int, conversation_id: Optional[str] = None
    ) -> FetchResult:
        params: Dict[str, Any] = {"ts": int(since.timestamp() * 1000), "limit": limit}
        if conversation_id:
            params["chatId"] = conversation_id
        data = await self._request("GET", "/messages/since", params=params)
        messages = []
        for item in data.get("messages") or []:
            if not (isinstance(item, dict) and item.get("id") and item.get("ts") is not None):
                continue
            try:
                messages.append(message_from_wire(item, conversation_id))
            except (ValueError, TypeError, OverflowError) as exc:
                logger.warning("Skipping undecodable message %r: %s", item.get("id"), exc)
        return FetchResult(
            messages=messages,
            truncated=bool(data.get("truncated") or data.get("hasMore")),
            total=data.get("total"),
        )

    async def fetch_status(self) -> SourceStatus:
        data = await self._request("GET", "/status")
        state = data.get("state")
        return SourceStatus(
            connected=bool(data.get("connected", state == "connected")),
            needs_auth=bool(data.get("needsQr") or data.get("needsAuth")),
            state=state,
            backfill=data.get("backfill") or {},
        )

    async def fetch_coverage(self) -> CoverageSnapshot:
        data = await self._request("GET", "/coverage/status")
        try:
            return self._coverage_from_wire(data)
        except (ValueError, TypeError) as exc:
            raise UpstreamError(f"coverage status is malformed: {exc}") from exc

    def _coverage_from_wire(self, data: Dict[str, Any]) -> CoverageSnapshot:
        hot = []
        for item in data.get("hotChats", []):
            if not isinstance(item, dict) or not item.get("chatId"):
                continue
            tier = str(item.get("heatTier", "low")).lower()
            hot.append(ConversationHeat(
                conversation_id=str(item["chatId"]),
                heat_tier=HeatTier(tier) if tier in ("low", "med", "high") else HeatTier.LOW,
                heat_score=float(item.get("heatScore") or 0.0),
                reasons=[str(r) for r in item.get("reasons", [])],
            ))
        return CoverageSnapshot(
            direct_conversations_total=int(data.get("directChatsTotal") or 0),
            direct_coverage_pct=float(data.get("directCoveragePct") or 0.0),
            hot_conversations=hot,
            max_target_messages=data.get("maxTargetMessages"),
        )

    async def set_backfill_targets(self, targets: List[BackfillTarget]) -> None:
        payload = {
            "targets": [
                {"chatId": t.conversation_id, "targetMessages": t.target_messages}
                for t in targets
            ]
        }
        await self._request("POST", "/backfill/targets", json=payload)


class HttpClassifier:
    """Classifier backed by an HTTP extraction endpoint returning {"openLoops": [...]}."""

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff: Sequence[float] = RETRY_BACKOFF_SECONDS,
    ):
        self.url = url
        self.timeout = timeout
        self._headers = {"authorization": f"Bearer {api_key}"} if api_key else {}
        self._transport = transport
        self._backoff = backoff

    async def extract(self, context: ClassifierContext) -> List[Any]:
        payload = {
            "conversationId": context.conversation_id,
            "contextMessages": [message_to_wire(m) for m in context.context_messages],
            "newMessages": [message_to_wire(m) for m in context.new_messages],
            "existingOpenLoops": context.existing_obligations,
        }

        async def call():
            async with httpx.AsyncClient(
                headers=self._headers, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
                try:
                    return response.json()
                except ValueError as exc:
                    raise UpstreamError("classifier returned invalid JSON") from exc

        data = await with_retry(call, backoff=self._backoff, label="classifier")
        items = data.get("openLoops") if isinstance(data, dict) else data
        if not isinstance(items, list):
            logger.warning("Classifier returned no candidate list for %s", context.conversation_id)
            return []
        return items

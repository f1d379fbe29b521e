import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .data_models import FinancialEvent, ensure_utc
from .errors import CollaboratorUnavailableError, EngineError, Stage

logger = logging.getLogger(__name__)
DEFAULT_TIMEOUT = httpx.Timeout(10.0, connect=3.0)

RETRYABLE_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.NetworkError,
)


def _is_retryable(exc: BaseException) -> bool:
    """Retry transport errors and HTTP 5xx only."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, RETRYABLE_EXCEPTIONS)


api_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    retry=retry_if_exception(_is_retryable),
    reraise=True,
)


def _translate(exc: Exception, stage: Stage, action: str) -> EngineError:
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code < 500:
        return EngineError(f"Event service rejected {action}: HTTP {exc.response.status_code}", stage)
    return CollaboratorUnavailableError(f"Event service unavailable during {action}: {exc}", stage)


class HTTPEventStore:
    """Remote event store spoken to over HTTP.

    Appends carry the event content hash as ``Idempotency-Key`` so a replayed
    append never records the same incident twice.
    """

    def __init__(
        self,
        base_url: str,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("base_url is required.")
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    @api_retry
    def _get_events(self, user_id: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        response = self._client.get(f"/users/{user_id}/events", params=params)
        response.raise_for_status()
        payload = response.json()
        if isinstance(payload, dict):
            return list(payload.get("events") or [])
        return list(payload or [])

    @api_retry
    def _post_event(self, event: FinancialEvent) -> Dict[str, Any]:
        response = self._client.post(
            f"/users/{event.user_id}/events",
            json=event.model_dump(mode="json"),
            headers={"Idempotency-Key": event.event_id},
        )
        response.raise_for_status()
        return response.json() if response.content else {}

    def list_events(self, user_id: str, since: Optional[datetime] = None) -> List[FinancialEvent]:
        params: Dict[str, str] = {}
        if since is not None:
            params["since"] = ensure_utc(since).isoformat()
        try:
            raw_events = self._get_events(user_id, params)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Failed to list events for user %s: %s", user_id, exc)
            raise _translate(exc, Stage.READ_HISTORY, "list_events") from exc

        events: List[FinancialEvent] = []
        for raw in raw_events:
            try:
                events.append(FinancialEvent.model_validate({**raw, "user_id": raw.get("user_id", user_id)}).with_id())
            except ValueError as exc:
                logger.warning("Skipping malformed event for user %s: %s", user_id, exc)
        logger.info("Fetched %d events for user %s", len(events), user_id)
        return events

    def append_event(self, event: FinancialEvent) -> str:
        event = event.with_id()
        try:
            payload = self._post_event(event)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Failed to append event %s for user %s: %s", event.event_id, event.user_id, exc)
            raise _translate(exc, Stage.UPDATE_PROFILE, "append_event") from exc
        event_id = str(payload.get("event_id") or event.event_id)
        logger.info("Appended %s event %s for user %s", event.kind.value, event_id, event.user_id)
        return event_id

"""Best-effort delivery of completed sessions to an external HTTP endpoint."""

from __future__ import annotations

import logging
from typing import Any, Dict

import httpx

from app.common.models import ScraperSettings
from app.logging_utils import log_event
from app.storage.models import SessionRecord

logger = logging.getLogger(__name__)


def build_payload(record: SessionRecord) -> Dict[str, Any]:
    return {
        "session_id": record.id,
        "search_params": record.params.model_dump(mode="json"),
        "timestamp": record.start_time.isoformat(),
        "result_count": len(record.results),
        "results": [r.model_dump(mode="json") for r in record.results],
    }


class ExternalSink:
    """POSTs one payload per completed session with a bearer credential.

    Delivery is attempted once. A missing endpoint or key skips the call;
    transport failures and non-2xx responses are logged and reported as
    ``False`` to the caller, never raised.
    """

    def __init__(
        self,
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    async def deliver(self, record: SessionRecord, settings: ScraperSettings) -> bool:
        if not settings.sink_configured:
            logger.debug("External sink not configured; skipping session %s", record.id)
            return False

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {settings.api_key}",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    settings.api_endpoint,
                    json=build_payload(record),
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            log_event(
                logger,
                logging.ERROR,
                "sink_delivery_failed",
                session_id=record.id,
                error=f"{type(exc).__name__}: {exc}",
            )
            return False

        if response.is_success:
            log_event(
                logger,
                logging.INFO,
                "sink_delivery_succeeded",
                session_id=record.id,
                status_code=response.status_code,
            )
            return True

        log_event(
            logger,
            logging.ERROR,
            "sink_delivery_rejected",
            session_id=record.id,
            status_code=response.status_code,
            reason=response.reason_phrase,
        )
        return False

from typing import Protocol

import httpx
import structlog

from shared.config.settings import OrderServiceSettings

from .errors import PublishFailure

logger = structlog.get_logger(__name__)


class EventSink(Protocol):
    """Where the relay delivers event envelopes. Only the relay calls this."""

    async def publish(self, envelope: dict) -> None: ...

    async def aclose(self) -> None: ...


class LoggingEventSink:
    """Default sink: records each envelope in the structured log."""

    async def publish(self, envelope: dict) -> None:
        logger.info(
            "event_published",
            event_id=envelope["id"],
            event_type=envelope["type"],
            tenant_id=envelope["tenantId"],
        )

    async def aclose(self) -> None:
        return None


class HttpEventSink:
    """POSTs envelopes to a webhook. Anything but a 2xx is a failed delivery."""

    def __init__(self, url: str, timeout: float = 5.0, client: httpx.AsyncClient | None = None):
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def publish(self, envelope: dict) -> None:
        try:
            resp = await self._client.post(
                self._url, json=envelope, headers={"Idempotency-Key": envelope["id"]}
            )
        except httpx.HTTPError as exc:
            raise PublishFailure(envelope["id"], f"{type(exc).__name__}: {exc}") from exc
        if not resp.is_success:
            raise PublishFailure(envelope["id"], f"sink answered HTTP {resp.status_code}")

    async def aclose(self) -> None:
        await self._client.aclose()


def create_event_sink(settings: OrderServiceSettings) -> EventSink:
    if settings.event_sink_url:
        return HttpEventSink(settings.event_sink_url, timeout=settings.event_sink_timeout_seconds)
    return LoggingEventSink()

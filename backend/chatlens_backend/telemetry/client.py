from __future__ import annotations

from dataclasses import dataclass

import httpx

from ..config import AppConfig
from ..errors import ValidationError
from ..models.vitals import METRIC_NAMES, METRIC_RATINGS
from .dispatcher import ConnectivityProbe, DeliveryDispatcher, DeliveryOutcome, ManualConnectivityProbe
from .queue import DurableEventQueue


def device_for_width(width: int) -> str:
    if width < 768:
        return "mobile"
    if width < 1024:
        return "tablet"
    return "desktop"


class TelemetryClient:
    """Interaction and Web Vitals reporting routed through the delivery dispatcher."""

    def __init__(self, dispatcher: DeliveryDispatcher, base_url: str) -> None:
        self._dispatcher = dispatcher
        self._base_url = base_url.rstrip("/")

    def _url(self, path: str) -> str:
        return f"{self._base_url}/api{path}"

    async def record_click(self, suggestion_id: str) -> DeliveryOutcome:
        if not suggestion_id:
            raise ValidationError("suggestion_id is required")
        return await self._dispatcher.send_or_queue(
            self._url("/suggestions/click"), "POST", {"suggestionId": suggestion_id}
        )

    async def rate_suggestion(self, suggestion_id: str, rank: int) -> DeliveryOutcome:
        if not suggestion_id:
            raise ValidationError("suggestion_id is required")
        if isinstance(rank, bool) or not isinstance(rank, int) or not 1 <= rank <= 5:
            raise ValidationError("Rank must be between 1 and 5")
        return await self._dispatcher.send_or_queue(
            self._url(f"/suggestions/{suggestion_id}/rank"), "POST", {"rank": rank}
        )

    async def record_web_vital(
        self,
        *,
        session_id: str,
        user_id: str,
        metric: str,
        value: float,
        rating: str,
        page_url: str,
        user_agent: str | None = None,
        device: str | None = None,
    ) -> DeliveryOutcome:
        if not session_id or not user_id:
            raise ValidationError("session_id and user_id are required")
        if metric not in METRIC_NAMES:
            raise ValidationError(f"Invalid metric. Must be one of: {', '.join(METRIC_NAMES)}")
        if rating not in METRIC_RATINGS:
            raise ValidationError(f"Invalid rating. Must be one of: {', '.join(METRIC_RATINGS)}")
        payload: dict[str, object] = {
            "sessionId": session_id,
            "userId": user_id,
            "metric": metric,
            "value": value,
            "rating": rating,
            "pageUrl": page_url,
        }
        if user_agent:
            payload["userAgent"] = user_agent
        if device:
            payload["device"] = device
        return await self._dispatcher.send_or_queue(self._url("/vitals"), "POST", payload)


@dataclass
class Telemetry:
    queue: DurableEventQueue
    dispatcher: DeliveryDispatcher
    client: TelemetryClient


def build_telemetry(
    settings: AppConfig,
    probe: ConnectivityProbe | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Telemetry:
    """Wire the outbox, dispatcher and client for one host process.

    The caller owns the lifecycle: ``await telemetry.dispatcher.start()`` once a
    loop is running and ``stop()`` on shutdown.
    """
    settings.ensure_directories()
    queue = DurableEventQueue(settings.outbox_path)
    dispatcher = DeliveryDispatcher.from_settings(
        settings, queue, probe or ManualConnectivityProbe(online=True), http_client
    )
    return Telemetry(
        queue=queue,
        dispatcher=dispatcher,
        client=TelemetryClient(dispatcher, settings.telemetry_base_url),
    )

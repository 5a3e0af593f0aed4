from __future__ import annotations

from datetime import datetime
from typing import Literal

from .base import CamelModel

MetricName = Literal["LCP", "INP", "CLS", "FCP", "TTFB"]
MetricRating = Literal["good", "needs-improvement", "poor"]
DeviceType = Literal["mobile", "tablet", "desktop"]

METRIC_NAMES: tuple[str, ...] = ("LCP", "INP", "CLS", "FCP", "TTFB")
METRIC_RATINGS: tuple[str, ...] = ("good", "needs-improvement", "poor")


class WebVitalPayload(CamelModel):
    # Loosely typed so the route can answer with the field-specific 400s.
    session_id: str
    user_id: str
    metric: str
    value: float
    rating: str
    page_url: str
    user_agent: str | None = None
    device: DeviceType | None = None


class WebVital(CamelModel):
    vital_id: str
    session_id: str
    user_id: str
    metric: MetricName
    value: float
    rating: MetricRating
    timestamp: datetime
    page_url: str
    user_agent: str | None = None
    device: DeviceType | None = None


class WebVitalCreated(CamelModel):
    success: bool = True
    id: str

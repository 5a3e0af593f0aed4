from __future__ import annotations

import json

import httpx
import pytest

from chatlens_backend.errors import ValidationError
from chatlens_backend.telemetry.client import build_telemetry, device_for_width
from chatlens_backend.telemetry.dispatcher import DeliveryOutcome, ManualConnectivityProbe


@pytest.fixture
def sent():
    return []


@pytest.fixture
def telemetry(settings, sent):
    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(request)
        return httpx.Response(200, json={"success": True})

    settings.telemetry_base_url = "http://chatlens.test/"
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return build_telemetry(settings, probe=ManualConnectivityProbe(online=True), http_client=client)


@pytest.mark.asyncio
async def test_record_click_posts_suggestion_id(telemetry, sent):
    outcome = await telemetry.client.record_click("sugg-1")

    assert outcome == DeliveryOutcome.SENT
    assert str(sent[0].url) == "http://chatlens.test/api/suggestions/click"
    assert json.loads(sent[0].content) == {"suggestionId": "sugg-1"}


@pytest.mark.asyncio
async def test_rate_suggestion_validates_rank(telemetry, sent):
    for rank in (0, 6, 2.5, True):
        with pytest.raises(ValidationError):
            await telemetry.client.rate_suggestion("sugg-1", rank)
    assert sent == []

    assert await telemetry.client.rate_suggestion("sugg-1", 4) == DeliveryOutcome.SENT
    assert str(sent[0].url) == "http://chatlens.test/api/suggestions/sugg-1/rank"
    assert json.loads(sent[0].content) == {"rank": 4}


@pytest.mark.asyncio
async def test_record_web_vital_payload(telemetry, sent):
    await telemetry.client.record_web_vital(
        session_id="s1",
        user_id="u1",
        metric="INP",
        value=180,
        rating="good",
        page_url="/chat",
        device=device_for_width(800),
    )

    assert json.loads(sent[0].content) == {
        "sessionId": "s1",
        "userId": "u1",
        "metric": "INP",
        "value": 180,
        "rating": "good",
        "pageUrl": "/chat",
        "device": "tablet",
    }


@pytest.mark.asyncio
async def test_record_web_vital_rejects_unknown_values(telemetry):
    with pytest.raises(ValidationError):
        await telemetry.client.record_web_vital(
            session_id="s1", user_id="u1", metric="FID", value=1, rating="good", page_url="/"
        )
    with pytest.raises(ValidationError):
        await telemetry.client.record_web_vital(
            session_id="s1", user_id="u1", metric="LCP", value=1, rating="bad", page_url="/"
        )


@pytest.mark.asyncio
async def test_offline_events_are_queued(telemetry, sent):
    telemetry.dispatcher._probe.set_online(False)

    assert await telemetry.client.record_click("sugg-1") == DeliveryOutcome.QUEUED
    assert sent == []
    assert telemetry.queue.count() == 1


def test_device_for_width():
    assert device_for_width(375) == "mobile"
    assert device_for_width(768) == "tablet"
    assert device_for_width(1440) == "desktop"

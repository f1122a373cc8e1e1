"""
Tests for the downstream HTTP clients using httpx.MockTransport.
"""

import json

import httpx
import pytest

from leadflow.services.leads_service_client import (
    DownstreamStoreUnavailable,
    LeadsServiceClient,
    LeadsServiceError,
)
from leadflow.services.notification_client import NotificationClient


def _client(handler) -> LeadsServiceClient:
    return LeadsServiceClient(
        base_url="http://leads.test",
        auth_token="secret",
        timeout_s=1.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_create_lead_sends_headers_and_returns_id():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"lead": {"_id": "abc123"}})

    client = _client(handler)
    lead_id = await client.create_lead(
        organization_id="org-1",
        source="website",
        name="Ada",
        email="ada@test.com",
        phone=None,
        custom_fields={"budget": "10k"},
        assigned_to="U",
    )
    await client.close()

    assert lead_id == "abc123"
    assert seen["path"] == "/api/leads"
    assert seen["headers"]["X-Service-Auth"] == "secret"
    assert seen["headers"]["X-Organization-Id"] == "org-1"
    assert seen["body"]["assignedTo"] == "U"
    assert seen["body"]["customFields"] == {"budget": "10k"}
    assert seen["body"]["phone"] == ""


@pytest.mark.asyncio
async def test_create_lead_omits_assignee_when_not_given():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "xyz"})

    client = _client(handler)
    assert await client.create_lead("org-1", "api", "A", "a@test.com", None) == "xyz"
    assert "assignedTo" not in bodies[0]


@pytest.mark.asyncio
async def test_create_lead_server_error_is_unavailable():
    client = _client(lambda request: httpx.Response(500, text="boom"))

    with pytest.raises(DownstreamStoreUnavailable) as exc:
        await client.create_lead("org-1", "website", "A", "a@test.com", None)

    assert exc.value.status_code == 500


@pytest.mark.asyncio
async def test_create_lead_timeout_is_unavailable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = _client(handler)

    with pytest.raises(DownstreamStoreUnavailable):
        await client.create_lead("org-1", "website", "A", "a@test.com", None)


@pytest.mark.asyncio
async def test_create_lead_without_id_is_unavailable():
    client = _client(lambda request: httpx.Response(200, json={"lead": {}}))

    with pytest.raises(DownstreamStoreUnavailable):
        await client.create_lead("org-1", "website", "A", "a@test.com", None)


@pytest.mark.asyncio
async def test_assign_lead_puts_assignment():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True})

    client = _client(handler)
    await client.assign_lead("abc", "A", "org-1", reason="auto_assignment:round-robin")

    assert seen == {
        "method": "PUT",
        "path": "/api/leads/abc/assign",
        "body": {"assignedTo": "A", "reason": "auto_assignment:round-robin"},
    }


@pytest.mark.asyncio
async def test_assign_lead_failure_raises_service_error():
    client = _client(lambda request: httpx.Response(404))

    with pytest.raises(LeadsServiceError) as exc:
        await client.assign_lead("abc", "A", "org-1")

    assert not isinstance(exc.value, DownstreamStoreUnavailable)


@pytest.mark.asyncio
async def test_check_health():
    healthy = _client(lambda request: httpx.Response(200))

    def down(request):
        raise httpx.ConnectError("refused", request=request)

    assert await healthy.check_health() is True
    assert await _client(down).check_health() is False


@pytest.mark.asyncio
async def test_notification_posts_and_swallows_failures():
    calls = []

    def handler(request):
        calls.append((request.url.path, json.loads(request.content)))
        return httpx.Response(202)

    ok = NotificationClient(base_url="http://notify.test", transport=httpx.MockTransport(handler))
    assert await ok.notify_lead_assigned("L1", "A", "org-1", {"name": "Ada"}) is True
    assert calls[0][0] == "/api/notifications/lead-assigned"
    assert calls[0][1]["leadId"] == "L1"

    def down(request):
        raise httpx.ConnectError("refused", request=request)

    failing = NotificationClient(base_url="http://notify.test", transport=httpx.MockTransport(down))
    assert await failing.notify_lead_assigned("L1", "A", "org-1", {}) is False


@pytest.mark.asyncio
async def test_notification_disabled_without_url():
    client = NotificationClient(base_url="")

    assert client.enabled is False
    assert await client.notify_lead_assigned("L1", "A", "org-1", {}) is False


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [[{"id": "x"}], "abc123", 42, None])
async def test_create_lead_non_object_body_is_unavailable(body):
    client = _client(lambda request: httpx.Response(201, json=body))

    with pytest.raises(DownstreamStoreUnavailable):
        await client.create_lead("org-1", "website", "A", "a@test.com", None)

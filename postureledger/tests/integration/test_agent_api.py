from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from postureledger.apps.api.main import create_app
from postureledger.domain.models import DeviceCheckin
from postureledger.persistence.db import SessionLocal
from postureledger.services.background import get_background_tasks
from postureledger.tests.utils.records import create_organization, create_user, principal_headers


def _posture(**overrides: bool) -> dict:
    posture = {
        "diskEncryptionEnabled": True,
        "screenLockEnabled": True,
        "firewallEnabled": True,
        "systemIntegrityEnabled": True,
        "autoUpdateEnabled": True,
        "osVersion": "14.5",
    }
    posture.update(overrides)
    return posture


async def _enroll(client: AsyncClient, headers: dict[str, str], hostname: str = "laptop-01") -> dict:
    token_resp = await client.post("/v1/agent/enrollment-tokens", headers=headers, json={"ttl_hours": 2})
    assert token_resp.status_code == 201
    token = token_resp.json()["data"]["token"]
    enroll_resp = await client.post(
        "/v1/agent/enroll",
        json={"token": token, "hostname": hostname, "osType": "macos", "osVersion": "14.4", "serialNumber": "C02XYZ"},
    )
    assert enroll_resp.status_code == 201
    return {"token": token, **enroll_resp.json()["data"]}


def _device_headers(device: dict) -> dict[str, str]:
    return {"Authorization": f"Bearer {device['apiKey']}", "X-Device-Id": device["deviceId"]}


@pytest.mark.asyncio
async def test_enroll_checkin_and_read_compliance() -> None:
    org_id = await create_organization()
    admin_id = await create_user(org_id, role="ORG_ADMIN")
    headers = principal_headers(org_id, admin_id)

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        device = await _enroll(client, headers)
        checkin = await client.post(
            "/v1/agent/checkin",
            headers=_device_headers(device),
            json={"posture": _posture(firewallEnabled=False)},
        )
        await get_background_tasks().drain()
        compliance = await client.get(f"/v1/agent/devices/{device['deviceId']}/compliance", headers=headers)
        risks = await client.get("/v1/risks", headers=headers, params={"status": "OPEN"})

    assert checkin.status_code == 200
    assert checkin.json()["data"] == {"ok": True, "complianceStatus": "NON_COMPLIANT"}
    snapshot = compliance.json()["data"]
    assert snapshot["device_id"] == device["deviceId"]
    assert snapshot["firewall_enabled"] is False
    assert snapshot["disk_encryption_enabled"] is True
    titles = [risk["title"] for risk in risks.json()["data"]]
    assert titles == ["Endpoint firewall disabled: laptop-01"]


@pytest.mark.asyncio
async def test_enrollment_token_is_single_use() -> None:
    org_id = await create_organization()
    admin_id = await create_user(org_id, role="ORG_ADMIN")
    headers = principal_headers(org_id, admin_id)

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        device = await _enroll(client, headers)
        reuse = await client.post("/v1/agent/enroll", json={"token": device["token"], "hostname": "laptop-02"})
        unknown = await client.post("/v1/agent/enroll", json={"token": "not-a-token", "hostname": "laptop-03"})
        missing = await client.post("/v1/agent/enroll", json={"hostname": "laptop-04"})

    assert reuse.status_code == 409
    assert reuse.json()["error"]["code"] == "ENROLLMENT_TOKEN_USED"
    assert unknown.status_code == 401
    assert unknown.json()["error"]["code"] == "ENROLLMENT_TOKEN_INVALID"
    assert missing.status_code == 400
    assert missing.json()["error"]["code"] == "BAD_REQUEST"


@pytest.mark.asyncio
async def test_checkin_rejects_bad_credentials_and_malformed_posture() -> None:
    org_id = await create_organization()
    admin_id = await create_user(org_id, role="ORG_ADMIN")
    headers = principal_headers(org_id, admin_id)

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        device = await _enroll(client, headers)
        wrong_key = await client.post(
            "/v1/agent/checkin",
            headers={"Authorization": "Bearer nope", "X-Device-Id": device["deviceId"]},
            json={"posture": _posture()},
        )
        no_key = await client.post("/v1/agent/checkin", json={"posture": _posture()})
        # Strings are not accepted where booleans are expected.
        malformed = await client.post(
            "/v1/agent/checkin",
            headers=_device_headers(device),
            json={"posture": _posture(diskEncryptionEnabled="yes")},
        )

    assert wrong_key.status_code == 401
    assert wrong_key.json()["error"]["code"] == "DEVICE_UNAUTHORIZED"
    assert no_key.status_code == 401
    assert malformed.status_code == 422
    assert malformed.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    async with SessionLocal() as session:
        stored = (await session.execute(select(func.count(DeviceCheckin.id)))).scalar_one()
    assert stored == 0


@pytest.mark.asyncio
async def test_compliance_is_scoped_to_the_organization() -> None:
    org_id = await create_organization()
    other_org = await create_organization("Other")
    admin_id = await create_user(org_id, role="ORG_ADMIN")
    outsider_id = await create_user(other_org, role="ORG_ADMIN")

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        device = await _enroll(client, principal_headers(org_id, admin_id))
        await client.post("/v1/agent/checkin", headers=_device_headers(device), json={"posture": _posture()})
        await get_background_tasks().drain()
        response = await client.get(
            f"/v1/agent/devices/{device['deviceId']}/compliance",
            headers=principal_headers(other_org, outsider_id),
        )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_admins_manage_enrolled_devices() -> None:
    org_id = await create_organization()
    admin_id = await create_user(org_id, role="ORG_ADMIN")
    member_id = await create_user(org_id)
    other_org = await create_organization("Other")
    outsider_id = await create_user(other_org)
    headers = principal_headers(org_id, admin_id)
    member = principal_headers(org_id, member_id, role="MEMBER")

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        device = await _enroll(client, headers)
        device_id = device["deviceId"]
        await client.post("/v1/agent/checkin", headers=_device_headers(device), json={"posture": _posture()})
        await client.post(
            "/v1/agent/checkin",
            headers=_device_headers(device),
            json={"posture": _posture(firewallEnabled=False)},
        )
        listed = await client.get("/v1/agent/devices", headers=member)
        history = await client.get(f"/v1/agent/devices/{device_id}/checkins", headers=member, params={"limit": 1})
        hidden = await client.get(
            f"/v1/agent/devices/{device_id}/checkins",
            headers=principal_headers(other_org, outsider_id, role="MEMBER"),
        )
        reassigned = await client.patch(
            f"/v1/agent/devices/{device_id}/owner", headers=headers, json={"owner_id": member_id}
        )
        foreign_owner = await client.patch(
            f"/v1/agent/devices/{device_id}/owner", headers=headers, json={"owner_id": outsider_id}
        )
        member_revoke = await client.delete(f"/v1/agent/devices/{device_id}", headers=member)
        revoked = await client.delete(f"/v1/agent/devices/{device_id}", headers=headers)
        after_revoke = await client.post(
            "/v1/agent/checkin", headers=_device_headers(device), json={"posture": _posture()}
        )
        open_risks = await client.get("/v1/risks", headers=headers, params={"status": "OPEN"})

    devices = listed.json()["data"]
    assert [row["id"] for row in devices] == [device_id]
    assert devices[0]["compliance_status"] == "NON_COMPLIANT"
    assert devices[0]["revoked"] is False
    checkins = history.json()["data"]
    assert len(checkins) == 1
    assert checkins[0]["posture"]["firewallEnabled"] is False
    assert hidden.status_code == 404
    assert reassigned.json()["data"] == {"id": device_id, "owner_id": member_id}
    assert foreign_owner.status_code == 404
    assert member_revoke.status_code == 403
    assert revoked.status_code == 200
    assert revoked.json()["data"]["revoked"] is True
    assert revoked.json()["data"]["status"] == "REMOVED"
    assert after_revoke.status_code == 401
    assert after_revoke.json()["error"]["code"] == "DEVICE_UNAUTHORIZED"
    assert open_risks.json()["data"] == []


@pytest.mark.asyncio
async def test_revoked_enrollment_tokens_cannot_enroll() -> None:
    org_id = await create_organization()
    admin_id = await create_user(org_id, role="ORG_ADMIN")
    member_id = await create_user(org_id)
    headers = principal_headers(org_id, admin_id)

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        issued = await client.post("/v1/agent/enrollment-tokens", headers=headers)
        token = issued.json()["data"]
        listed = await client.get("/v1/agent/enrollment-tokens", headers=headers)
        member_list = await client.get(
            "/v1/agent/enrollment-tokens", headers=principal_headers(org_id, member_id, role="MEMBER")
        )
        deleted = await client.delete(f"/v1/agent/enrollment-tokens/{token['id']}", headers=headers)
        again = await client.delete(f"/v1/agent/enrollment-tokens/{token['id']}", headers=headers)
        enroll = await client.post("/v1/agent/enroll", json={"token": token["token"], "hostname": "laptop-09"})

    rows = listed.json()["data"]
    assert [row["id"] for row in rows] == [token["id"]]
    assert "token" not in rows[0]
    assert rows[0]["used_at"] is None
    assert member_list.status_code == 403
    assert deleted.status_code == 204
    assert again.status_code == 404
    assert enroll.status_code == 401
    assert enroll.json()["error"]["code"] == "ENROLLMENT_TOKEN_INVALID"

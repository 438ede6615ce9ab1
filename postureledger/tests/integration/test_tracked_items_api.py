from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from postureledger.apps.api.main import create_app
from postureledger.services.compliance.checks import CONTROL_CATALOG, checks_for_scope
from postureledger.services.tracked_items import PREDEFINED_POLICY_ITEMS
from postureledger.tests.utils.records import create_organization, create_user, principal_headers


@pytest.mark.asyncio
async def test_seed_populates_controls_and_items() -> None:
    org_id = await create_organization()
    admin_id = await create_user(org_id, role="ORG_ADMIN")
    headers = principal_headers(org_id, admin_id)

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        first = await client.post("/v1/tests/seed", headers=headers)
        second = await client.post("/v1/tests/seed", headers=headers)
        automated = await client.get("/v1/tests", headers=headers, params={"item_type": "Automated"})
        summary = await client.get("/v1/tests/summary", headers=headers)

    assert first.status_code == 200
    assert first.json()["data"] == {
        "controls_created": len(CONTROL_CATALOG),
        "policy_items_created": len(PREDEFINED_POLICY_ITEMS),
        "automated_items_created": len(checks_for_scope("ORGANIZATION")),
    }
    assert second.json()["data"] == {"controls_created": 0, "policy_items_created": 0, "automated_items_created": 0}
    items = automated.json()["data"]
    assert all(item["owner_id"] == admin_id for item in items)
    assert all(item["check_name"] for item in items)
    data = summary.json()["data"]
    assert data["total"] == len(PREDEFINED_POLICY_ITEMS) + len(items)
    assert data["completed"] == 0
    assert data["pass_percentage"] == 0


@pytest.mark.asyncio
async def test_document_item_lifecycle() -> None:
    org_id = await create_organization()
    admin_id = await create_user(org_id, role="ORG_ADMIN")
    member_id = await create_user(org_id)
    other_id = await create_user(org_id)
    headers = principal_headers(org_id, admin_id)
    due = (datetime.now(timezone.utc) + timedelta(days=60)).isoformat()

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post(
            "/v1/tests",
            headers=headers,
            json={"name": "Access review", "category": "IT", "owner_id": member_id, "due_date": due},
        )
        item_id = created.json()["data"]["id"]
        duplicate = await client.post("/v1/tests", headers=headers, json={"name": "Access review", "due_date": due})
        forbidden = await client.post(
            f"/v1/tests/{item_id}/complete",
            headers=principal_headers(org_id, other_id, role="MEMBER"),
        )
        completed = await client.post(
            f"/v1/tests/{item_id}/complete",
            headers=principal_headers(org_id, member_id, role="MEMBER"),
        )
        again = await client.post(f"/v1/tests/{item_id}/complete", headers=headers)
        history = await client.get(f"/v1/tests/{item_id}/history", headers=headers)
        listed = await client.get("/v1/tests", headers=headers, params={"status": "OK"})

    assert created.status_code == 201
    assert created.json()["data"]["status"] == "Due_soon"
    assert created.json()["data"]["control_ids"] == []
    assert duplicate.status_code == 409
    assert forbidden.status_code == 403
    assert completed.status_code == 200
    assert completed.json()["data"]["completed_at"] is not None
    assert again.status_code == 409
    assert [row["change_type"] for row in history.json()["data"]] == ["COMPLETED", "CREATED"]
    assert [item["id"] for item in listed.json()["data"]] == [item_id]


@pytest.mark.asyncio
async def test_automated_items_cannot_be_completed_by_hand() -> None:
    org_id = await create_organization()
    admin_id = await create_user(org_id, role="ORG_ADMIN")
    headers = principal_headers(org_id, admin_id)
    due = (datetime.now(timezone.utc) + timedelta(days=10)).isoformat()

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        unknown = await client.post(
            "/v1/tests",
            headers=headers,
            json={"name": "Mystery", "item_type": "Automated", "check_name": "nope", "due_date": due},
        )
        device_scoped = await client.post(
            "/v1/tests",
            headers=headers,
            json={"name": "Disks", "item_type": "Automated", "check_name": "disk_encryption", "due_date": due},
        )
        created = await client.post(
            "/v1/tests",
            headers=headers,
            json={"name": "Private repos", "item_type": "Automated", "check_name": "repos_private", "due_date": due},
        )
        item_id = created.json()["data"]["id"]
        complete = await client.post(f"/v1/tests/{item_id}/complete", headers=headers)
        runs = await client.get(f"/v1/tests/{item_id}/runs", headers=headers)

    assert unknown.status_code == 400
    assert unknown.json()["error"]["code"] == "UNKNOWN_CHECK"
    assert device_scoped.status_code == 422
    assert device_scoped.json()["error"]["code"] == "CHECK_SCOPE_UNSUPPORTED"
    assert created.status_code == 201
    assert created.json()["data"]["status"] == "Due_soon"
    assert complete.status_code == 409
    assert complete.json()["error"]["code"] == "CONFLICT"
    assert runs.json()["data"] == []


@pytest.mark.asyncio
async def test_patch_validates_and_scopes_items() -> None:
    org_id = await create_organization()
    other_org = await create_organization("Other")
    admin_id = await create_user(org_id, role="ORG_ADMIN")
    outsider_id = await create_user(other_org, role="ORG_ADMIN")
    headers = principal_headers(org_id, admin_id)
    due = (datetime.now(timezone.utc) + timedelta(days=60)).isoformat()

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post("/v1/tests", headers=headers, json={"name": "Asset register", "due_date": due})
        item_id = created.json()["data"]["id"]
        patched = await client.patch(
            f"/v1/tests/{item_id}",
            headers=headers,
            json={"status": "Needs_remediation", "description": "Missing laptops"},
        )
        invalid = await client.patch(f"/v1/tests/{item_id}", headers=headers, json={"status": "Done"})
        extra = await client.patch(f"/v1/tests/{item_id}", headers=headers, json={"check_name": "repos_private"})
        hidden = await client.get(f"/v1/tests/{item_id}", headers=principal_headers(other_org, outsider_id))

    assert patched.status_code == 200
    assert patched.json()["data"]["status"] == "Needs_remediation"
    assert patched.json()["data"]["description"] == "Missing laptops"
    assert invalid.status_code == 422
    assert extra.status_code == 422
    assert hidden.status_code == 404

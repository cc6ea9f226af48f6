from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from conftest import AUTH_HEADERS, FakeMemberRepository


def test_ban_records_status_and_single_ban_row(
    api_client: TestClient,
    fake_repo: FakeMemberRepository,
    login: Callable[[str], None],
) -> None:
    login("root")

    response = api_client.post("/admin/users/2/ban", json={"reason": "spam"}, headers=AUTH_HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "banned"

    bans = api_client.get("/admin/users/2/bans", headers=AUTH_HEADERS)
    assert bans.status_code == 200
    body = bans.json()
    assert len(body) == 1
    assert body[0]["reason"] == "spam"
    assert body[0]["banned_by"] == 1
    assert body[0]["lifted_at"] is None


def test_repeat_ban_appends_second_ban_row(
    api_client: TestClient,
    fake_repo: FakeMemberRepository,
    login: Callable[[str], None],
) -> None:
    login("root")

    first = api_client.post("/admin/users/2/ban", json={"reason": "spam"}, headers=AUTH_HEADERS)
    second = api_client.post("/admin/users/2/ban", json={"reason": "more spam"}, headers=AUTH_HEADERS)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["status"] == "banned"
    assert [ban["reason"] for ban in fake_repo.bans] == ["spam", "more spam"]


def test_ban_requires_reason(api_client: TestClient, login: Callable[[str], None]) -> None:
    login("root")

    missing = api_client.post("/admin/users/2/ban", json={}, headers=AUTH_HEADERS)
    blank = api_client.post("/admin/users/2/ban", json={"reason": "   "}, headers=AUTH_HEADERS)

    assert missing.status_code == 422
    assert blank.status_code == 422


def test_unban_restores_approved_and_lifts_ban(
    api_client: TestClient,
    fake_repo: FakeMemberRepository,
    login: Callable[[str], None],
) -> None:
    login("root")

    response = api_client.post("/admin/users/2/ban", json={"reason": "spam"}, headers=AUTH_HEADERS)
    assert response.status_code == 200

    response = api_client.post("/admin/users/2/unban", headers=AUTH_HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "approved"

    bans = api_client.get("/admin/users/2/bans", headers=AUTH_HEADERS).json()
    assert len(bans) == 1
    assert bans[0]["lifted_at"] is not None
    assert bans[0]["lifted_by"] == 1


def test_tier_change_is_idempotent_and_keeps_status(
    api_client: TestClient,
    login: Callable[[str], None],
) -> None:
    login("root")

    for _ in range(2):
        response = api_client.post("/admin/users/10/tier", json={"tier": "premium"}, headers=AUTH_HEADERS)
        assert response.status_code == 200
        body = response.json()
        assert body["tier"] == "premium"
        assert body["status"] == "banned"


def test_tier_change_rejects_unknown_tier(api_client: TestClient, login: Callable[[str], None]) -> None:
    login("root")

    response = api_client.post("/admin/users/2/tier", json={"tier": "gold"}, headers=AUTH_HEADERS)
    assert response.status_code == 422


def test_reject_then_approve_pending_user(api_client: TestClient, login: Callable[[str], None]) -> None:
    login("root")

    rejected = api_client.post("/admin/users/9/reject", headers=AUTH_HEADERS)
    assert rejected.status_code == 200
    assert rejected.json()["status"] == "rejected"

    approved = api_client.post("/admin/users/9/approve", headers=AUTH_HEADERS)
    assert approved.status_code == 200
    assert approved.json()["status"] == "approved"


def test_reject_approved_user_conflicts(api_client: TestClient, login: Callable[[str], None]) -> None:
    login("root")

    response = api_client.post("/admin/users/2/reject", headers=AUTH_HEADERS)
    assert response.status_code == 409


def test_approve_banned_user_conflicts(api_client: TestClient, login: Callable[[str], None]) -> None:
    login("root")

    response = api_client.post("/admin/users/10/approve", headers=AUTH_HEADERS)
    assert response.status_code == 409


def test_moderation_unknown_user_returns_not_found(api_client: TestClient, login: Callable[[str], None]) -> None:
    login("root")

    assert api_client.post("/admin/users/999/unban", headers=AUTH_HEADERS).status_code == 404
    assert api_client.get("/admin/users/999", headers=AUTH_HEADERS).status_code == 404
    assert api_client.get("/admin/users/999/bans", headers=AUTH_HEADERS).status_code == 404


def test_generic_action_endpoint_dispatches_on_action(
    api_client: TestClient,
    fake_repo: FakeMemberRepository,
    login: Callable[[str], None],
) -> None:
    login("root")

    tier = api_client.post("/admin/users/3/actions", json={"action": "tier", "tier": "premium"}, headers=AUTH_HEADERS)
    assert tier.status_code == 200
    assert tier.json()["tier"] == "premium"

    ban = api_client.post("/admin/users/3/actions", json={"action": "ban", "reason": "abuse"}, headers=AUTH_HEADERS)
    assert ban.status_code == 200
    assert ban.json()["status"] == "banned"
    assert fake_repo.bans[-1]["reason"] == "abuse"


def test_generic_action_endpoint_rejects_unknown_action(api_client: TestClient, login: Callable[[str], None]) -> None:
    login("root")

    unknown = api_client.post("/admin/users/3/actions", json={"action": "delete"}, headers=AUTH_HEADERS)
    ban_without_reason = api_client.post("/admin/users/3/actions", json={"action": "ban"}, headers=AUTH_HEADERS)

    assert unknown.status_code == 422
    assert ban_without_reason.status_code == 422


def test_moderation_records_events(api_client: TestClient, login: Callable[[str], None]) -> None:
    login("root")

    api_client.post("/admin/users/2/ban", json={"reason": "spam"}, headers=AUTH_HEADERS)
    api_client.post("/admin/users/2/unban", headers=AUTH_HEADERS)

    response = api_client.get("/admin/users/2/events", headers=AUTH_HEADERS)
    assert response.status_code == 200
    assert [event["event_type"] for event in response.json()] == ["user_unban", "user_ban"]


def test_list_users_filters_by_status(api_client: TestClient, login: Callable[[str], None]) -> None:
    login("root")

    response = api_client.get("/admin/users", params={"status": "pending"}, headers=AUTH_HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["users"][0]["username"] == "newbie"
    assert body["limit"] == 10


def test_non_admin_cannot_moderate(
    api_client: TestClient,
    fake_repo: FakeMemberRepository,
    login: Callable[[str], None],
) -> None:
    login("carol")

    ban = api_client.post("/admin/users/2/ban", json={"reason": "spam"}, headers=AUTH_HEADERS)
    listing = api_client.get("/admin/users", headers=AUTH_HEADERS)

    assert ban.status_code == 403
    assert listing.status_code == 403
    assert fake_repo.users[2]["status"] == "approved"
    assert fake_repo.bans == []


def test_ban_expiry_must_be_in_the_future(
    api_client: TestClient,
    fake_repo: FakeMemberRepository,
    login: Callable[[str], None],
) -> None:
    login("root")

    past = api_client.post(
        "/admin/users/2/ban",
        json={"reason": "spam", "expires_at": "2020-01-01T00:00:00Z"},
        headers=AUTH_HEADERS,
    )
    assert past.status_code == 422
    assert fake_repo.users[2]["status"] == "approved"

    future = api_client.post(
        "/admin/users/2/ban",
        json={"reason": "spam", "expires_at": "2999-01-01T00:00:00"},
        headers=AUTH_HEADERS,
    )
    assert future.status_code == 200
    assert fake_repo.bans[-1]["expires_at"] == datetime(2999, 1, 1, tzinfo=timezone.utc)


def test_generic_action_schema_is_published_as_discriminated_union(api_client: TestClient) -> None:
    spec = api_client.get("/openapi.json").json()

    body = spec["paths"]["/admin/users/{user_id}/actions"]["post"]["requestBody"]["content"]["application/json"]["schema"]
    assert body["discriminator"]["propertyName"] == "action"
    assert {ref["$ref"].rsplit("/", 1)[-1] for ref in body["oneOf"]} == {
        "BanAction",
        "UnbanAction",
        "TierAction",
        "ApproveAction",
        "RejectAction",
    }

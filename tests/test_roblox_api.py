"""Tests for the Roblox web API client against a routed fake session."""

import pytest

from health import HEALTH
from roblox_api import GROUPS, USERS, RobloxClient, RobloxError


class FakeResponse:
    def __init__(self, status=200, payload=None, headers=None):
        self.status = status
        self.payload = payload
        self.headers = headers or {}
        self.content_type = "application/json" if payload is not None else "text/plain"

    async def json(self):
        return self.payload

    async def text(self):
        return str(self.payload or "")

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Routes (method, url) to a response, or a list of responses served in order."""

    def __init__(self, routes):
        self.routes = routes
        self.closed = False
        self.calls = []

    def request(self, method, url, headers=None, **kwargs):
        self.calls.append((method, url, dict(headers or {}), kwargs))
        route = self.routes.get((method, url))
        if route is None:
            return FakeResponse(404, {"errors": [{"message": "NotFound"}]})
        if isinstance(route, list):
            return route.pop(0)
        return route

    async def close(self):
        self.closed = True


def client_for(routes) -> tuple[RobloxClient, FakeSession]:
    session = FakeSession(routes)
    return RobloxClient("cookie", session=session), session


ROLES = FakeResponse(200, {"roles": [
    {"id": 900, "name": "Commander", "rank": 200},
    {"id": 100, "name": "Guest", "rank": 0},
    {"id": 300, "name": "Trooper", "rank": 10},
]})
ALICE = FakeResponse(200, {"data": [{"id": 55, "name": "alice"}]})


class TestRequest:
    @pytest.mark.asyncio
    async def test_csrf_token_is_retried_once(self):
        url = f"{GROUPS}/v1/groups/1/users/55"
        client, session = client_for({("DELETE", url): [
            FakeResponse(403, {"errors": []}, headers={"x-csrf-token": "tok"}),
            FakeResponse(200, {}),
        ]})
        await client.exile(1, 55)
        assert len(session.calls) == 2
        assert "X-CSRF-TOKEN" not in session.calls[0][2]
        assert session.calls[1][2]["X-CSRF-TOKEN"] == "tok"
        assert client.csrf_token == "tok"

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        client, _ = client_for({})
        with pytest.raises(RobloxError, match="404"):
            await client.request("GET", f"{USERS}/v1/users/1")

    @pytest.mark.asyncio
    async def test_plain_text_body_returns_empty_dict(self):
        url = f"{GROUPS}/v1/groups/1/join-requests/users/55"
        client, _ = client_for({("POST", url): FakeResponse(200)})
        assert await client.request("POST", url) == {}

    @pytest.mark.asyncio
    async def test_close(self):
        client, session = client_for({})
        await client.close()
        assert session.closed


class TestUsersAndGroups:
    @pytest.mark.asyncio
    async def test_get_id_from_username(self):
        client, session = client_for({("POST", f"{USERS}/v1/usernames/users"): ALICE})
        assert await client.get_id_from_username("alice") == 55
        assert session.calls[0][3]["json"] == {"usernames": ["alice"], "excludeBannedUsers": False}

    @pytest.mark.asyncio
    async def test_unknown_username(self):
        client, _ = client_for({("POST", f"{USERS}/v1/usernames/users"): FakeResponse(200, {"data": []})})
        with pytest.raises(RobloxError):
            await client.get_id_from_username("ghost")

    @pytest.mark.asyncio
    async def test_roles_sorted_by_rank(self):
        client, _ = client_for({("GET", f"{GROUPS}/v1/groups/1/roles"): ROLES})
        assert [r["rank"] for r in await client.get_roles(1)] == [0, 10, 200]

    @pytest.mark.asyncio
    async def test_set_rank_patches_role_id(self):
        url = f"{GROUPS}/v1/groups/1/users/55"
        client, session = client_for({
            ("GET", f"{GROUPS}/v1/groups/1/roles"): ROLES,
            ("PATCH", url): FakeResponse(200, {}),
        })
        role = await client.set_rank(1, 55, 10)
        assert role["id"] == 300
        assert session.calls[-1][:2] == ("PATCH", url)
        assert session.calls[-1][3]["json"] == {"roleId": 300}

    @pytest.mark.asyncio
    async def test_set_rank_unknown_rank(self):
        client, _ = client_for({("GET", f"{GROUPS}/v1/groups/1/roles"): ROLES})
        with pytest.raises(RobloxError, match="No role with rank 42"):
            await client.set_rank(1, 55, 42)

    @pytest.mark.asyncio
    async def test_rank_in_group_defaults_to_zero(self):
        client, _ = client_for({("GET", f"{GROUPS}/v2/users/55/groups/roles"): FakeResponse(200, {"data": [
            {"group": {"id": 7, "name": "Other"}, "role": {"rank": 3}},
            {"group": {"id": 1, "name": "Ours"}, "role": {"rank": 10}},
        ]})})
        assert await client.get_rank_in_group(1, 55) == 10
        client, _ = client_for({("GET", f"{GROUPS}/v2/users/55/groups/roles"): FakeResponse(200, {"data": []})})
        assert await client.get_rank_in_group(1, 55) == 0


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_success_marks_ready(self):
        client, _ = client_for({("GET", f"{USERS}/v1/users/authenticated"): FakeResponse(200, {"id": 1, "name": "bot"})})
        HEALTH["roblox_ready"] = False
        assert (await client.authenticate())["name"] == "bot"
        assert HEALTH["roblox_ready"] is True

    @pytest.mark.asyncio
    async def test_failure_records_error(self):
        client, _ = client_for({("GET", f"{USERS}/v1/users/authenticated"): FakeResponse(401, {"errors": []})})
        with pytest.raises(RobloxError):
            await client.authenticate()
        assert HEALTH["roblox_ready"] is False
        assert "Roblox cookie error" in HEALTH["last_error"]


class TestBackgroundCheck:
    @pytest.mark.asyncio
    async def test_unknown_user(self):
        client, _ = client_for({("POST", f"{USERS}/v1/usernames/users"): FakeResponse(200, {"data": []})})
        assert await client.background_check("ghost") is None

    @pytest.mark.asyncio
    async def test_profile_summary(self):
        client, _ = client_for({
            ("POST", f"{USERS}/v1/usernames/users"): ALICE,
            ("GET", f"{USERS}/v1/users/55"): FakeResponse(200, {
                "name": "alice", "displayName": "Alice", "description": "hi", "created": "2019-01-02T00:00:00Z",
            }),
            ("GET", "https://friends.roblox.com/v1/users/55/friends/count"): FakeResponse(200, {"count": 3}),
            ("GET", "https://friends.roblox.com/v1/users/55/followers/count"): FakeResponse(200, {"count": 4}),
            ("GET", "https://friends.roblox.com/v1/users/55/followings/count"): FakeResponse(200, {"count": 5}),
            ("GET", "https://thumbnails.roblox.com/v1/users/avatar-headshot"): FakeResponse(200, {
                "data": [{"imageUrl": "https://img/alice.png"}],
            }),
            ("GET", f"{GROUPS}/v2/users/55/groups/roles"): FakeResponse(200, {"data": [
                {"group": {"id": 35335293, "name": "Kingdom"}, "role": {"name": "Trooper"}},
                {"group": {"id": 1, "name": "Elsewhere"}, "role": {"name": "Member"}},
            ]}),
        })

        data = await client.background_check("alice", (35335293,))

        assert data["id"] == 55
        assert data["display_name"] == "Alice"
        assert (data["friends"], data["followers"], data["following"]) == (3, 4, 5)
        assert data["avatar_url"] == "https://img/alice.png"
        assert data["total_groups"] == 2
        assert data["key_groups"] == ["Kingdom — Trooper"]

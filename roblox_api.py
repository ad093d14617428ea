"""Roblox web API calls used by the group manager and /bgc."""
import asyncio
import logging

import aiohttp

from health import HEALTH, record_error

log = logging.getLogger("rosterbot.roblox")

USERS = "https://users.roblox.com"
FRIENDS = "https://friends.roblox.com"
GROUPS = "https://groups.roblox.com"
THUMBNAILS = "https://thumbnails.roblox.com"


class RobloxError(Exception):
    pass


class RobloxClient:
    """Cookie-authenticated session; rotates the X-CSRF-TOKEN on demand."""

    def __init__(self, cookie: str, session: aiohttp.ClientSession | None = None):
        self.cookie = cookie
        self.session = session
        self.csrf_token: str | None = None

    async def _session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                cookies={".ROBLOSECURITY": self.cookie},
                timeout=aiohttp.ClientTimeout(total=15),
            )
        return self.session

    async def close(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()

    async def request(self, method: str, url: str, **kwargs) -> dict:
        session = await self._session()
        for attempt in (1, 2):
            headers = dict(kwargs.pop("headers", None) or {})
            if self.csrf_token:
                headers["X-CSRF-TOKEN"] = self.csrf_token
            async with session.request(method, url, headers=headers, **kwargs) as resp:
                token = resp.headers.get("x-csrf-token")
                if resp.status == 403 and token and attempt == 1:
                    self.csrf_token = token
                    kwargs["headers"] = headers
                    continue
                if resp.status >= 400:
                    body = await resp.text()
                    raise RobloxError(f"{method} {url} -> {resp.status}: {body[:200]}")
                if resp.content_type == "application/json":
                    return await resp.json()
                return {}
        raise RobloxError(f"{method} {url}: CSRF token rejected")

    # ---------- auth ----------
    async def authenticate(self) -> dict:
        """Validate the cookie; returns the authenticated user."""
        try:
            me = await self.request("GET", f"{USERS}/v1/users/authenticated")
        except (RobloxError, aiohttp.ClientError) as e:
            HEALTH["roblox_ready"] = False
            record_error(f"❌ Roblox cookie error: {e}")
            raise
        HEALTH["roblox_ready"] = True
        log.info(f"✅ Roblox cookie set ({me.get('name')})")
        return me

    # ---------- users ----------
    async def lookup_user(self, username: str) -> dict | None:
        data = await self.request(
            "POST",
            f"{USERS}/v1/usernames/users",
            json={"usernames": [username], "excludeBannedUsers": False},
        )
        users = data.get("data") or []
        return users[0] if users else None

    async def get_id_from_username(self, username: str) -> int:
        user = await self.lookup_user(username)
        if not user:
            raise RobloxError(f"Could not find Roblox user {username}")
        return int(user["id"])

    # ---------- groups ----------
    async def get_roles(self, group_id: int) -> list[dict]:
        data = await self.request("GET", f"{GROUPS}/v1/groups/{group_id}/roles")
        return sorted(data.get("roles") or [], key=lambda r: r.get("rank", 0))

    async def user_groups(self, user_id: int) -> list[dict]:
        data = await self.request("GET", f"{GROUPS}/v2/users/{user_id}/groups/roles")
        return data.get("data") or []

    async def get_rank_in_group(self, group_id: int, user_id: int) -> int:
        for g in await self.user_groups(user_id):
            if int(g.get("group", {}).get("id", 0)) == int(group_id):
                return int(g.get("role", {}).get("rank", 0))
        return 0

    async def set_rank(self, group_id: int, user_id: int, rank: int) -> dict:
        roles = await self.get_roles(group_id)
        role = next((r for r in roles if int(r.get("rank", -1)) == int(rank)), None)
        if role is None:
            raise RobloxError(f"No role with rank {rank} in group {group_id}")
        await self.request(
            "PATCH",
            f"{GROUPS}/v1/groups/{group_id}/users/{user_id}",
            json={"roleId": role["id"]},
        )
        return role

    async def exile(self, group_id: int, user_id: int) -> None:
        await self.request("DELETE", f"{GROUPS}/v1/groups/{group_id}/users/{user_id}")

    async def accept_join_request(self, group_id: int, user_id: int) -> None:
        await self.request("POST", f"{GROUPS}/v1/groups/{group_id}/join-requests/users/{user_id}")

    # ---------- background check ----------
    async def background_check(self, username: str, key_group_ids: tuple[int, ...] = ()) -> dict | None:
        """Profile summary for /bgc, or None if the user doesn't exist."""
        user = await self.lookup_user(username)
        if not user:
            return None
        uid = int(user["id"])
        info, friends, followers, following, avatar, groups = await asyncio.gather(
            self.request("GET", f"{USERS}/v1/users/{uid}"),
            self.request("GET", f"{FRIENDS}/v1/users/{uid}/friends/count"),
            self.request("GET", f"{FRIENDS}/v1/users/{uid}/followers/count"),
            self.request("GET", f"{FRIENDS}/v1/users/{uid}/followings/count"),
            self.request(
                "GET",
                f"{THUMBNAILS}/v1/users/avatar-headshot",
                params={"userIds": str(uid), "size": "150x150", "format": "Png", "isCircular": "false"},
            ),
            self.user_groups(uid),
        )
        key_groups = [
            f"{g['group']['name']} — {(g.get('role') or {}).get('name', 'Member')}"
            for g in groups
            if int(g.get("group", {}).get("id", 0)) in key_group_ids
        ]
        return {
            "id": uid,
            "name": info.get("name") or username,
            "display_name": info.get("displayName") or username,
            "description": info.get("description") or "",
            "created": info.get("created") or "",
            "friends": friends.get("count", 0),
            "followers": followers.get("count", 0),
            "following": following.get("count", 0),
            "avatar_url": ((avatar.get("data") or [{}])[0]).get("imageUrl"),
            "total_groups": len(groups),
            "key_groups": key_groups,
        }

"""Slash-command flows: menus, follow-up prompts, remote mutations, cleanup."""
import asyncio
import logging
from datetime import datetime
from typing import Any

import aiohttp
import discord
from discord import ui

from cleanup import cleanup_and_log, delete_all, resolve_log_channel
from delivery import Deduplicator, DeliveryHandle, InteractionTransport
from roblox_api import RobloxClient, RobloxError
from settings import KEY_GROUP_IDS
from tracker import Tracker, TrackerError

log = logging.getLogger("rosterbot.flows")

TRACKER_PREFIX = "tracker_action_"
ROBLOX_PREFIX = "rc_action_"
RANK_PREFIX = "rank_select_"

TRACKER_ACTIONS = [
    ("Add Placement", "add_placement"),
    ("Promote Placement", "promote_placement"),
    ("Remove User", "remove_user"),
]
ROBLOX_ACTIONS = [
    ("Change Rank", "change_rank"),
    ("Kick User", "kick_user"),
    ("Accept Join Request", "accept_join"),
]


def is_admin(user: Any) -> bool:
    perms = getattr(user, "guild_permissions", None)
    return bool(perms and perms.administrator)


# ==================== UI Components ====================
class ActionSelect(ui.Select):
    def __init__(self, flows: "Flows", prefix: str, owner_id: int, placeholder: str, actions: list[tuple[str, str]]):
        opts = [discord.SelectOption(label=label, value=value) for label, value in actions]
        super().__init__(placeholder=placeholder, min_values=1, max_values=1, options=opts, custom_id=f"{prefix}{owner_id}")
        self.flows = flows

    async def callback(self, interaction: discord.Interaction):
        await self.flows.on_menu_select(interaction, self.custom_id, self.values[0])


class ActionMenuView(ui.View):
    def __init__(self, flows: "Flows", prefix: str, owner_id: int, placeholder: str, actions: list[tuple[str, str]]):
        super().__init__(timeout=600)
        self.flows = flows
        self.add_item(ActionSelect(flows, prefix, owner_id, placeholder, actions))

    async def on_error(self, interaction: discord.Interaction, error: Exception, item: ui.Item):
        await self.flows.report_error(interaction, error)


class RankSelect(ui.Select):
    def __init__(self, flows: "Flows", roles: list[dict], owner_id: int):
        opts = [
            discord.SelectOption(label=f"{r['name']} (Rank {r['rank']})"[:100], value=str(r["rank"]))
            for r in roles[:25]
        ]
        super().__init__(placeholder="Select a new rank", min_values=1, max_values=1, options=opts, custom_id=f"{RANK_PREFIX}{owner_id}")
        self.flows = flows
        self.owner_id = owner_id

    async def callback(self, interaction: discord.Interaction):
        event = InteractionTransport(interaction)
        if interaction.user.id != self.owner_id:
            await self.flows.send(event, "not-owner", "❌ Only the original user can use this menu.", ephemeral=True)
            return
        try:
            await event.acknowledge_silently()
        except discord.HTTPException as e:
            log.warning(f"⚠ rank select deferUpdate failed: {e}")
        self.view.choice = int(self.values[0])
        self.view.stop()


class RankSelectView(ui.View):
    def __init__(self, flows: "Flows", roles: list[dict], owner_id: int, timeout: float):
        super().__init__(timeout=timeout)
        self.flows = flows
        self.choice: int | None = None
        self.add_item(RankSelect(flows, roles, owner_id))

    async def on_error(self, interaction: discord.Interaction, error: Exception, item: ui.Item):
        await self.flows.report_error(interaction, error)


# ==================== Flows ====================
class Flows:
    def __init__(
        self,
        client: discord.Client,
        dedup: Deduplicator,
        tracker: Tracker,
        roblox: RobloxClient,
        group_id: int,
        log_channel_id: int | None = None,
        reply_timeout: float = 30.0,
    ):
        self.client = client
        self.dedup = dedup
        self.tracker = tracker
        self.roblox = roblox
        self.group_id = group_id
        self.log_channel_id = log_channel_id
        self.reply_timeout = reply_timeout

    # ---------- shared helpers ----------
    async def send(self, event: Any, key: str, content: str | None = None, **extra) -> DeliveryHandle | None:
        return await self.dedup.send_once(event, key, {"content": content, **extra})

    async def collect_reply(self, event: Any) -> discord.Message | None:
        """Wait for the actor's next message in the same channel; None on timeout."""
        def check(m: discord.Message) -> bool:
            return m.author.id == event.actor_id and m.channel.id == event.channel_id

        try:
            return await self.client.wait_for("message", check=check, timeout=self.reply_timeout)
        except asyncio.TimeoutError:
            return None

    async def finish(self, event: Any, log_text: str, messages: list[Any]) -> None:
        log_channel = await resolve_log_channel(self.client, self.log_channel_id)
        await cleanup_and_log(
            self.dedup,
            actor_id=event.actor_id,
            messages=transient(messages),
            log_channel=log_channel,
            log_text=log_text,
        )

    async def discard(self, keep: DeliveryHandle | None, messages: list[Any]) -> None:
        """Timeout/failure cleanup: no audit line, and `keep` stays visible."""
        await delete_all(self.dedup, transient(messages, keep))

    async def report_error(self, interaction: discord.Interaction, error: Exception) -> None:
        log.error("Unhandled interaction error", exc_info=error)
        await self.dedup.send_once(
            InteractionTransport(interaction),
            "internal-error",
            {"content": "❌ An internal error occurred.", "ephemeral": True, "view": None},
        )

    async def require_admin(self, event: InteractionTransport) -> bool:
        if is_admin(event.interaction.user):
            return True
        await self.send(event, "admin-required", "❌ Administrator permission required.", ephemeral=True)
        return False

    # ---------- slash commands ----------
    async def open_roblox_menu(self, interaction: discord.Interaction) -> None:
        event = InteractionTransport(interaction)
        if not await self.require_admin(event):
            return
        view = ActionMenuView(self, ROBLOX_PREFIX, interaction.user.id, "Select an action", ROBLOX_ACTIONS)
        await self.send(event, "roblox-menu", "Choose an action:", view=view)

    async def open_tracker_menu(self, interaction: discord.Interaction) -> None:
        event = InteractionTransport(interaction)
        if not await self.require_admin(event):
            return
        view = ActionMenuView(self, TRACKER_PREFIX, interaction.user.id, "Select a tracker action", TRACKER_ACTIONS)
        await self.send(event, "tracker-menu", "Choose a tracker action:", view=view)

    async def background_check(self, interaction: discord.Interaction, username: str) -> None:
        event = InteractionTransport(interaction)
        if not await self.require_admin(event):
            return
        await self.send(event, "bgc-progress", "🔎 Fetching Roblox data…")
        try:
            data = await self.roblox.background_check(username, KEY_GROUP_IDS)
        except (RobloxError, aiohttp.ClientError) as e:
            log.error(f"bgc failed for {username}: {e}")
            await self.send(event, "bgc-result", "❌ Error fetching data.")
            return
        if data is None:
            await self.send(event, "bgc-result", f"❌ Could not find Roblox user **{username}**")
            return
        await self.send(event, "bgc-result", None, embeds=[bgc_embed(data)])

    # ---------- menus ----------
    async def on_menu_select(self, interaction: discord.Interaction, custom_id: str, action: str) -> None:
        event = InteractionTransport(interaction)
        owner = custom_id.rsplit("_", 1)[-1]
        if owner != str(interaction.user.id):
            await self.send(event, "not-owner", "❌ Only the original user can use this menu.", ephemeral=True)
            return
        if not await self.require_admin(event):
            return
        if custom_id.startswith(TRACKER_PREFIX):
            await self.tracker_action(event, action)
        elif custom_id.startswith(ROBLOX_PREFIX):
            await self.roblox_action(event, action)

    async def tracker_action(self, event: InteractionTransport, action: str) -> None:
        menu_message = event.interaction.message
        await event.defer(ephemeral=True)

        prompt = await self.send(event, "tracker-username", f"Enter the username for **{action.replace('_', ' ')}**:", view=None)
        user_msg = await self.collect_reply(event)
        if user_msg is None:
            notice = await self.send(event, "timeout", "⏳ Timed out.", view=None)
            await self.discard(notice, [prompt, menu_message])
            return
        username = user_msg.content.strip()
        transient_msgs = [prompt, user_msg, menu_message]

        try:
            if action == "add_placement":
                date_prompt = await self.send(event, "tracker-dates", f"Enter two dates for **{username}** in format: XX/XX/XX XX/XX/XX")
                transient_msgs.append(date_prompt)
                date_msg = await self.collect_reply(event)
                if date_msg is None:
                    notice = await self.send(event, "timeout", "⏳ Timed out.", view=None)
                    await self.discard(notice, transient_msgs)
                    return
                transient_msgs.append(date_msg)
                dates = date_msg.content.split()
                if len(dates) != 2:
                    notice = await self.send(event, "tracker-result", "❌ Expected two dates: XX/XX/XX XX/XX/XX", view=None)
                    await self.discard(notice, transient_msgs)
                    return
                start, end = dates
                await self.tracker.add_placement(username, start, end)
                result = await self.send(event, "tracker-result", f"✅ Added **{username}** to RECRUITS with dates.", view=None)
                await self.finish(event, f"Added to RECRUITS: **{username}** — {start} → {end}", transient_msgs + [result])

            elif action == "promote_placement":
                await self.tracker.promote_placement(username)
                result = await self.send(event, "tracker-result", f"✅ Promoted **{username}** to COMMANDOS.", view=None)
                await self.finish(event, f"Promoted **{username}** to COMMANDOS", transient_msgs + [result])

            elif action == "remove_user":
                sheet = await self.tracker.remove_user(username)
                result = await self.send(event, "tracker-result", f"✅ Removed **{username}** from {sheet}.", view=None)
                await self.finish(event, f"Removed **{username}** from {sheet}.", transient_msgs + [result])

            else:
                await self.send(event, "tracker-result", f"⚠️ Action **{action}** not yet implemented.", view=None)
        except TrackerError as e:
            notice = await self.send(event, "tracker-result", str(e), view=None)
            await self.discard(notice, transient_msgs)

    async def roblox_action(self, event: InteractionTransport, action: str) -> None:
        menu_message = event.interaction.message
        await event.defer()

        prompts = {
            "change_rank": "👤 Please enter the Roblox username to change rank:",
            "kick_user": "👤 Enter the Roblox username to kick (exile):",
            "accept_join": "👤 Enter the Roblox username to accept join request:",
        }
        if action not in prompts:
            await self.send(event, "roblox-result", f"⚠️ Action **{action}** not yet implemented.", view=None)
            return

        prompt = await self.send(event, "roblox-username", prompts[action], view=None)
        user_msg = await self.collect_reply(event)
        if user_msg is None:
            notice = await self.send(event, "timeout", "⏳ Timed out waiting for username.", view=None)
            await self.discard(notice, [prompt, menu_message])
            return
        username = user_msg.content.strip()
        transient_msgs = [prompt, user_msg, menu_message]

        if action == "change_rank":
            await self.change_rank(event, username, transient_msgs)
        elif action == "kick_user":
            transient_msgs.append(await self.send(event, "roblox-progress", f"🪓 Exiling **{username}**…"))
            try:
                user_id = await self.roblox.get_id_from_username(username)
                await self.roblox.exile(self.group_id, user_id)
            except (RobloxError, aiohttp.ClientError) as e:
                log.error(f"Exile error: {e}")
                notice = await self.send(event, "roblox-result", "❌ Failed to exile user.")
                await self.discard(notice, transient_msgs)
                return
            text = f"Exiled **{username}** (ID: {user_id})."
            result = await self.send(event, "roblox-result", f"✅ {text}")
            await self.finish(event, text, transient_msgs + [result])
        elif action == "accept_join":
            transient_msgs.append(await self.send(event, "roblox-progress", f"✅ Accepting join request for **{username}**…"))
            try:
                user_id = await self.roblox.get_id_from_username(username)
                await self.roblox.accept_join_request(self.group_id, user_id)
            except (RobloxError, aiohttp.ClientError) as e:
                log.error(f"Accept join error: {e}")
                notice = await self.send(event, "roblox-result", "❌ Failed to accept join request.")
                await self.discard(notice, transient_msgs)
                return
            text = f"Accepted join request for **{username}** (ID: {user_id})."
            result = await self.send(event, "roblox-result", f"✅ {text}")
            await self.finish(event, text, transient_msgs + [result])

    async def change_rank(self, event: InteractionTransport, username: str, transient_msgs: list[Any]) -> None:
        transient_msgs.append(await self.send(event, "roblox-progress", f"🔎 Fetching roles for **{username}**…"))
        try:
            roles = await self.roblox.get_roles(self.group_id)
        except (RobloxError, aiohttp.ClientError) as e:
            log.error(f"Role fetch error: {e}")
            notice = await self.send(event, "roblox-result", "❌ Failed to fetch group roles.", view=None)
            await self.discard(notice, transient_msgs)
            return

        view = RankSelectView(self, roles, event.actor_id, timeout=self.reply_timeout)
        transient_msgs.append(await self.send(event, "rank-select", f"Select the new rank for **{username}**:", view=view))
        timed_out = await view.wait()
        if timed_out or view.choice is None:
            notice = await self.send(event, "timeout", "⏳ Timed out waiting for a rank.", view=None)
            await self.discard(notice, transient_msgs)
            return
        rank = view.choice

        transient_msgs.append(await self.send(event, "rank-progress", f"🔧 Changing rank for **{username}** to {rank}…", view=None))
        try:
            user_id = await self.roblox.get_id_from_username(username)
            current = await self.roblox.get_rank_in_group(self.group_id, user_id)
            await self.roblox.set_rank(self.group_id, user_id, rank)
        except (RobloxError, aiohttp.ClientError) as e:
            log.error(f"Rank change error: {e}")
            notice = await self.send(event, "roblox-result", "❌ Failed to change rank.", view=None)
            await self.discard(notice, transient_msgs)
            return
        text = f"Rank changed for **{username}** (ID: {user_id}) — {current} ➝ {rank}."
        result = await self.send(event, "roblox-result", f"✅ {text}")
        await self.finish(event, text, transient_msgs + [result])


def _message_id(item: Any) -> int | None:
    if isinstance(item, DeliveryHandle):
        return item.message_id
    return getattr(item, "id", None)


def transient(messages: list[Any], keep: Any = None) -> list[Any]:
    """Drop None, repeats of one message, and whatever `keep` points at."""
    keep_id = _message_id(keep) if keep is not None else None
    seen: set[int] = set()
    out = []
    for m in messages:
        if m is None:
            continue
        mid = _message_id(m)
        if mid is not None:
            if mid == keep_id or mid in seen:
                continue
            seen.add(mid)
        out.append(m)
    return out


def bgc_embed(data: dict) -> discord.Embed:
    created = data.get("created") or ""
    try:
        created = datetime.fromisoformat(created.replace("Z", "+00:00")).strftime("%a %b %d %Y")
    except ValueError:
        pass
    embed = discord.Embed(
        title=f"{data['name']} (@{data['display_name']})",
        description=data.get("description") or "No bio set.",
        color=0x00AE86,
    )
    if data.get("avatar_url"):
        embed.set_thumbnail(url=data["avatar_url"])
    embed.add_field(name="Roblox ID", value=str(data["id"]), inline=True)
    embed.add_field(name="Account Created", value=created or "Unknown", inline=True)
    embed.add_field(name="Friends", value=str(data["friends"]), inline=True)
    embed.add_field(name="Followers", value=str(data["followers"]), inline=True)
    embed.add_field(name="Following", value=str(data["following"]), inline=True)
    embed.add_field(name="Total Groups", value=str(data["total_groups"]), inline=True)
    embed.add_field(name="Key Groups", value="\n".join(data["key_groups"]) or "None", inline=False)
    return embed

"""End-to-end flow tests: menus, prompts, remote mutation, cleanup and audit log."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from delivery import DeliveryHandle, InteractionTransport
from flows import Flows, RankSelectView, bgc_embed, is_admin, transient
from roblox_api import RobloxError
from tracker import UserNotFound
from fakes import FakeChannel, make_interaction

TIMED_OUT = "⏳ Timed out."


@pytest.fixture
def client(log_channel):
    client = MagicMock()
    client.get_channel.return_value = log_channel
    client.wait_for = AsyncMock(side_effect=asyncio.TimeoutError)
    return client


@pytest.fixture
def tracker():
    tracker = MagicMock()
    tracker.add_placement = AsyncMock()
    tracker.promote_placement = AsyncMock()
    tracker.remove_user = AsyncMock(return_value="RECRUITS")
    return tracker


@pytest.fixture
def roblox():
    return AsyncMock()


@pytest.fixture
def flows(client, dedup, tracker, roblox):
    return Flows(client, dedup, tracker, roblox, group_id=1, log_channel_id=999, reply_timeout=0.01)


def visible(channel, content):
    return [m for m in channel.messages.values() if m.content == content]


def menu_interaction(channel, **kwargs):
    menu = channel.add("Choose a tracker action:")
    return make_interaction(channel, message=menu, **kwargs), menu


class TestMenuGuards:
    @pytest.mark.asyncio
    async def test_only_owner_can_use_menu(self, flows, channel, tracker):
        inter, _ = menu_interaction(channel, user_id=10)
        await flows.on_menu_select(inter, "tracker_action_99", "remove_user")
        assert inter.response.send_message.await_args.kwargs == {
            "content": "❌ Only the original user can use this menu.", "ephemeral": True,
        }
        tracker.remove_user.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_admin_required(self, flows, channel, tracker):
        inter, _ = menu_interaction(channel, user_id=10, admin=False)
        await flows.on_menu_select(inter, "tracker_action_10", "remove_user")
        assert inter.response.send_message.await_args.kwargs["content"] == "❌ Administrator permission required."
        tracker.remove_user.assert_not_awaited()

    def test_is_admin(self):
        assert is_admin(SimpleNamespace(guild_permissions=SimpleNamespace(administrator=True)))
        assert not is_admin(SimpleNamespace())

    @pytest.mark.asyncio
    async def test_open_tracker_menu_once(self, flows, channel):
        inter = make_interaction(channel, kind=discord.InteractionType.application_command)
        await flows.open_tracker_menu(inter)
        await flows.open_tracker_menu(inter)
        inter.response.send_message.assert_awaited_once()
        kwargs = inter.response.send_message.await_args.kwargs
        assert kwargs["content"] == "Choose a tracker action:"
        assert kwargs["view"].children[0].custom_id == "tracker_action_10"

    @pytest.mark.asyncio
    async def test_report_error(self, flows, channel):
        inter = make_interaction(channel)
        await flows.report_error(inter, RuntimeError("boom"))
        assert inter.response.send_message.await_args.kwargs == {
            "content": "❌ An internal error occurred.", "ephemeral": True,
        }


class TestTrackerFlow:
    @pytest.mark.asyncio
    async def test_timeout_shows_one_notice_and_mutates_nothing(self, flows, channel, tracker, log_channel):
        inter, menu = menu_interaction(channel)

        await flows.on_menu_select(inter, "tracker_action_10", "remove_user")
        # A duplicate timeout path for the same interaction must not show a second notice.
        await flows.send(InteractionTransport(inter), "timeout", TIMED_OUT, view=None)

        assert len(visible(channel, TIMED_OUT)) == 1
        assert menu.id not in channel.messages
        tracker.remove_user.assert_not_awaited()
        assert log_channel.sent == []

    @pytest.mark.asyncio
    async def test_remove_user_cleans_up_and_logs(self, flows, client, channel, tracker, log_channel):
        inter, menu = menu_interaction(channel)
        reply = channel.add("alice", author_id=10)
        client.wait_for.side_effect = [reply]

        await flows.on_menu_select(inter, "tracker_action_10", "remove_user")

        tracker.remove_user.assert_awaited_once_with("alice")
        assert reply.id not in channel.messages
        assert menu.id not in channel.messages
        assert channel.messages == {}
        assert [s["content"] for s in log_channel.sent] == ["<@10> — Removed **alice** from RECRUITS."]

    @pytest.mark.asyncio
    async def test_reply_check_matches_actor_and_channel(self, flows, client, channel):
        inter, _ = menu_interaction(channel)
        await flows.on_menu_select(inter, "tracker_action_10", "promote_placement")
        check = client.wait_for.await_args.kwargs["check"]
        assert check(channel.add("x", author_id=10))
        assert not check(channel.add("x", author_id=11))
        assert not check(FakeChannel(channel_id=5).add("x", author_id=10))

    @pytest.mark.asyncio
    async def test_add_placement_with_dates(self, flows, client, channel, tracker, log_channel):
        inter, _ = menu_interaction(channel)
        client.wait_for.side_effect = [
            channel.add("alice", author_id=10),
            channel.add("10/01/26 10/08/26", author_id=10),
        ]

        await flows.on_menu_select(inter, "tracker_action_10", "add_placement")

        tracker.add_placement.assert_awaited_once_with("alice", "10/01/26", "10/08/26")
        assert log_channel.sent[0]["content"] == "<@10> — Added to RECRUITS: **alice** — 10/01/26 → 10/08/26"

    @pytest.mark.asyncio
    async def test_add_placement_rejects_bad_dates(self, flows, client, channel, tracker):
        inter, _ = menu_interaction(channel)
        client.wait_for.side_effect = [
            channel.add("alice", author_id=10),
            channel.add("tomorrow", author_id=10),
        ]
        await flows.on_menu_select(inter, "tracker_action_10", "add_placement")
        tracker.add_placement.assert_not_awaited()
        assert visible(channel, "❌ Expected two dates: XX/XX/XX XX/XX/XX")

    @pytest.mark.asyncio
    async def test_tracker_error_is_shown_without_log(self, flows, client, channel, tracker, log_channel):
        inter, _ = menu_interaction(channel)
        typed = channel.add("ghost", author_id=10)
        client.wait_for.side_effect = [typed]
        tracker.remove_user.side_effect = UserNotFound("❌ User not found in any sheet.")

        await flows.on_menu_select(inter, "tracker_action_10", "remove_user")

        assert [m.content for m in channel.messages.values()] == ["❌ User not found in any sheet."]
        assert log_channel.sent == []


class TestRobloxFlow:
    @pytest.mark.asyncio
    async def test_kick_user(self, flows, client, channel, roblox, log_channel):
        inter, menu = menu_interaction(channel)
        client.wait_for.side_effect = [channel.add("alice", author_id=10)]
        roblox.get_id_from_username.return_value = 55

        await flows.on_menu_select(inter, "rc_action_10", "kick_user")

        roblox.exile.assert_awaited_once_with(1, 55)
        assert menu.id not in channel.messages
        assert log_channel.sent[0]["content"] == "<@10> — Exiled **alice** (ID: 55)."

    @pytest.mark.asyncio
    async def test_accept_join_failure(self, flows, client, channel, roblox, log_channel):
        inter, _ = menu_interaction(channel)
        client.wait_for.side_effect = [channel.add("alice", author_id=10)]
        roblox.get_id_from_username.return_value = 55
        roblox.accept_join_request.side_effect = RobloxError("403")

        await flows.on_menu_select(inter, "rc_action_10", "accept_join")

        assert visible(channel, "❌ Failed to accept join request.")
        assert log_channel.sent == []

    @pytest.mark.asyncio
    async def test_username_timeout(self, flows, channel, roblox):
        inter, _ = menu_interaction(channel)
        await flows.on_menu_select(inter, "rc_action_10", "kick_user")
        assert len(visible(channel, "⏳ Timed out waiting for username.")) == 1
        roblox.exile.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_clears_prompts_but_keeps_notice(self, flows, client, channel, roblox, log_channel):
        inter, menu = menu_interaction(channel)
        typed = channel.add("alice", author_id=10)
        client.wait_for.side_effect = [typed]
        roblox.get_id_from_username.side_effect = RobloxError("404")

        await flows.on_menu_select(inter, "rc_action_10", "kick_user")

        assert [m.content for m in channel.messages.values()] == ["❌ Failed to exile user."]
        assert log_channel.sent == []


ROLES = [
    {"id": 100, "name": "Guest", "rank": 0},
    {"id": 300, "name": "Trooper", "rank": 10},
]


async def shown_rank_view(inter) -> RankSelectView:
    for _ in range(100):
        for call in inter.edit_original_response.await_args_list:
            view = call.kwargs.get("view")
            if isinstance(view, RankSelectView):
                return view
        await asyncio.sleep(0)
    raise AssertionError("rank select was never shown")


class TestChangeRank:
    @pytest.mark.asyncio
    async def test_owner_picks_rank(self, flows, client, channel, roblox, log_channel):
        inter, menu = menu_interaction(channel)
        typed = channel.add("alice", author_id=10)
        client.wait_for.side_effect = [typed]
        roblox.get_roles.return_value = ROLES
        roblox.get_id_from_username.return_value = 55
        roblox.get_rank_in_group.return_value = 0

        flow = asyncio.create_task(flows.on_menu_select(inter, "rc_action_10", "change_rank"))
        view = await shown_rank_view(inter)
        select = view.children[0]
        assert [o.value for o in select.options] == ["0", "10"]

        owner = make_interaction(channel, user_id=10, interaction_id=3)
        select._values = ["10"]
        await select.callback(owner)
        await flow

        owner.response.defer.assert_awaited_once_with()
        roblox.set_rank.assert_awaited_once_with(1, 55, 10)
        assert [s["content"] for s in log_channel.sent] == [
            "<@10> — Rank changed for **alice** (ID: 55) — 0 ➝ 10."
        ]
        assert menu.id not in channel.messages
        assert typed.id not in channel.messages

    @pytest.mark.asyncio
    async def test_other_user_cannot_pick(self, flows, client, channel, roblox, log_channel):
        inter, _ = menu_interaction(channel)
        client.wait_for.side_effect = [channel.add("alice", author_id=10)]
        roblox.get_roles.return_value = ROLES

        flow = asyncio.create_task(flows.on_menu_select(inter, "rc_action_10", "change_rank"))
        view = await shown_rank_view(inter)
        select = view.children[0]
        select._values = ["10"]

        intruder = make_interaction(channel, user_id=11, interaction_id=2)
        await select.callback(intruder)
        await select.callback(intruder)

        intruder.response.send_message.assert_awaited_once_with(
            content="❌ Only the original user can use this menu.", ephemeral=True,
        )
        assert not view.is_finished()
        roblox.set_rank.assert_not_awaited()

        view.stop()
        await flow
        assert visible(channel, "⏳ Timed out waiting for a rank.")
        assert log_channel.sent == []


class TestBackgroundCheck:
    DATA = {
        "id": 55, "name": "alice", "display_name": "Alice", "description": "",
        "created": "2019-01-02T00:00:00Z", "friends": 3, "followers": 4, "following": 5,
        "avatar_url": None, "total_groups": 2, "key_groups": ["Kingdom — Trooper"],
    }

    def test_embed(self):
        embed = bgc_embed(self.DATA)
        assert embed.title == "alice (@Alice)"
        assert embed.description == "No bio set."
        fields = {f.name: f.value for f in embed.fields}
        assert fields["Account Created"] == "Wed Jan 02 2019"
        assert fields["Key Groups"] == "Kingdom — Trooper"

    @pytest.mark.asyncio
    async def test_progress_then_embed_in_one_message(self, flows, channel, roblox):
        inter = make_interaction(channel, kind=discord.InteractionType.application_command)
        roblox.background_check.return_value = self.DATA

        await flows.background_check(inter, "alice")

        inter.response.send_message.assert_awaited_once()
        original = inter.state["original"]
        assert original.content == ""
        assert original.embeds[0].title == "alice (@Alice)"

    @pytest.mark.asyncio
    async def test_unknown_user(self, flows, channel, roblox):
        inter = make_interaction(channel, kind=discord.InteractionType.application_command)
        roblox.background_check.return_value = None
        await flows.background_check(inter, "ghost")
        assert inter.state["original"].content == "❌ Could not find Roblox user **ghost**"


class TestTransient:
    def test_skips_none_repeats_and_kept_message(self, channel):
        shown = channel.add("⏳ Timed out.")
        menu = channel.add("Choose an action:")
        prompt = DeliveryHandle(channel_id=channel.id, message_id=shown.id)
        sentinel = DeliveryHandle(channel_id=channel.id, content_hint="Enter the username:")

        assert transient([None, prompt, menu, menu, sentinel], keep=shown) == [menu, sentinel]
        assert transient([menu, None]) == [menu]

# ==================== Windows asyncio fix ====================
import sys, asyncio
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# ==================== Imports ====================
import logging

import discord
from discord import app_commands

from dedupe_store import DedupeStore
from delivery import Deduplicator, InteractionTransport
from flows import Flows, is_admin
from health import health_text, record_error, start_health_server
from roblox_api import RobloxClient
from settings import load_settings
from tracker import Tracker, init_sheets_with_retry

# ==================== Logging ====================
logging.basicConfig(level=logging.INFO)
log = logging.getLogger("rosterbot")

# ==================== ENV ====================
settings = load_settings()

# ==================== DISCORD ====================
intents = discord.Intents.default()
intents.guilds = True
intents.messages = True
intents.message_content = True  # needed to read typed usernames / dates
bot = discord.Client(intents=intents)
tree = app_commands.CommandTree(bot)

# ==================== Collaborators ====================
dedupe_store = DedupeStore(signature_ttl=settings.signature_ttl, cooldown=settings.cooldown)
dedup = Deduplicator(dedupe_store)
tracker = Tracker()
roblox = RobloxClient(settings.roblox_cookie)
flows = Flows(
    client=bot,
    dedup=dedup,
    tracker=tracker,
    roblox=roblox,
    group_id=settings.roblox_group_id,
    log_channel_id=settings.log_channel_id,
    reply_timeout=settings.reply_timeout,
)
_booted = False


async def sync_commands() -> None:
    if settings.guild_id:
        guild_obj = discord.Object(id=settings.guild_id)
        tree.clear_commands(guild=guild_obj)
        tree.copy_global_to(guild=guild_obj)
        await tree.sync(guild=guild_obj)
        log.info(f"✅ Per-guild commands resynced for {settings.guild_id}")
    await tree.sync()
    log.info("✅ Global commands synced")


async def init_roblox() -> None:
    try:
        await roblox.authenticate()
    except Exception as e:
        record_error(f"Roblox features will fail until the cookie is fixed: {e}")


async def purge_loop() -> None:
    while not bot.is_closed():
        await asyncio.sleep(60)
        removed = dedupe_store.purge_expired()
        if removed:
            log.debug(f"purged {removed} expired dedupe entries")


# ==================== Events ====================
@bot.event
async def on_ready():
    global _booted
    log.info(f"🤖 Bot is online as {bot.user}")
    if _booted:  # on_ready fires again after reconnects
        return
    _booted = True
    asyncio.create_task(init_sheets_with_retry(tracker, settings))  # warm Sheets in background
    asyncio.create_task(init_roblox())
    asyncio.create_task(purge_loop())
    try:
        await start_health_server(settings.port)
    except OSError as e:
        record_error(f"Health server failed to start: {e}")
    try:
        await sync_commands()
    except Exception as e:
        log.warning(f"⚠ Command sync failed: {e}")


@tree.error
async def on_app_command_error(interaction: discord.Interaction, error: app_commands.AppCommandError):
    await flows.report_error(interaction, error)


# ==================== Commands ====================
@tree.command(name="robloxmanager", description="Roblox group management menu")
async def robloxmanager(interaction: discord.Interaction):
    await flows.open_roblox_menu(interaction)


@tree.command(name="bgc", description="Background check a Roblox user")
@app_commands.describe(username="Roblox username")
async def bgc(interaction: discord.Interaction, username: str):
    await flows.background_check(interaction, username)


@tree.command(name="trackermanager", description="Manage placements in your Google Tracker")
async def trackermanager(interaction: discord.Interaction):
    if not tracker.ready:
        await dedup.send_once(
            InteractionTransport(interaction),
            "sheets-not-ready",
            {"content": "⚠ Google Sheets not initialized yet. Try again shortly.", "ephemeral": True},
        )
        return
    await flows.open_tracker_menu(interaction)


@tree.command(name="health", description="Show bot health/status")
async def health(interaction: discord.Interaction):
    await dedup.send_once(
        InteractionTransport(interaction),
        "health",
        {"content": health_text(), "ephemeral": True},
    )


@tree.command(name="resync", description="Sync slash commands (admin)")
async def resync(interaction: discord.Interaction):
    event = InteractionTransport(interaction)
    if not is_admin(interaction.user):
        await dedup.send_once(event, "admin-required", {"content": "❌ Administrator permission required.", "ephemeral": True})
        return
    await event.defer(ephemeral=True)
    try:
        await sync_commands()
        await dedup.send_once(event, "resync", {"content": "✅ Commands resynced."})
    except discord.HTTPException as e:
        await dedup.send_once(event, "resync", {"content": f"❌ Sync failed: {e}"})


@bot.event
async def on_error(event_method: str, *args, **kwargs):
    log.exception(f"Unhandled error in {event_method}")


# ==================== Run ====================
async def main() -> None:
    async with bot:
        try:
            await bot.start(settings.discord_token)
        finally:
            await roblox.close()


if __name__ == "__main__":
    asyncio.run(main())

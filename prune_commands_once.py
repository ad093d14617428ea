# prune_commands_once.py
# Wipes every registered slash command (global + GUILD_ID) so the next bot
# start re-registers only /robloxmanager, /bgc, /trackermanager, /health, /resync.
import sys, asyncio
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

import logging

import discord

from settings import load_settings

logging.basicConfig(level=logging.INFO)
log = logging.getLogger("rosterbot.prune")

settings = load_settings()

intents = discord.Intents.default()
intents.guilds = True  # only need guild list to wipe per-guild commands

bot = discord.Client(intents=intents)


@bot.event
async def on_ready():
    try:
        app_id = bot.user.id
        log.info(f"Logged in as {bot.user} ({app_id}). Wiping commands...")

        await bot.http.bulk_upsert_global_commands(app_id, [])
        log.info(" - Global commands wiped")

        guild_ids = [settings.guild_id] if settings.guild_id else [g.id for g in bot.guilds]
        wiped = 0
        for gid in guild_ids:
            try:
                await bot.http.bulk_upsert_guild_commands(app_id, gid, [])
                wiped += 1
            except discord.HTTPException as e:
                log.warning(f"   ⚠ Couldn't wipe guild {gid}: {e}")
        log.info(f" - Guild commands wiped in {wiped} guild(s)")
        log.info("✅ Done. Start bot.py to re-register the current command set.")
    finally:
        await bot.close()


if __name__ == "__main__":
    bot.run(settings.discord_token)

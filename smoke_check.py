import sys, asyncio
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

import logging

import discord

from health import HEALTH
from roblox_api import RobloxClient
from settings import load_settings
from tracker import Tracker, init_sheets_with_retry

logging.basicConfig(level=logging.INFO)
log = logging.getLogger("rosterbot.smoke")

settings = load_settings()

intents = discord.Intents.none()
intents.guilds = True  # minimal

client = discord.Client(intents=intents)


@client.event
async def on_ready():
    log.info(f"✅ Connected as {client.user} (id={client.user.id})")
    await init_sheets_with_retry(Tracker(), settings, max_tries=1)
    roblox = RobloxClient(settings.roblox_cookie)
    try:
        await roblox.authenticate()
    except Exception as e:
        log.warning(f"⚠ Roblox check failed: {e}")
    finally:
        await roblox.close()
    log.info(f"Sheets ready: {HEALTH['sheets_ready']} | Roblox ready: {HEALTH['roblox_ready']}")
    if HEALTH["last_error"]:
        log.warning(f"Last error: {HEALTH['last_error']}")
    await client.close()


if __name__ == "__main__":
    client.run(settings.discord_token)

"""Runtime health state plus the HTTP endpoint uptime monitors poll."""
import logging
from datetime import datetime

from aiohttp import web

log = logging.getLogger("rosterbot.health")

HEALTH = {
    "sheets_ready": False,
    "roblox_ready": False,
    "last_error": "",
    "boot_started_at": datetime.now().strftime("%H:%M:%S"),
}


def record_error(msg: str) -> None:
    HEALTH["last_error"] = msg
    log.warning(msg)


async def handle_root(request: web.Request) -> web.Response:
    return web.Response(text="OK")


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({
        "status": "up",
        "sheets_ready": HEALTH["sheets_ready"],
        "roblox_ready": HEALTH["roblox_ready"],
    })


def make_app() -> web.Application:
    app = web.Application()
    app.router.add_get("/", handle_root)
    app.router.add_get("/health", handle_health)
    return app


async def start_health_server(port: int) -> web.AppRunner:
    runner = web.AppRunner(make_app())
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    log.info(f"Health server listening on :{port}")
    return runner


def health_text() -> str:
    return (
        f"Sheets ready: **{HEALTH['sheets_ready']}**\n"
        f"Roblox ready: **{HEALTH['roblox_ready']}**\n"
        f"Boot started: {HEALTH['boot_started_at']}\n"
        f"Last error: `{HEALTH['last_error'] or 'none'}`"
    )

"""Environment configuration (.env is loaded unless BOT_ENV=production)."""
import os
from dataclasses import dataclass

from dotenv import load_dotenv

REQUIRED = [
    "DISCORD_TOKEN",
    "SPREADSHEET_ID",
    "GOOGLE_CLIENT_EMAIL",
    "GOOGLE_PRIVATE_KEY",
    "ROBLOX_COOKIE",
]

DEFAULT_GROUP_ID = 35335293
# Groups called out in /bgc results
KEY_GROUP_IDS = (34808935, 34794384, 35250103, 35335293, 5232591, 34755744)


@dataclass
class Settings:
    discord_token: str
    spreadsheet_id: str
    google_client_email: str
    google_private_key: str
    roblox_cookie: str
    guild_id: int | None = None
    log_channel_id: int | None = None
    port: int = 10000
    roblox_group_id: int = DEFAULT_GROUP_ID
    google_creds_file: str | None = None
    signature_ttl: float = 5.0
    cooldown: float = 3.0
    reply_timeout: float = 30.0
    env: str = "development"


def _env_int(name: str, default: int | None = None) -> int | None:
    v = (os.getenv(name) or "").strip()
    if v.isdigit():
        return int(v)
    return default


def _env_float(name: str, default: float) -> float:
    v = (os.getenv(name) or "").strip()
    try:
        return float(v) if v else default
    except ValueError:
        return default


def load_settings() -> Settings:
    env = os.getenv("BOT_ENV", "development")
    if env != "production":
        load_dotenv()

    missing = [k for k in REQUIRED if not (os.getenv(k) or "").strip()]
    # A service-account json file stands in for the email/key pair
    if os.getenv("GOOGLE_CREDS_FILE"):
        missing = [k for k in missing if k not in ("GOOGLE_CLIENT_EMAIL", "GOOGLE_PRIVATE_KEY")]
    if missing:
        raise SystemExit("Missing environment variables: " + ", ".join(missing))

    return Settings(
        discord_token=os.environ["DISCORD_TOKEN"].strip(),
        spreadsheet_id=os.environ["SPREADSHEET_ID"].strip(),
        google_client_email=(os.getenv("GOOGLE_CLIENT_EMAIL") or "").strip(),
        google_private_key=(os.getenv("GOOGLE_PRIVATE_KEY") or "").replace("\\n", "\n"),
        roblox_cookie=os.environ["ROBLOX_COOKIE"].strip(),
        guild_id=_env_int("GUILD_ID"),
        log_channel_id=_env_int("BOT_LOG_CHANNEL_ID"),
        port=_env_int("PORT", 10000),
        roblox_group_id=_env_int("ROBLOX_GROUP_ID", DEFAULT_GROUP_ID),
        google_creds_file=os.getenv("GOOGLE_CREDS_FILE") or None,
        signature_ttl=_env_float("DEDUPE_SIGNATURE_TTL", 5.0),
        cooldown=_env_float("DEDUPE_COOLDOWN", 3.0),
        reply_timeout=_env_float("REPLY_TIMEOUT", 30.0),
        env=env,
    )

"""Google Sheets roster ("tracker") operations.

Every squad sheet keeps member names in column E. Rows below are 1-based
sheet rows, inclusive.
"""
import asyncio
import logging
import re

import gspread
from oauth2client.service_account import ServiceAccountCredentials

from health import HEALTH, record_error

log = logging.getLogger("rosterbot.tracker")

scope = ["https://spreadsheets.google.com/feeds", "https://www.googleapis.com/auth/drive"]

GRID_RANGE = "A1:Z50"
RECRUITS = "RECRUITS"
COMMANDOS = "COMMANDOS"
RECRUIT_ROWS = (12, 32)
COMMANDO_SLOTS = (16, 28)

# (sheet, main rows, alt rows)
REMOVAL_LAYOUT: list[tuple[str, tuple[int, int], tuple[int, int] | None]] = [
    (RECRUITS, (12, 32), None),
    (COMMANDOS, (10, 15), (17, 29)),
    ("YAYAX", (12, 15), (17, 26)),
    ("OMEGA", (12, 15), (17, 26)),
    ("DELTA", (12, 15), (17, 20)),
    ("CLONE FORCE 99", (12, 12), (14, 17)),
]
NO_TIME_FORMAT = {"CLONE FORCE 99"}
TIME_FORMAT = {"numberFormat": {"type": "TIME", "pattern": "h:mm"}}

COLS = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"


class TrackerError(Exception):
    """Raised with a user-facing message."""


class SheetMissing(TrackerError):
    def __init__(self, title: str):
        super().__init__(f'❌ Sheet "{title}" not found')
        self.title = title


class NoEmptySlot(TrackerError):
    pass


class UserNotFound(TrackerError):
    pass


# ==================== Grid helpers (pure) ====================
def cell_value(grid: list[list], row: int, col: str):
    r, c = row - 1, COLS.index(col)
    if r >= len(grid) or c >= len(grid[r]):
        return ""
    v = grid[r][c]
    return "" if v is None else v


def _set(col: str, row: int, value) -> dict:
    return {"range": f"{col}{row}", "values": [[value]]}


def zero_formula(formula: str) -> str:
    """Replace the first `,<digits>` argument with `,0`."""
    return re.sub(r",\s*\d+", ",0", formula, count=1)


def _rows(span: tuple[int, int] | None) -> list[int]:
    if span is None:
        return []
    return list(range(span[0], span[1] + 1))


def clear_recruit_row(row: int) -> list[dict]:
    updates = [_set("E", row, ""), _set("M", row, ""), _set("N", row, "")]
    updates += [_set(col, row, False) for col in "FGHI"]
    return updates


def plan_add_placement(grid: list[list], username: str, start: str, end: str) -> list[dict]:
    for row in _rows(RECRUIT_ROWS):
        if not str(cell_value(grid, row, "E")).strip():
            return [_set("E", row, username), _set("M", row, start), _set("N", row, end)]
    raise NoEmptySlot("❌ No empty slot found in RECRUITS.")


def find_row(grid: list[list], username: str, rows: list[int]) -> int | None:
    for row in rows:
        if cell_value(grid, row, "E") == username:
            return row
    return None


def plan_promote(recruits: list[list], commandos: list[list], username: str) -> tuple[list[dict], list[dict]]:
    """Returns (recruit updates, commando updates)."""
    found = find_row(recruits, username, _rows(RECRUIT_ROWS))
    if found is None:
        raise UserNotFound("❌ User not found in RECRUITS.")
    for row in _rows(COMMANDO_SLOTS):
        v = str(cell_value(commandos, row, "E")).strip()
        if not v or v == "-":
            return clear_recruit_row(found), [_set("E", row, username)]
    raise NoEmptySlot("❌ No empty slot in COMMANDOS.")


def plan_squad_removal(grid: list[list], sheet: str, row: int, alt: bool) -> tuple[list[dict], list[str]]:
    """Updates for clearing one squad row, plus cells needing the h:mm format."""
    updates = [_set("E", row, ""), _set("F", row, 0)]
    time_cells = []
    if alt and sheet not in NO_TIME_FORMAT:
        updates.append(_set("G", row, 0))
        time_cells.append(f"G{row}")
    formula = cell_value(grid, row, "H")
    if isinstance(formula, str) and formula.startswith("="):
        updates.append(_set("H", row, zero_formula(formula)))
    updates += [_set(col, row, "N/A") for col in "IJK"]
    updates += [_set("L", row, ""), _set("M", row, "E")]
    return updates, time_cells


# ==================== Tracker ====================
class Tracker:
    def __init__(self, spreadsheet=None):
        self.spreadsheet = spreadsheet

    @property
    def ready(self) -> bool:
        return self.spreadsheet is not None

    async def worksheet(self, title: str):
        if self.spreadsheet is None:
            raise TrackerError("❌ Google Sheets not initialized yet")
        try:
            return await asyncio.to_thread(self.spreadsheet.worksheet, title)
        except gspread.exceptions.WorksheetNotFound:
            raise SheetMissing(title)

    async def grid(self, ws) -> list[list]:
        return await asyncio.to_thread(ws.get_values, GRID_RANGE, value_render_option="FORMULA")

    async def write(self, ws, updates: list[dict], time_cells: list[str] = ()) -> None:
        await asyncio.to_thread(ws.batch_update, updates, value_input_option="USER_ENTERED")
        for a1 in time_cells:
            try:
                await asyncio.to_thread(ws.format, a1, TIME_FORMAT)
            except Exception as e:
                log.warning(f"⚠ Could not format {ws.title}!{a1}: {e}")

    async def add_placement(self, username: str, start: str, end: str) -> None:
        ws = await self.worksheet(RECRUITS)
        updates = plan_add_placement(await self.grid(ws), username, start, end)
        await self.write(ws, updates)
        log.info(f"[Tracker] Added {username} to RECRUITS ({start} → {end})")

    async def promote_placement(self, username: str) -> None:
        recruits = await self.worksheet(RECRUITS)
        commandos = await self.worksheet(COMMANDOS)
        recruit_updates, commando_updates = plan_promote(
            await self.grid(recruits), await self.grid(commandos), username
        )
        await self.write(commandos, commando_updates)
        await self.write(recruits, recruit_updates)
        log.info(f"[Tracker] Promoted {username} to COMMANDOS")

    async def remove_user(self, username: str) -> str:
        """Clears the user's first matching row; returns the sheet it was on."""
        for sheet, main, alt in REMOVAL_LAYOUT:
            try:
                ws = await self.worksheet(sheet)
            except SheetMissing:
                log.warning(f"⚠ Sheet {sheet} missing; skipping")
                continue
            grid = await self.grid(ws)
            main_rows, alt_rows = _rows(main), _rows(alt)
            row = find_row(grid, username, main_rows + alt_rows)
            if row is None:
                continue
            if sheet == RECRUITS:
                updates, time_cells = clear_recruit_row(row), []
            else:
                updates, time_cells = plan_squad_removal(grid, sheet, row, alt=row not in main_rows)
            await self.write(ws, updates, time_cells)
            log.info(f"[Tracker] Removed {username} from {sheet} (row {row})")
            return sheet
        raise UserNotFound("❌ User not found in any sheet.")


# ==================== Connection ====================
def credentials(settings) -> ServiceAccountCredentials:
    if settings.google_creds_file:
        return ServiceAccountCredentials.from_json_keyfile_name(settings.google_creds_file, scope)
    return ServiceAccountCredentials.from_json_keyfile_dict(
        {
            "type": "service_account",
            "client_email": settings.google_client_email,
            "private_key": settings.google_private_key,
            "private_key_id": "",
            "client_id": "",
        },
        scope,
    )


async def init_sheets_with_retry(tracker: Tracker, settings, max_tries: int = 5) -> None:
    """Authorize gspread and open the tracker spreadsheet (non-blocking)."""
    wait = 2
    for attempt in range(1, max_tries + 1):
        try:
            log.info(f"[Sheets] Initializing (attempt {attempt}/{max_tries})...")
            creds = credentials(settings)
            gs_client = await asyncio.to_thread(gspread.authorize, creds)
            tracker.spreadsheet = await asyncio.to_thread(gs_client.open_by_key, settings.spreadsheet_id)
            HEALTH["sheets_ready"] = True
            HEALTH["last_error"] = ""
            log.info(f"✅ Google Sheets connected: {tracker.spreadsheet.title}")
            return
        except Exception as e:
            record_error(f"Sheets init failed (attempt {attempt}): {e}")
            if attempt == max_tries:
                log.error("[Sheets] Giving up after retries.")
                return
            await asyncio.sleep(wait)
            wait = min(wait * 2, 30)

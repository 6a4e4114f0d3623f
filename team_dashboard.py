"""
FRC Team Dashboard Builder

Fills one table per team with season statistics from Statbotics and a row per
event combining Statbotics results with alliance selections from The Blue
Alliance API. A second pass can collect per-event (x, y) points from those
tables into a graph data table.

Team table layout:
    Row 1:      team number, season headers (B:K)
    Rows 2-4:   "Current", "Last Year", "Past 3 Years" season stats
    Row 6:      event headers (A:K)
    Rows 7+:    one row per event, sorted by start date

Features:
    - Concurrent API calls with asyncio.gather, bounded by semaphores
    - Pydantic models for TBA responses and the event row
    - Automatic retry with exponential backoff for TBA requests
    - Pure mapping functions from raw API records to table cells

Usage:
    import asyncio
    from scouting_settings import DashboardSettings
    from sheet_tables import CsvWorkbook

    async def main():
        with CsvWorkbook("scouting") as workbook:
            async with TeamDashboard(workbook, DashboardSettings.from_env()) as dashboard:
                await dashboard.refresh_stats()

    asyncio.run(main())
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import aiohttp
from pydantic import BaseModel, ConfigDict, Field
from statbotics import Statbotics
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential
from tqdm import tqdm

from row_migrator import coerce_team_number
from scouting_settings import ConfigurationError, DashboardSettings, GraphSettings
from sheet_tables import Table, Workbook, is_empty_cell

logger = logging.getLogger(__name__)

Cell = Union[str, int, float]

SEASON_HEADERS: List[str] = [
    "Rank (District/World)",
    "EPA",
    "Auto EPA",
    "Endgame EPA",
    "EPA Percentile",
    "Auto EPA Percentile",
    "Endgame EPA Percentile",
    "",
    "",
    "Win/Loss Ratio",
]

SUMMARY_LABELS: List[str] = ["Current", "Last Year", "Past 3 Years"]

EVENT_HEADERS: List[str] = [
    "",
    "district",
    "final place",
    "qual rank",
    "Prelim Record",
    "Elim Record",
    "avg percent error --predicted vs actual score (statbotics)",
    "Captain",
    "Pick 1",
    "Pick 2",
    "district points",
]

SEASON_ROW = 2
EVENT_HEADER_ROW = 6
FIRST_EVENT_ROW = 7

# Metrics available to the graph builder; "table" metrics are read from a
# team table's event rows (1-based column), "api" metrics come from Statbotics
COLUMN_MAP: Dict[str, Dict[str, Any]] = {
    "PCT_ERROR": {"col": 7, "label": "Avg % Error", "source": "table"},
    "QUAL_RANK": {"col": 4, "label": "Qual Rank", "source": "table"},
    "WIN_RATE": {"col": 5, "label": "Prelim Win Rate", "source": "table"},
    "DISTRICT_PTS": {"col": 11, "label": "District Points", "source": "table"},
    "FINAL_PLACE": {"col": 3, "label": "Final Place", "source": "table"},
    "EVENT_EPA": {"col": None, "label": "Event EPA", "source": "api"},
}


# =============================================================================
# Pydantic Models
# =============================================================================


class TBADistrict(BaseModel):
    """District an event belongs to."""

    model_config = ConfigDict(extra="allow")

    abbreviation: str = Field("", description="District code (e.g., 'fim')")


class TBAEvent(BaseModel):
    """Event entry from /team/{team_key}/events/{year}."""

    model_config = ConfigDict(extra="allow")

    key: str = Field(..., description="Unique event key (e.g., '2024mimil')")
    name: str = Field("", description="Event name")
    start_date: Optional[str] = Field(None, description="Event start date (YYYY-MM-DD)")
    district: Optional[TBADistrict] = Field(None, description="District, if any")


class TBAAlliance(BaseModel):
    """
    Elimination alliance from /event/{event_key}/alliances.

    picks[0] is the captain; status holds the playoff outcome when known.
    """

    model_config = ConfigDict(extra="allow")

    picks: List[str] = Field(default_factory=list, description="Team keys in pick order")
    status: Optional[Any] = Field(None, description="Playoff status object")


class EventRow(BaseModel):
    """One event row of a team table (columns A:K)."""

    event_name: str = ""
    district: str = ""
    final_place: str = ""
    qual_rank: Cell = ""
    prelim_record: str = ""
    elim_record: str = ""
    avg_pct_error: Cell = ""
    captain: str = ""
    pick_1: str = ""
    pick_2: str = ""
    district_points: Cell = ""

    def as_cells(self) -> List[Cell]:
        return [
            self.event_name,
            self.district,
            self.final_place,
            self.qual_rank,
            self.prelim_record,
            self.elim_record,
            self.avg_pct_error,
            self.captain,
            self.pick_1,
            self.pick_2,
            self.district_points,
        ]


# =============================================================================
# Mapping functions - raw API records to table cells
# =============================================================================


def dig(data: Any, *path: str, default: Any = None) -> Any:
    """
    Walk nested dictionaries, returning default on any missing/None step.

    Example:
        >>> dig({"epa": {"ranks": {"total": {"rank": 12}}}}, "epa", "ranks", "total", "rank")
        12
    """
    current = data
    for key in path:
        if not isinstance(current, dict):
            return default
        current = current.get(key)
        if current is None:
            return default
    return current


def extract_season_row(data: Optional[Dict[str, Any]]) -> List[Cell]:
    """
    Map a Statbotics team-year record to the season row (columns B:K).

    Missing fields become blank cells. The win/loss cell uses "W/L" so a
    spreadsheet does not read it as a date.
    """
    if not data:
        return [""] * len(SEASON_HEADERS)

    district_rank = dig(data, "epa", "ranks", "district", "rank", default="")
    world_rank = dig(data, "epa", "ranks", "total", "rank", default="")
    epa = dig(data, "epa", "breakdown", "total_points", default="")
    auto_epa = dig(data, "epa", "breakdown", "auto_points", default="")
    endgame_epa = dig(data, "epa", "breakdown", "endgame_points", default="")
    percentile = dig(data, "epa", "ranks", "total", "percentile", default="")

    record = data.get("record")
    if isinstance(record, dict) and "wins" in record and "losses" in record:
        win_loss = f"{record['wins']}/{record['losses']}"
    else:
        win_loss = ""

    return [
        f"{district_rank} / {world_rank}",
        epa,
        auto_epa,
        endgame_epa,
        percentile,
        percentile,
        percentile,
        "",
        "",
        win_loss,
    ]


def aggregate_season_row(records: Sequence[Optional[Dict[str, Any]]]) -> List[Cell]:
    """
    Average total, auto and endgame EPA over the records that exist.

    A record without one of the breakdown fields contributes 0 for it.
    """
    valid = [record for record in records if record]
    if not valid:
        return [""] * len(SEASON_HEADERS)

    def average(field: str) -> float:
        total = sum(dig(record, "epa", "breakdown", field, default=0) for record in valid)
        return total / len(valid)

    return [
        "",
        average("total_points"),
        average("auto_points"),
        average("endgame_points"),
        "",
        "",
        "",
        "",
        "",
        "",
    ]


def format_record(record: Optional[Dict[str, Any]]) -> str:
    """Format a wins/losses/ties record as "7W-4L-0T"."""
    if not isinstance(record, dict):
        return ""
    return f"{record.get('wins', 0)}W-{record.get('losses', 0)}L-{record.get('ties', 0)}T"


def average_percent_error(matches: Optional[List[Dict[str, Any]]], team: int) -> Cell:
    """
    Mean absolute percent error of Statbotics score predictions for a team.

    Only qualification matches with a result, a prediction and a positive
    actual score for the team's alliance are counted.

    Returns:
        Error rounded to 2 decimals, or "" when no match qualifies
    """
    errors: List[float] = []
    for match in matches or []:
        if match.get("elim") is not False:
            continue
        result = match.get("result")
        prediction = match.get("pred")
        if not result or not prediction:
            continue

        red_teams = dig(match, "alliances", "red", "team_keys", default=[])
        blue_teams = dig(match, "alliances", "blue", "team_keys", default=[])
        if team in red_teams:
            color = "red"
        elif team in blue_teams:
            color = "blue"
        else:
            continue

        predicted = prediction.get(f"{color}_score")
        actual = result.get(f"{color}_score")
        if predicted is not None and actual is not None and actual > 0:
            errors.append(abs(predicted - actual) / actual * 100)

    if not errors:
        return ""
    return round(sum(errors) / len(errors), 2)


def alliance_for_team(
    alliances: Optional[List[TBAAlliance]], team: int
) -> Tuple[str, str, str, str]:
    """
    Find the alliance a team played on at an event.

    Returns:
        Tuple of (captain, pick 1, pick 2, final place) with team numbers
        stripped of their "frc" prefix; blanks when the team was not picked
    """
    team_key = f"frc{team}"
    for alliance in alliances or []:
        if team_key not in alliance.picks:
            continue

        picks = [pick.replace("frc", "") for pick in alliance.picks[:3]]
        picks += [""] * (3 - len(picks))

        final_place = ""
        status = alliance.status if isinstance(alliance.status, dict) else {}
        if status.get("status") == "won":
            final_place = "Winner"
        elif status.get("level"):
            final_place = status["level"]

        return picks[0], picks[1], picks[2], final_place
    return "", "", "", ""


def build_event_row(
    event: TBAEvent,
    team_event: Optional[Dict[str, Any]],
    matches: Optional[List[Dict[str, Any]]],
    alliances: Optional[List[TBAAlliance]],
    team: int,
) -> EventRow:
    """Combine one event's Statbotics and TBA data into a table row."""
    row = EventRow(
        event_name=event.name,
        district=event.district.abbreviation.upper() if event.district else "",
    )

    if team_event:
        qual = dig(team_event, "record", "qual")
        if isinstance(qual, dict):
            row.qual_rank = qual.get("rank") if qual.get("rank") is not None else ""
            row.prelim_record = format_record(qual)
        elim = dig(team_event, "record", "elim")
        if isinstance(elim, dict):
            row.elim_record = format_record(elim)
        if team_event.get("district_points") is not None:
            row.district_points = team_event["district_points"]

    row.avg_pct_error = average_percent_error(matches, team)
    row.captain, row.pick_1, row.pick_2, row.final_place = alliance_for_team(alliances, team)
    return row


def resolve_value(key: str, raw: Any) -> Optional[float]:
    """
    Turn a team table cell into a numeric graph value.

    WIN_RATE accepts both "7-4-0" and "7W-4L-0T" records and returns
    wins / matches rounded to 3 decimals.

    Returns:
        Numeric value, or None if the cell cannot be plotted
    """
    if is_empty_cell(raw):
        return None

    if key == "WIN_RATE":
        numbers = [int(n) for n in re.findall(r"\d+", str(raw))]
        if len(numbers) < 2:
            return None
        wins = numbers[0]
        total = numbers[0] + numbers[1] + (numbers[2] if len(numbers) > 2 else 0)
        if total == 0:
            return None
        return round(wins / total, 3)

    if isinstance(raw, bool):
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


# =============================================================================
# Async API Clients
# =============================================================================


def _is_retryable(exc: BaseException) -> bool:
    """Retry connection problems, timeouts, rate limits and server errors."""
    if isinstance(exc, aiohttp.ClientResponseError):
        return exc.status == 429 or exc.status >= 500
    return isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError))


class TBAAsyncClient:
    """
    Async client for The Blue Alliance API.

    Attributes:
        api_key: TBA API auth key (from X_TBA_AUTH_KEY env var)
        base_url: TBA API base URL
        max_concurrent: Maximum concurrent requests
        session: aiohttp ClientSession for connection pooling
    """

    def __init__(self, api_key: str, max_concurrent: int = 10) -> None:
        self.api_key = api_key
        self.base_url = "https://www.thebluealliance.com/api/v3"
        self.max_concurrent = max_concurrent
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.session: Optional[aiohttp.ClientSession] = None
        self.headers = {"X-TBA-Auth-Key": api_key}

    async def __aenter__(self) -> TBAAsyncClient:
        """Context manager entry - create aiohttp session."""
        self.session = aiohttp.ClientSession(headers=self.headers)
        return self

    async def __aexit__(self, *args) -> None:
        """Context manager exit - close aiohttp session."""
        if self.session:
            await self.session.close()

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    )
    async def _get(self, endpoint: str) -> Any:
        """
        Internal async GET request with retry logic.

        Raises:
            aiohttp.ClientError: If request fails after retries
        """
        if not self.session:
            raise RuntimeError("Session not initialized. Use async context manager.")

        url = f"{self.base_url}/{endpoint}"
        async with self.semaphore:
            logger.debug(f"GET {url}")
            async with self.session.get(url) as response:
                response.raise_for_status()
                return await response.json()

    async def get_team_events(self, team: int, year: int) -> List[TBAEvent]:
        """Fetch the events a team is registered for in a season ([] on failure)."""
        try:
            data = await self._get(f"team/frc{team}/events/{year}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"[TBA] Failed to fetch events for team {team} year {year}: {type(e).__name__}: {e}")
            return []
        return [TBAEvent(**event) for event in data or []]

    async def get_event_alliances(self, event_key: str) -> List[TBAAlliance]:
        """Fetch elimination alliances for an event ([] before selection or on failure)."""
        try:
            data = await self._get(f"event/{event_key}/alliances")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"[TBA] Failed to fetch alliances for {event_key}: {type(e).__name__}: {e}")
            return []
        return [TBAAlliance(**alliance) for alliance in data or []]


class StatboticsAsyncClient:
    """
    Async client for Statbotics API.

    Uses the statbotics library but wraps its blocking calls in the default
    executor so many requests can run concurrently.
    """

    def __init__(self, max_concurrent: int = 10) -> None:
        self.max_concurrent = max_concurrent
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self._sync_client = Statbotics()

    async def _call(self, label: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a statbotics call in the thread pool; None if it fails."""
        async with self.semaphore:
            logger.debug(f"[STATBOTICS] Fetching {label}")
            loop = asyncio.get_running_loop()
            try:
                return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
            except Exception as e:
                logger.error(f"[STATBOTICS] Failed to fetch {label}: {type(e).__name__}: {e}")
                return None

    async def get_team_year(self, team: int, year: int) -> Optional[Dict[str, Any]]:
        return await self._call(
            f"team {team} year {year}", self._sync_client.get_team_year, team, year
        )

    async def get_team_event(self, team: int, event_key: str) -> Optional[Dict[str, Any]]:
        return await self._call(
            f"team {team} event {event_key}", self._sync_client.get_team_event, team, event_key
        )

    async def get_event_matches(self, event_key: str, limit: int = 100) -> Optional[List[Dict[str, Any]]]:
        return await self._call(
            f"matches for {event_key}", self._sync_client.get_matches, event=event_key, limit=limit
        )


# =============================================================================
# Team Dashboard
# =============================================================================


class TeamDashboard:
    """
    Writes Statbotics / TBA statistics into per-team tables.

    Use as an async context manager; it opens a TBA session unless a client
    was supplied.

    Attributes:
        workbook: Workbook holding the team tables
        settings: Years, API key and concurrency limits
        tba_client: The Blue Alliance client
        statbotics_client: Statbotics client
    """

    def __init__(
        self,
        workbook: Workbook,
        settings: DashboardSettings,
        tba_client: Optional[TBAAsyncClient] = None,
        statbotics_client: Optional[StatboticsAsyncClient] = None,
    ) -> None:
        self.workbook = workbook
        self.settings = settings
        self._owns_tba_client = tba_client is None
        self.tba_client = tba_client or TBAAsyncClient(
            api_key=settings.tba_key, max_concurrent=settings.max_concurrent_tba
        )
        self.statbotics_client = statbotics_client or StatboticsAsyncClient(
            settings.max_concurrent_statbotics
        )

        # team -> {event name: event key}, filled by the graph builder
        self._event_keys: Dict[int, Dict[str, str]] = {}

    async def __aenter__(self) -> TeamDashboard:
        if self._owns_tba_client:
            await self.tba_client.__aenter__()
        return self

    async def __aexit__(self, *args) -> None:
        if self._owns_tba_client:
            await self.tba_client.__aexit__(*args)

    # -------------------------------------------------------------------------
    # Team discovery
    # -------------------------------------------------------------------------

    def team_numbers_from_list(self) -> List[int]:
        """
        Read team numbers from column A of the team list table.

        Raises:
            ConfigurationError: If the team list table does not exist
        """
        team_list = self.workbook.get_table(self.settings.team_list_table)
        if team_list is None:
            raise ConfigurationError(f"No table named '{self.settings.team_list_table}' found.")

        teams: List[int] = []
        for row in team_list.get_values():
            team = coerce_team_number(row[0]) if row and not is_empty_cell(row[0]) else None
            if team is not None and team not in teams:
                teams.append(team)
        return teams

    def team_tables(self) -> List[Tuple[int, Table]]:
        """Return (team, table) for every table whose title is a team number."""
        tables = []
        for name in self.workbook.table_names():
            if not name.strip().isdigit():
                continue
            table = self.workbook.get_table(name)
            if table is not None:
                tables.append((int(name), table))
        return tables

    # -------------------------------------------------------------------------
    # Writers
    # -------------------------------------------------------------------------

    @staticmethod
    def write_layout(table: Table, team: int) -> None:
        """Write the fixed labels and headers of a team table."""
        table.write_rows(1, 1, [[team] + SEASON_HEADERS])
        table.write_rows(SEASON_ROW, 1, [[label] for label in SUMMARY_LABELS])
        table.write_rows(EVENT_HEADER_ROW, 1, [EVENT_HEADERS])

    async def write_stat_rows(self, table: Table, team: int) -> None:
        """
        Write the three season rows (2-4) for a team.

        Row 2 uses the current season, falling back to the season before;
        row 3 the event season; row 4 averages the event season and the two
        before it.
        """
        current_year = self.settings.current_year
        event_year = self.settings.event_year
        years = [current_year, current_year - 1, event_year, event_year - 1, event_year - 2]

        records = await asyncio.gather(
            *[self.statbotics_client.get_team_year(team, year) for year in years]
        )
        current = records[0] or records[1]
        last_season = records[2]

        table.write_rows(
            SEASON_ROW,
            2,
            [
                extract_season_row(current),
                extract_season_row(last_season),
                aggregate_season_row(records[2:]),
            ],
        )

    async def write_event_rows(self, table: Table, team: int) -> int:
        """
        Write one row per event of the event season, starting at row 7.

        Returns:
            Number of event rows written
        """
        events = await self.tba_client.get_team_events(team, self.settings.event_year)
        if not events:
            logger.info(f"No {self.settings.event_year} events found for team {team}")
            return 0

        events.sort(key=lambda e: e.start_date or "")

        team_events, matches, alliances = await asyncio.gather(
            asyncio.gather(
                *[self.statbotics_client.get_team_event(team, e.key) for e in events]
            ),
            asyncio.gather(
                *[
                    self.statbotics_client.get_event_matches(e.key, self.settings.match_limit)
                    for e in events
                ]
            ),
            asyncio.gather(*[self.tba_client.get_event_alliances(e.key) for e in events]),
        )

        rows = [
            build_event_row(event, team_events[i], matches[i], alliances[i], team).as_cells()
            for i, event in enumerate(events)
        ]

        table.clear_range(FIRST_EVENT_ROW, 1, len(rows) + 5, len(EVENT_HEADERS))
        table.write_rows(FIRST_EVENT_ROW, 1, rows)
        return len(rows)

    # -------------------------------------------------------------------------
    # Main operations
    # -------------------------------------------------------------------------

    async def build_team_tables(self) -> List[int]:
        """
        Build every team table from scratch from the team list.

        Existing team tables are cleared first, so manual notes are lost.

        Returns:
            Team numbers that were built
        """
        teams = self.team_numbers_from_list()
        logger.info(f"Building tables for {len(teams)} teams")

        for team in tqdm(teams, desc="Building team tables", unit="team"):
            table, _ = self.workbook.get_or_create_table(str(team))
            table.clear()
            self.write_layout(table, team)
            await self.write_stat_rows(table, team)
            await self.write_event_rows(table, team)

        logger.info(f"Built {len(teams)} team tables")
        return teams

    async def refresh_stats(self) -> int:
        """
        Refresh the season and event rows of every existing team table.

        Cells outside those rows (manual notes) are left alone.

        Returns:
            Number of team tables refreshed
        """
        tables = self.team_tables()
        logger.info(f"Refreshing stats for {len(tables)} team tables")

        for team, table in tqdm(tables, desc="Refreshing team stats", unit="team"):
            await self.write_stat_rows(table, team)
            await self.write_event_rows(table, team)

        return len(tables)

    async def event_epa(self, team: int, event_name: str) -> Optional[float]:
        """Look up a team's Statbotics EPA at an event given the event's name."""
        if team not in self._event_keys:
            events = await self.tba_client.get_team_events(team, self.settings.event_year)
            self._event_keys[team] = {event.name: event.key for event in events}

        event_key = self._event_keys[team].get(event_name)
        if not event_key:
            return None

        team_event = await self.statbotics_client.get_team_event(team, event_key)
        return dig(team_event, "epa", "breakdown", "total_points")

    async def _graph_value(self, axis: str, team: int, row: List[Any]) -> Optional[float]:
        definition = COLUMN_MAP[axis]
        if definition["source"] == "api":
            return await self.event_epa(team, row[0])
        col = definition["col"]
        return resolve_value(axis, row[col - 1] if col <= len(row) else "")

    async def build_graph_table(self, graph: Optional[GraphSettings] = None) -> int:
        """
        Replace the graph data table with one (x, y) point per team event.

        Only the data table is written; charting is left to the spreadsheet.

        Returns:
            Number of points written

        Raises:
            ConfigurationError: If an axis is not a COLUMN_MAP key
        """
        graph = graph or GraphSettings()
        for axis in (graph.x, graph.y):
            if axis not in COLUMN_MAP:
                raise ConfigurationError(
                    f"Invalid graph axis '{axis}'. Options: {', '.join(COLUMN_MAP)}"
                )

        title = graph.table_title
        team_tables = self.team_tables()

        self.workbook.delete_table(title)
        graph_table = self.workbook.create_table(title)
        graph_table.write_rows(
            1, 1, [["Team", "Event", COLUMN_MAP[graph.x]["label"], COLUMN_MAP[graph.y]["label"]]]
        )

        points: List[List[Any]] = []
        for team, table in tqdm(team_tables, desc="Collecting graph points", unit="team"):
            values = table.get_values()
            for row in values[FIRST_EVENT_ROW - 1:]:
                event_name = row[0] if row else ""
                if is_empty_cell(event_name):
                    continue
                x_value = await self._graph_value(graph.x, team, row)
                y_value = await self._graph_value(graph.y, team, row)
                if x_value is None or y_value is None:
                    continue
                points.append([team, event_name, x_value, y_value])

        if len(points) < 2:
            graph_table.set_cell(
                2, 1, "Not enough data - run build-teams or refresh-stats first."
            )
            logger.warning(f"Graph '{title}' has only {len(points)} point(s)")
            return len(points)

        graph_table.write_rows(2, 1, points)
        logger.info(f"Graph data built: {title} ({len(points)} points)")
        return len(points)

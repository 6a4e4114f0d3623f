"""
FRC Scouting Sheet Tools

Command line entry point for the scouting workbook:

    push           Paste new SA_DATA_MASTER rows into the team tables
    force-push     Clear the tracking marks and paste every row again
    build-teams    Build every team table from the "Teams" list (clears them)
    refresh-stats  Refresh Statbotics / TBA stats in existing team tables
    build-graph    Collect per-event (x, y) points into a graph data table

The workbook is either a directory of CSV files (--csv-dir) or a Google Sheets
spreadsheet (--spreadsheet, with a service account key via --credentials or
GOOGLE_APPLICATION_CREDENTIALS).

Usage:
    python app.py --csv-dir scouting push --team-column B
    python app.py --spreadsheet 1AbC... build-graph --x DISTRICT_PTS --y PCT_ERROR

Dependencies:
    - aiohttp / statbotics: API clients for the stats commands
    - gspread / google-auth: Google Sheets workbook
    - pandas: CSV workbook
    - pydantic: settings and result models
    - tenacity: retry with exponential backoff
    - tqdm: progress bars
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys
from typing import List, Optional

from dotenv import load_dotenv

from row_migrator import force_push_rows_to_team_tables, push_rows_to_team_tables
from scouting_settings import (
    ConfigurationError,
    DashboardSettings,
    GraphSettings,
    MigrationSettings,
)
from sheet_tables import CsvWorkbook, GoogleSheetWorkbook, Workbook
from team_dashboard import COLUMN_MAP, TeamDashboard

logger = logging.getLogger(__name__)

# Module loggers that configure_logging() attaches handlers to
PROJECT_LOGGERS = (__name__, "row_migrator", "scouting_settings", "sheet_tables", "team_dashboard")


# =============================================================================
# Configuration
# =============================================================================


def configure_logging(log_file: Optional[str] = "scouting.log", level: int = logging.INFO) -> None:
    """
    Send this project's log records to the console and, optionally, a log file.

    Only the project's module loggers are configured; the root logger and
    third-party loggers (aiohttp, gspread, urllib3 ...) keep their settings.
    Calling it again replaces the handlers from the previous call.

    Args:
        log_file: Path of the persistent log file (None for console only)
        level: Logging level for the project loggers
    """
    # Consistent log format with timestamp
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Console handler for real-time feedback
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    handlers: List[logging.Handler] = [console_handler]

    # File handler for persistent logs
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    closed = set()
    for name in PROJECT_LOGGERS:
        project_logger = logging.getLogger(name)
        for handler in project_logger.handlers[:]:
            project_logger.removeHandler(handler)
            if handler not in closed:
                handler.close()
                closed.add(handler)
        project_logger.setLevel(level)
        for handler in handlers:
            project_logger.addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Populate an FRC scouting workbook from the master sheet and Statbotics / TBA"
    )

    backend = parser.add_mutually_exclusive_group()
    backend.add_argument(
        "--csv-dir",
        help="Directory of <tab>.csv files to use as the workbook",
    )
    backend.add_argument(
        "--spreadsheet",
        default=os.getenv("SCOUTING_SPREADSHEET_KEY"),
        help="Google Sheets spreadsheet key (default: $SCOUTING_SPREADSHEET_KEY)",
    )
    parser.add_argument(
        "--credentials",
        default=os.getenv("GOOGLE_APPLICATION_CREDENTIALS"),
        help="Service account JSON key file (default: $GOOGLE_APPLICATION_CREDENTIALS)",
    )
    parser.add_argument(
        "--log-file",
        default="scouting.log",
        help="Log file path, '' to disable (default: scouting.log)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    for name, help_text in [
        ("push", "Paste new master rows into team tables"),
        ("force-push", "Clear tracking marks and paste every master row again"),
    ]:
        command = commands.add_parser(name, help=help_text)
        command.add_argument("--team-column", default="A", help="Team number column (A, B ... or 1, 2 ...)")
        command.add_argument("--source", default="SA_DATA_MASTER", help="Master table name")
        command.add_argument("--gap", type=int, default=5, help="Blank rows above each pasted row")
        command.add_argument("--tracking-name", default="SA_PASTED", help="Tracking column header")

    for name, help_text in [
        ("build-teams", "Build all team tables from the team list"),
        ("refresh-stats", "Refresh stats in existing team tables"),
    ]:
        command = commands.add_parser(name, help=help_text)
        command.add_argument("--team-list", default="Teams", help="Table listing team numbers in column A")

    graph = commands.add_parser("build-graph", help="Build the graph data table")
    graph.add_argument("--x", default="DISTRICT_PTS", choices=list(COLUMN_MAP), help="X axis metric")
    graph.add_argument("--y", default="PCT_ERROR", choices=list(COLUMN_MAP), help="Y axis metric")
    graph.add_argument("--title", default=None, help="Graph table title (default: 'X VS Y')")

    return parser


def open_workbook(args: argparse.Namespace) -> Workbook:
    """
    Open the workbook selected on the command line.

    Raises:
        ConfigurationError: If no backend is configured
    """
    if args.csv_dir:
        source = getattr(args, "source", None)
        return CsvWorkbook(args.csv_dir, source_tables=(source,) if source else ())
    if args.spreadsheet:
        if not args.credentials:
            raise ConfigurationError(
                "Google Sheets needs --credentials or GOOGLE_APPLICATION_CREDENTIALS"
            )
        return GoogleSheetWorkbook.from_service_account(args.credentials, args.spreadsheet)
    raise ConfigurationError("Choose a workbook with --csv-dir or --spreadsheet")


# =============================================================================
# Commands
# =============================================================================


def run_migration(workbook: Workbook, args: argparse.Namespace) -> str:
    settings = MigrationSettings(
        key_column_ref=args.team_column,
        source_table_name=args.source,
        row_gap=args.gap,
        tracking_column_name=args.tracking_name,
    )
    if args.command == "force-push":
        result = force_push_rows_to_team_tables(workbook, settings)
    else:
        result = push_rows_to_team_tables(workbook, settings)
    return result.summary(settings.source_table_name)


async def run_dashboard(workbook: Workbook, args: argparse.Namespace) -> str:
    overrides = {}
    if args.command in ("build-teams", "refresh-stats"):
        overrides["team_list_table"] = args.team_list
    settings = DashboardSettings.from_env(**overrides)

    async with TeamDashboard(workbook, settings) as dashboard:
        if args.command == "build-teams":
            teams = await dashboard.build_team_tables()
            return f"Built {len(teams)} team table(s)"
        if args.command == "refresh-stats":
            count = await dashboard.refresh_stats()
            return f"Refreshed {count} team table(s)"

        graph = GraphSettings(x=args.x, y=args.y, title=args.title)
        points = await dashboard.build_graph_table(graph)
        return f"Graph data built: {graph.table_title} ({points} points)"


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run one command against the workbook.

    Returns:
        Process exit code (0 on success, 1 on configuration errors)
    """
    load_dotenv()
    args = build_parser().parse_args(argv)
    configure_logging(args.log_file or None)

    try:
        workbook = open_workbook(args)
        # CSV workbooks are written back when the block exits
        context = workbook if isinstance(workbook, CsvWorkbook) else contextlib.nullcontext(workbook)
        with context:
            if args.command in ("push", "force-push"):
                message = run_migration(workbook, args)
            else:
                message = asyncio.run(run_dashboard(workbook, args))
    # ConfigurationError, a missing API key and pydantic validation errors
    except ValueError as e:
        logger.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1

    logger.info(message)
    print(message)
    return 0


if __name__ == "__main__":
    sys.exit(main())

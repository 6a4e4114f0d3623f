"""
Master Sheet -> Team Tables Row Migrator

Reads every row of the master tab ("SA_DATA_MASTER" by default) and copies it
into the tab named after the row's team number, pasted a fixed number of blank
rows below the last row of that tab that holds any data.

Safe to run again at any time: a tracking column appended to the master tab
records which rows were already pasted, so a row is never pasted twice unless
force_push_rows_to_team_tables() wipes the marks first.

Usage:
    from row_migrator import push_rows_to_team_tables
    from scouting_settings import MigrationSettings
    from sheet_tables import CsvWorkbook

    with CsvWorkbook("scouting") as workbook:
        result = push_rows_to_team_tables(workbook, MigrationSettings(key_column_ref="B"))
    print(result.summary())
"""

from __future__ import annotations

import logging
import string
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from scouting_settings import ConfigurationError, MigrationSettings
from sheet_tables import Table, Workbook, is_empty_cell

logger = logging.getLogger(__name__)

# Number of per-row log lines shown in the summary
SUMMARY_LOG_LINES = 20

# Per-row log lines kept on a MigrationResult; older lines are dropped
MAX_LOG_LINES = 100

TRACKING_NOTE = "Auto-managed by push_rows_to_team_tables. Do not delete."


# =============================================================================
# Result model
# =============================================================================


class MigrationResult(BaseModel):
    """
    Outcome of one migration run.

    Attributes:
        pushed: Rows pasted into team tables during this run
        skipped: Rows skipped because they were already pasted
        new_tables: Team tables created during this run
        log: Most recent per-row outcomes (at most MAX_LOG_LINES), oldest first
    """

    pushed: int = Field(0, description="Rows pasted this run")
    skipped: int = Field(0, description="Rows already pasted")
    new_tables: int = Field(0, description="Team tables created")
    log: List[str] = Field(default_factory=list, description="Per-row outcomes")

    def record(self, message: str) -> None:
        """Append a log line, dropping the oldest beyond MAX_LOG_LINES."""
        self.log.append(message)
        if len(self.log) > MAX_LOG_LINES:
            del self.log[: len(self.log) - MAX_LOG_LINES]

    def summary(self, source_table_name: str = "the master table") -> str:
        """Render the counts and the most recent log lines for display."""
        lines = [
            "Done!",
            f"  - {self.pushed} row(s) pasted into team tables",
            f"  - {self.skipped} row(s) already pasted (skipped)",
            f"  - {self.new_tables} new table(s) created",
        ]
        if self.pushed == 0 and self.skipped > 0:
            lines.append("")
            lines.append(
                f"All rows were already pasted. Add new rows to {source_table_name} and run again."
            )
        if self.log:
            lines.append("")
            lines.append(f"Details (last {SUMMARY_LOG_LINES}):")
            lines.extend(self.log[-SUMMARY_LOG_LINES:])
        return "\n".join(lines)


# =============================================================================
# Helpers
# =============================================================================


def resolve_column(ref: Any) -> Optional[int]:
    """
    Convert a column reference to a 1-based column index.

    Accepts positive integers, digit strings ("3") and spreadsheet column
    letters ("A", "b", "AA"). Letters are validated one by one before they are
    added to the base-26 total.

    Args:
        ref: Column reference

    Returns:
        1-based column index, or None if the reference is invalid

    Example:
        >>> resolve_column("AA")
        27
        >>> resolve_column("A1") is None
        True
    """
    if ref is None or isinstance(ref, bool):
        return None
    if isinstance(ref, int):
        return ref if ref > 0 else None
    if isinstance(ref, float):
        return int(ref) if ref.is_integer() and ref > 0 else None

    text = str(ref).strip().upper()
    if not text:
        return None
    if text.isdigit():
        index = int(text)
        return index if index > 0 else None

    result = 0
    for char in text:
        if char not in string.ascii_uppercase:
            return None
        result = result * 26 + (ord(char) - ord("A") + 1)
    return result


def coerce_team_number(raw: Any) -> Optional[int]:
    """
    Coerce a key cell value to a positive integer team number.

    Returns:
        The team number, or None when the value is not a positive integer
    """
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw > 0 else None
    try:
        number = float(str(raw).strip())
    except ValueError:
        return None
    if not number.is_integer() or number <= 0:
        return None
    return int(number)


def find_last_content_row(table: Table) -> int:
    """
    Find the last row holding any non-empty cell, scanning bottom-up.

    A table's reported last row can include blank rows that still carry
    formatting, so the values themselves are checked.

    Returns:
        1-based row index, or 0 if the table is blank
    """
    if table.last_row() == 0:
        return 0

    values = table.get_values()
    for index in range(len(values) - 1, -1, -1):
        if any(not is_empty_cell(cell) for cell in values[index]):
            return index + 1
    return 0


def get_or_create_tracking_column(table: Table, tracking_column_name: str) -> int:
    """
    Find the tracking column in the header row, adding it if missing.

    A new tracking column goes one column to the right of the current last
    column, with a note warning people not to delete it.

    Returns:
        1-based column index of the tracking column
    """
    last_col = table.last_column()
    for col in range(1, last_col + 1):
        if table.get_cell(1, col) == tracking_column_name:
            return col

    new_col = last_col + 1
    table.set_cell(1, new_col, tracking_column_name)
    table.set_note(1, new_col, TRACKING_NOTE)
    logger.info(f"Added tracking column '{tracking_column_name}' at column {new_col} of {table.title}")
    return new_col


def _get_source_table(workbook: Workbook, settings: MigrationSettings) -> Table:
    source = workbook.get_table(settings.source_table_name)
    if source is None:
        raise ConfigurationError(
            f'Table "{settings.source_table_name}" not found. Create that tab and try again.'
        )
    return source


def _resolve_key_column(settings: MigrationSettings) -> int:
    key_col = resolve_column(settings.key_column_ref)
    if key_col is None:
        raise ConfigurationError(
            f'Invalid team column value: "{settings.key_column_ref}". '
            "Set it to a column letter (A, B, C...) or number (1, 2, 3...)."
        )
    return key_col


# =============================================================================
# Main operations
# =============================================================================


def push_rows_to_team_tables(
    workbook: Workbook, settings: Optional[MigrationSettings] = None
) -> MigrationResult:
    """
    Paste every not-yet-pasted master row into its team's table.

    For each data row the row's values (minus the tracking column) are written
    at last_content_row + row_gap + 1 of the team table, and only then is the
    row's tracking cell set. A failure part-way therefore leaves the failing
    row unmarked and it is retried on the next run.

    Args:
        workbook: Workbook holding the master table and team tables
        settings: Migration settings (defaults if omitted)

    Returns:
        Counts and per-row log of the run

    Raises:
        ConfigurationError: If the master table is missing or the team column
            reference is invalid. Nothing is modified in that case.
    """
    settings = settings or MigrationSettings()
    source = _get_source_table(workbook, settings)
    key_col = _resolve_key_column(settings)
    result = MigrationResult()

    if source.last_row() < 2:
        logger.info(f"{settings.source_table_name} has no data rows yet")
        return result

    tracking_col = get_or_create_tracking_column(source, settings.tracking_column_name)

    # Read the whole master table once; width covers the tracking column
    all_values = source.get_values()
    logger.info(f"Scanning {len(all_values) - 1} data rows of {settings.source_table_name}")

    for row_index in range(2, len(all_values) + 1):
        row = all_values[row_index - 1]
        track_value = row[tracking_col - 1] if tracking_col <= len(row) else ""

        if settings.is_tracked(track_value):
            result.skipped += 1
            continue

        raw_team = row[key_col - 1] if key_col <= len(row) else ""
        if is_empty_cell(raw_team) or (isinstance(raw_team, str) and not raw_team.strip()):
            continue

        team_number = coerce_team_number(raw_team)
        if team_number is None:
            message = f'Row {row_index}: "{raw_team}" is not a valid team number - skipped'
            logger.warning(message)
            result.record(message)
            continue

        team_name = str(team_number)
        team_table, created = workbook.get_or_create_table(team_name)
        if created:
            result.new_tables += 1
            result.record(f"Created new table: {team_name}")

        paste_row = find_last_content_row(team_table) + settings.row_gap + 1
        values = [cell for col, cell in enumerate(row, start=1) if col != tracking_col]
        team_table.write_rows(paste_row, 1, [values])

        source.set_cell(row_index, tracking_col, settings.tracking_column_name)

        result.pushed += 1
        message = f"Team {team_name} -> row {row_index} pasted at line {paste_row}"
        logger.info(message)
        result.record(message)

    logger.info(
        f"Migration complete: {result.pushed} pushed, {result.skipped} skipped, "
        f"{result.new_tables} new tables"
    )
    return result


def force_push_rows_to_team_tables(
    workbook: Workbook, settings: Optional[MigrationSettings] = None
) -> MigrationResult:
    """
    Clear every tracking mark, then paste all master rows again.

    This re-pastes rows below whatever the team tables already hold; it does
    not remove earlier copies.

    Raises:
        ConfigurationError: Same conditions as push_rows_to_team_tables
    """
    settings = settings or MigrationSettings()
    source = _get_source_table(workbook, settings)
    _resolve_key_column(settings)

    last_row = source.last_row()
    if last_row > 1:
        tracking_col = get_or_create_tracking_column(source, settings.tracking_column_name)
        source.clear_range(2, tracking_col, last_row - 1, 1)
        logger.info(f"Cleared tracking marks for {last_row - 1} rows of {settings.source_table_name}")

    return push_rows_to_team_tables(workbook, settings)

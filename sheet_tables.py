"""
Spreadsheet Table Backends

The scouting tools only ever talk to a workbook of named tables (tabs) through
the small interface defined here. Three backends are provided:

    - InMemoryWorkbook: plain Python lists, used by tests and as a base class
    - CsvWorkbook: a directory holding one <tab>.csv per table (pandas)
    - GoogleSheetWorkbook: a Google Sheets spreadsheet (gspread)

Rows and columns are 1-based everywhere, like spreadsheet cell references.

Usage:
    with CsvWorkbook("scouting") as workbook:
        table, created = workbook.get_or_create_table("254")
        table.write_rows(1, 1, [["Team", 254]])
"""

from __future__ import annotations

import logging
import math
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import gspread
import pandas as pd
from google.oauth2.service_account import Credentials
from gspread.exceptions import APIError
from gspread.utils import ValueRenderOption, rowcol_to_a1
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

Row = List[Any]
Grid = List[Row]


def is_empty_cell(value: Any) -> bool:
    """Return True for cells a spreadsheet would show as blank."""
    if value is None or value == "":
        return True
    return isinstance(value, float) and math.isnan(value)


# =============================================================================
# Interfaces
# =============================================================================


class Table(ABC):
    """A single tab of a workbook."""

    @property
    @abstractmethod
    def title(self) -> str:
        ...

    @abstractmethod
    def last_row(self) -> int:
        """Last row the backend reports; may include blank trailing rows."""

    @abstractmethod
    def last_column(self) -> int:
        ...

    @abstractmethod
    def get_values(self) -> Grid:
        """Return a rectangular last_row x last_column grid of cell values."""

    @abstractmethod
    def get_cell(self, row: int, col: int) -> Any:
        ...

    @abstractmethod
    def set_cell(self, row: int, col: int, value: Any) -> None:
        ...

    @abstractmethod
    def write_rows(self, row: int, col: int, rows: Grid) -> None:
        """Write a block of values with its top-left corner at (row, col)."""

    @abstractmethod
    def clear_range(self, row: int, col: int, num_rows: int, num_cols: int) -> None:
        """Blank out values in a block; cells outside the table are ignored."""

    @abstractmethod
    def clear(self) -> None:
        ...

    @abstractmethod
    def set_note(self, row: int, col: int, text: str) -> None:
        ...


class Workbook(ABC):
    """A collection of tables addressed by title."""

    @abstractmethod
    def get_table(self, name: str) -> Optional[Table]:
        ...

    @abstractmethod
    def create_table(self, name: str) -> Table:
        ...

    @abstractmethod
    def delete_table(self, name: str) -> None:
        ...

    @abstractmethod
    def table_names(self) -> List[str]:
        ...

    def get_or_create_table(self, name: str) -> Tuple[Table, bool]:
        """
        Return the table with this title, creating it when missing.

        Returns:
            Tuple of (table, created) where created is True for a new table
        """
        table = self.get_table(name)
        if table is not None:
            return table, False
        logger.info(f"Creating table: {name}")
        return self.create_table(name), True


# =============================================================================
# In-memory backend
# =============================================================================


class InMemoryTable(Table):
    """
    Table backed by a list of rows.

    Rows written as blanks still count towards last_row(), which mirrors how a
    spreadsheet keeps reporting formatted-but-empty rows.
    """

    def __init__(self, title: str, rows: Optional[Grid] = None) -> None:
        self._title = title
        self._rows: Grid = [list(row) for row in rows or []]
        self.notes: Dict[Tuple[int, int], str] = {}

    @property
    def title(self) -> str:
        return self._title

    def last_row(self) -> int:
        return len(self._rows)

    def last_column(self) -> int:
        return max((len(row) for row in self._rows), default=0)

    def get_values(self) -> Grid:
        width = self.last_column()
        return [row + [""] * (width - len(row)) for row in self._rows]

    def get_cell(self, row: int, col: int) -> Any:
        if row < 1 or col < 1 or row > len(self._rows):
            return ""
        cells = self._rows[row - 1]
        return cells[col - 1] if col <= len(cells) else ""

    def _store(self, row: int, col: int, value: Any) -> None:
        if row < 1 or col < 1:
            raise IndexError(f"Cell ({row}, {col}) is outside the table")
        while len(self._rows) < row:
            self._rows.append([])
        cells = self._rows[row - 1]
        if len(cells) < col:
            cells.extend([""] * (col - len(cells)))
        cells[col - 1] = value

    def set_cell(self, row: int, col: int, value: Any) -> None:
        self._store(row, col, value)

    def write_rows(self, row: int, col: int, rows: Grid) -> None:
        for r_offset, values in enumerate(rows):
            for c_offset, value in enumerate(values):
                self._store(row + r_offset, col + c_offset, value)

    def clear_range(self, row: int, col: int, num_rows: int, num_cols: int) -> None:
        for r in range(row, min(row + num_rows, len(self._rows) + 1)):
            cells = self._rows[r - 1]
            for c in range(col, min(col + num_cols, len(cells) + 1)):
                cells[c - 1] = ""

    def clear(self) -> None:
        self._rows = []
        self.notes = {}

    def set_note(self, row: int, col: int, text: str) -> None:
        self.notes[(row, col)] = text


class InMemoryWorkbook(Workbook):
    """Workbook holding InMemoryTables in insertion order."""

    def __init__(self, tables: Optional[Dict[str, Grid]] = None) -> None:
        self._tables: Dict[str, InMemoryTable] = {}
        for name, rows in (tables or {}).items():
            self._tables[name] = InMemoryTable(name, rows)

    def get_table(self, name: str) -> Optional[InMemoryTable]:
        return self._tables.get(name)

    def create_table(self, name: str) -> InMemoryTable:
        if name in self._tables:
            raise ValueError(f"Table already exists: {name}")
        table = InMemoryTable(name)
        self._tables[name] = table
        return table

    def delete_table(self, name: str) -> None:
        self._tables.pop(name, None)

    def table_names(self) -> List[str]:
        return list(self._tables)


# =============================================================================
# CSV directory backend
# =============================================================================


class CsvWorkbook(InMemoryWorkbook):
    """
    Workbook stored as a directory of CSV files, one per table.

    Files are read once on construction and written back by save(). Used as a
    context manager the workbook saves on exit, including after an error, so
    rows already pasted keep their tracking marks.

    Source tables are saved after every other table: their tracking marks
    must never reach disk ahead of the rows they describe.

    Attributes:
        directory: Folder holding the <title>.csv files
        source_tables: Tables carrying tracking marks, written last
    """

    def __init__(
        self,
        directory: Path | str,
        source_tables: Tuple[str, ...] = ("SA_DATA_MASTER",),
    ) -> None:
        super().__init__()
        self.directory = Path(directory)
        self.source_tables = tuple(source_tables)
        self._deleted: set[str] = set()

        if self.directory.exists():
            for csv_path in sorted(self.directory.glob("*.csv")):
                rows = self._read_csv(csv_path)
                self._tables[csv_path.stem] = InMemoryTable(csv_path.stem, rows)
            logger.info(f"Loaded {len(self._tables)} tables from {self.directory}")

    def __enter__(self) -> CsvWorkbook:
        return self

    def __exit__(self, *args) -> None:
        self.save()

    @staticmethod
    def _read_csv(csv_path: Path) -> Grid:
        if csv_path.stat().st_size == 0:
            return []
        try:
            df = pd.read_csv(
                csv_path,
                header=None,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=False,
            )
        except pd.errors.EmptyDataError:
            return []
        return df.fillna("").values.tolist()

    def delete_table(self, name: str) -> None:
        super().delete_table(name)
        self._deleted.add(name)

    def create_table(self, name: str) -> InMemoryTable:
        self._deleted.discard(name)
        return super().create_table(name)

    def save(self) -> None:
        """
        Write every table to <directory>/<title>.csv.

        Each file is written to a temporary path and moved into place, so a
        failed write leaves the previous file untouched. Source tables go last.

        Raises:
            OSError: If a file cannot be written; later tables are not saved
        """
        self.directory.mkdir(parents=True, exist_ok=True)

        for name in self._deleted:
            (self.directory / f"{name}.csv").unlink(missing_ok=True)
        self._deleted.clear()

        names = sorted(self._tables, key=lambda name: name in self.source_tables)
        for name in names:
            self._write_csv(name, self._tables[name].get_values())
        logger.info(f"Saved {len(self._tables)} tables to {self.directory}")

    def _write_csv(self, name: str, rows: Grid) -> None:
        target = self.directory / f"{name}.csv"
        temp = self.directory / f"{name}.csv.tmp"
        try:
            pd.DataFrame(rows).to_csv(temp, header=False, index=False)
            os.replace(temp, target)
        except OSError:
            temp.unlink(missing_ok=True)
            raise


# =============================================================================
# Google Sheets backend
# =============================================================================

GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
]


def _is_rate_limited(exc: BaseException) -> bool:
    """True for Sheets API 'quota exceeded' responses."""
    response = getattr(exc, "response", None)
    return isinstance(exc, APIError) and getattr(response, "status_code", None) == 429


sheets_retry = retry(
    stop=stop_after_attempt(7),
    wait=wait_exponential(multiplier=1, min=2, max=60),
    retry=retry_if_exception(_is_rate_limited),
    reraise=True,
)


class GoogleSheetTable(InMemoryTable):
    """
    Table mirroring a gspread Worksheet.

    Values are read once (unformatted, so numbers and booleans keep their
    types) and kept in memory; every write goes to the local copy and to the
    sheet.
    """

    def __init__(self, worksheet: gspread.Worksheet) -> None:
        super().__init__(worksheet.title, self._fetch(worksheet))
        self.worksheet = worksheet

    @staticmethod
    @sheets_retry
    def _fetch(worksheet: gspread.Worksheet) -> Grid:
        return worksheet.get_all_values(value_render_option=ValueRenderOption.unformatted)

    @sheets_retry
    def _ensure_size(self, rows: int, cols: int) -> None:
        if rows > self.worksheet.row_count:
            self.worksheet.add_rows(rows - self.worksheet.row_count)
        if cols > self.worksheet.col_count:
            self.worksheet.add_cols(cols - self.worksheet.col_count)

    @sheets_retry
    def _push(self, row: int, col: int, rows: Grid) -> None:
        width = max(len(values) for values in rows)
        padded = [values + [""] * (width - len(values)) for values in rows]
        start = rowcol_to_a1(row, col)
        end = rowcol_to_a1(row + len(rows) - 1, col + width - 1)
        self.worksheet.update(
            values=padded, range_name=f"{start}:{end}", value_input_option="RAW"
        )

    def set_cell(self, row: int, col: int, value: Any) -> None:
        self.write_rows(row, col, [[value]])

    def write_rows(self, row: int, col: int, rows: Grid) -> None:
        if not rows or not any(rows):
            return
        width = max(len(values) for values in rows)
        self._ensure_size(row + len(rows) - 1, col + width - 1)
        self._push(row, col, rows)
        super().write_rows(row, col, rows)

    @sheets_retry
    def clear_range(self, row: int, col: int, num_rows: int, num_cols: int) -> None:
        if num_rows < 1 or num_cols < 1:
            return
        start = rowcol_to_a1(row, col)
        end = rowcol_to_a1(row + num_rows - 1, col + num_cols - 1)
        self.worksheet.batch_clear([f"{start}:{end}"])
        super().clear_range(row, col, num_rows, num_cols)

    @sheets_retry
    def clear(self) -> None:
        self.worksheet.clear()
        super().clear()

    @sheets_retry
    def set_note(self, row: int, col: int, text: str) -> None:
        self.worksheet.update_note(rowcol_to_a1(row, col), text)
        super().set_note(row, col, text)


class GoogleSheetWorkbook(Workbook):
    """
    Workbook wrapping a gspread Spreadsheet.

    Attributes:
        spreadsheet: The opened gspread Spreadsheet
        new_table_rows: Grid rows given to newly created worksheets
        new_table_cols: Grid columns given to newly created worksheets
    """

    def __init__(
        self,
        spreadsheet: gspread.Spreadsheet,
        new_table_rows: int = 1000,
        new_table_cols: int = 26,
    ) -> None:
        self.spreadsheet = spreadsheet
        self.new_table_rows = new_table_rows
        self.new_table_cols = new_table_cols
        self._tables: Dict[str, GoogleSheetTable] = {}

    @classmethod
    def from_service_account(
        cls, credentials_file: Path | str, spreadsheet_key: str
    ) -> GoogleSheetWorkbook:
        """Open a spreadsheet by key using a service account JSON key file."""
        credentials = Credentials.from_service_account_file(
            str(credentials_file), scopes=GOOGLE_SCOPES
        )
        client = gspread.authorize(credentials)
        spreadsheet = client.open_by_key(spreadsheet_key)
        logger.info(f"Opened spreadsheet: {spreadsheet.title}")
        return cls(spreadsheet)

    @sheets_retry
    def _open_worksheet(self, name: str) -> Optional[gspread.Worksheet]:
        try:
            return self.spreadsheet.worksheet(name)
        except gspread.WorksheetNotFound:
            return None

    @sheets_retry
    def _add_worksheet(self, name: str) -> gspread.Worksheet:
        return self.spreadsheet.add_worksheet(
            title=name, rows=self.new_table_rows, cols=self.new_table_cols
        )

    @sheets_retry
    def _del_worksheet(self, worksheet: gspread.Worksheet) -> None:
        self.spreadsheet.del_worksheet(worksheet)

    def get_table(self, name: str) -> Optional[GoogleSheetTable]:
        if name in self._tables:
            return self._tables[name]
        worksheet = self._open_worksheet(name)
        if worksheet is None:
            return None
        table = GoogleSheetTable(worksheet)
        self._tables[name] = table
        return table

    def create_table(self, name: str) -> GoogleSheetTable:
        table = GoogleSheetTable(self._add_worksheet(name))
        self._tables[name] = table
        return table

    def delete_table(self, name: str) -> None:
        table = self.get_table(name)
        if table is None:
            return
        self._del_worksheet(table.worksheet)
        self._tables.pop(name, None)

    @sheets_retry
    def table_names(self) -> List[str]:
        return [worksheet.title for worksheet in self.spreadsheet.worksheets()]

"""
Scouting Sheet Settings

Pydantic models holding every tunable value the scouting tools use. Values
are passed explicitly into each operation instead of living in module-level
constants, so tests and the CLI can build their own settings.

Environment variables (loaded from .env by the CLI via python-dotenv):
    X_TBA_AUTH_KEY: The Blue Alliance read API key
    FRC_CURRENT_YEAR: Season used for the "Current" summary row
    FRC_EVENT_YEAR: Season whose events fill the event rows
"""

from __future__ import annotations

import datetime
import os
from typing import List, Optional, Union

from pydantic import BaseModel, Field


class ConfigurationError(ValueError):
    """Raised when settings or workbook layout make a run impossible."""


# =============================================================================
# Row migration
# =============================================================================


class MigrationSettings(BaseModel):
    """
    Settings for pushing master rows into per-team tables.

    Attributes:
        key_column_ref: Column holding team numbers ("A", "b", "AA" or 1, 2 ...)
        source_table_name: Title of the master tab
        row_gap: Blank rows left between existing content and a pasted row
        tracking_column_name: Header of the auto-managed tracking column
        legacy_tracking_values: Older cell values that also mean "already pasted"
    """

    key_column_ref: Union[int, str] = Field("A", description="Team number column")
    source_table_name: str = Field("SA_DATA_MASTER", description="Source tab name")
    row_gap: int = Field(5, ge=0, description="Blank rows above each pasted row")
    tracking_column_name: str = Field("SA_PASTED", description="Tracking column header")
    legacy_tracking_values: List[Union[bool, str]] = Field(
        default_factory=lambda: [True, "TRUE"],
        description="Historical tracking markers treated as migrated",
    )

    def is_tracked(self, value: object) -> bool:
        """Return True if a tracking cell value marks its row as migrated."""
        if value == self.tracking_column_name:
            return True
        for marker in self.legacy_tracking_values:
            if isinstance(marker, str):
                # CSV exports write booleans as "True", Sheets as "TRUE"
                if isinstance(value, str) and value.strip().casefold() == marker.casefold():
                    return True
            # bool is an int subclass, so 1 == True must not count as a marker
            elif type(value) is type(marker) and value == marker:
                return True
        return False


# =============================================================================
# Statbotics / TBA dashboard
# =============================================================================


class DashboardSettings(BaseModel):
    """Settings for the Statbotics / TBA team dashboard."""

    tba_key: str = Field(..., description="The Blue Alliance API key")
    current_year: int = Field(..., description="Season for the 'Current' row")
    event_year: int = Field(..., description="Season whose events are listed")
    team_list_table: str = Field("Teams", description="Tab listing team numbers in column A")
    max_concurrent_tba: int = Field(10, ge=1, description="Concurrent TBA requests")
    max_concurrent_statbotics: int = Field(10, ge=1, description="Concurrent Statbotics requests")
    match_limit: int = Field(100, ge=1, description="Statbotics matches fetched per event")

    @classmethod
    def from_env(cls, **overrides) -> DashboardSettings:
        """
        Build settings from environment variables.

        Raises:
            ValueError: If X_TBA_AUTH_KEY is not set
        """
        api_key = overrides.pop("tba_key", None) or os.getenv("X_TBA_AUTH_KEY")
        if not api_key:
            raise ValueError("X_TBA_AUTH_KEY environment variable not set")

        this_year = datetime.date.today().year
        current_year = int(os.getenv("FRC_CURRENT_YEAR", this_year))
        event_year = int(os.getenv("FRC_EVENT_YEAR", current_year))

        values = {
            "tba_key": api_key,
            "current_year": current_year,
            "event_year": event_year,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class GraphSettings(BaseModel):
    """
    Axes of the graph data tab.

    Axis names are keys of team_dashboard.COLUMN_MAP: EVENT_EPA, PCT_ERROR,
    QUAL_RANK, WIN_RATE, DISTRICT_PTS, FINAL_PLACE.
    """

    x: str = Field("DISTRICT_PTS", description="X axis metric")
    y: str = Field("PCT_ERROR", description="Y axis metric")
    title: Optional[str] = Field(None, description="Tab title (default: 'X VS Y')")

    @property
    def table_title(self) -> str:
        return self.title or f"{self.x} VS {self.y}"

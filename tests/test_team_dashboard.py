import asyncio
from unittest import mock

import aiohttp
import pytest

from scouting_settings import ConfigurationError, DashboardSettings, GraphSettings
from sheet_tables import InMemoryWorkbook
import team_dashboard
from team_dashboard import (
    EVENT_HEADERS,
    SEASON_HEADERS,
    StatboticsAsyncClient,
    TBAAsyncClient,
    TBAAlliance,
    TBAEvent,
    TeamDashboard,
    _is_retryable,
    aggregate_season_row,
    alliance_for_team,
    average_percent_error,
    build_event_row,
    extract_season_row,
    format_record,
    resolve_value,
)

TEAM_YEAR = {
    "epa": {
        "breakdown": {"total_points": 80.5, "auto_points": 20.0, "endgame_points": 10.0},
        "ranks": {"total": {"rank": 3, "percentile": 0.99}, "district": {"rank": 1}},
    },
    "record": {"wins": 40, "losses": 5, "ties": 0},
}

EAST_BAY = {"key": "2024cabe", "name": "East Bay", "start_date": "2024-03-06", "district": None}
SILICON_VALLEY = {
    "key": "2024casj",
    "name": "Silicon Valley",
    "start_date": "2024-03-20",
    "district": {"abbreviation": "chs"},
}

QUAL_MATCHES = [
    {
        "elim": False,
        "alliances": {"red": {"team_keys": [254, 1, 2]}, "blue": {"team_keys": [3, 4, 5]}},
        "pred": {"red_score": 90, "blue_score": 50},
        "result": {"red_score": 100, "blue_score": 60},
    },
    {
        "elim": False,
        "alliances": {"red": {"team_keys": [6, 7, 8]}, "blue": {"team_keys": [9, 254, 10]}},
        "pred": {"red_score": 70, "blue_score": 60},
        "result": {"red_score": 65, "blue_score": 50},
    },
    {
        "elim": True,
        "alliances": {"red": {"team_keys": [254, 1, 2]}, "blue": {"team_keys": [3, 4, 5]}},
        "pred": {"red_score": 10, "blue_score": 50},
        "result": {"red_score": 100, "blue_score": 60},
    },
]


class FakeStatbotics:
    def __init__(self):
        self.team_years = {(254, 2025): TEAM_YEAR, (254, 2024): TEAM_YEAR}
        self.team_events = {
            (254, "2024cabe"): {
                "record": {
                    "qual": {"wins": 9, "losses": 1, "ties": 0, "rank": 1},
                    "elim": {"wins": 4, "losses": 0, "ties": 0},
                },
                "district_points": None,
                "epa": {"breakdown": {"total_points": 75.0}},
            },
            (254, "2024casj"): {
                "record": {"qual": {"wins": 6, "losses": 4, "ties": 0, "rank": 8}},
                "district_points": 31,
                "epa": {"breakdown": {"total_points": 70.0}},
            },
        }
        self.matches = {"2024cabe": QUAL_MATCHES}

    async def get_team_year(self, team, year):
        return self.team_years.get((team, year))

    async def get_team_event(self, team, event_key):
        return self.team_events.get((team, event_key))

    async def get_event_matches(self, event_key, limit=100):
        return self.matches.get(event_key)


class FakeTBA:
    def __init__(self):
        self.events = {254: [SILICON_VALLEY, EAST_BAY]}
        self.alliances = {
            "2024cabe": [
                {"picks": ["frc254", "frc1678", "frc4414"], "status": {"status": "won", "level": "f"}}
            ],
        }

    async def get_team_events(self, team, year):
        return [TBAEvent(**event) for event in self.events.get(team, [])]

    async def get_event_alliances(self, event_key):
        return [TBAAlliance(**alliance) for alliance in self.alliances.get(event_key, [])]


@pytest.fixture
def settings():
    return DashboardSettings(tba_key="test-key", current_year=2025, event_year=2024)


def make_dashboard(workbook, settings):
    return TeamDashboard(workbook, settings, tba_client=FakeTBA(), statbotics_client=FakeStatbotics())


# -----------------------------------------------------------------------------
# Mapping functions
# -----------------------------------------------------------------------------


def test_extract_season_row():
    assert extract_season_row(TEAM_YEAR) == [
        "1 / 3", 80.5, 20.0, 10.0, 0.99, 0.99, 0.99, "", "", "40/5"
    ]


def test_extract_season_row_missing_data():
    assert extract_season_row(None) == [""] * len(SEASON_HEADERS)
    assert extract_season_row({"epa": {}})[:2] == [" / ", ""]


def test_aggregate_season_row_averages_available_records():
    other = {"epa": {"breakdown": {"total_points": 40.5, "auto_points": 10.0}}}

    row = aggregate_season_row([TEAM_YEAR, None, other])

    assert row[1:4] == [60.5, 15.0, 5.0]
    assert aggregate_season_row([None, None]) == [""] * len(SEASON_HEADERS)


def test_format_record():
    assert format_record({"wins": 7, "losses": 4, "ties": 0}) == "7W-4L-0T"
    assert format_record(None) == ""


def test_average_percent_error_uses_qual_matches_only():
    # red: |90 - 100| / 100 = 10%, blue: |60 - 50| / 50 = 20%
    assert average_percent_error(QUAL_MATCHES, 254) == 15.0
    assert average_percent_error(QUAL_MATCHES, 9999) == ""
    assert average_percent_error(None, 254) == ""


def test_alliance_for_team():
    alliances = [
        TBAAlliance(picks=["frc1", "frc2", "frc3"], status={"status": "eliminated", "level": "sf"}),
        TBAAlliance(picks=["frc254", "frc1678", "frc4414"], status={"status": "won", "level": "f"}),
    ]

    assert alliance_for_team(alliances, 1678) == ("254", "1678", "4414", "Winner")
    assert alliance_for_team(alliances, 3) == ("1", "2", "3", "sf")
    assert alliance_for_team(alliances, 971) == ("", "", "", "")


def test_build_event_row():
    row = build_event_row(
        TBAEvent(**EAST_BAY),
        FakeStatbotics().team_events[(254, "2024cabe")],
        QUAL_MATCHES,
        [TBAAlliance(picks=["frc254", "frc1678", "frc4414"], status={"status": "won"})],
        254,
    )

    assert row.as_cells() == [
        "East Bay", "", "Winner", 1, "9W-1L-0T", "4W-0L-0T", 15.0, "254", "1678", "4414", ""
    ]


@pytest.mark.parametrize(
    "key, raw, expected",
    [
        ("WIN_RATE", "7W-4L-0T", 0.636),
        ("WIN_RATE", "7-4-0", 0.636),
        ("WIN_RATE", "7W", None),
        ("WIN_RATE", "0W-0L-0T", None),
        ("DISTRICT_PTS", "42", 42.0),
        ("DISTRICT_PTS", 31, 31.0),
        ("FINAL_PLACE", "Winner", None),
        ("QUAL_RANK", "", None),
    ],
)
def test_resolve_value(key, raw, expected):
    assert resolve_value(key, raw) == expected


def test_retry_policy():
    assert _is_retryable(aiohttp.ClientResponseError(None, (), status=503))
    assert _is_retryable(aiohttp.ClientResponseError(None, (), status=429))
    assert not _is_retryable(aiohttp.ClientResponseError(None, (), status=404))
    assert _is_retryable(aiohttp.ClientConnectionError())
    assert _is_retryable(asyncio.TimeoutError())
    assert not _is_retryable(ValueError())


# -----------------------------------------------------------------------------
# API clients
# -----------------------------------------------------------------------------


def http_error(status):
    request_info = mock.MagicMock(real_url="https://www.thebluealliance.com/api/v3/test")
    return aiohttp.ClientResponseError(request_info, (), status=status, message="error")


def json_response(payload):
    response = mock.MagicMock()
    response.json = mock.AsyncMock(return_value=payload)
    context = mock.MagicMock()
    context.__aenter__ = mock.AsyncMock(return_value=response)
    context.__aexit__ = mock.AsyncMock(return_value=False)
    return context


async def no_sleep(seconds):
    return None


def test_tba_client_not_found_is_empty_without_retry(caplog):
    async def fetch():
        client = TBAAsyncClient("test-key")
        client.session = mock.MagicMock()
        client.session.get.side_effect = http_error(404)
        return client, await client.get_team_events(254, 2024)

    client, events = asyncio.run(fetch())

    assert events == []
    assert client.session.get.call_count == 1
    assert "[TBA] Failed to fetch events for team 254 year 2024" in caplog.text


def test_tba_client_server_errors_are_retried_then_empty(monkeypatch):
    monkeypatch.setattr(TBAAsyncClient._get.retry, "sleep", no_sleep)

    async def fetch():
        client = TBAAsyncClient("test-key")
        client.session = mock.MagicMock()
        client.session.get.side_effect = http_error(503)
        return client, await client.get_event_alliances("2024cabe")

    client, alliances = asyncio.run(fetch())

    assert alliances == []
    assert client.session.get.call_count == 5


def test_tba_client_parses_events_and_null_alliances():
    async def fetch():
        client = TBAAsyncClient("test-key")
        client.session = mock.MagicMock()
        client.session.get.side_effect = [json_response([EAST_BAY]), json_response(None)]
        return await client.get_team_events(254, 2024), await client.get_event_alliances("2024cabe")

    events, alliances = asyncio.run(fetch())

    assert [event.key for event in events] == ["2024cabe"]
    assert alliances == []


def test_tba_client_requires_session():
    with pytest.raises(RuntimeError):
        asyncio.run(TBAAsyncClient("test-key")._get("status"))


def test_statbotics_failure_is_no_data(monkeypatch, caplog):
    monkeypatch.setattr(team_dashboard, "Statbotics", mock.MagicMock)
    client = StatboticsAsyncClient()
    client._sync_client.get_team_year.side_effect = UserWarning("Invalid inputs")
    client._sync_client.get_matches.side_effect = ConnectionError("offline")

    assert asyncio.run(client.get_team_year(254, 2025)) is None
    assert asyncio.run(client.get_event_matches("2024cabe")) is None
    assert "[STATBOTICS] Failed to fetch team 254 year 2025: UserWarning" in caplog.text


def test_statbotics_passes_arguments_through(monkeypatch):
    monkeypatch.setattr(team_dashboard, "Statbotics", mock.MagicMock)
    client = StatboticsAsyncClient()
    client._sync_client.get_matches.return_value = QUAL_MATCHES

    assert asyncio.run(client.get_event_matches("2024cabe", limit=50)) == QUAL_MATCHES
    client._sync_client.get_matches.assert_called_once_with(event="2024cabe", limit=50)


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------


def test_dashboard_settings_from_env(monkeypatch):
    monkeypatch.setenv("X_TBA_AUTH_KEY", "abc")
    monkeypatch.setenv("FRC_CURRENT_YEAR", "2026")
    monkeypatch.setenv("FRC_EVENT_YEAR", "2025")

    settings = DashboardSettings.from_env(team_list_table="Roster")

    assert settings.tba_key == "abc"
    assert settings.current_year == 2026
    assert settings.event_year == 2025
    assert settings.team_list_table == "Roster"


def test_dashboard_settings_require_tba_key(monkeypatch):
    monkeypatch.delenv("X_TBA_AUTH_KEY", raising=False)
    with pytest.raises(ValueError):
        DashboardSettings.from_env()


# -----------------------------------------------------------------------------
# Dashboard operations
# -----------------------------------------------------------------------------


def test_build_team_tables(settings):
    workbook = InMemoryWorkbook({"Teams": [[254], [1678], ["abc"], [""], [254]]})
    dashboard = make_dashboard(workbook, settings)

    teams = asyncio.run(dashboard.build_team_tables())

    assert teams == [254, 1678]
    values = workbook.get_table("254").get_values()
    assert values[0][:11] == [254] + SEASON_HEADERS
    assert [row[0] for row in values[1:4]] == ["Current", "Last Year", "Past 3 Years"]
    assert values[1][1:11] == extract_season_row(TEAM_YEAR)
    assert values[5][:11] == EVENT_HEADERS
    # events sorted by start date
    assert values[6][:11] == [
        "East Bay", "", "Winner", 1, "9W-1L-0T", "4W-0L-0T", 15.0, "254", "1678", "4414", ""
    ]
    assert values[7][:11] == [
        "Silicon Valley", "CHS", "", 8, "6W-4L-0T", "", "", "", "", "", 31
    ]

    # no Statbotics data and no events for 1678
    values_1678 = workbook.get_table("1678").get_values()
    assert values_1678[1][1:11] == [""] * 10
    assert len(values_1678) == 6


def test_build_team_tables_requires_team_list(settings):
    dashboard = make_dashboard(InMemoryWorkbook(), settings)
    with pytest.raises(ConfigurationError):
        asyncio.run(dashboard.build_team_tables())


def test_refresh_keeps_manual_notes(settings):
    workbook = InMemoryWorkbook(
        {
            "Teams": [[254]],
            "Notes": [["not a team"]],
            "254": [[254], [], [], [], ["watch their auto"]],
        }
    )
    dashboard = make_dashboard(workbook, settings)

    refreshed = asyncio.run(dashboard.refresh_stats())

    assert refreshed == 1
    table = workbook.get_table("254")
    assert table.get_cell(5, 1) == "watch their auto"
    assert table.get_cell(2, 2) == "1 / 3"
    assert table.get_cell(7, 1) == "East Bay"
    assert workbook.get_table("Notes").get_values() == [["not a team"]]


def test_build_graph_table(settings):
    workbook = InMemoryWorkbook({"Teams": [[254], [1678]]})
    dashboard = make_dashboard(workbook, settings)
    asyncio.run(dashboard.build_team_tables())

    graph = GraphSettings(x="WIN_RATE", y="EVENT_EPA")
    points = asyncio.run(dashboard.build_graph_table(graph))

    assert points == 2
    table = workbook.get_table("WIN_RATE VS EVENT_EPA")
    assert table.get_values() == [
        ["Team", "Event", "Prelim Win Rate", "Event EPA"],
        [254, "East Bay", 0.9, 75.0],
        [254, "Silicon Valley", 0.6, 70.0],
    ]


def test_build_graph_table_replaces_previous_table(settings):
    workbook = InMemoryWorkbook({"Teams": [[254]], "DISTRICT_PTS VS PCT_ERROR": [["old"]] * 5})
    dashboard = make_dashboard(workbook, settings)
    asyncio.run(dashboard.build_team_tables())

    # only Silicon Valley has district points, and it has no % error
    points = asyncio.run(dashboard.build_graph_table())

    assert points == 0
    table = workbook.get_table("DISTRICT_PTS VS PCT_ERROR")
    assert table.get_cell(1, 1) == "Team"
    assert table.get_cell(2, 1).startswith("Not enough data")
    assert table.last_row() == 2


def test_build_graph_table_rejects_unknown_axis(settings):
    dashboard = make_dashboard(InMemoryWorkbook(), settings)
    with pytest.raises(ConfigurationError):
        asyncio.run(dashboard.build_graph_table(GraphSettings(x="SPEED", y="PCT_ERROR")))

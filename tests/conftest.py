import pytest

from sheet_tables import InMemoryWorkbook


@pytest.fixture
def master_rows():
    return [
        ["Team", "Match", "Auto", "Notes"],
        [254, 1, 12, "fast cycles"],
        [1678, 2, 10, "solid defense"],
        [254, 3, 14, "climbed"],
    ]


@pytest.fixture
def workbook(master_rows):
    return InMemoryWorkbook({"SA_DATA_MASTER": master_rows})

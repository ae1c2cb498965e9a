from __future__ import annotations

from datetime import date, datetime

import pytest

from models.errors import FormatError, RangeError
from models.keys import (
    all_hour_ids,
    canonical_key,
    date_to_id,
    entry_path,
    hour_to_two_digit,
    id_to_date,
    is_valid_date_id,
    is_valid_hour,
    log_path,
    parse_entry_path,
    two_digit_to_hour,
)


def test_hour_formatting_pads_to_two_digits() -> None:
    assert hour_to_two_digit(0) == "00"
    assert hour_to_two_digit(9) == "09"
    assert hour_to_two_digit(23) == "23"


@pytest.mark.parametrize("hour", [-1, 24, 100])
def test_hour_formatting_rejects_out_of_range(hour: int) -> None:
    with pytest.raises(RangeError):
        hour_to_two_digit(hour)


def test_hour_formatting_rejects_non_integers() -> None:
    with pytest.raises(RangeError):
        hour_to_two_digit(True)
    with pytest.raises(RangeError):
        hour_to_two_digit(1.5)  # type: ignore[arg-type]


@pytest.mark.parametrize("value", ["7", "007", "24", "ab", "-1", ""])
def test_two_digit_hour_rejects_bad_format(value: str) -> None:
    assert is_valid_hour(value) is False
    with pytest.raises(FormatError):
        two_digit_to_hour(value)


def test_every_hour_id_parses_back() -> None:
    ids = all_hour_ids()

    assert len(ids) == 24
    assert ids[0] == "00" and ids[-1] == "23"
    assert [two_digit_to_hour(value) for value in ids] == list(range(24))


def test_date_ids() -> None:
    assert date_to_id(date(2024, 3, 1)) == "20240301"
    assert date_to_id(datetime(2024, 12, 31, 23, 59)) == "20241231"
    assert id_to_date("20240229") == date(2024, 2, 29)
    assert is_valid_date_id("20240230") is False
    assert is_valid_date_id("2024-03-01") is False
    with pytest.raises(FormatError):
        id_to_date("20231301")


def test_canonical_key_and_paths() -> None:
    assert canonical_key("plant-7", "20240301", 9) == "plant-7_20240301_09"
    assert log_path("plant-7", "20240301") == "projects/plant-7/logs/20240301"
    path = entry_path("plant-7", "20240301", 9)
    assert path == "projects/plant-7/logs/20240301/entries/09"

    key = parse_entry_path(path)
    assert key.project_id == "plant-7"
    assert key.date_id == "20240301"
    assert key.hour == 9


@pytest.mark.parametrize("project_id", ["", "   ", "a/b"])
def test_project_id_is_checked(project_id: str) -> None:
    with pytest.raises(FormatError):
        canonical_key(project_id, "20240301", 9)


@pytest.mark.parametrize(
    "path",
    [
        "projects/p/logs/20240301/entries",
        "projects/p/logs/20240301/entries/24",
        "projects/p/readings/20240301/entries/01",
        "projects/p/logs/2024031/entries/01",
    ],
)
def test_parse_entry_path_rejects_malformed(path: str) -> None:
    with pytest.raises(FormatError):
        parse_entry_path(path)

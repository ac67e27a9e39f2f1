from datetime import datetime

import pytest

from app.opsdesk.constants import is_valid_phone_number
from app.opsdesk.errors import ValidationError
from app.opsdesk.utils import date_range_start, offset_pagination, page_pagination, parse_bool, parse_datetime, parse_int


def test_offset_pagination():
    p = offset_pagination(total=45, limit=20, offset=20)
    assert p["currentPage"] == 2
    assert p["totalPages"] == 3
    assert p["hasMore"] is True
    assert p["hasPrev"] is True

    assert offset_pagination(total=40, limit=20, offset=20)["hasMore"] is False
    assert offset_pagination(total=0, limit=20, offset=0)["totalPages"] == 0


def test_page_pagination():
    assert page_pagination(total=11, page=1, page_size=10) == {
        "page": 1,
        "pageSize": 10,
        "total": 11,
        "totalPages": 2,
        "hasMore": True,
    }
    assert page_pagination(total=11, page=2, page_size=10)["hasMore"] is False


def test_date_range_start():
    now = datetime(2025, 3, 10, 15, 30)
    assert date_range_start("today", now) == datetime(2025, 3, 10)
    assert date_range_start("week", now) == datetime(2025, 3, 3, 15, 30)
    assert date_range_start("month", now) == datetime(2025, 2, 8, 15, 30)
    assert date_range_start("all", now) is None
    assert date_range_start(None, now) is None


def test_parse_helpers():
    assert parse_int("7") == 7
    assert parse_int("x", 3) == 3
    with pytest.raises(ValidationError):
        parse_int("x", field="limit")

    assert parse_datetime("2025-03-10T08:00:00Z") == datetime(2025, 3, 10, 8, 0)
    assert parse_datetime("2025-03-10T16:00:00+08:00") == datetime(2025, 3, 10, 8, 0)
    assert parse_datetime("yesterday") is None


def test_phone_number_format():
    assert is_valid_phone_number("13800138000")
    assert not is_valid_phone_number("12800138000")
    assert not is_valid_phone_number("1380013800")


def test_parse_bool():
    assert parse_bool("false") is False
    assert parse_bool("0") is False
    assert parse_bool("TRUE") is True
    assert parse_bool(1) is True
    assert parse_bool(False, True) is False
    assert parse_bool(None, True) is True
    assert parse_bool("", False) is False

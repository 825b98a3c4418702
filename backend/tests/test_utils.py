"""
Tests for timestamp parsing and API response helpers.
"""
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import T0
from shared.utils import format_response, parse_timestamp, to_iso


class TestParseTimestamp:

    @pytest.mark.parametrize('value', [
        '2026-10-18T22:00:00Z',
        '2026-10-18T22:00:00+00:00',
        '2026-10-18T18:00:00-04:00',
        '2026-10-18T22:00:00',
        int(T0.timestamp()),
        Decimal(int(T0.timestamp())),
        str(int(T0.timestamp())),
    ])
    def test_formats(self, value):
        assert parse_timestamp(value) == T0

    def test_naive_datetime_is_utc(self):
        assert parse_timestamp(datetime(2026, 10, 18, 22, 0)) == T0

    def test_empty(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp('') is None

    def test_garbage(self):
        with pytest.raises(ValueError):
            parse_timestamp('next tuesday')

    def test_iso_is_utc(self):
        eastern = timezone(timedelta(hours=-4))
        assert to_iso(datetime(2026, 10, 18, 18, 0, tzinfo=eastern)) == '2026-10-18T22:00:00+00:00'


def test_format_response_serializes_decimals_and_datetimes():
    response = format_response(200, {'amount': Decimal('48.25'), 'at': T0})

    assert response['statusCode'] == 200
    assert response['headers']['Content-Type'] == 'application/json'
    assert json.loads(response['body']) == {'amount': 48.25, 'at': T0.isoformat()}

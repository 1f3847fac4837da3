"""
Tests for quantity, GTID, duration and merge patch helpers.
"""
from datetime import timedelta

import pytest

from dbcluster.utils.duration import parse_duration
from dbcluster.utils.gtid import Gtid, parse_position
from dbcluster.utils.patch import apply_merge_patch, create_merge_patch
from dbcluster.utils.quantity import compare_quantities, parse_quantity


@pytest.mark.parametrize(
    "a,b,expected",
    [
        ("1Gi", "900Mi", 1),
        ("1Gi", "1024Mi", 0),
        ("300Mi", "1Gi", -1),
        ("1G", "1Gi", -1),
        ("2Ti", "2048Gi", 0),
    ],
)
def test_compare_quantities(a, b, expected):
    assert compare_quantities(a, b) == expected


def test_parse_quantity_rejects_garbage():
    with pytest.raises(ValueError):
        parse_quantity("lots")
    with pytest.raises(ValueError):
        parse_quantity("10Zi")


def test_gtid_parse_and_compare():
    a = Gtid.parse("0-10-42")
    b = Gtid.parse("0-11-41")

    assert a == Gtid(domain_id=0, server_id=10, sequence=42)
    assert a.greater_than(b)
    assert not b.greater_than(a)
    assert str(a) == "0-10-42"


def test_gtid_compare_across_domains_raises():
    with pytest.raises(ValueError):
        Gtid.parse("0-1-5").greater_than(Gtid.parse("1-1-5"))


@pytest.mark.parametrize("raw", ["0-1", "a-b-c", "0-1-2-3"])
def test_gtid_parse_invalid(raw):
    with pytest.raises(ValueError):
        Gtid.parse(raw)


def test_parse_position_picks_domain():
    assert parse_position("0-1-100, 1-2-7", 1) == Gtid(domain_id=1, server_id=2, sequence=7)
    assert parse_position("0-1-100", 1) is None
    assert parse_position("", 0) is None
    assert parse_position(None, 0) is None


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("10s", timedelta(seconds=10)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("250ms", timedelta(milliseconds=250)),
        ("45", timedelta(seconds=45)),
    ],
)
def test_parse_duration(raw, expected):
    assert parse_duration(raw) == expected


def test_parse_duration_passes_through_other_values():
    assert parse_duration(30) == 30
    assert parse_duration("PT5M") == "PT5M"
    with pytest.raises(ValueError):
        parse_duration("10 minutes")


def test_merge_patch_diff_and_apply():
    original = {"a": 1, "b": {"c": 2, "d": 3}, "e": [1, 2], "gone": True}
    modified = {"a": 1, "b": {"c": 5, "d": 3}, "e": [1], "new": "x"}

    patch = create_merge_patch(original, modified)

    assert patch == {"b": {"c": 5}, "e": [1], "new": "x", "gone": None}
    assert apply_merge_patch(original, patch) == modified


def test_merge_patch_of_equal_documents_is_empty():
    assert create_merge_patch({"a": {"b": 1}}, {"a": {"b": 1}}) == {}

import pytest

from photostudio.utils.validators import (
    parse_positive_int,
    parse_visual_index,
    sanitize_name,
    validate_aspect_ratio,
    validate_resolution,
)


@pytest.mark.parametrize("raw, expected", [
    ("0", 0),
    ("5", 5),
    (3, 3),
    ("-1", None),
    ("1.5", None),
    ("abc", None),
    (None, None),
    (True, None),
])
def test_parse_visual_index(raw, expected):
    assert parse_visual_index(raw) == expected


def test_parse_positive_int():
    assert parse_positive_int("3", 1) == 3
    assert parse_positive_int("0", 1) == 1
    assert parse_positive_int("x", 20) == 20
    assert parse_positive_int("500", 20, maximum=100) == 100


@pytest.mark.parametrize("name, expected", [
    ("Winter Drop / 2026", "Winter_Drop_2026"),
    ("  ", "untitled"),
    ("", "untitled"),
    (None, "untitled"),
    ("../../etc/passwd", "etc_passwd"),
    ("hoodie-v2_final", "hoodie-v2_final"),
])
def test_sanitize_name(name, expected):
    assert sanitize_name(name) == expected


def test_sanitize_name_caps_length():
    assert len(sanitize_name("a" * 80)) == 50


def test_output_options():
    assert validate_aspect_ratio("4:5", ["1:1", "4:5"])
    assert not validate_aspect_ratio("4:6", ["1:1", "4:5"])
    assert validate_resolution("2k", ["1K", "2K", "4K"])
    assert not validate_resolution(None, ["1K"])


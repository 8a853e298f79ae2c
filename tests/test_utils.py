"""
Liedersammlung - Utility Tests

Tests for liedersammlung/utils.py.
"""

import pytest

from liedersammlung.utils import extract_video_id, parse_descriptor, sanitize_filename


class TestSanitizeFilename:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("Amazing Grace", "Amazing Grace"),
            ('Was ist: "das"?', "Was ist das"),
            ("a/b\\c", "abc"),
            ("  viel   Platz  ", "viel Platz"),
            ("...Punkte...", "Punkte"),
            ("Großer Gott", "Großer Gott"),
            ("<>|*", "unknown"),
            ("", "unknown"),
        ],
    )
    def test_sanitize(self, name, expected):
        assert sanitize_filename(name) == expected


class TestExtractVideoId:
    @pytest.mark.parametrize(
        "url",
        [
            "https://www.youtube.com/watch?v=abcdefghijk",
            "https://youtube.com/watch?v=abcdefghijk&t=42",
            "http://youtu.be/abcdefghijk",
            "youtu.be/abcdefghijk",
            "https://www.youtube.com/embed/abcdefghijk",
            "  https://youtu.be/abcdefghijk  ",
        ],
    )
    def test_accepted(self, url):
        assert extract_video_id(url) == "abcdefghijk"

    @pytest.mark.parametrize(
        "url",
        [
            "https://vimeo.com/123456",
            "https://youtu.be/short",
            "https://example.test/watch?v=abcdefghijk",
            "",
        ],
    )
    def test_rejected(self, url):
        assert extract_video_id(url) is None

    def test_id_characters(self):
        assert extract_video_id("https://youtu.be/a-b_c1D2e3F") == "a-b_c1D2e3F"


class TestParseDescriptor:
    def test_bytes(self):
        assert parse_descriptor(b'{"title": "Da"}') == {"title": "Da"}

    def test_string(self):
        assert parse_descriptor('{"url": "u"}') == {"url": "u"}

    def test_dict_passthrough(self):
        data = {"title": "Da"}
        assert parse_descriptor(data) is data

    @pytest.mark.parametrize("raw", ["{broken", "[1, 2]", b"\xff\xfe", None, 42])
    def test_invalid(self, raw):
        assert parse_descriptor(raw) == {}

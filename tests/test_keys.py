"""
test_keys.py - Tests for derived key fields and range helpers.
"""

import pytest

from bucket_index.errors import ValidationError
from bucket_index.keys import (
    ancestors,
    next_segment,
    parent_of,
    prefix_range,
    range_clause,
    split_key,
    validate_bucket_name,
    validate_key,
)


class TestSplitKey:
    """Derived columns are a pure function of the key."""

    def test_nested_file(self):
        parts = split_key("photos/2024/IMG_01.JPG")
        assert parts.parent_prefix == "photos/2024/"
        assert parts.basename == "IMG_01.JPG"
        assert parts.extension == "jpg"
        assert parts.depth == 2
        assert parts.is_folder is False

    def test_root_file(self):
        parts = split_key("readme.md")
        assert parts.parent_prefix == ""
        assert parts.basename == "readme.md"
        assert parts.depth == 0

    def test_folder_marker(self):
        parts = split_key("photos/2024/")
        assert parts.is_folder is True
        assert parts.parent_prefix == "photos/"
        assert parts.basename == "2024"
        assert parts.extension is None
        assert parts.depth == 1

    @pytest.mark.parametrize(
        "key,extension",
        [
            ("a/.bashrc", None),
            ("a/archive.", None),
            ("a/noext", None),
            ("a/backup.tar.GZ", "gz"),
        ],
    )
    def test_extension_rules(self, key, extension):
        assert split_key(key).extension == extension

    def test_empty_key_rejected(self):
        with pytest.raises(ValidationError):
            split_key("")


class TestPrefixHelpers:

    def test_ancestors_nearest_first(self):
        assert ancestors("a/b/c/") == ["a/b/", "a/", ""]
        assert ancestors("") == []

    def test_parent_of(self):
        assert parent_of("a/b/") == "a/"
        assert parent_of("a/") == ""
        assert parent_of("") == ""

    def test_prefix_range_is_half_open(self):
        lo, hi = prefix_range("a/")
        assert lo == "a/"
        assert hi == "a0"
        assert lo <= "a/zzz" < hi
        assert not ("a0" < hi)

    def test_range_clause_for_root(self):
        assert range_clause("key", "") == ("1 = 1", ())

    def test_range_clause_does_not_treat_wildcards_specially(self):
        clause, params = range_clause("key", "100%_done/")
        assert clause == "key >= ? AND key < ?"
        assert params[0] == "100%_done/"

    def test_next_segment(self):
        assert next_segment("a/b/c.txt", "a/") == ("b/", True)
        assert next_segment("a/c.txt", "a/") == ("c.txt", False)


class TestValidation:

    @pytest.mark.parametrize("name", ["abc", "my-bucket.2024", "a" * 63, "1bucket"])
    def test_valid_bucket_names(self, name):
        validate_bucket_name(name)

    @pytest.mark.parametrize(
        "name,message",
        [
            ("", "empty"),
            ("a" * 64, "between 3 and 63"),
            ("10.0.0.1", "IP address"),
            ("my_bucket", "lowercase"),
            (".bucket", "start and end"),
            ("a..b", "consecutive periods"),
            ("a-.b", "adjacent to hyphens"),
        ],
    )
    def test_invalid_bucket_names(self, name, message):
        with pytest.raises(ValidationError) as excinfo:
            validate_bucket_name(name)
        assert message in excinfo.value.message

    def test_key_rules(self):
        validate_key("photos/2024/IMG 01.jpg")
        validate_key("x" * 1024)
        for key in ("", "x" * 1025, "a\nb", "tab\tkey"):
            with pytest.raises(ValidationError):
                validate_key(key)

"""Tests for the entry key codec."""

import math

import pytest

from tagsync import UNSET, check_args, encode_key


class TestEncodeKey:
    """Tests for encode_key function."""

    def test_object_args(self) -> None:
        key = encode_key("lectures_by_course", {"course_id": "c1"})
        assert key == 'lectures_by_course({"course_id":"c1"})'

    def test_key_order_does_not_matter(self) -> None:
        """Equal args encode to the same key regardless of insertion order."""
        a = encode_key("search", {"q": "intro", "page": 2, "filters": {"b": 1, "a": 2}})
        b = encode_key("search", {"filters": {"a": 2, "b": 1}, "page": 2, "q": "intro"})
        assert a == b

    def test_different_args_differ(self) -> None:
        assert encode_key("lecture", {"lecture_id": "l1"}) != encode_key(
            "lecture", {"lecture_id": "l2"}
        )

    def test_different_endpoints_differ(self) -> None:
        args = {"course_id": "c1"}
        assert encode_key("course", args) != encode_key("lectures_by_course", args)

    def test_no_args(self) -> None:
        assert encode_key("me") == "me()"
        assert encode_key("me", None) == "me()"
        assert encode_key("me", UNSET) == "me()"

    def test_unset_fields_are_omitted(self) -> None:
        with_unset = encode_key("search", {"q": "intro", "page": UNSET})
        assert with_unset == encode_key("search", {"q": "intro"})

    def test_none_is_encoded(self) -> None:
        """None is a real value, unlike UNSET."""
        assert encode_key("search", {"q": None}) != encode_key("search", {})

    def test_list_order_matters(self) -> None:
        assert encode_key("many", {"ids": ["a", "b"]}) != encode_key(
            "many", {"ids": ["b", "a"]}
        )

    def test_tuple_and_list_match(self) -> None:
        assert encode_key("many", {"ids": ("a", "b")}) == encode_key(
            "many", {"ids": ["a", "b"]}
        )

    def test_non_ascii_kept(self) -> None:
        assert "é" in encode_key("search", {"q": "café"})


class TestCheckArgs:
    """Tests for check_args function."""

    def test_json_values_accepted(self) -> None:
        check_args({"a": 1, "b": [1.5, "x", None, True], "c": {"d": False}})
        check_args("plain")
        check_args(None)

    def test_callable_rejected(self) -> None:
        with pytest.raises(TypeError, match="args.fn"):
            check_args({"fn": lambda: None})

    def test_object_rejected(self) -> None:
        with pytest.raises(TypeError):
            check_args({"when": object()})

    def test_non_string_keys_rejected(self) -> None:
        with pytest.raises(TypeError, match="keys must be strings"):
            check_args({1: "x"})

    def test_nested_path_reported(self) -> None:
        with pytest.raises(TypeError, match=r"args.items\[1\]"):
            check_args({"items": [1, {1, 2}]})

    def test_non_finite_floats_rejected(self) -> None:
        with pytest.raises(ValueError):
            check_args({"x": math.nan})
        with pytest.raises(ValueError):
            check_args([math.inf])

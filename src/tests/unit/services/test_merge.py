"""
Property-based tests for the defaults-guided merge.

These tests verify the merge laws: idempotence, default preservation,
array replacement and pass-through of unknown keys.
"""

import json

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from workstate.core.exceptions import MigrationError
from workstate.services.merge import MISSING, merge, normalize, parse_json, serialize, snapshot

json_scalars = st.none() | st.booleans() | st.integers() | st.floats(allow_nan=False, allow_infinity=False) | st.text()

json_values = st.recursive(
    json_scalars,
    lambda children: st.lists(children, max_size=4) | st.dictionaries(st.text(max_size=5), children, max_size=4),
    max_leaves=20,
)

json_objects = st.dictionaries(st.text(max_size=5), json_values, max_size=5)


class TestMergeProperties:
    @settings(max_examples=200)
    @given(defaults=json_values, value=json_values)
    def test_merge_is_idempotent(self, defaults, value) -> None:
        """Merging an already merged value changes nothing."""
        once = merge(defaults, value)
        assert merge(defaults, once) == once

    @settings(max_examples=200)
    @given(defaults=json_objects, value=json_objects)
    def test_absent_paths_keep_defaults(self, defaults, value) -> None:
        merged = merge(defaults, value)
        for key, default in defaults.items():
            if key not in value:
                assert merged[key] == default

    @settings(max_examples=200)
    @given(defaults=json_objects, value=json_objects)
    def test_unknown_keys_pass_through(self, defaults, value) -> None:
        merged = merge(defaults, value)
        for key, incoming in value.items():
            if key not in defaults:
                assert merged[key] == incoming

    @settings(max_examples=100)
    @given(defaults=json_values)
    def test_missing_value_returns_defaults(self, defaults) -> None:
        assert merge(defaults, MISSING) == defaults


class TestMergeCases:
    def test_arrays_replace_not_merge(self) -> None:
        assert merge({"a": [1, 2]}, {"a": [9]}) == {"a": [9]}

    def test_array_default_kept_for_non_array(self) -> None:
        assert merge({"a": [1, 2]}, {"a": "x"}) == {"a": [1, 2]}

    def test_unknown_key_passthrough(self) -> None:
        assert merge({"a": 1}, {"a": 1, "b": 2}) == {"a": 1, "b": 2}

    def test_explicit_null_overrides_default(self) -> None:
        assert merge({"a": {"b": 1}}, {"a": None}) == {"a": None}

    def test_object_default_kept_for_scalar(self) -> None:
        assert merge({"a": {"b": 1}}, {"a": 3}) == {"a": {"b": 1}}

    def test_scalar_default_takes_any_value(self) -> None:
        assert merge({"a": 1}, {"a": {"nested": True}}) == {"a": {"nested": True}}

    def test_nested_objects_merge_recursively(self) -> None:
        defaults = {"panels": {"right": {"width": 250, "open": True}}}
        assert merge(defaults, {"panels": {"right": {"width": 400}}}) == {
            "panels": {"right": {"width": 400, "open": True}}
        }

    def test_defaults_are_not_mutated(self) -> None:
        defaults = {"a": {"b": 1}, "c": [1]}
        frozen = json.dumps(defaults)
        merge(defaults, {"a": {"b": 2, "x": 1}, "c": [2], "d": 4})
        assert json.dumps(defaults) == frozen


class TestNormalize:
    DEFAULTS = {"theme": "dark", "panels": {"right": {"width": 250}}}

    def test_layout_example(self) -> None:
        raw = '{"panels":{"right":{"width":400}},"extra":"x"}'
        result = normalize(raw, self.DEFAULTS)
        assert json.loads(result) == {"theme": "dark", "panels": {"right": {"width": 400}}, "extra": "x"}
        assert result == '{"theme":"dark","panels":{"right":{"width":400}},"extra":"x"}'
        assert result != raw

    def test_already_normal_value_is_unchanged(self) -> None:
        raw = serialize({"theme": "light", "panels": {"right": {"width": 300}}})
        assert normalize(raw, self.DEFAULTS) == raw

    def test_invalid_json_returned_verbatim(self) -> None:
        assert normalize("not json {", self.DEFAULTS) == "not json {"

    def test_migrate_runs_before_merge(self) -> None:
        def migrate(value):
            if isinstance(value, dict) and "sidebarWidth" in value:
                return {"panels": {"right": {"width": value["sidebarWidth"]}}}
            return value

        result = normalize('{"sidebarWidth":320}', self.DEFAULTS, migrate)
        assert json.loads(result) == {"theme": "dark", "panels": {"right": {"width": 320}}}

    def test_failing_migrate_raises_migration_error(self) -> None:
        def migrate(value):
            raise KeyError("version")

        with pytest.raises(MigrationError) as exc_info:
            normalize('{"a":1}', self.DEFAULTS, migrate, name="layout")
        assert exc_info.value.details["key"] == "layout"
        assert isinstance(exc_info.value.__cause__, KeyError)


class TestHelpers:
    def test_parse_json_marks_invalid_input(self) -> None:
        assert parse_json("{") is MISSING
        assert parse_json("null") is None

    def test_serialize_is_compact_and_keeps_unicode(self) -> None:
        assert serialize({"a": [1, 2], "b": "é"}) == '{"a":[1,2],"b":"é"}'

    def test_snapshot_is_deep_copy(self) -> None:
        original = {"a": {"b": [1, (2, 3)]}}
        copy = snapshot(original)
        assert copy == {"a": {"b": [1, [2, 3]]}}
        copy["a"]["b"].append(4)
        assert original["a"]["b"] == [1, (2, 3)]

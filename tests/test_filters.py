"""Tests for the container filter chain."""

from datetime import datetime, timezone

import pytest

from errors import FilterError
from filters import FilterSpec, matches, parse_age_filter, parse_label_filter, split_patterns
from tests.conftest import make_record

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestParseAgeFilter:

    @pytest.mark.parametrize("value,days", [
        ("7d", 7),
        ("2w", 14),
        ("1m", 30),
        ("1y", 365),
        ("10", 10),
        (" 3d ", 3),
        (5, 5),
    ])
    def test_units(self, value, days):
        assert parse_age_filter(value) == days

    def test_empty_and_zero_mean_no_filter(self):
        assert parse_age_filter("") is None
        assert parse_age_filter(None) is None
        assert parse_age_filter("0d") is None

    def test_unknown_unit(self):
        with pytest.raises(FilterError):
            parse_age_filter("3h")


class TestParseLabelFilter:

    def test_key_value(self):
        assert parse_label_filter("dockcheck.enable=true") == ("dockcheck.enable", "true")

    def test_empty_value_allowed(self):
        assert parse_label_filter("tier=") == ("tier", "")

    def test_missing_equals(self):
        with pytest.raises(FilterError):
            parse_label_filter("dockcheck.enable")

    def test_empty(self):
        assert parse_label_filter("") is None


class TestSplitPatterns:

    def test_comma_string(self):
        assert split_patterns("web, db ,,cache") == ("web", "db", "cache")

    def test_list(self):
        assert split_patterns(["a", "", " b"]) == ("a", "b")

    def test_none(self):
        assert split_patterns(None) == ()


class TestMatches:

    def test_no_filters_pass_everything(self):
        passed, reason = matches(make_record("anything"), FilterSpec(), NOW)
        assert passed
        assert reason == ""

    def test_exclude_beats_include(self):
        """A name in both lists is filtered out."""
        spec = FilterSpec.build(include="web*", exclude="web-test")
        passed, reason = matches(make_record("web-test"), spec, NOW)
        assert not passed
        assert "excluded" in reason

    def test_include_glob(self):
        spec = FilterSpec.build(include="web*,db")
        assert matches(make_record("web-1"), spec, NOW)[0]
        assert matches(make_record("db"), spec, NOW)[0]
        assert not matches(make_record("cache"), spec, NOW)[0]

    def test_glob_is_case_sensitive(self):
        spec = FilterSpec.build(include="Web*")
        assert not matches(make_record("web-1"), spec, NOW)[0]

    def test_label_filter(self):
        spec = FilterSpec.build(label="dockcheck.enable=true")
        assert matches(make_record("a", labels={"dockcheck.enable": "true"}), spec, NOW)[0]
        assert not matches(make_record("b", labels={"dockcheck.enable": "false"}), spec, NOW)[0]
        assert not matches(make_record("c"), spec, NOW)[0]

    def test_age_filter_rejects_young_container(self):
        spec = FilterSpec.build(min_age="7d")
        young = make_record("young", created="2024-02-28T12:00:00Z")
        passed, reason = matches(young, spec, NOW)
        assert not passed
        assert "too new" in reason

    def test_age_filter_passes_old_container(self):
        spec = FilterSpec.build(min_age="7d")
        old = make_record("old", created="2024-01-01T00:00:00.123456789Z")
        assert matches(old, spec, NOW)[0]

    def test_unparseable_created_time_is_permissive(self, caplog):
        spec = FilterSpec.build(min_age="7d")
        record = make_record("odd", created="not-a-date")
        assert matches(record, spec, NOW)[0]
        assert "Cannot determine age" in caplog.text

    def test_malformed_label_filter_is_ignored(self, caplog):
        spec = FilterSpec.build(label="nolabelvalue")
        assert spec.label_filter is None
        assert matches(make_record("x"), spec, NOW)[0]
        assert "Ignoring label filter" in caplog.text

    def test_malformed_age_filter_is_ignored(self, caplog):
        spec = FilterSpec.build(min_age="soon")
        assert spec.min_age_days is None
        assert "Ignoring age filter" in caplog.text

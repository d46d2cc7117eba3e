# tests/unit/core/test_canonical.py
"""Tests for canonical JSON, digests and structured-attribute validation."""

from __future__ import annotations

import hashlib
import math
from datetime import UTC, date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from cairn.contracts import ValidationError
from cairn.core.canonical import canonical_json, content_digest, stable_hash, validate_structured


class TestCanonicalJson:
    """canonical_json produces one text per value."""

    def test_keys_sorted_without_whitespace(self) -> None:
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'

    def test_key_order_does_not_change_output(self) -> None:
        assert canonical_json({"x": 1, "y": {"b": 2, "a": 3}}) == canonical_json({"y": {"a": 3, "b": 2}, "x": 1})

    def test_naive_datetime_treated_as_utc(self) -> None:
        naive = datetime(2024, 1, 2, 3, 4, 5)
        aware = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)
        assert canonical_json({"t": naive}) == canonical_json({"t": aware})

    def test_datetime_normalized_to_utc(self) -> None:
        plus_two = datetime(2024, 1, 2, 5, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        assert canonical_json(plus_two) == '"2024-01-02T03:00:00+00:00"'

    def test_date_serialized_as_iso(self) -> None:
        assert canonical_json({"d": date(2024, 3, 1)}) == '{"d":"2024-03-01"}'

    def test_bytes_wrapped_as_base64(self) -> None:
        assert canonical_json(b"hi") == '{"__bytes__":"aGk="}'

    def test_decimal_as_string(self) -> None:
        assert canonical_json(Decimal("1.50")) == '"1.50"'

    @pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
    def test_non_finite_float_rejected(self, value: float) -> None:
        with pytest.raises(ValueError, match="non-finite"):
            canonical_json({"v": value})

    def test_non_finite_decimal_rejected(self) -> None:
        with pytest.raises(ValueError, match="non-finite"):
            canonical_json(Decimal("NaN"))


class TestDigests:
    def test_content_digest_is_sha256_of_bytes(self) -> None:
        assert content_digest(b"abc") == hashlib.sha256(b"abc").hexdigest()

    def test_stable_hash_ignores_key_order(self) -> None:
        assert stable_hash({"a": 1, "b": 2}) == stable_hash({"b": 2, "a": 1})

    def test_stable_hash_differs_for_different_values(self) -> None:
        assert stable_hash({"a": 1}) != stable_hash({"a": 2})


class TestValidateStructured:
    """Structured columns hold valid JSON or nothing."""

    def test_none_passes_through(self) -> None:
        assert validate_structured(None, "elaboration") is None

    def test_json_text_kept_verbatim(self) -> None:
        text = '{"b": 1,  "a": 2}'
        assert validate_structured(text, "elaboration") == text

    def test_mapping_serialized_canonically(self) -> None:
        assert validate_structured({"b": 1, "a": 2}, "elaboration") == '{"a":2,"b":1}'

    def test_malformed_text_rejected_with_field(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_structured("{not json", "frontmatter")
        assert exc_info.value.field == "frontmatter"
        assert "frontmatter must be valid JSON" in str(exc_info.value)

    def test_unserializable_value_rejected(self) -> None:
        with pytest.raises(ValidationError, match="not serializable"):
            validate_structured({"v": object()}, "elaboration")

    def test_nan_rejected(self) -> None:
        with pytest.raises(ValidationError):
            validate_structured({"v": math.nan}, "elaboration")

    @pytest.mark.parametrize("text", ["NaN", "Infinity", "-Infinity", '{"v": NaN}', "[1, Infinity]"])
    def test_non_standard_constants_in_text_rejected(self, text: str) -> None:
        with pytest.raises(ValidationError, match="elaboration must be valid JSON") as exc_info:
            validate_structured(text, "elaboration")
        assert exc_info.value.field == "elaboration"

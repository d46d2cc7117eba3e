# tests/property/conftest.py
"""Shared Hypothesis strategies for property-based tests.

Usage:
    from tests.property.conftest import json_values, uris

    @given(data=json_values)
    def test_something(data: Any) -> None:
        ...
"""

from __future__ import annotations

from hypothesis import strategies as st

# RFC 8785 (JCS) uses JavaScript-safe integers: -(2^53-1) to (2^53-1)
MAX_SAFE_INT = 2**53 - 1
MIN_SAFE_INT = -(2**53 - 1)

# JSON-safe primitives (excluding NaN/Infinity which cairn rejects)
json_primitives = (
    st.none()
    | st.booleans()
    | st.integers(min_value=MIN_SAFE_INT, max_value=MAX_SAFE_INT)
    | st.floats(allow_nan=False, allow_infinity=False)
    | st.text(max_size=50)
)

json_values = st.recursive(
    json_primitives,
    lambda children: st.lists(children, max_size=5) | st.dictionaries(st.text(max_size=10), children, max_size=5),
    max_leaves=30,
)

json_objects = st.dictionaries(st.text(min_size=1, max_size=20), json_values, min_size=1, max_size=10)

# Resource URIs: non-empty path-like strings
uris = st.builds(
    lambda parts: "/" + "/".join(parts),
    st.lists(st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789._-", min_size=1, max_size=12), min_size=1, max_size=4),
)

contents = st.binary(max_size=256)

# Media natures used for transforms
natures = st.sampled_from(["md", "txt", "json", "text/html", "application/pdf"])

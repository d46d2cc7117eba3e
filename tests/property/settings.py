# tests/property/settings.py
"""Standardized Hypothesis settings profiles for property tests.

Tiers:
- DETERMINISM_SETTINGS: 500 examples - canonical JSON and digest tests
- STANDARD_SETTINGS: 100 examples - regular property tests
- SLOW_SETTINGS: 50 examples - tests that open a database per example
"""

from hypothesis import settings

# Canonical text MUST be deterministic; structured columns depend on it
DETERMINISM_SETTINGS = settings(max_examples=500)

STANDARD_SETTINGS = settings(max_examples=100)

# A fresh in-memory database per example
SLOW_SETTINGS = settings(max_examples=50)

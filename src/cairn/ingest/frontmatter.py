# src/cairn/ingest/frontmatter.py
"""YAML front-matter extraction for Markdown-style text resources."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import yaml

# Natures whose content is searched for front matter
TEXT_NATURES = frozenset({"md", "mdx", "markdown", "text/markdown", "text/x-markdown"})

_FRONTMATTER = re.compile(r"\A---[ \t]*\r?\n(?P<yaml>.*?)\r?\n(?:---|\.\.\.)[ \t]*(?:\r?\n|\Z)(?P<body>.*)\Z", re.DOTALL)


@dataclass(frozen=True, slots=True)
class FrontMatter:
    """Parsed front matter.

    attrs holds the parsed YAML mapping. body_attrs is the document split
    into raw front matter, body and attrs. error is set when a block was
    present but could not be used; the resource is still admitted.
    """

    attrs: dict[str, Any] | None = None
    body_attrs: dict[str, Any] | None = None
    error: str | None = None


def extract_frontmatter(content: bytes, nature: str | None) -> FrontMatter:
    """Split a leading '---' YAML block from the body of a text resource.

    Content that is not a front-matter nature, not UTF-8, or has no
    leading block yields an empty FrontMatter.
    """
    if nature is None or nature.lower() not in TEXT_NATURES:
        return FrontMatter()
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError:
        return FrontMatter()
    # utf-8 BOM
    text = text.removeprefix("\ufeff")

    found = _FRONTMATTER.match(text)
    if found is None:
        return FrontMatter()

    raw = found.group("yaml")
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        return FrontMatter(error=f"Invalid YAML front matter: {e}")
    if parsed is None:
        parsed = {}
    if not isinstance(parsed, dict):
        return FrontMatter(error=f"Front matter must be a mapping, got {type(parsed).__name__}")

    attrs = {str(k): v for k, v in parsed.items()}
    return FrontMatter(
        attrs=attrs,
        body_attrs={"frontMatter": raw, "body": found.group("body"), "attrs": attrs},
    )

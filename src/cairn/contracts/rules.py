"""Path match and rewrite rule contracts.

Rules are grouped by namespace. Within a namespace, lower priority wins;
rules without a priority sort after prioritised ones; equal priorities
fall back to declaration order.
"""

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class PathMatchRule:
    """Decides whether a candidate path is accepted and which nature it gets.

    flags is any combination of "i" (ignore case), "m" (multiline),
    "s" (dot matches newline) and "x" (verbose).
    """

    namespace: str
    regex: str
    flags: str = ""
    nature: str | None = None
    priority: int | None = None
    include_globs: tuple[str, ...] = ()
    exclude_globs: tuple[str, ...] = ()
    description: str | None = None
    rule_id: str | None = None


@dataclass(frozen=True, slots=True)
class PathRewriteRule:
    """Regex substitution turning an admitted path into a canonical URI."""

    namespace: str
    regex: str
    replace: str
    priority: int | None = None
    description: str | None = None
    rule_id: str | None = None

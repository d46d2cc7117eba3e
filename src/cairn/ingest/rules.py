# src/cairn/ingest/rules.py
"""Path match and rewrite rule evaluation.

A RuleSet holds match and rewrite rules grouped by namespace. Within a
namespace rules are tried in (priority, declaration order): lower
priority wins, unprioritised rules come last, ties keep declaration
order. The first matching rule decides the nature; a namespace without
match rules accepts everything. A strict namespace with match rules
rejects paths that none of them matches.

Rewrite rules of the namespace apply in the same order, each as a regex
substitution on the output of the previous one.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
import yaml

from cairn.contracts import PathMatchRule, PathRewriteRule, ValidationError
from cairn.core.config import MatchRuleSettings, RewriteRuleSettings

if TYPE_CHECKING:
    from cairn.core.config import IngestSettings
    from cairn.core.store.recorder import StoreRecorder

__all__ = [
    "PathMatchRule",
    "PathRewriteRule",
    "RuleMatch",
    "RuleSet",
    "globs_admit",
    "load_rules",
]

logger = structlog.get_logger(__name__)

_FLAG_BITS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
}


def compile_flags(flags: str) -> int:
    """Translate an "imsx" flag string into re flag bits."""
    bits = 0
    for flag in flags:
        if flag not in _FLAG_BITS:
            raise ValidationError(f"Unknown regex flag {flag!r}; allowed: i, m, s, x", field="flags")
        bits |= _FLAG_BITS[flag]
    return bits


def globs_admit(path: str, include_globs: Sequence[str] | None, exclude_globs: Sequence[str] | None) -> bool:
    """True if path matches an include glob (when any are given) and no exclude glob."""
    if include_globs and not any(fnmatchcase(path, g) for g in include_globs):
        return False
    return not (exclude_globs and any(fnmatchcase(path, g) for g in exclude_globs))


@dataclass(frozen=True, slots=True)
class RuleMatch:
    """Outcome of matching a path.

    rule is None for the implicit match-all, and for an unmatched path in a
    strict namespace (matched=False).
    """

    namespace: str
    rule: PathMatchRule | None = None
    matched: bool = True

    @property
    def nature(self) -> str | None:
        return self.rule.nature if self.rule is not None else None

    @property
    def rule_id(self) -> str | None:
        return self.rule.rule_id if self.rule is not None else None


@dataclass(frozen=True, slots=True)
class _CompiledMatch:
    rule: PathMatchRule
    pattern: re.Pattern[str]
    position: int


@dataclass(frozen=True, slots=True)
class _CompiledRewrite:
    rule: PathRewriteRule
    pattern: re.Pattern[str]
    position: int


def _sort_key(priority: int | None, position: int) -> tuple[int, int, int]:
    # Unprioritised rules sort after every prioritised one
    if priority is None:
        return (1, 0, position)
    return (0, priority, position)


def _compile(regex: str, flags: str = "") -> re.Pattern[str]:
    try:
        return re.compile(regex, compile_flags(flags))
    except re.error as e:
        raise ValidationError(f"Invalid regex {regex!r}: {e}", field="regex") from e


class RuleSet:
    """Compiled match and rewrite rules, grouped by namespace.

    Example:
        rules = RuleSet(
            [PathMatchRule(namespace="docs", regex=r"\\.md$", nature="text/markdown", priority=1)],
            [PathRewriteRule(namespace="docs", regex=r"^/srv/", replace="file:///")],
            strict_namespaces={"docs"},
        )
        match = rules.match("/srv/a/readme.md", "docs")
        uri, applied = rules.rewrite("/srv/a/readme.md", "docs")
    """

    def __init__(
        self,
        match_rules: Iterable[PathMatchRule] = (),
        rewrite_rules: Iterable[PathRewriteRule] = (),
        *,
        strict_namespaces: Iterable[str] = (),
    ) -> None:
        self.strict_namespaces = frozenset(strict_namespaces)
        self._match: dict[str, list[_CompiledMatch]] = {}
        self._rewrite: dict[str, list[_CompiledRewrite]] = {}
        for position, rule in enumerate(match_rules):
            compiled = _CompiledMatch(rule, _compile(rule.regex, rule.flags), position)
            self._match.setdefault(rule.namespace, []).append(compiled)
        for position, rewrite in enumerate(rewrite_rules):
            compiled_rw = _CompiledRewrite(rewrite, _compile(rewrite.regex), position)
            self._rewrite.setdefault(rewrite.namespace, []).append(compiled_rw)
        for compiled_rules in self._match.values():
            compiled_rules.sort(key=lambda c: _sort_key(c.rule.priority, c.position))
        for compiled_rewrites in self._rewrite.values():
            compiled_rewrites.sort(key=lambda c: _sort_key(c.rule.priority, c.position))

    @classmethod
    def from_settings(cls, settings: IngestSettings) -> RuleSet:
        """Rules declared inline in settings, followed by those of settings.rules_file."""
        match_rules = [_match_from_settings(m) for m in settings.match_rules]
        rewrite_rules = [_rewrite_from_settings(r) for r in settings.rewrite_rules]
        if settings.rules_file is not None:
            file_match, file_rewrite = load_rules(settings.rules_file)
            match_rules.extend(file_match)
            rewrite_rules.extend(file_rewrite)
        return cls(match_rules, rewrite_rules, strict_namespaces=settings.strict_namespaces)

    @classmethod
    def from_recorder(cls, recorder: StoreRecorder, *, strict_namespaces: Iterable[str] = ()) -> RuleSet:
        """Rules persisted in the store, in their stored declaration order."""
        return cls(recorder.list_match_rules(), recorder.list_rewrite_rules(), strict_namespaces=strict_namespaces)

    def persist(self, recorder: StoreRecorder) -> None:
        """Save every rule to the store. Already-stored rules are left unchanged."""
        all_match = sorted((c for rules in self._match.values() for c in rules), key=lambda c: c.position)
        for c in all_match:
            recorder.save_match_rule(c.rule)
        all_rewrite = sorted((c for rules in self._rewrite.values() for c in rules), key=lambda c: c.position)
        for cr in all_rewrite:
            recorder.save_rewrite_rule(cr.rule)

    @property
    def namespaces(self) -> frozenset[str]:
        return frozenset(self._match) | frozenset(self._rewrite)

    def match_rules(self, namespace: str) -> list[PathMatchRule]:
        """Match rules of a namespace in evaluation order."""
        return [c.rule for c in self._match.get(namespace, [])]

    def match(self, path: str, namespace: str) -> RuleMatch:
        """First rule of namespace accepting path.

        Only strict namespaces report matched=False; other namespaces fall
        back to the implicit match-all.
        """
        compiled_rules = self._match.get(namespace, [])
        for compiled in compiled_rules:
            rule = compiled.rule
            if not globs_admit(path, rule.include_globs, rule.exclude_globs):
                continue
            if compiled.pattern.search(path):
                return RuleMatch(namespace, rule)
        if compiled_rules and namespace in self.strict_namespaces:
            logger.debug("path_unmatched", path=path, namespace=namespace)
            return RuleMatch(namespace, matched=False)
        return RuleMatch(namespace)

    def rewrite(self, path: str, namespace: str) -> tuple[str, list[dict[str, Any]]]:
        """Apply the namespace's rewrite rules in order.

        Returns:
            Tuple of (rewritten path, list of applied substitutions)
        """
        applied: list[dict[str, Any]] = []
        current = path
        for compiled in self._rewrite.get(namespace, []):
            rewritten = compiled.pattern.sub(compiled.rule.replace, current)
            if rewritten != current:
                applied.append(
                    {
                        "rule_id": compiled.rule.rule_id,
                        "regex": compiled.rule.regex,
                        "from": current,
                        "to": rewritten,
                    }
                )
                current = rewritten
        return current, applied


def _match_from_settings(m: MatchRuleSettings) -> PathMatchRule:
    return PathMatchRule(
        namespace=m.namespace,
        regex=m.regex,
        flags=m.flags,
        nature=m.nature,
        priority=m.priority,
        include_globs=tuple(m.include_globs),
        exclude_globs=tuple(m.exclude_globs),
        description=m.description,
    )


def _rewrite_from_settings(r: RewriteRuleSettings) -> PathRewriteRule:
    return PathRewriteRule(
        namespace=r.namespace,
        regex=r.regex,
        replace=r.replace,
        priority=r.priority,
        description=r.description,
    )


def load_rules(path: Path) -> tuple[list[PathMatchRule], list[PathRewriteRule]]:
    """Load match and rewrite rules from a YAML file.

    Expected layout:
        match_rules:
          - namespace: docs
            regex: '\\.md$'
            nature: text/markdown
            priority: 1
        rewrite_rules:
          - namespace: docs
            regex: '^/srv/'
            replace: 'file:///'

    Raises:
        FileNotFoundError: If the file does not exist
        ValidationError: If the document is not a mapping of rule lists
        pydantic.ValidationError: If a rule fails validation
    """
    if not path.exists():
        raise FileNotFoundError(f"Rules file not found: {path}")
    with path.open(encoding="utf-8") as f:
        document = yaml.safe_load(f)
    if document is None:
        return [], []
    if not isinstance(document, dict):
        raise ValidationError(f"Rules file {path} must contain a mapping, got {type(document).__name__}", field="rules_file")

    match_raw = document.get("match_rules") or []
    rewrite_raw = document.get("rewrite_rules") or []
    for key, value in (("match_rules", match_raw), ("rewrite_rules", rewrite_raw)):
        if not isinstance(value, list):
            raise ValidationError(f"{key} in {path} must be a list", field=key)

    match_rules = [_match_from_settings(MatchRuleSettings.model_validate(item)) for item in match_raw]
    rewrite_rules = [_rewrite_from_settings(RewriteRuleSettings.model_validate(item)) for item in rewrite_raw]
    logger.debug("rules_loaded", path=str(path), match_rules=len(match_rules), rewrite_rules=len(rewrite_rules))
    return match_rules, rewrite_rules

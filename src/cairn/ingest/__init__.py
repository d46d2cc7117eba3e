"""Ingestion: sessions, path rules and source adapters."""

from cairn.ingest.adapters.filesystem import FilesystemAdapter
from cairn.ingest.frontmatter import FrontMatter, extract_frontmatter
from cairn.ingest.manager import IngestionSessionManager
from cairn.ingest.rules import PathMatchRule, PathRewriteRule, RuleMatch, RuleSet, load_rules
from cairn.ingest.states import PathPhase, PathStateMachine

__all__ = [
    "FilesystemAdapter",
    "FrontMatter",
    "IngestionSessionManager",
    "PathMatchRule",
    "PathPhase",
    "PathRewriteRule",
    "PathStateMachine",
    "RuleMatch",
    "RuleSet",
    "extract_frontmatter",
    "load_rules",
]

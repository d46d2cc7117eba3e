# src/cairn/ingest/states.py
"""Per-path lifecycle inside an ingestion session.

DISCOVERING -> MATCHING -> RESOLVING -> {ADMITTED | REJECTED | ERRORED}

MATCHING may also end the path directly (REJECTED by session globs or an
unmatched strict namespace). Any non-terminal phase may go to ERRORED.
"""

from __future__ import annotations

from typing import Any

from cairn.contracts import EntryDiagnostics, PathPhase

__all__ = ["PathPhase", "PathStateMachine"]

_TERMINAL = frozenset({PathPhase.ADMITTED, PathPhase.REJECTED, PathPhase.ERRORED})

_ALLOWED: dict[PathPhase, frozenset[PathPhase]] = {
    PathPhase.DISCOVERING: frozenset({PathPhase.MATCHING, PathPhase.ERRORED}),
    PathPhase.MATCHING: frozenset({PathPhase.RESOLVING, PathPhase.REJECTED, PathPhase.ERRORED}),
    PathPhase.RESOLVING: frozenset({PathPhase.ADMITTED, PathPhase.REJECTED, PathPhase.ERRORED}),
    PathPhase.ADMITTED: frozenset(),
    PathPhase.REJECTED: frozenset(),
    PathPhase.ERRORED: frozenset(),
}


class PathStateMachine:
    """Tracks one discovered unit from discovery to its terminal phase.

    Example:
        sm = PathStateMachine("/srv/docs/a.md")
        sm.advance(PathPhase.MATCHING)
        sm.advance(PathPhase.RESOLVING)
        sm.advance(PathPhase.ADMITTED)
        sm.diagnostics()  # {"phase": "admitted"}
    """

    def __init__(self, source_ref: str) -> None:
        self.source_ref = source_ref
        self._phase = PathPhase.DISCOVERING
        self._history: list[PathPhase] = [PathPhase.DISCOVERING]
        self._message: str | None = None
        self._error_type: str | None = None

    @property
    def phase(self) -> PathPhase:
        return self._phase

    @property
    def history(self) -> tuple[PathPhase, ...]:
        return tuple(self._history)

    @property
    def is_terminal(self) -> bool:
        return self._phase in _TERMINAL

    def advance(self, phase: PathPhase, message: str | None = None) -> None:
        """Move to phase.

        Raises:
            ValueError: If the transition is not allowed from the current phase
        """
        if phase not in _ALLOWED[self._phase]:
            raise ValueError(f"Illegal path transition {self._phase.value} -> {phase.value} for {self.source_ref!r}")
        self._phase = phase
        self._history.append(phase)
        if message is not None:
            self._message = message

    def fail(self, error: BaseException | str) -> None:
        """Move to ERRORED, keeping the error for diagnostics."""
        if isinstance(error, BaseException):
            self._error_type = type(error).__name__
            message = str(error)
        else:
            message = error
        self.advance(PathPhase.ERRORED, message)

    def diagnostics(self, *, rule_id: str | None = None, detail: dict[str, Any] | None = None) -> EntryDiagnostics:
        """Structured diagnostics stored on the path entry."""
        diag: EntryDiagnostics = {"phase": self._phase.value}
        if self._message is not None:
            diag["message"] = self._message
        if self._error_type is not None:
            diag["error_type"] = self._error_type
        if rule_id is not None:
            diag["rule_id"] = rule_id
        if detail:
            diag["detail"] = detail
        return diag

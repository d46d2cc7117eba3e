# src/cairn/core/store/lineage.py
"""Lineage graph: named graphs of typed edges from node ids to resources.

An edge is (graph_name, nature, node_id, uniform_resource_id) and is
unique, so link() is idempotent by construction: repeating it inserts
nothing. Linking into a graph that was never registered fails.
"""

from __future__ import annotations

import posixpath
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import Connection, select

from cairn.contracts import LineageEdge, ResourceAdmitted, UnknownGraphError
from cairn.core.canonical import validate_structured
from cairn.core.store._database_ops import insert_if_absent
from cairn.core.store._helpers import created_by, live, now
from cairn.core.store.repositories import LineageEdgeRepository
from cairn.core.store.schema import edge_table, graph_table

if TYPE_CHECKING:
    from cairn.core.events import EventBusProtocol
    from cairn.core.store.recorder import StoreRecorder

logger = structlog.get_logger(__name__)

_EDGE_KEY = ("graph_name", "nature", "node_id", "uniform_resource_id")


class ResourceNeighbors:
    """Lazy, finite, restartable sequence of resource ids linked to a node.

    Each iteration issues fresh keyset-paged queries ordered by resource
    id, so iterating twice sees edges added in between and no iteration
    holds a cursor open across pages.
    """

    def __init__(self, graph: LineageGraph, graph_name: str, node_id: str, nature: str | None, page_size: int) -> None:
        self._graph = graph
        self._graph_name = graph_name
        self._node_id = node_id
        self._nature = nature
        self._page_size = page_size

    def __iter__(self) -> Iterator[str]:
        last: str | None = None
        while True:
            page = self._graph._neighbor_page(self._graph_name, self._node_id, self._nature, after=last, limit=self._page_size)
            yield from page
            if len(page) < self._page_size:
                return
            last = page[-1]

    def __repr__(self) -> str:
        return f"ResourceNeighbors(graph={self._graph_name!r}, node={self._node_id!r}, nature={self._nature!r})"


class LineageGraph:
    """Named lineage graphs stored alongside the resource store."""

    def __init__(self, recorder: StoreRecorder) -> None:
        self._ops = recorder.ops
        self._actor = recorder.actor
        self._edge_repo = LineageEdgeRepository()

    def register_graph(self, name: str, *, elaboration: Any = None) -> bool:
        """Register a graph name. Returns True on first registration."""
        values = {
            "name": name,
            "elaboration": validate_structured(elaboration, "elaboration"),
            **created_by(self._actor, now()),
        }
        _, inserted = self._ops.transaction(lambda conn: insert_if_absent(conn, graph_table, values, ("name",)))
        if inserted:
            logger.info("lineage_graph_registered", graph_name=name)
        return inserted

    def is_registered(self, name: str) -> bool:
        row = self._ops.execute_fetchone(select(graph_table.c.name).where(graph_table.c.name == name, *live(graph_table)))
        return row is not None

    def list_graphs(self) -> list[str]:
        rows = self._ops.execute_fetchall(select(graph_table.c.name).where(*live(graph_table)).order_by(graph_table.c.name))
        return [r.name for r in rows]

    def link(self, graph_name: str, nature: str, node_id: str, resource_id: str, *, elaboration: Any = None) -> bool:
        """Add an edge. Returns True if it was new; repeats are no-ops.

        Raises:
            UnknownGraphError: If graph_name was never registered
            ReferentialError: If the resource does not exist
        """
        values = {
            "graph_name": graph_name,
            "nature": nature,
            "node_id": node_id,
            "uniform_resource_id": resource_id,
            "elaboration": validate_structured(elaboration, "elaboration"),
            **created_by(self._actor, now()),
        }

        def _op(conn: Connection) -> bool:
            graph = conn.execute(select(graph_table.c.name).where(graph_table.c.name == graph_name, *live(graph_table))).first()
            if graph is None:
                raise UnknownGraphError(graph_name)
            _, inserted = insert_if_absent(conn, edge_table, values, _EDGE_KEY)
            return inserted

        return self._ops.transaction(_op)

    def neighbors(self, graph_name: str, node_id: str, nature: str | None = None, *, page_size: int = 100) -> ResourceNeighbors:
        """Resource ids linked to node_id, optionally restricted to one edge nature."""
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        return ResourceNeighbors(self, graph_name, node_id, nature, page_size)

    def _neighbor_page(self, graph_name: str, node_id: str, nature: str | None, *, after: str | None, limit: int) -> list[str]:
        t = edge_table
        clauses = [t.c.graph_name == graph_name, t.c.node_id == node_id, *live(t)]
        if nature is not None:
            clauses.append(t.c.nature == nature)
        if after is not None:
            clauses.append(t.c.uniform_resource_id > after)
        query = select(t.c.uniform_resource_id).distinct().where(*clauses).order_by(t.c.uniform_resource_id).limit(limit)
        return [r.uniform_resource_id for r in self._ops.execute_fetchall(query)]

    def nodes_for(self, resource_id: str, graph_name: str | None = None) -> list[LineageEdge]:
        """Edges pointing at a resource (reverse lookup)."""
        t = edge_table
        clauses = [t.c.uniform_resource_id == resource_id, *live(t)]
        if graph_name is not None:
            clauses.append(t.c.graph_name == graph_name)
        query = select(t).where(*clauses).order_by(t.c.graph_name, t.c.nature, t.c.node_id)
        return [self._edge_repo.load(r) for r in self._ops.execute_fetchall(query)]


def parent_node(uri: str) -> str:
    """Parent-directory node id of a URI or path ("." for bare names)."""
    parent = posixpath.dirname(uri.rstrip("/"))
    return parent or "."


class DirectoryLineageIndexer:
    """Links every newly admitted resource to its parent-directory node.

    Subscribes to ResourceAdmitted, which the store emits for new records
    only, so duplicates never re-trigger indexing.
    """

    def __init__(self, graph: LineageGraph, *, graph_name: str = "filesystem", nature: str = "contains") -> None:
        self._graph = graph
        self.graph_name = graph_name
        self.nature = nature

    def attach(self, events: EventBusProtocol) -> None:
        self._graph.register_graph(self.graph_name)
        events.subscribe(ResourceAdmitted, self.on_admitted)

    def detach(self, events: EventBusProtocol) -> bool:
        """Stop indexing; already-linked resources stay linked."""
        return events.unsubscribe(ResourceAdmitted, self.on_admitted)

    def on_admitted(self, event: ResourceAdmitted) -> None:
        node_id = parent_node(event.uri)
        self._graph.link(self.graph_name, self.nature, node_id, event.resource_id)
        logger.debug("lineage_linked", graph_name=self.graph_name, node_id=node_id, resource_id=event.resource_id)

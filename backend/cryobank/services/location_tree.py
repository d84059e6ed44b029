"""In-process, lazily loaded cache of the cryostorage topology.

One LocationTree lives on ``app.state`` and is shared by every request.
Each call is handed a *source*, normally the request-scoped
:class:`~cryobank.services.storage.StorageService`, which must provide
``list_roots()``, ``list_children(node_id)``, ``get_location(node_id)``
and ``subtree_counts(rows)``.

A node's children are fetched once per process lifetime. Concurrent
first reads of the same node share a single fetch. A failed fetch
leaves the node unloaded so the next read tries again.
"""

import asyncio
import logging
import uuid
import weakref

from cryobank.core.errors import TransientIOError
from cryobank.models.enums import LocationType
from cryobank.schemas.storage import LocationNode
from cryobank.services.storage import normalize_location_type, sort_by_number_in_name

logger = logging.getLogger(__name__)

_ROOTS = "roots"


def _to_node(row, sample_count: int) -> LocationNode:
    return LocationNode(
        id=row.id,
        name=row.name,
        code=getattr(row, "code", None) or row.name,
        location_type=normalize_location_type(row.location_type),
        parent_id=getattr(row, "parent_id", None),
        sample_type=getattr(row, "sample_type", None),
        capacity=getattr(row, "capacity", None),
        temperature=getattr(row, "temperature", None),
        is_active=getattr(row, "is_active", True),
        sample_count=sample_count,
    )


class LocationTree:
    def __init__(self) -> None:
        self._nodes: dict[uuid.UUID, LocationNode] = {}
        self._children: dict[uuid.UUID, list[uuid.UUID]] = {}
        self._roots: list[uuid.UUID] | None = None
        self._fetch_locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def _lock_for(self, key) -> asyncio.Lock:
        lock = self._fetch_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._fetch_locks[key] = lock
        return lock

    @staticmethod
    def is_leaf(node: LocationNode) -> bool:
        return node.location_type == LocationType.SLOT

    def get_node(self, node_id: uuid.UUID) -> LocationNode | None:
        return self._nodes.get(node_id)

    def is_loaded(self, node_id: uuid.UUID) -> bool:
        return node_id in self._children

    async def _build_nodes(self, source, rows) -> list[LocationNode]:
        counts = await source.subtree_counts(rows)
        nodes = [_to_node(row, counts.get(row.id, 0)) for row in rows]
        for node in nodes:
            cached = self._nodes.get(node.id)
            if cached is not None and node.id in self._children:
                node.is_loaded = True
            self._nodes[node.id] = node
        return sort_by_number_in_name(nodes)

    async def get_roots(self, source) -> list[LocationNode]:
        """Top-level tanks, loaded eagerly and cached."""
        if self._roots is not None:
            return [self._nodes[i] for i in self._roots]

        lock = self._lock_for(_ROOTS)
        async with lock:
            if self._roots is not None:
                return [self._nodes[i] for i in self._roots]
            try:
                rows = await source.list_roots()
                nodes = await self._build_nodes(source, rows)
            except TransientIOError as exc:
                logger.warning("Failed to load storage roots: %s", exc.message)
                return []
            self._roots = [node.id for node in nodes]
            return nodes

    async def get_children(self, source, node_id: uuid.UUID) -> list[LocationNode]:
        """Children of ``node_id``, fetched from ``source`` at most once."""
        if node_id in self._children:
            return [self._nodes[i] for i in self._children[node_id]]

        lock = self._lock_for(node_id)
        async with lock:
            if node_id in self._children:
                return [self._nodes[i] for i in self._children[node_id]]
            try:
                parent = self._nodes.get(node_id)
                if parent is None:
                    row = await source.get_location(node_id)
                    if row is None:
                        return []
                    parent = _to_node(row, 0)
                    self._nodes[node_id] = parent

                if self.is_leaf(parent):
                    # Slots never have children; nothing to fetch.
                    nodes = []
                else:
                    rows = await source.list_children(node_id)
                    nodes = await self._build_nodes(source, rows)
            except TransientIOError as exc:
                logger.warning(
                    "Failed to load children of location %s: %s",
                    node_id,
                    exc.message,
                )
                return []

            self._children[node_id] = [node.id for node in nodes]
            parent.is_loaded = True
            return nodes

    def invalidate(self, node_id: uuid.UUID | None = None) -> None:
        """Drop cached children of one node, or the whole cache."""
        if node_id is None:
            self._nodes.clear()
            self._children.clear()
            self._roots = None
            return
        self._children.pop(node_id, None)
        node = self._nodes.get(node_id)
        if node is not None:
            node.is_loaded = False

    def invalidate_path(self, node_ids: list[uuid.UUID]) -> None:
        """Drop the cached lists that show counts for ``node_ids``.

        Used after custody changes: every ancestor's children list and the
        roots list carry occupancy counts that are now stale.
        """
        for node_id in node_ids:
            self.invalidate(node_id)
        self._roots = None

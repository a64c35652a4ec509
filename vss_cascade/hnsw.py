"""
hnsw.py - Hierarchical Navigable Small World graph over medium-tier vectors.

=============================================================================
OVERVIEW
=============================================================================

An HNSW graph is a stack of proximity graphs:

    layer 3:   o                               (very few nodes)
    layer 2:   o-----------o                   (a few more)
    layer 1:   o-----o-----o-----o             (more)
    layer 0:   o--o--o--o--o--o--o--o--o       (every node)

Each node is assigned a random top level when it is inserted and appears on
every layer from 0 up to that level. Upper layers are sparse, so their edges
are long jumps; lower layers are dense, so their edges are short hops.

A search starts at the single entry point (the highest node), walks greedily
toward the query on each upper layer, and drops down a layer whenever it
cannot get any closer. At the target layer it switches to a beam search
with width ef. Expected cost grows roughly with log(N) instead of N.

This is an APPROXIMATE index. The beam search stops at a local optimum, so a
true nearest neighbor can be missed if no short path leads to it. The Stage 1
binary prefilter in the engine exists to put a recall floor under that.

=============================================================================
KEY DECISIONS
=============================================================================

1. DISTANCE
   distance(a, b) = 1 - cosine_similarity(a, b). Smaller is closer.

2. BOUNDED DEGREE BY TRIMMING
   Every layer of every node keeps at most M neighbors. Linking is
   symmetric: when node X links to Y, Y links back to X, and if that pushes
   Y over M, Y keeps only its M nearest. A new node can therefore evict an
   older, worse neighbor. Insertions never fail because a node is "full".

3. ARENA OF NODES, EDGES AS ID SETS
   Nodes live in one dict keyed by id; edges are sets of ids. Trimming one
   node's set never invalidates anything else. A neighbor id that is missing
   from the arena is simply skipped during traversal.

4. INJECTED RANDOMNESS
   Levels come from a numpy Generator passed in by the caller, so tests can
   seed it and rebuild exactly the same graph.

5. ENTRY POINT UPDATES ONLY IN insert()
   max_level and entry_point change in exactly one place, at the end of a
   successful insert. search() only reads them. The engine holds a lock
   around insert so a search never sees a half-linked node.

   A node that beats the current max level is linked through the OLD entry
   point first and promoted afterwards. Promoting it before linking would
   start the descent at a node that is not in the graph yet and leave the
   new top node without any edges.

=============================================================================
"""

from __future__ import annotations

import heapq
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple

import numpy as np

from vss_cascade.config import CascadeConfig
from vss_cascade.errors import DuplicateIdError
from vss_cascade.similarity import cosine_similarity

logger = logging.getLogger(__name__)


@dataclass
class HNSWNode:
    """
    One vector in the graph.

    neighbors has a key for every layer in 0..level and none above. Treat
    nodes returned by HNSWGraph.node() as read-only.
    """

    id: str
    vector: np.ndarray
    level: int
    neighbors: Dict[int, Set[str]] = field(default_factory=dict)


class HNSWGraph:
    """
    Insert-only HNSW index keyed by string ids.

    Not thread-safe on its own: callers must serialize insert() against
    everything else. Concurrent search() calls are fine once no insert is
    running.
    """

    def __init__(
        self,
        m: int = 16,
        ef_construction: int = 200,
        level_factor: float = 1.0 / math.log(2.0),
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        """
        Args:
            m: Max neighbors per node per layer
            ef_construction: Beam width used while linking a new node
            level_factor: Level decay; level = floor(-ln(U) * level_factor)
            rng: Source of randomness for levels (seed it for reproducible graphs)
        """
        if m <= 0 or ef_construction <= 0:
            raise ValueError("m and ef_construction must be positive")
        if level_factor <= 0.0:
            raise ValueError("level_factor must be positive")

        self.m = int(m)
        self.ef_construction = int(ef_construction)
        self.level_factor = float(level_factor)
        self._rng = rng if rng is not None else np.random.default_rng()

        self._nodes: Dict[str, HNSWNode] = {}
        self._max_level = 0
        self._entry_point: Optional[str] = None

    @classmethod
    def from_config(
        cls, config: CascadeConfig, rng: Optional[np.random.Generator] = None
    ) -> "HNSWGraph":
        return cls(
            m=config.m,
            ef_construction=config.ef_construction,
            level_factor=config.level_factor,
            rng=rng,
        )

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def max_level(self) -> int:
        return self._max_level

    @property
    def entry_point(self) -> Optional[str]:
        return self._entry_point

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def node(self, node_id: str) -> HNSWNode:
        return self._nodes[node_id]

    def nodes(self) -> Iterator[HNSWNode]:
        return iter(self._nodes.values())

    def layer_sizes(self) -> Dict[int, int]:
        """Number of nodes present on each layer, 0..max_level."""
        sizes = {layer: 0 for layer in range(self._max_level + 1)} if self._nodes else {}
        for node in self._nodes.values():
            for layer in range(node.level + 1):
                sizes[layer] += 1
        return sizes

    # -------------------------------------------------------------------------
    # Insertion
    # -------------------------------------------------------------------------

    def random_level(self) -> int:
        """Draw floor(-ln(U) * level_factor) with U uniform in (0, 1]."""
        u = 1.0 - float(self._rng.random())
        return int(math.floor(-math.log(u) * self.level_factor))

    def insert(self, node_id: str, vector: np.ndarray, level: Optional[int] = None) -> HNSWNode:
        """
        Add a vector to the graph and link it on layers 0..level.

        Args:
            node_id: Unique id (the chunk id)
            vector: The vector to index (the medium tier in the engine)
            level: Force a level instead of drawing one (tests, rebuilds)

        Returns:
            The committed node

        Raises:
            DuplicateIdError: node_id is already in the graph
        """
        if node_id in self._nodes:
            raise DuplicateIdError(node_id)

        vec = np.asarray(vector, dtype=np.float32).reshape(-1)
        lvl = self.random_level() if level is None else int(level)
        if lvl < 0:
            raise ValueError(f"level must be >= 0, got {lvl}")

        node = HNSWNode(
            id=node_id,
            vector=vec,
            level=lvl,
            neighbors={layer: set() for layer in range(lvl + 1)},
        )

        # First node: it is the whole graph.
        if self._entry_point is None:
            self._nodes[node_id] = node
            self._entry_point = node_id
            self._max_level = lvl
            logger.debug("hnsw: first node %s at level %d", node_id, lvl)
            return node

        entry_id = self._entry_point
        top = self._max_level

        # Coarse positioning: width-1 greedy walk down to just above our level.
        for layer in range(top, lvl, -1):
            found = self.search_layer(vec, 1, layer, entry_id)
            if found:
                entry_id = found[0][1]

        # Link on every layer we share with the existing graph, top to bottom.
        for layer in range(min(lvl, top), -1, -1):
            candidates = self.search_layer(vec, self.ef_construction, layer, entry_id)
            for neighbor_id in self._select_neighbors(candidates):
                neighbor = self._nodes.get(neighbor_id)
                if neighbor is None or neighbor.level < layer:
                    continue
                node.neighbors[layer].add(neighbor_id)
                neighbor.neighbors[layer].add(node_id)
                self._trim(neighbor, layer, pending=node)

            if candidates:
                entry_id = candidates[0][1]

        self._nodes[node_id] = node
        if lvl > self._max_level:
            self._max_level = lvl
            self._entry_point = node_id

        logger.debug(
            "hnsw: inserted %s at level %d (nodes=%d, max_level=%d)",
            node_id,
            lvl,
            len(self._nodes),
            self._max_level,
        )
        return node

    def _select_neighbors(self, candidates: List[Tuple[float, str]]) -> List[str]:
        # candidates come back from search_layer sorted nearest-first
        return [node_id for _, node_id in candidates[: self.m]]

    def _trim(self, node: HNSWNode, layer: int, pending: HNSWNode) -> None:
        """Shrink node's neighbor set at `layer` back to its m nearest."""
        links = node.neighbors.get(layer)
        if links is None or len(links) <= self.m:
            return

        scored: List[Tuple[float, str]] = []
        for other_id in links:
            if other_id == pending.id:
                other: Optional[HNSWNode] = pending
            else:
                other = self._nodes.get(other_id)
            dist = math.inf if other is None else self.distance(node.vector, other.vector)
            scored.append((dist, other_id))

        scored.sort()
        node.neighbors[layer] = {other_id for _, other_id in scored[: self.m]}

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    @staticmethod
    def distance(a: np.ndarray, b: np.ndarray) -> float:
        return 1.0 - cosine_similarity(a, b)

    def search(self, query: np.ndarray, ef: int, target_level: int = 0) -> List[str]:
        """
        Approximate nearest neighbors of `query` on `target_level`.

        Args:
            query: Vector in the same tier as the indexed vectors
            ef: Beam width; also the maximum number of ids returned
            target_level: Layer to run the beam search on (0 = all nodes)

        Returns:
            Up to ef unique ids, nearest first. Empty for an empty graph or a
            target level above the current max level.
        """
        if ef <= 0:
            raise ValueError(f"ef must be positive, got {ef}")
        if target_level < 0:
            raise ValueError(f"target_level must be >= 0, got {target_level}")
        if self._entry_point is None or target_level > self._max_level:
            return []

        q = np.asarray(query, dtype=np.float32).reshape(-1)
        entry_id = self._entry_point
        for layer in range(self._max_level, target_level, -1):
            found = self.search_layer(q, 1, layer, entry_id)
            if found:
                entry_id = found[0][1]

        return [node_id for _, node_id in self.search_layer(q, ef, target_level, entry_id)]

    def search_layer(
        self, query: np.ndarray, ef: int, layer: int, entry_id: str
    ) -> List[Tuple[float, str]]:
        """
        Best-first beam search on a single layer.

        Two heaps:
            candidates  min-heap of discovered nodes not yet expanded
            best        max-heap (negated distances) of the ef nearest so far

        Each step expands the nearest unexpanded candidate. The search stops
        when that candidate is farther than the worst of a full `best` list:
        nothing reachable through it can improve the result any more.

        Returns:
            (distance, id) pairs, nearest first, at most ef of them
        """
        entry = self._nodes.get(entry_id)
        if entry is None:
            return []

        d0 = self.distance(query, entry.vector)
        visited = {entry_id}
        candidates: List[Tuple[float, str]] = [(d0, entry_id)]
        best: List[Tuple[float, str]] = [(-d0, entry_id)]

        while candidates:
            dist, current_id = heapq.heappop(candidates)
            if len(best) >= ef and dist > -best[0][0]:
                break

            current = self._nodes.get(current_id)
            if current is None:
                continue

            # sorted() keeps traversal independent of set iteration order
            for neighbor_id in sorted(current.neighbors.get(layer, ())):
                if neighbor_id in visited:
                    continue
                visited.add(neighbor_id)

                neighbor = self._nodes.get(neighbor_id)
                if neighbor is None:
                    continue

                d = self.distance(query, neighbor.vector)
                if len(best) < ef or d < -best[0][0]:
                    heapq.heappush(candidates, (d, neighbor_id))
                    heapq.heappush(best, (-d, neighbor_id))
                    if len(best) > ef:
                        heapq.heappop(best)

        return sorted((-neg_d, node_id) for neg_d, node_id in best)

"""
binary_index.py - Stage 1 Hamming prefilter backed by faiss.IndexBinaryFlat.

Every chunk's nano sketch (32 bits by default) goes into a flat binary faiss
index. A query scans ALL of them: comparing a few bytes per chunk is cheap
enough to do for the whole corpus, and doing so guarantees a baseline set of
candidates that does not depend on how well the HNSW graph is connected.

faiss compares byte strings, so sketches are stored little-endian (bit i of
the int = bit i of the byte string). The distances faiss reports are then
exactly similarity.hamming_distance on the ints.

faiss only returns row numbers; _ids maps rows back to chunk ids.
"""

from __future__ import annotations

from typing import List, Tuple

import faiss  # type: ignore

from vss_cascade.similarity import sketch_to_bytes


class BinaryPrefilter:
    """Append-only exact Hamming index over packed sketches."""

    def __init__(self, bits: int = 32) -> None:
        if bits <= 0 or bits % 8 != 0:
            raise ValueError(f"bits must be a positive multiple of 8, got {bits}")
        self.bits = int(bits)
        self.index = faiss.IndexBinaryFlat(self.bits)
        self._ids: List[str] = []

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, chunk_id: str, sketch: int) -> None:
        """Append one sketch. Row order follows insertion order."""
        code = sketch_to_bytes(sketch, self.bits).reshape(1, -1)
        self.index.add(code)  # type: ignore[call-arg]
        self._ids.append(chunk_id)

    def nearest(self, sketch: int, limit: int) -> List[Tuple[str, int]]:
        """
        The min(limit, size) closest sketches by Hamming distance.

        Args:
            sketch: The query's packed sketch
            limit: Maximum number of ids to return

        Returns:
            (chunk_id, hamming_distance) pairs, ascending distance
        """
        k = min(int(limit), len(self._ids))
        if k <= 0:
            return []

        query = sketch_to_bytes(sketch, self.bits).reshape(1, -1)
        distances, rows = self.index.search(query, k)  # type: ignore[call-arg]

        out: List[Tuple[str, int]] = []
        for dist, row in zip(distances[0].tolist(), rows[0].tolist()):
            # faiss pads with -1 when it has fewer than k results
            if row < 0:
                continue
            out.append((self._ids[int(row)], int(dist)))
        return out

    def reset(self) -> None:
        self.index.reset()
        self._ids = []


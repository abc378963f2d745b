"""
Nearest-neighbour indexes over merged iris vectors.

Both implementations follow the same contract: inserts are accepted until
searching mode is switched on, after which only searches are allowed. Every
method may be called from several worker threads at once.
"""
import logging
import threading
from collections import namedtuple

import numpy as np
from usearch.index import Index, ScalarKind

from iris_ann_bench.distance import (
    MERGED_BIT_COUNT,
    MERGED_WORD_COUNT,
    MaskedHammingDistance,
    compiled_metric,
)

logger = logging.getLogger(__name__)

Neighbour = namedtuple("Neighbour", ["distance", "id"])


class IrisIndex:
    """
    Base class holding the build/search mode switch shared by all indexes.

    Parameters:
        max_connections (int): Maximum neighbours per graph node.
        capacity_hint (int): Expected number of inserted points.
        layer_count (int): Number of graph layers requested by the caller.
        construction_width (int): Candidate list size while inserting.
        counter (EvaluationCounter): Optional tally of distance evaluations.
    """

    def __init__(self, max_connections, capacity_hint, layer_count, construction_width, counter=None):
        self.max_connections = max_connections
        self.capacity_hint = capacity_hint
        self.layer_count = layer_count
        self.construction_width = construction_width
        self.counter = counter
        self._searching = False
        self._lock = threading.Lock()

    @property
    def searching(self):
        return self._searching

    def set_searching_mode(self, searching):
        with self._lock:
            if self._searching and not searching:
                raise RuntimeError("Searching mode cannot be switched off once enabled")
            if searching and not self._searching:
                self._searching = True
                self._finalize()

    def insert(self, flat_vector, id):
        flat_vector = _as_merged(flat_vector)
        with self._lock:
            if self._searching:
                raise RuntimeError("Cannot insert into an index in searching mode")
            self._insert(flat_vector, int(id))

    def search(self, flat_vector, k, search_width):
        if k < 1:
            raise ValueError(f"k must be positive, got {k}")
        if not self._searching:
            raise RuntimeError("Index must be in searching mode before it can be queried")
        return self._search(_as_merged(flat_vector), k, search_width)

    def _finalize(self):
        pass

    def _insert(self, flat_vector, id):
        raise NotImplementedError

    def _search(self, flat_vector, k, search_width):
        raise NotImplementedError

    def __len__(self):
        raise NotImplementedError


def _as_merged(flat_vector):
    flat_vector = np.ascontiguousarray(flat_vector, dtype=np.uint64)
    if flat_vector.shape != (MERGED_WORD_COUNT,):
        raise ValueError(f"Expected {MERGED_WORD_COUNT} merged words, got shape {flat_vector.shape}")
    return flat_vector


class UsearchIndex(IrisIndex):
    """
    HNSW graph from usearch driven by the compiled masked Hamming kernel.

    Vectors are handed to usearch as packed bits (the raw bytes of the
    merged words), so the kernel reads them back as uint64 words. usearch
    picks its own level distribution, so layer_count is only recorded.
    """

    def __init__(self, max_connections, capacity_hint, layer_count, construction_width, counter=None):
        super().__init__(max_connections, capacity_hint, layer_count, construction_width, counter)
        self._index = Index(
            ndim=MERGED_BIT_COUNT,
            metric=compiled_metric(),
            dtype=ScalarKind.B1,
            connectivity=max_connections,
            expansion_add=construction_width,
            expansion_search=construction_width,
        )
        if hasattr(self._index, "reserve"):
            self._index.reserve(capacity_hint)
        logger.debug("Created usearch index: connectivity=%d expansion_add=%d capacity=%d",
                     max_connections, construction_width, capacity_hint)

    def _insert(self, flat_vector, id):
        self._index.add(id, flat_vector.view(np.uint8), log=False)

    def _finalize(self):
        logger.debug("usearch index finalized with %d points", len(self._index))

    def _search(self, flat_vector, k, search_width):
        with self._lock:
            if self._index.expansion_search != search_width:
                self._index.expansion_search = search_width
            matches = self._index.search(flat_vector.view(np.uint8), k, log=False)
        if self.counter is not None:
            self.counter.add(int(matches.computed_distances))
        return [Neighbour(float(d), int(key)) for d, key in zip(matches.distances, matches.keys)]

    def __len__(self):
        return len(self._index)


class ExactIndex(IrisIndex):
    """
    Brute-force scan over every inserted point.

    The graph parameters are accepted for interface compatibility and
    ignored. Ties are broken by the smaller id.
    """

    def __init__(self, max_connections, capacity_hint, layer_count, construction_width, counter=None):
        super().__init__(max_connections, capacity_hint, layer_count, construction_width, counter)
        self.distance = MaskedHammingDistance(counter)
        self._vectors = []
        self._ids = []
        self._matrix = None

    def _insert(self, flat_vector, id):
        self._vectors.append(flat_vector.copy())
        self._ids.append(id)

    def _finalize(self):
        if self._vectors:
            self._matrix = np.stack(self._vectors)
        else:
            self._matrix = np.empty((0, MERGED_WORD_COUNT), dtype=np.uint64)

    def _search(self, flat_vector, k, search_width):
        scored = [
            Neighbour(float(self.distance(flat_vector, row)), id)
            for row, id in zip(self._matrix, self._ids)
        ]
        scored.sort(key=lambda n: (n.distance, n.id))
        return scored[:k]

    def __len__(self):
        return len(self._ids)


INDEX_KINDS = {
    "hnsw": UsearchIndex,
    "exact": ExactIndex,
}


def make_index(kind, max_connections, capacity_hint, layer_count, construction_width, counter=None):
    try:
        index_cls = INDEX_KINDS[kind]
    except KeyError:
        raise ValueError(f"Unsupported index kind: {kind}") from None
    return index_cls(max_connections, capacity_hint, layer_count, construction_width, counter)

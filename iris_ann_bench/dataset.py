import logging
from collections import namedtuple

import numpy as np

from iris_ann_bench.iris import IrisTemplate

logger = logging.getLogger(__name__)

Entry = namedtuple("Entry", ["template", "id"])
Batch = namedtuple("Batch", ["start", "stop", "seed"])

QUERY_STREAM, BATCH_STREAM, NOISE_STREAM = range(3)


class DatasetBuilder:
    """
    Synthesizes the template population and picks the query subset.

    Ids run from 0 to n_points - 1 in generation order. The population is cut
    into batches, each with its own child SeedSequence, so a batch yields the
    same templates no matter which worker generates it.
    """

    def __init__(self, n_points, n_queries, batch_size=1000, seed=None):
        if n_points < 1:
            raise ValueError(f"n_points must be positive, got {n_points}")
        if not 0 < n_queries <= n_points:
            raise ValueError(f"n_queries must be in [1, {n_points}], got {n_queries}")
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.n_points = n_points
        self.n_queries = n_queries
        self.batch_size = batch_size
        self.seed_sequence = np.random.SeedSequence(seed)

    def _child_seed(self, *key):
        # Derived from the spawn key rather than spawn() so repeated calls agree.
        return np.random.SeedSequence(self.seed_sequence.entropy,
                                      spawn_key=self.seed_sequence.spawn_key + key)

    def sample_query_ids(self):
        """
        Draw n_queries distinct ids without replacement.
        """
        rng = np.random.default_rng(self._child_seed(QUERY_STREAM))
        ids = rng.choice(self.n_points, size=self.n_queries, replace=False)
        return frozenset(int(i) for i in ids)

    def batches(self):
        return [Batch(start, min(start + self.batch_size, self.n_points), self._child_seed(BATCH_STREAM, n))
                for n, start in enumerate(range(0, self.n_points, self.batch_size))]

    def generate_batch(self, batch):
        rng = np.random.default_rng(batch.seed)
        return [Entry(IrisTemplate.random(rng), i) for i in range(batch.start, batch.stop)]

    def build(self):
        """
        Generate the whole population serially.

        Returns:
            entries (list): Every (template, id) pair, ordered by id.
            queries (list): The retained (template, id) pairs for the query ids.
        """
        query_ids = self.sample_query_ids()
        entries = []
        for batch in self.batches():
            entries.extend(self.generate_batch(batch))
        queries = [entry for entry in entries if entry.id in query_ids]
        logger.info("Built %d templates, %d retained as queries", len(entries), len(queries))
        return entries, queries

    def noise_generators(self, count):
        """
        One independent generator per query, for building the noisy recaptures.
        """
        return [np.random.default_rng(self._child_seed(NOISE_STREAM, n)) for n in range(count)]

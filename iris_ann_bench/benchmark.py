"""
Recall benchmark for approximate nearest-neighbour search over iris codes.

A random population of iris templates is inserted into an index, a subset is
re-queried with noisy recaptures, and the share of queries whose top match is
the original template is reported as recall.
"""
import argparse
import enum
import logging
import math
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, fields

from tqdm import tqdm

from iris_ann_bench.dataset import DatasetBuilder
from iris_ann_bench.distance import EvaluationCounter
from iris_ann_bench.index import INDEX_KINDS, make_index
from iris_ann_bench.iris import FLIP_PROBABILITY

logger = logging.getLogger(__name__)

# ----------------- defaults ----------------- #
N_POINTS = 40_000
N_QUERIES = 10_000
MAX_NB_CONNECTION = 128
EF_C = 128
KNBN = 1
BATCH_SIZE = 1_000


class EmptySearchResultError(RuntimeError):
    pass


class BenchmarkState(enum.Enum):
    EMPTY = "empty"
    POPULATED = "populated"
    INDEXED_BUILD = "indexed (build mode)"
    INDEXED_SEARCH = "indexed (search mode)"
    REPORTED = "reported"


def default_layer_count(n_points):
    return min(16, int(math.log(n_points)))


@dataclass
class BenchmarkConfig:
    n_points: int = N_POINTS
    n_queries: int = N_QUERIES
    max_connections: int = MAX_NB_CONNECTION
    construction_width: int = EF_C
    search_width: int = EF_C
    k: int = KNBN
    batch_size: int = BATCH_SIZE
    layer_count: int = None
    workers: int = None
    seed: int = None
    index_kind: str = "hnsw"
    flip_probability: float = FLIP_PROBABILITY
    progress: bool = True

    def __post_init__(self):
        for name in ("n_points", "n_queries", "max_connections", "construction_width",
                     "search_width", "k", "batch_size"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.n_queries > self.n_points:
            raise ValueError(f"n_queries ({self.n_queries}) cannot exceed n_points ({self.n_points})")
        if self.index_kind not in INDEX_KINDS:
            raise ValueError(f"Unsupported index kind: {self.index_kind}")
        if not 0.0 <= self.flip_probability <= 1.0:
            raise ValueError(f"flip_probability must be in [0, 1], got {self.flip_probability}")
        if self.layer_count is None:
            self.layer_count = default_layer_count(self.n_points)
        if self.workers is None:
            self.workers = os.cpu_count() or 1


@dataclass
class BenchmarkReport:
    n_points: int
    n_queries: int
    correct: int
    genuine_matches: int
    evaluations: int
    insert_seconds: float
    query_seconds: float

    @property
    def recall(self):
        return self.correct / self.n_queries * 100.0

    @property
    def avg_evaluations(self):
        return self.evaluations / self.n_queries

    @property
    def genuine_match_rate(self):
        return self.genuine_matches / self.n_queries * 100.0

    def format(self):
        return "\n".join([
            f"Recall: {self.recall:.2f}%",
            f"Average distance evaluations per query: {self.avg_evaluations:.2f}",
            f"Noisy queries within match threshold: {self.genuine_match_rate:.2f}%",
            f"Inserted {self.n_points} templates in {self.insert_seconds:.2f}s, "
            f"ran {self.n_queries} queries in {self.query_seconds:.2f}s",
        ])


class _Tally:
    def __init__(self):
        self._lock = threading.Lock()
        self.value = 0

    def increment(self):
        with self._lock:
            self.value += 1


class BenchmarkHarness:
    """
    Drives one benchmark run through its phases.

    build() -> insert() -> switch_to_search() -> query() -> report(). run()
    chains them. Calling a phase out of order raises RuntimeError.
    """

    def __init__(self, config, index=None, counter=None):
        self.config = config
        self.counter = counter if counter is not None else EvaluationCounter()
        self.index = index if index is not None else make_index(
            config.index_kind,
            config.max_connections,
            config.n_points,
            config.layer_count,
            config.construction_width,
            self.counter,
        )
        self.builder = DatasetBuilder(config.n_points, config.n_queries, config.batch_size, config.seed)
        self.state = BenchmarkState.EMPTY
        self.query_ids = frozenset()
        self.queries = []
        self._correct = _Tally()
        self._genuine = _Tally()
        self._timings = {}

    def _expect(self, state):
        if self.state is not state:
            raise RuntimeError(f"Benchmark is {self.state.value}, expected {state.value}")

    def build(self):
        self._expect(BenchmarkState.EMPTY)
        self.query_ids = self.builder.sample_query_ids()
        self.state = BenchmarkState.POPULATED
        logger.info("Selected %d query ids out of %d templates", len(self.query_ids), self.config.n_points)

    def insert(self):
        """
        Generate every batch and insert it, one batch per worker task.
        """
        self._expect(BenchmarkState.POPULATED)
        retained = []
        retained_lock = threading.Lock()
        bar = tqdm(total=self.config.n_points, desc="Inserting", disable=not self.config.progress)

        def insert_batch(batch):
            for entry in self.builder.generate_batch(batch):
                self.index.insert(entry.template.as_merged_array(), entry.id)
                if entry.id in self.query_ids:
                    with retained_lock:
                        retained.append(entry)
                bar.update(1)

        start = time.perf_counter()
        try:
            with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
                for _ in pool.map(insert_batch, self.builder.batches()):
                    pass
        finally:
            bar.close()
        self._timings["insert"] = time.perf_counter() - start

        self.queries = sorted(retained, key=lambda entry: entry.id)
        self.state = BenchmarkState.INDEXED_BUILD
        logger.info("Inserted %d templates in %.2fs", len(self.index), self._timings["insert"])

    def switch_to_search(self):
        self._expect(BenchmarkState.INDEXED_BUILD)
        self.index.set_searching_mode(True)
        self.counter.reset()
        self.state = BenchmarkState.INDEXED_SEARCH
        logger.debug("Index switched to searching mode")

    def query(self):
        """
        Search a noisy recapture of every retained template.
        """
        self._expect(BenchmarkState.INDEXED_SEARCH)
        rngs = self.builder.noise_generators(len(self.queries))
        bar = tqdm(total=len(self.queries), desc="Querying", disable=not self.config.progress)

        def run_query(item):
            entry, rng = item
            probe = entry.template.get_similar_iris(rng, self.config.flip_probability)
            if probe.is_close(entry.template):
                self._genuine.increment()
            neighbours = self.index.search(probe.as_merged_array(), self.config.k, self.config.search_width)
            if not neighbours:
                raise EmptySearchResultError(f"Index returned no result for query id {entry.id}")
            if neighbours[0].id == entry.id:
                self._correct.increment()
            bar.update(1)

        start = time.perf_counter()
        try:
            with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
                for _ in pool.map(run_query, zip(self.queries, rngs)):
                    pass
        finally:
            bar.close()
        self._timings["query"] = time.perf_counter() - start
        self.state = BenchmarkState.REPORTED

    def report(self):
        self._expect(BenchmarkState.REPORTED)
        return BenchmarkReport(
            n_points=self.config.n_points,
            n_queries=len(self.queries),
            correct=self._correct.value,
            genuine_matches=self._genuine.value,
            evaluations=self.counter.value,
            insert_seconds=self._timings["insert"],
            query_seconds=self._timings["query"],
        )

    def run(self):
        self.build()
        self.insert()
        self.switch_to_search()
        self.query()
        return self.report()


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Recall of approximate nearest-neighbour search over noisy iris codes")
    p.add_argument("--n_points", type=int, default=N_POINTS)
    p.add_argument("--n_queries", type=int, default=N_QUERIES)
    p.add_argument("--max_connections", type=int, default=MAX_NB_CONNECTION)
    p.add_argument("--construction_width", type=int, default=EF_C)
    p.add_argument("--search_width", type=int, default=EF_C)
    p.add_argument("--k", type=int, default=KNBN)
    p.add_argument("--batch_size", type=int, default=BATCH_SIZE)
    p.add_argument("--layer_count", type=int,
                   help="Graph layers (default: min(16, ln(n_points)))")
    p.add_argument("--workers", type=int, help="Worker threads (default: CPU count)")
    p.add_argument("--seed", type=int, help="Seed for a reproducible run")
    p.add_argument("--index", dest="index_kind", choices=sorted(INDEX_KINDS), default="hnsw")
    p.add_argument("--flip_probability", type=float, default=FLIP_PROBABILITY)
    p.add_argument("--no-progress", dest="progress", action="store_false")
    p.add_argument("--verbose", action="store_true")
    return p.parse_args(argv)


def config_from_args(args):
    names = {f.name for f in fields(BenchmarkConfig)}
    return BenchmarkConfig(**{k: v for k, v in vars(args).items() if k in names})


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s - %(levelname)s - %(message)s')
    config = config_from_args(args)
    logger.info("Running %s benchmark: %d templates, %d queries, %d workers",
                config.index_kind, config.n_points, config.n_queries, config.workers)
    report = BenchmarkHarness(config).run()
    print(report.format())


if __name__ == "__main__":
    main()

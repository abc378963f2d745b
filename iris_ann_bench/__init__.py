from iris_ann_bench.bitvector import BitVector
from iris_ann_bench.iris import MATCH_THRESHOLD_RATIO, IrisTemplate

__version__ = "1.0"

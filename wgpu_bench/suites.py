"""Suite catalog, keyed by the name accepted on the command line."""

from .binop import BinOpAdd, BinOpMax, BinOpMin
from .madd import Madd
from .membw import MembwGSL, MembwSimple
from .reduce import AtomicReducePerElement, AtomicReducePerSubgroup, AtomicReducePerWorkgroup
from .scan import HierarchicalScan
from .scan_dldf import DLDFScan
from .sort import OneSweepSort
from .testsuite import PlotSpec, TestSuite


def _pow2(lo, hi):
    """Powers of two 2**lo .. 2**hi inclusive."""
    return [2**i for i in range(lo, hi + 1)]


def _gpu_rows(row):
    return row["timing"] == "GPU"


def _cpu_rows(row):
    return row["timing"] == "CPU"


# ============================================================================
# Plots
# ============================================================================

BYTES_LABEL = "Input array size (B)"
BANDWIDTH_LABEL = "Achieved bandwidth (GB/s)"

SCAN_BANDWIDTH_PLOT = PlotSpec(
    name="bandwidth",
    x="inputBytes", x_label=BYTES_LABEL,
    y="bandwidth", y_label=BANDWIDTH_LABEL,
    stroke="timing",
    caption="CPU timing (wall clock), GPU timing (timestamps)",
)

SCAN_ACCURACY_PLOT = PlotSpec(
    name="bandwidth-by-type",
    x="inputBytes", x_label=BYTES_LABEL,
    y="bandwidth", y_label=BANDWIDTH_LABEL,
    stroke="type", fx="datatype", fy="binopbase",
    caption="GPU timing (timestamps), lines are scan type",
    filter=_gpu_rows,
)


def _cache_plot(name, y, y_label, timing, mark="line"):
    source = "GPU timing (timestamps)" if timing == "GPU" else "CPU timing (wall clock)"
    return PlotSpec(
        name=name,
        x="inputBytes", x_label=BYTES_LABEL,
        y=y, y_label=y_label,
        stroke="webgpucache",
        caption=source,
        mark=mark,
        filter=_gpu_rows if timing == "GPU" else _cpu_rows,
    )


CACHE_PLOTS = [
    _cache_plot("cpu-time", "cputime", "CPU runtime (ns)", "CPU"),
    _cache_plot("cpu-bandwidth", "bandwidth", BANDWIDTH_LABEL, "CPU"),
    _cache_plot("gpu-time", "gputime", "GPU runtime (ns)", "GPU"),
    _cache_plot("gpu-bandwidth", "bandwidth", BANDWIDTH_LABEL, "GPU"),
]

DOTTED_CACHE_PLOTS = [
    _cache_plot("cpu-time-dots", "cputime", "CPU runtime (ns)", "CPU", mark="dot"),
    _cache_plot("gpu-time-dots", "gputime", "GPU runtime (ns)", "GPU", mark="dot"),
]

SORT_PLOT = PlotSpec(
    name="keys-per-second",
    x="inputLength", x_label="Keys sorted",
    y="inputItemsPerSecondE9", y_label="Throughput (Gkeys/s)",
    stroke="datatype", fx="type",
    caption="One-sweep radix sort, GPU timing (lines are key datatype)",
    filter=_gpu_rows,
)

MEMBW_PLOTS = [
    PlotSpec(
        name="bandwidth",
        x="inputBytes", x_label="Copied array size (B)",
        y="bandwidth", y_label=BANDWIDTH_LABEL,
        stroke="workgroupSize",
        caption="Memory bandwidth test (lines are workgroup size)",
        filter=_gpu_rows,
    ),
    PlotSpec(
        name="cpu-gpu-delta",
        x="inputBytes", x_label="Copied array size (B)",
        y="cpugpuDelta", y_label="CPU - GPU time (ns)",
        stroke="workgroupSize",
        caption="CPU time minus GPU time per trial (lines are workgroup size)",
        filter=_gpu_rows,
    ),
]

MEMBW_GSL_PLOTS = [
    PlotSpec(
        name="bandwidth-by-count",
        x="inputBytes", x_label="Copied array size (B)",
        y="bandwidth", y_label=BANDWIDTH_LABEL,
        stroke="workgroupSize", fy="workgroupCount",
        caption="Memory bandwidth test GSL (lines are workgroup size)",
        filter=_gpu_rows,
    ),
    PlotSpec(
        name="bandwidth-by-size",
        x="inputBytes", x_label="Copied array size (B)",
        y="bandwidth", y_label=BANDWIDTH_LABEL,
        stroke="workgroupCount", fy="workgroupSize",
        caption="Memory bandwidth test GSL (lines are workgroup count)",
        filter=_gpu_rows,
    ),
]


def _madd_plot(ops):
    return PlotSpec(
        name=f"gflops-{ops}-ops",
        x="threadCount", x_label="Active threads",
        y="gflops", y_label="GFLOPS",
        stroke="workgroupSize",
        caption=f"Each thread does {ops} flops (lines are workgroup size)",
        filter=lambda row: row["timing"] == "GPU" and row["opsPerThread"] == ops,
    )


MADD_PLOTS = [
    PlotSpec(
        name="gflops-by-ops",
        x="threadCount", x_label="Active threads",
        y="gflops", y_label="GFLOPS",
        stroke="opsPerThread", stroke_label="Ops per thread",
        caption="Workgroup size = 64 (lines are ops per thread)",
        filter=lambda row: row["timing"] == "GPU" and row["workgroupSize"] == 64,
    ),
    _madd_plot(16),
    _madd_plot(64),
    _madd_plot(256),
]

REDUCE_PLOTS = [
    PlotSpec(
        name="bandwidth-by-size",
        x="inputBytes", x_label=BYTES_LABEL,
        y="bandwidth", y_label=BANDWIDTH_LABEL,
        stroke="workgroupSize",
        caption="Atomic global reduction, 1 u32 per thread (lines are workgroup size)",
        filter=_gpu_rows,
    ),
    PlotSpec(
        name="bandwidth-by-count",
        x="inputBytes", x_label=BYTES_LABEL,
        y="bandwidth", y_label=BANDWIDTH_LABEL,
        stroke="workgroupCount",
        caption="Atomic global reduction, 1 u32 per thread (lines are workgroup count)",
        filter=_gpu_rows,
    ),
]


# ============================================================================
# Suites
# ============================================================================

def _reduce_suite(name, primitive):
    return TestSuite(
        name=name,
        primitive=primitive,
        params={
            "workgroup_size": _pow2(2, 8),
            "workgroup_count": _pow2(5, 16),
        },
        trials=2,
        plots=REDUCE_PLOTS,
    )


SUITES = {
    "dldf-accuracy": TestSuite(
        name="DLDF",
        primitive=DLDFScan,
        params={
            "input_length": _pow2(10, 22),
            "type": ["reduce", "inclusive", "exclusive"],
            "datatype": ["f32", "u32"],
            "binopbase": [BinOpAdd, BinOpMax, BinOpMin],
        },
        trials=20,
        plots=[SCAN_BANDWIDTH_PLOT, SCAN_ACCURACY_PLOT],
        description="DLDF scan/reduce accuracy regression",
    ),
    "dldf-perf": TestSuite(
        name="DLDF",
        primitive=DLDFScan,
        params={
            "input_length": _pow2(10, 25),
            "type": ["exclusive"],
            "datatype": ["u32"],
            "binopbase": [BinOpAdd],
        },
        trials=1,
        plots=[SCAN_BANDWIDTH_PLOT],
        description="DLDF exclusive u32 add scan, length sweep",
    ),
    "dldf-cache": TestSuite(
        name="DLDF",
        primitive=DLDFScan,
        params={
            "webgpucache": ["enable", "disable"],
            "input_length": _pow2(10, 25),
            "type": ["exclusive"],
            "datatype": ["u32"],
            "binopbase": [BinOpAdd],
        },
        trials=1,
        plots=CACHE_PLOTS + [SCAN_BANDWIDTH_PLOT],
        description="DLDF scan with the pipeline cache enabled and disabled",
    ),
    "dldf-cache-dotted": TestSuite(
        name="DLDF",
        primitive=DLDFScan,
        params={
            "webgpucache": ["enable", "disable"],
            "input_length": [2**20 + 16384 * i for i in range(100)],
            "type": ["exclusive"],
            "datatype": ["u32"],
            "binopbase": [BinOpAdd],
        },
        trials=1,
        plots=DOTTED_CACHE_PLOTS,
        description="Many nearby lengths with the pipeline cache enabled and disabled",
    ),
    "dldf-mini": TestSuite(
        name="DLDF",
        primitive=DLDFScan,
        params={
            "input_length": [2**20],
            "type": ["inclusive", "exclusive"],
            "datatype": ["f32", "u32"],
            "binopbase": [BinOpAdd],
        },
        trials=2,
        description="Four DLDF scans at 2^20 elements",
    ),
    "sort-regression": TestSuite(
        name="onesweep",
        primitive=OneSweepSort,
        params={
            "input_length": _pow2(12, 24),
            "datatype": ["u32", "i32", "f32"],
            "type": ["keysonly", "keyvalue"],
        },
        trials=2,
        plots=[SORT_PLOT],
        description="One-sweep radix sort regression",
    ),
    "hierarchical-scan": TestSuite(
        name="hierarchical scan",
        primitive=HierarchicalScan,
        params={
            "input_length": _pow2(10, 24),
            "type": ["inclusive", "exclusive"],
            "datatype": ["u32", "f32"],
            "binopbase": [BinOpAdd, BinOpMax],
        },
        trials=5,
        plots=[SCAN_BANDWIDTH_PLOT, SCAN_ACCURACY_PLOT],
        description="Three-kernel reduce-then-scan",
    ),
    "membw-simple": TestSuite(
        name="fp32-per-thread",
        primitive=MembwSimple,
        params={
            "workgroup_size": _pow2(0, 6),
            "input_length": _pow2(8, 23),
        },
        trials=10,
        plots=MEMBW_PLOTS,
        description="Copies input to output, one thread per 32b element",
    ),
    "membw-gsl": TestSuite(
        name="fp32-per-thread GSL",
        primitive=MembwGSL,
        params={
            "workgroup_size": _pow2(0, 6),
            "workgroup_count": _pow2(5, 9),
            "input_length": _pow2(8, 23),
        },
        trials=10,
        plots=MEMBW_GSL_PLOTS,
        description="Copies input to output with a grid-stride loop",
    ),
    "madd": TestSuite(
        name="madd",
        primitive=Madd,
        params={
            "workgroup_size": _pow2(0, 6),
            "input_length": _pow2(8, 24),
            "ops_per_thread": _pow2(2, 9),
        },
        trials=10,
        plots=MADD_PLOTS,
        description="N multiply-adds per f32 input element",
    ),
    "reduce-atomic-element": _reduce_suite(
        "Atomic per-element u32 sum reduction", AtomicReducePerElement
    ),
    "reduce-atomic-subgroup": _reduce_suite(
        "Atomic per-subgroup u32 sum reduction", AtomicReducePerSubgroup
    ),
    "reduce-atomic-workgroup": _reduce_suite(
        "Atomic per-workgroup u32 sum reduction", AtomicReducePerWorkgroup
    ),
}


def get_suite(name):
    try:
        return SUITES[name]
    except KeyError:
        raise ValueError(f"Unknown suite '{name}', expected one of {sorted(SUITES)}") from None

"""End-to-end runs on the real adapter; skipped when none is available."""

import numpy as np
import pytest

from wgpu_bench.binop import BinOpAdd, BinOpMax
from wgpu_bench.buffer import Buffer
from wgpu_bench.device import has_subgroups
from wgpu_bench.driver import Driver, DriverConfig
from wgpu_bench.madd import Madd
from wgpu_bench.membw import MembwGSL, MembwSimple
from wgpu_bench.reduce import AtomicReducePerElement, AtomicReducePerWorkgroup
from wgpu_bench.scan import HierarchicalScan
from wgpu_bench.scan_dldf import PART_SIZE, DLDFScan
from wgpu_bench.sort import OneSweepSort
from wgpu_bench.testsuite import TestSuite

from .utils import assert_timing_consistent

pytestmark = pytest.mark.gpu

# timestamp and wall clocks come from different sources
TIMER_JITTER_NS = 1e6


@pytest.fixture
def subgroup_device(gpu_device):
    if not has_subgroups(gpu_device):
        pytest.skip("adapter has no subgroup support")
    return gpu_device


def _bind(device, primitive, values=None, init="randomizeAbsUnder1024"):
    """Create and register the primitive's buffers the way the driver does."""
    for spec in primitive.buffer_specs():
        feeds = spec.role in ("input", "inout")
        buf = Buffer(
            device=device,
            datatype=spec.datatype,
            length=spec.length,
            label=spec.label,
            initialize_host=(spec.initialize or init) if feeds else None,
            create_device=True,
            create_mappable=spec.role in ("output", "inout"),
        )
        if feeds and values is not None and spec.label == primitive.input_label:
            buf.host[:] = values
        if spec.role == "inout":
            buf.store_host_backup()
        if feeds:
            buf.copy_host_to_device()
        primitive.register_buffer(buf)
    return primitive


def _run(primitive):
    primitive.execute(trials=0)
    return primitive.get_buffer(primitive.output_label).copy_device_to_host()


def test_tiny_scan(subgroup_device):
    scan = DLDFScan(subgroup_device, input_length=8, type="inclusive")
    _bind(subgroup_device, scan, np.arange(1, 9, dtype=np.uint32))
    assert _run(scan).tolist() == [1, 3, 6, 10, 15, 21, 28, 36]


def test_scan_across_tile_boundary(subgroup_device):
    n = PART_SIZE + 1
    scan = DLDFScan(subgroup_device, input_length=n, type="inclusive")
    _bind(subgroup_device, scan, np.ones(n, dtype=np.uint32))
    np.testing.assert_array_equal(_run(scan), np.arange(1, n + 1, dtype=np.uint32))


def test_scan_with_contention(subgroup_device):
    n = PART_SIZE * 64
    scan = DLDFScan(subgroup_device, input_length=n, type="inclusive",
                    binop=BinOpMax("u32"))
    _bind(subgroup_device, scan, np.ones(n, dtype=np.uint32))
    assert np.all(_run(scan) == 1)


def test_pipeline_cache_reuse(subgroup_device, fresh_pipeline_cache):
    for _ in range(2):
        scan = DLDFScan(subgroup_device, input_length=1024, type="exclusive")
        _bind(subgroup_device, scan)
        _run(scan)
        assert scan.validate() == ""
    stats = fresh_pipeline_cache.stats()
    assert (stats.hits, stats.misses) == (1, 1)


def test_sort_matches_stable_host_sort(gpu_device):
    sort = OneSweepSort(gpu_device, input_length=2**20, datatype="f32")
    _bind(gpu_device, sort)
    _run(sort)
    assert sort.validate() == ""


def test_in_place_sort_restored_between_trials(gpu_device):
    sort = OneSweepSort(gpu_device, input_length=2**16, datatype="i32", type="keyvalue")
    _bind(gpu_device, sort)
    keys = sort.get_buffer("keysInOut")
    snapshot = keys.backup.copy()
    inout = [sort.get_buffer("keysInOut"), sort.get_buffer("payloadInOut")]
    for i in range(10):
        Driver._restore(inout)
        sort.execute(trials=1, warmup=(i == 0))

    np.testing.assert_array_equal(keys.backup, snapshot)
    np.testing.assert_array_equal(keys.host, snapshot)
    for buf in inout:
        buf.copy_device_to_host()
    mapped = sort.datatype.key_to_u32(keys.host).astype(np.int64)
    assert np.all(np.diff(mapped) >= 0)
    assert sort.validate() == ""


# ============================================================================
# Whole suites through the driver
# ============================================================================

def _driver(device):
    return Driver(DriverConfig(progress=False, seed=0), device=device)


@pytest.mark.parametrize("suite", [
    TestSuite(name="hierarchical", primitive=HierarchicalScan, trials=1, params={
        "input_length": [1, 1000, 2**18 + 3],
        "type": ["inclusive", "exclusive"],
        "datatype": ["u32", "f32"],
        "binopbase": [BinOpAdd, BinOpMax],
    }),
    TestSuite(name="membw", primitive=MembwSimple, trials=2, params={
        "workgroup_size": [1, 64], "input_length": [256, 2**16],
    }),
    TestSuite(name="membw gsl", primitive=MembwGSL, trials=2, params={
        "workgroup_size": [32], "workgroup_count": [32, 128], "input_length": [2**16],
    }),
    TestSuite(name="madd", primitive=Madd, trials=2, params={
        "input_length": [2**12], "ops_per_thread": [4, 64],
    }),
    TestSuite(name="reduce element", primitive=AtomicReducePerElement, trials=2, params={
        "workgroup_size": [4, 256], "workgroup_count": [32, 1024],
    }),
    TestSuite(name="reduce workgroup", primitive=AtomicReducePerWorkgroup, trials=2, params={
        "workgroup_size": [4, 256], "workgroup_count": [32, 1024],
    }),
], ids=lambda suite: suite.name)
def test_suite_validates(gpu_device, suite):
    result = _driver(gpu_device).run_suite(suite)
    assert result.validations.errors == 0
    assert result.validations.done == len(suite)
    assert all(row.cputime > 0 for row in result.rows)
    assert_timing_consistent(result.rows, jitter_ns=TIMER_JITTER_NS)


def test_dldf_suite_validates(subgroup_device):
    suite = TestSuite(name="DLDF", primitive=DLDFScan, trials=2, params={
        "input_length": [2**10, 2**14 + 5],
        "type": ["reduce", "inclusive", "exclusive"],
        "datatype": ["f32", "u32"],
        "binopbase": [BinOpAdd, BinOpMax],
    })
    result = _driver(subgroup_device).run_suite(suite)
    assert str(result.validations) == f"{len(suite)} validations complete, 0 errors."


def test_workgroup_reduce_repeated_dispatches(gpu_device):
    """Each workgroup starts its sum from zero, whatever the previous dispatch left."""
    reduce = AtomicReducePerWorkgroup(gpu_device, workgroup_size=64, workgroup_count=256)
    _bind(gpu_device, reduce, init="sequential")
    for _ in range(3):
        reduce.execute(trials=4)
        reduce.get_buffer("outputBuffer").copy_device_to_host()
        assert reduce.validate() == ""
    expected = reduce.input_length * (reduce.input_length - 1) // 2
    assert reduce.get_buffer("outputBuffer").host[0] == np.uint32(expected % 2**32)


@pytest.mark.parametrize("simulate_mask", [1, 3, 0xFFFFFFFF])
def test_scan_with_simulated_slow_publishers(subgroup_device, simulate_mask):
    n = PART_SIZE * 16 + 7
    scan = DLDFScan(subgroup_device, input_length=n, type="inclusive",
                    simulate_mask=simulate_mask)
    _bind(subgroup_device, scan, np.ones(n, dtype=np.uint32))
    np.testing.assert_array_equal(_run(scan), np.arange(1, n + 1, dtype=np.uint32))

import pytest

from wgpu_bench.binop import BinOpAdd, BinOpMax
from wgpu_bench.primitive import BasePrimitive
from wgpu_bench.scan_dldf import DLDFScan
from wgpu_bench.suites import SUITES, get_suite
from wgpu_bench.testsuite import BINOP_AXIS, CACHE_AXIS, PlotSpec, TestSuite

from .utils import AddOne


def test_tuples_first_axis_slowest():
    suite = TestSuite(
        name="add",
        primitive=AddOne,
        params={"input_length": [16, 32], "workgroup_size": [1, 2, 4]},
    )
    tuples = list(suite.tuples())
    assert len(suite) == len(tuples) == 6
    assert tuples[:3] == [
        {"input_length": 16, "workgroup_size": 1},
        {"input_length": 16, "workgroup_size": 2},
        {"input_length": 16, "workgroup_size": 4},
    ]
    assert suite.category == "test"


def test_no_axes_is_one_tuple():
    suite = TestSuite(name="single", primitive=AddOne)
    assert list(suite.tuples()) == [{}]
    assert len(suite) == 1


def test_rejects_bad_definitions():
    with pytest.raises(TypeError):
        TestSuite(name="bad", primitive=dict)
    with pytest.raises(ValueError, match="trials"):
        TestSuite(name="bad", primitive=AddOne, trials=-1)
    with pytest.raises(ValueError, match="mark"):
        PlotSpec(x="a", y="b", mark="bar")


def test_build_primitive_with_binop(fake_device):
    suite = TestSuite(name="DLDF", primitive=DLDFScan, primitive_args={"type": "inclusive"})
    scan = suite.build_primitive(
        fake_device, {"input_length": 4096, "datatype": "f32", BINOP_AXIS: BinOpMax}
    )
    assert isinstance(scan.binop, BinOpMax)
    assert scan.binop.datatype == "f32"
    assert scan.type == "inclusive"
    assert suite.extra_row_fields({BINOP_AXIS: BinOpMax}) == {BINOP_AXIS: "BinOpMax"}

    by_name = suite.build_primitive(fake_device, {"datatype": "u32", BINOP_AXIS: "BinOpAdd"})
    assert isinstance(by_name.binop, BinOpAdd)


def test_build_primitive_switches_cache(fake_device):
    suite = TestSuite(name="add", primitive=AddOne)
    cache = BasePrimitive.pipeline_cache
    suite.build_primitive(fake_device, {CACHE_AXIS: "disable"})
    assert not cache.enabled
    suite.build_primitive(fake_device, {CACHE_AXIS: "enable"})
    assert cache.enabled
    with pytest.raises(ValueError, match=CACHE_AXIS):
        suite.build_primitive(fake_device, {CACHE_AXIS: "sometimes"})
    assert suite.extra_row_fields({CACHE_AXIS: "enable", "input_length": 4}) == {CACHE_AXIS: "enable"}


def test_build_primitive_no_timestamps(fake_device):
    suite = TestSuite(name="add", primitive=AddOne)
    primitive = suite.build_primitive(fake_device, {}, gpu_timestamps=False)
    assert not primitive.gpu_timestamps


@pytest.mark.parametrize("name", sorted(SUITES))
def test_catalog_axes_are_primitive_parameters(name):
    suite = SUITES[name]
    allowed = set(suite.primitive.parameters) | {BINOP_AXIS, CACHE_AXIS}
    assert set(suite.params) <= allowed
    assert all(len(values) > 0 for values in suite.params.values())
    assert len(suite) > 0
    for plot in suite.plots:
        assert plot.x and plot.y


def test_get_suite():
    assert get_suite("sort-regression").primitive.__name__ == "OneSweepSort"
    assert len(get_suite("dldf-accuracy")) == 13 * 3 * 2 * 3
    with pytest.raises(ValueError, match="Unknown suite"):
        get_suite("nope")

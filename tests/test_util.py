import math

import numpy as np
import pytest

from wgpu_bench.util import (
    combinations,
    dispatch_geometry,
    div_round_up,
    drange,
    f32_approx_eq,
    f32_approx_eq_array,
    format_mismatches,
)


def test_combinations_first_axis_varies_slowest():
    runs = list(combinations({"a": [1, 2], "b": ["x", "y", "z"]}))
    assert len(runs) == 6
    assert runs[0] == {"a": 1, "b": "x"}
    assert runs[1] == {"a": 1, "b": "y"}
    assert runs[3] == {"a": 2, "b": "x"}


def test_combinations_yields_fresh_dicts():
    runs = list(combinations({"a": [1], "b": [2, 3]}))
    runs[0]["a"] = 99
    assert runs[1]["a"] == 1


def test_drange_is_inclusive():
    assert drange(3, 6) == [3, 4, 5, 6]
    assert drange(2, 2) == [2]


def test_div_round_up():
    assert div_round_up(4096, 4096) == 1
    assert div_round_up(4097, 4096) == 2
    assert div_round_up(1, 256) == 1


def test_f32_approx_eq():
    assert f32_approx_eq(1.0, 1.0)
    assert f32_approx_eq(math.inf, math.inf)
    assert f32_approx_eq(0.001, -0.005)
    assert f32_approx_eq(1000.0, 1000.0 + 1e-3)
    assert not f32_approx_eq(1000.0, 1010.0)
    assert not f32_approx_eq(1.0, math.inf)


def test_f32_approx_eq_array_matches_scalar():
    ref = np.array([1.0, 0.001, 1000.0, 5.0], dtype=np.float32)
    out = np.array([1.0, -0.002, 1000.0001, 6.0], dtype=np.float32)
    ok = f32_approx_eq_array(ref, out)
    assert ok.tolist() == [f32_approx_eq(a, b) for a, b in zip(ref, out)]
    assert ok.tolist() == [True, True, True, False]


def test_format_mismatches_reports_first_five():
    expected = np.arange(10)
    actual = expected.copy()
    actual[2:9] = -1
    text = format_mismatches(expected, actual, expected == actual)
    lines = text.splitlines()
    assert lines[0] == "Element 2: expected 2, instead saw -1."
    assert len(lines) == 6
    assert lines[-1] == "(7 mismatches total)"


def test_format_mismatches_empty_when_all_match():
    a = np.arange(4)
    assert format_mismatches(a, a, a == a) == ""


@pytest.mark.parametrize("workgroups", [1, 65535, 65536, 1_000_000, 2**24])
def test_dispatch_geometry_covers_workgroups(workgroups):
    x, y = dispatch_geometry(workgroups, 65535)
    assert x <= 65535
    assert x * y >= workgroups


def test_dispatch_geometry_is_1d_when_it_fits():
    assert dispatch_geometry(100, 65535) == (100, 1)
    assert dispatch_geometry(0, 65535) == (1, 1)

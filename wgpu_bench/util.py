"""Small helpers shared by primitives, suites and the driver."""

import itertools
import math

import numpy as np

F32_EPSILON = 1.192092896e-7
F32_APPROX_EPSILON = 10000 * F32_EPSILON
F32_FUNCTIONALLY_ZERO = 0.01


def combinations(params):
    """Iterate the Cartesian product of a dict of parameter axes.

    The first key varies slowest. Each yielded value is a fresh dict.

    Args:
        params: mapping of axis name -> sequence of values
    """
    keys = list(params.keys())
    for values in itertools.product(*(params[k] for k in keys)):
        yield dict(zip(keys, values))


def drange(lo, hi):
    """Inclusive integer range [lo, hi]."""
    return list(range(lo, hi + 1))


def div_round_up(x, y):
    return -(-x // y)


def f32_approx_eq(reference, target):
    """Approximate f32 equality used by scan validation.

    Equal values (including matching infinities) are equal, two values both
    within 0.01 of zero are equal, otherwise the difference must be within
    10000 * FLT_EPSILON of |target|.
    """
    reference = float(reference)
    target = float(target)
    if reference == target:
        return True
    if abs(reference) <= F32_FUNCTIONALLY_ZERO and abs(target) <= F32_FUNCTIONALLY_ZERO:
        return True
    scale = abs(target) if math.isfinite(target) else 0.0
    return abs(reference - target) <= F32_APPROX_EPSILON * scale


def f32_approx_eq_array(reference, target):
    """Vectorized f32_approx_eq; returns a boolean array."""
    reference = np.asarray(reference, dtype=np.float64)
    target = np.asarray(target, dtype=np.float64)
    with np.errstate(invalid="ignore"):
        equal = reference == target
        near_zero = (np.abs(reference) <= F32_FUNCTIONALLY_ZERO) & (
            np.abs(target) <= F32_FUNCTIONALLY_ZERO
        )
        scale = np.where(np.isfinite(target), np.abs(target), 0.0)
        close = np.abs(reference - target) <= F32_APPROX_EPSILON * scale
    return equal | near_zero | close


def format_mismatches(expected, actual, mask, limit=5):
    """Render the first `limit` mismatching elements as a validation string.

    Args:
        expected: reference array
        actual: GPU output array
        mask: boolean array, True where the element is correct
        limit: maximum number of elements reported
    """
    bad = np.flatnonzero(~np.asarray(mask))
    if bad.size == 0:
        return ""
    lines = [
        f"Element {i}: expected {expected[i]}, instead saw {actual[i]}."
        for i in bad[:limit]
    ]
    if bad.size > limit:
        lines.append(f"({bad.size} mismatches total)")
    return "\n".join(lines)


def dispatch_geometry(workgroups, max_per_dimension):
    """Fold a 1D workgroup count into (x, y) under the per-dimension limit.

    x is repeatedly halved (rounding up) and y doubled until x fits, so
    x * y >= workgroups. Kernels linearize the workgroup id and guard
    against the overshoot.
    """
    x, y = max(int(workgroups), 1), 1
    while x > max_per_dimension:
        x = div_round_up(x, 2)
        y *= 2
    return (x, y)

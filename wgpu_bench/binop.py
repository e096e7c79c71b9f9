"""Associative binary operators for scans and reductions, per datatype.

Each operator carries its identity, the WGSL `binop` function the kernels
call, the matching subgroup and atomic builtins (None when WGSL has no
builtin for that datatype), and numpy reference implementations.
"""

import numpy as np

from .datatype import F32_MAX, as_datatype


class BinOp:
    """Base class; subclasses fill in the per-operator tables."""

    ufunc = None
    wgsl_expr = None
    subgroup_reduce = None
    subgroup_inclusive = None
    subgroup_exclusive = None

    def __init__(self, datatype):
        self.datatype = as_datatype(datatype)
        if self.datatype.is_64bit:
            raise ValueError(f"{type(self).__name__} does not support {self.datatype}")

    @property
    def name(self):
        return type(self).__name__

    def __repr__(self):
        return f"{self.name}({self.datatype})"

    def __str__(self):
        return self.name

    def __eq__(self, other):
        return type(other) is type(self) and other.datatype == self.datatype

    def __hash__(self):
        return hash((self.name, self.datatype))

    # ---- GPU side ----

    @property
    def identity(self):
        raise NotImplementedError

    @property
    def wgsl_identity(self):
        return self.datatype.literal(self.identity)

    @property
    def wgslfn(self):
        t = self.datatype.wgsl
        return f"fn binop(a: {t}, b: {t}) -> {t} {{ return {self.wgsl_expr}; }}"

    @property
    def wgsl_atomic(self):
        return None

    # ---- CPU side ----

    def op(self, a, b):
        return self._cast(self.ufunc(self._widen(a), self._widen(b)))

    def _widen(self, x):
        x = np.asarray(x, dtype=self.datatype.numpy_dtype)
        if self.datatype.is_float:
            return x.astype(np.float64)
        return x

    def _cast(self, x):
        return np.asarray(x).astype(self.datatype.numpy_dtype)

    def inclusive_scan(self, values):
        """CPU reference: out[i] = binop(values[0], ..., values[i])."""
        values = self._widen(values)
        if values.size == 0:
            return self._cast(values)
        return self._cast(self.ufunc.accumulate(values, dtype=values.dtype))

    def exclusive_scan(self, values):
        """CPU reference: out[0] = identity, out[i] = binop(out[i-1], values[i-1])."""
        values = self._widen(values)
        out = np.empty(values.shape, dtype=self.datatype.numpy_dtype)
        if values.size == 0:
            return out
        out[0] = self.identity
        out[1:] = self.inclusive_scan(values[:-1])
        return out

    def reduce(self, values):
        values = self._widen(values)
        if values.size == 0:
            return self._cast(self.identity)
        return self._cast(self.ufunc.reduce(values, dtype=values.dtype))


class BinOpAdd(BinOp):
    ufunc = np.add
    wgsl_expr = "a + b"
    subgroup_reduce = "subgroupAdd"
    subgroup_inclusive = "subgroupInclusiveAdd"
    subgroup_exclusive = "subgroupExclusiveAdd"

    @property
    def identity(self):
        return 0.0 if self.datatype.is_float else 0

    @property
    def wgsl_atomic(self):
        return None if self.datatype.is_float else "atomicAdd"


class BinOpMultiply(BinOp):
    ufunc = np.multiply
    wgsl_expr = "a * b"
    subgroup_reduce = "subgroupMul"
    subgroup_inclusive = "subgroupInclusiveMul"
    subgroup_exclusive = "subgroupExclusiveMul"

    @property
    def identity(self):
        return 1.0 if self.datatype.is_float else 1


class BinOpMin(BinOp):
    ufunc = np.minimum
    wgsl_expr = "min(a, b)"
    subgroup_reduce = "subgroupMin"

    @property
    def identity(self):
        return {"f32": F32_MAX, "i32": 0x7FFFFFFF, "u32": 0xFFFFFFFF}[self.datatype.name]

    @property
    def wgsl_atomic(self):
        return None if self.datatype.is_float else "atomicMin"


class BinOpMax(BinOp):
    ufunc = np.maximum
    wgsl_expr = "max(a, b)"
    subgroup_reduce = "subgroupMax"

    @property
    def identity(self):
        return {"f32": -F32_MAX, "i32": -(1 << 31), "u32": 0}[self.datatype.name]

    @property
    def wgsl_atomic(self):
        return None if self.datatype.is_float else "atomicMax"


BINOPS = {cls.__name__: cls for cls in (BinOpAdd, BinOpMultiply, BinOpMin, BinOpMax)}


def make_binop(base, datatype):
    """Instantiate a binop from its class (or class name) and a datatype."""
    if isinstance(base, str):
        try:
            base = BINOPS[base]
        except KeyError:
            raise ValueError(f"Unknown binop '{base}', expected one of {sorted(BINOPS)}") from None
    return base(datatype)

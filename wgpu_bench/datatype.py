"""Element datatypes and their WGSL radix-mapping fragments.

A radix mapping turns a key into a u32 whose unsigned order matches the
key's natural order, so the radix sort is order-preserving for signed
integers and IEEE-754 floats (http://stereopsis.com/radix.html).
"""

import numpy as np

F32_MAX = float(np.finfo(np.float32).max)

# ============================================================================
# Per-datatype tables
# ============================================================================

_KEY_TO_U32 = {
    "u32": """
fn keyToU32(u: u32) -> u32 {
  return u;
}""",
    "i32": """
fn keyToU32(i: i32) -> u32 {
  return bitcast<u32>(i) ^ 0x80000000u;
}""",
    # sign bit set: flip every bit; sign bit clear: flip only the sign bit
    "f32": """
fn keyToU32(f: f32) -> u32 {
  let mask: u32 = bitcast<u32>(-(bitcast<i32>(bitcast<u32>(f) >> 31u))) | 0x80000000u;
  return bitcast<u32>(f) ^ mask;
}""",
    "u64": """
fn keyToU32(u: vec2u) -> u32 {
  return u.x;
}
fn keyHighToU32(u: vec2u) -> u32 {
  return u.y;
}""",
}

_KEY_FROM_U32 = {
    "u32": """
fn keyFromU32(u: u32) -> u32 {
  return u;
}""",
    "i32": """
fn keyFromU32(u: u32) -> i32 {
  return bitcast<i32>(u ^ 0x80000000u);
}""",
    "f32": """
fn keyFromU32(u: u32) -> f32 {
  let mask: u32 = ((u >> 31u) - 1u) | 0x80000000u;
  return bitcast<f32>(u ^ mask);
}""",
    "u64": """
fn keyFromU32(u: u32) -> vec2u {
  return vec2u(u, u);
}""",
}

_TABLE = {
    # name: (wgsl type, wgsl u32-width type, numpy dtype, max value)
    "u32": ("u32", "u32", np.uint32, 0xFFFFFFFF),
    "i32": ("i32", "u32", np.int32, 0x7FFFFFFF),
    "f32": ("f32", "u32", np.float32, F32_MAX),
    "u64": ("vec2u", "vec2u", np.uint64, 0xFFFFFFFFFFFFFFFF),
}


class Datatype:
    """Immutable description of one element type."""

    __slots__ = ("name",)

    def __init__(self, name):
        if isinstance(name, Datatype):
            name = name.name
        if name not in _TABLE:
            raise ValueError(f"Unknown datatype '{name}', expected one of {sorted(_TABLE)}")
        object.__setattr__(self, "name", name)

    def __setattr__(self, key, value):
        raise AttributeError("Datatype is immutable")

    def __eq__(self, other):
        if isinstance(other, str):
            return self.name == other
        return isinstance(other, Datatype) and other.name == self.name

    def __hash__(self):
        return hash(self.name)

    def __repr__(self):
        return f"Datatype({self.name!r})"

    def __str__(self):
        return self.name

    # ---- Properties ----

    @property
    def wgsl(self):
        """Native WGSL type of one element."""
        return _TABLE[self.name][0]

    @property
    def wgsl_u32(self):
        """WGSL type with the element's width but u32 lanes."""
        return _TABLE[self.name][1]

    @property
    def numpy_dtype(self):
        return np.dtype(_TABLE[self.name][2])

    @property
    def is_64bit(self):
        return self.name == "u64"

    @property
    def bytes_per_element(self):
        return 8 if self.is_64bit else 4

    @property
    def bits_per_element(self):
        return self.bytes_per_element * 8

    @property
    def max(self):
        return _TABLE[self.name][3]

    @property
    def is_float(self):
        return self.name == "f32"

    @property
    def key_to_u32_wgsl(self):
        return _KEY_TO_U32[self.name]

    @property
    def key_from_u32_wgsl(self):
        return _KEY_FROM_U32[self.name]

    # ---- Host-side helpers ----

    def literal(self, value):
        """Format a Python number as a WGSL literal of this type."""
        if self.name == "u32":
            return f"{int(value) & 0xFFFFFFFF}u"
        if self.name == "i32":
            value = int(value)
            if value == -(1 << 31):
                return "bitcast<i32>(0x80000000u)"
            return f"{value}i"
        if self.name == "f32":
            value = float(value)
            if value == F32_MAX:
                return "0x1.fffffep+127f"
            if value == -F32_MAX:
                return "-0x1.fffffep+127f"
            return f"{value!r}f"
        raise ValueError(f"No scalar WGSL literal for {self.name}")

    def key_to_u32(self, keys):
        """Host mirror of keyToU32 for a numpy array of this datatype."""
        keys = np.asarray(keys, dtype=self.numpy_dtype)
        if self.name == "u32":
            return keys.copy()
        bits = keys.view(np.uint32)
        if self.name == "i32":
            return bits ^ np.uint32(0x80000000)
        if self.name == "f32":
            negative = (bits >> np.uint32(31)).astype(bool)
            mask = np.where(negative, np.uint32(0xFFFFFFFF), np.uint32(0x80000000))
            return bits ^ mask.astype(np.uint32)
        raise ValueError(f"Radix mapping of {self.name} keys is not supported on the host")

    def key_from_u32(self, mapped):
        """Host mirror of keyFromU32."""
        mapped = np.asarray(mapped, dtype=np.uint32)
        if self.name == "u32":
            return mapped.copy()
        if self.name == "i32":
            return (mapped ^ np.uint32(0x80000000)).view(np.int32)
        if self.name == "f32":
            mask = ((mapped >> np.uint32(31)) - np.uint32(1)) | np.uint32(0x80000000)
            return (mapped ^ mask).view(np.float32)
        raise ValueError(f"Radix mapping of {self.name} keys is not supported on the host")


def as_datatype(value):
    return value if isinstance(value, Datatype) else Datatype(value)

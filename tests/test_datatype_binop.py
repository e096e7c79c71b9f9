import numpy as np
import pytest

from wgpu_bench.binop import BINOPS, BinOpAdd, BinOpMax, BinOpMin, BinOpMultiply, make_binop
from wgpu_bench.datatype import F32_MAX, Datatype


def test_datatype_properties():
    u32 = Datatype("u32")
    assert u32.wgsl == "u32"
    assert u32.bytes_per_element == 4
    assert u32.numpy_dtype == np.uint32
    assert not u32.is_float
    assert Datatype("f32").is_float
    assert Datatype("u64").is_64bit
    assert Datatype("u64").bytes_per_element == 8
    assert Datatype("u64").bits_per_element == 64
    assert Datatype("u64").wgsl_u32 == "vec2u"
    assert Datatype("i32").wgsl_u32 == "u32"


def test_datatype_equality_and_immutability():
    assert Datatype("i32") == Datatype("i32")
    assert Datatype("i32") == "i32"
    assert Datatype(Datatype("f32")) == Datatype("f32")
    with pytest.raises(AttributeError):
        Datatype("u32").name = "f32"


def test_unknown_datatype():
    with pytest.raises(ValueError, match="Unknown datatype"):
        Datatype("f16")


def test_literals():
    assert Datatype("u32").literal(7) == "7u"
    assert Datatype("u32").literal(-1) == "4294967295u"
    assert Datatype("i32").literal(-3) == "-3i"
    assert Datatype("i32").literal(-(1 << 31)) == "bitcast<i32>(0x80000000u)"
    assert Datatype("f32").literal(1.5) == "1.5f"
    assert Datatype("f32").literal(-F32_MAX) == "-0x1.fffffep+127f"


@pytest.mark.parametrize("name", ["u32", "i32", "f32"])
def test_key_mapping_preserves_order(name):
    dt = Datatype(name)
    if name == "f32":
        keys = np.array([-np.inf, -1024.5, -1.0, -0.0, 0.0, 1e-30, 3.0, np.inf], dtype=np.float32)
    elif name == "i32":
        keys = np.array([-(2**31), -5, -1, 0, 1, 2**31 - 1], dtype=np.int32)
    else:
        keys = np.array([0, 1, 1000, 2**31, 2**32 - 1], dtype=np.uint32)
    mapped = dt.key_to_u32(keys)
    assert mapped.dtype == np.uint32
    assert np.all(mapped[1:] > mapped[:-1])
    back = dt.key_from_u32(mapped)
    assert np.array_equal(back.view(np.uint32), keys.view(np.uint32))


def test_key_mapping_wgsl_fragments():
    assert "fn keyToU32(f: f32) -> u32" in Datatype("f32").key_to_u32_wgsl
    assert "0x80000000u" in Datatype("i32").key_to_u32_wgsl
    assert "fn keyFromU32(u: u32) -> i32" in Datatype("i32").key_from_u32_wgsl


def test_binop_identities():
    assert BinOpAdd("u32").identity == 0
    assert BinOpMultiply("f32").identity == 1.0
    assert BinOpMin("u32").identity == 0xFFFFFFFF
    assert BinOpMax("i32").identity == -(1 << 31)
    assert BinOpMax("f32").identity == -F32_MAX
    assert BinOpMax("i32").wgsl_identity == "bitcast<i32>(0x80000000u)"


def test_binop_wgsl():
    assert BinOpMax("f32").wgslfn == "fn binop(a: f32, b: f32) -> f32 { return max(a, b); }"
    assert BinOpAdd("u32").wgsl_atomic == "atomicAdd"
    assert BinOpAdd("f32").wgsl_atomic is None
    assert BinOpMin("i32").subgroup_reduce == "subgroupMin"


def test_binop_scans():
    values = np.array([1, 2, 3, 4, 5, 6, 7, 8], dtype=np.uint32)
    add = BinOpAdd("u32")
    assert add.inclusive_scan(values).tolist() == [1, 3, 6, 10, 15, 21, 28, 36]
    assert add.exclusive_scan(values).tolist() == [0, 1, 3, 6, 10, 15, 21, 28]
    assert int(add.reduce(values)) == 36
    mx = BinOpMax("i32")
    signed = np.array([-5, 3, -7, 10, 2], dtype=np.int32)
    assert mx.inclusive_scan(signed).tolist() == [-5, 3, 3, 10, 10]
    assert mx.exclusive_scan(signed).tolist() == [-(1 << 31), -5, 3, 3, 10]


def test_binop_add_u32_wraps():
    values = np.array([0xFFFFFFFF, 2], dtype=np.uint32)
    assert BinOpAdd("u32").inclusive_scan(values).tolist() == [0xFFFFFFFF, 1]


def test_binop_equality():
    assert BinOpAdd("u32") == BinOpAdd("u32")
    assert BinOpAdd("u32") != BinOpAdd("f32")
    assert str(BinOpMin("f32")) == "BinOpMin"


def test_make_binop():
    assert make_binop("BinOpMax", "u32") == BinOpMax("u32")
    assert make_binop(BinOpAdd, "f32") == BinOpAdd("f32")
    assert set(BINOPS) == {"BinOpAdd", "BinOpMultiply", "BinOpMin", "BinOpMax"}
    with pytest.raises(ValueError, match="Unknown binop"):
        make_binop("BinOpXor", "u32")


def test_binop_rejects_64bit():
    with pytest.raises(ValueError):
        BinOpAdd("u64")

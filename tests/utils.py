"""Small primitives whose kernels the fake device runs in numpy."""

import numpy as np

from wgpu_bench.datatype import Datatype
from wgpu_bench.primitive import AllocateBuffer, BasePrimitive, BufferSpec, Kernel

ADD_ONE_WGSL = """
@group(0) @binding(0) var<storage, read_write> outputBuffer: array<f32>;
@group(0) @binding(1) var<storage, read> inputBuffer: array<f32>;

@compute @workgroup_size(64)
fn add_one(@builtin(global_invocation_id) id: vec3u) {
  if (id.x < arrayLength(&inputBuffer)) {
    outputBuffer[id.x] = inputBuffer[id.x] + 1.0;
  }
}
"""

NEGATE_WGSL = """
@group(0) @binding(0) var<storage, read_write> valuesInOut: array<i32>;
@group(0) @binding(1) var<storage, read_write> scratch: array<i32>;

@compute @workgroup_size(64)
fn negate(@builtin(global_invocation_id) id: vec3u) {
  if (id.x < arrayLength(&valuesInOut)) {
    valuesInOut[id.x] = -valuesInOut[id.x];
  }
}
"""


class AddOne(BasePrimitive):
    category = "test"
    datatype = Datatype("f32")
    parameters = {"input_length": 256, "workgroup_size": 64}
    known_buffers = ("inputBuffer", "outputBuffer")

    def buffer_specs(self):
        return [
            BufferSpec("inputBuffer", self.datatype, self.input_length, "input"),
            BufferSpec("outputBuffer", self.datatype, self.input_length, "output"),
        ]

    @property
    def bytes_transferred(self):
        return 2 * self.input_length * 4

    def extra_fields(self):
        return {"input_bytes": self.input_length * 4}

    def reference(self):
        return self.get_buffer("inputBuffer").host + np.float32(1.0)

    def compute(self):
        return [
            Kernel(
                kernel=lambda: ADD_ONE_WGSL,
                entry_point="add_one",
                bindings=("outputBuffer", "inputBuffer"),
                buffer_types=("storage", "read-only-storage"),
                dispatch_geometry=lambda: self.simple_dispatch_geometry(
                    -(-self.input_length // self.workgroup_size)
                ),
                label="add one",
            )
        ]


class Negate(BasePrimitive):
    """In place: negating twice would restore the input, so restores are observable."""

    category = "test"
    datatype = Datatype("i32")
    in_place = True
    parameters = {"input_length": 128}
    known_buffers = ("valuesInOut",)
    output_label = "valuesInOut"
    input_label = "valuesInOut"

    def buffer_specs(self):
        return [BufferSpec("valuesInOut", self.datatype, self.input_length, "inout")]

    @property
    def bytes_transferred(self):
        return 2 * self.input_length * 4

    def reference(self):
        return -self.get_buffer("valuesInOut").backup

    def compute(self):
        return [
            AllocateBuffer(label="scratch", size=self.input_length * 4),
            Kernel(
                kernel=lambda: NEGATE_WGSL,
                entry_point="negate",
                bindings=("valuesInOut", "scratch"),
                buffer_types=("storage", "storage"),
                dispatch_geometry=lambda: (2, 1),
                label="negate",
            ),
        ]


def add_one_handler(buffers, geometry):
    out, src = buffers
    n = min(len(src.data), len(out.data)) // 4
    result = src.view(np.float32)[:n] + np.float32(1.0)
    out.data[: n * 4] = result.tobytes()


def negate_handler(buffers, geometry):
    values = buffers[0]
    result = -values.view(np.int32)
    values.data[:] = result.tobytes()


def install_handlers(device):
    device.handlers["add_one"] = add_one_handler
    device.handlers["negate"] = negate_handler
    return device


def assert_timing_consistent(rows, jitter_ns=0.0):
    """Rows come in GPU/CPU pairs; kernel time never exceeds the wall clock around it."""
    assert len(rows) % 2 == 0
    for gpu, cpu in zip(rows[0::2], rows[1::2]):
        assert (gpu.timing, cpu.timing) == ("GPU", "CPU")
        assert gpu.label == cpu.label
        if not gpu.gpu_timestamps:
            assert gpu.gputime is None
            continue
        assert 0 <= gpu.gputime <= cpu.cputime + jitter_ns
        assert cpu.cpugpu_delta == gpu.cpugpu_delta >= -jitter_ns

"""Multiply-add throughput: N MADDs per f32 input element, reported in GFLOPS."""

import numpy as np

from .datatype import Datatype
from .primitive import BasePrimitive, BufferSpec, Kernel
from .util import div_round_up

# 2^-22: keeps b in [1, 2) for inputs under 2^22 in magnitude
B_SCALE = 2.38418579e-7


class Madd(BasePrimitive):
    """One thread per element; each thread performs `ops_per_thread` flops."""

    category = "madd"
    datatype = Datatype("f32")
    parameters = {"input_length": 2**20, "workgroup_size": 64, "ops_per_thread": 16}
    known_buffers = ("inputBuffer", "outputBuffer")

    def check_parameters(self):
        for name in self.parameters:
            value = int(getattr(self, name))
            if value < 1:
                raise ValueError(f"Madd: {name} must be positive")
            setattr(self, name, value)
        if self.ops_per_thread % 2:
            raise ValueError("Madd: ops_per_thread must be even (one MADD is two flops)")

    def default_label(self):
        return f"Madd ({self.ops_per_thread} ops, workgroup size {self.workgroup_size})"

    def buffer_specs(self):
        return [
            BufferSpec("inputBuffer", self.datatype, self.input_length, "input"),
            BufferSpec("outputBuffer", self.datatype, self.input_length, "output"),
        ]

    @property
    def bytes_transferred(self):
        return 2 * self.input_length * 4

    @property
    def madds(self):
        return max(self.ops_per_thread - 2, 0) // 2

    def gflops(self, gputime_ns):
        if not gputime_ns:
            return None
        return self.input_length * self.ops_per_thread / gputime_ns

    def extra_fields(self):
        return {"thread_count": self.input_length, "input_bytes": self.input_length * 4}

    def kernel(self):
        body = "\n".join("    f = f * b + b;" for _ in range(self.madds))
        return f"""
@group(0) @binding(0) var<storage, read_write> outputBuffer: array<f32>;
@group(0) @binding(1) var<storage, read> inputBuffer: array<f32>;

@compute @workgroup_size({self.workgroup_size})
fn main(@builtin(local_invocation_index) lidx: u32,
        @builtin(workgroup_id) wid: vec3u,
        @builtin(num_workgroups) nwg: vec3u) {{
  let i = (wid.y * nwg.x + wid.x) * {self.workgroup_size}u + lidx;
  if (i < arrayLength(&inputBuffer)) {{
    var f = inputBuffer[i];
    let b = f * {B_SCALE} + 1.0;
{body}
    outputBuffer[i] = f;
  }}
}}
"""

    def reference(self):
        f = self.get_buffer(self.input_label).host[: self.input_length].astype(np.float32)
        b = f * np.float32(B_SCALE) + np.float32(1.0)
        for _ in range(self.madds):
            f = f * b + b
        return f.astype(np.float32)

    def compute(self):
        count = div_round_up(self.input_length, self.workgroup_size)
        return [
            Kernel(
                kernel=self.kernel,
                bindings=("outputBuffer", "inputBuffer"),
                buffer_types=("storage", "read-only-storage"),
                dispatch_geometry=lambda: self.simple_dispatch_geometry(count),
                label=f"madd x{self.ops_per_thread} (wg {self.workgroup_size})",
            )
        ]

"""Memory bandwidth kernels: copy an f32 array, adding one to every element."""

import numpy as np

from .datatype import Datatype
from .primitive import BasePrimitive, BufferSpec, Kernel
from .util import div_round_up


class BaseMembw(BasePrimitive):
    category = "membw"
    datatype = Datatype("f32")
    known_buffers = ("inputBuffer", "outputBuffer")

    def check_parameters(self):
        for name in self.parameters:
            value = int(getattr(self, name))
            if value < 1:
                raise ValueError(f"{type(self).__name__}: {name} must be positive")
            setattr(self, name, value)

    def default_label(self):
        return f"{type(self).__name__} (workgroup size {self.workgroup_size})"

    def buffer_specs(self):
        return [
            BufferSpec("inputBuffer", self.datatype, self.input_length, "input"),
            BufferSpec("outputBuffer", self.datatype, self.input_length, "output"),
        ]

    @property
    def bytes_transferred(self):
        return 2 * self.input_length * self.datatype.bytes_per_element

    def extra_fields(self):
        return {"input_bytes": self.input_length * self.datatype.bytes_per_element}

    def reference(self):
        values = self.get_buffer(self.input_label).host[: self.input_length]
        return (values + np.float32(1.0)).astype(np.float32)


class MembwSimple(BaseMembw):
    """One thread per f32 element."""

    parameters = {"input_length": 2**20, "workgroup_size": 64}

    def kernel(self):
        return f"""
@group(0) @binding(0) var<storage, read_write> outputBuffer: array<f32>;
@group(0) @binding(1) var<storage, read> inputBuffer: array<f32>;

@compute @workgroup_size({self.workgroup_size})
fn main(@builtin(local_invocation_index) lidx: u32,
        @builtin(workgroup_id) wid: vec3u,
        @builtin(num_workgroups) nwg: vec3u) {{
  let i = (wid.y * nwg.x + wid.x) * {self.workgroup_size}u + lidx;
  if (i < arrayLength(&inputBuffer)) {{
    outputBuffer[i] = inputBuffer[i] + 1.0;
  }}
}}
"""

    def compute(self):
        count = div_round_up(self.input_length, self.workgroup_size)
        return [
            Kernel(
                kernel=self.kernel,
                bindings=("outputBuffer", "inputBuffer"),
                buffer_types=("storage", "read-only-storage"),
                dispatch_geometry=lambda: self.simple_dispatch_geometry(count),
                label=f"membw fp32-per-thread (wg {self.workgroup_size})",
            )
        ]


class MembwGSL(BaseMembw):
    """Fixed workgroup count; each thread walks the array in a grid-stride loop."""

    parameters = {"input_length": 2**20, "workgroup_size": 64, "workgroup_count": 128}

    def default_label(self):
        return (
            f"{type(self).__name__} (workgroup size {self.workgroup_size}, "
            f"count {self.workgroup_count})"
        )

    def kernel(self):
        return f"""
@group(0) @binding(0) var<storage, read_write> outputBuffer: array<f32>;
@group(0) @binding(1) var<storage, read> inputBuffer: array<f32>;

@compute @workgroup_size({self.workgroup_size})
fn main(@builtin(global_invocation_id) id: vec3u,
        @builtin(num_workgroups) nwg: vec3u) {{
  for (var i = id.x; i < arrayLength(&inputBuffer); i += nwg.x * {self.workgroup_size}u) {{
    outputBuffer[i] = inputBuffer[i] + 1.0;
  }}
}}
"""

    def compute(self):
        return [
            Kernel(
                kernel=self.kernel,
                bindings=("outputBuffer", "inputBuffer"),
                buffer_types=("storage", "read-only-storage"),
                dispatch_geometry=lambda: (self.workgroup_count, 1),
                label=(
                    f"membw GSL fp32-per-thread (wg {self.workgroup_size} "
                    f"x {self.workgroup_count})"
                ),
            )
        ]

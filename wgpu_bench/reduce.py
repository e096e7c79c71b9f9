"""Atomic u32 sum reductions into a single output word.

Three granularities of global atomics: one per element, one per subgroup
(after subgroupAdd) and one per workgroup (after a workgroup atomic).
"""

import numpy as np

from .binop import BinOpAdd
from .datatype import Datatype
from .primitive import BasePrimitive, BufferSpec, Kernel


class BaseAtomicReduce(BasePrimitive):
    category = "reduce"
    datatype = Datatype("u32")
    parameters = {"workgroup_size": 64, "workgroup_count": 1024}
    known_buffers = ("inputBuffer", "outputBuffer")

    granularity = ""

    def check_parameters(self):
        for name in self.parameters:
            value = int(getattr(self, name))
            if value < 1:
                raise ValueError(f"{type(self).__name__}: {name} must be positive")
            setattr(self, name, value)

    def default_label(self):
        return f"Atomic per-{self.granularity} u32 sum reduction"

    @property
    def input_length(self):
        return self.workgroup_size * self.workgroup_count

    def buffer_specs(self):
        return [
            BufferSpec("inputBuffer", self.datatype, self.input_length, "input"),
            BufferSpec("outputBuffer", self.datatype, 1, "output"),
        ]

    @property
    def bytes_transferred(self):
        return (self.input_length + 1) * 4

    def extra_fields(self):
        return {"input_length": self.input_length, "input_bytes": self.input_length * 4}

    def reference(self):
        values = self.get_buffer(self.input_label).host[: self.input_length]
        return np.atleast_1d(BinOpAdd(self.datatype).reduce(values))

    def _header(self):
        return f"""
@group(0) @binding(0) var<storage, read_write> outputBuffer: atomic<u32>;
@group(0) @binding(1) var<storage, read> inputBuffer: array<u32>;

const WORKGROUP_SIZE = {self.workgroup_size}u;
"""

    def compute(self):
        return [
            Kernel(
                kernel=self.kernel,
                bindings=("outputBuffer", "inputBuffer"),
                buffer_types=("storage", "read-only-storage"),
                dispatch_geometry=lambda: self.simple_dispatch_geometry(self.workgroup_count),
                label=f"{self.label} (wg {self.workgroup_size} x {self.workgroup_count})",
                resets=("outputBuffer",),
            )
        ]


class AtomicReducePerElement(BaseAtomicReduce):
    granularity = "element"

    def kernel(self):
        return self._header() + """
@compute @workgroup_size(WORKGROUP_SIZE)
fn main(@builtin(local_invocation_index) lidx: u32,
        @builtin(workgroup_id) wid: vec3u,
        @builtin(num_workgroups) nwg: vec3u) {
  let i = (wid.y * nwg.x + wid.x) * WORKGROUP_SIZE + lidx;
  if (i < arrayLength(&inputBuffer)) {
    atomicAdd(&outputBuffer, inputBuffer[i]);
  }
}
"""


class AtomicReducePerSubgroup(BaseAtomicReduce):
    granularity = "subgroup"
    requires_subgroups = True

    def kernel(self):
        return self._header() + """
@compute @workgroup_size(WORKGROUP_SIZE)
fn main(@builtin(local_invocation_index) lidx: u32,
        @builtin(workgroup_id) wid: vec3u,
        @builtin(num_workgroups) nwg: vec3u,
        @builtin(subgroup_invocation_id) sgid: u32) {
  let i = (wid.y * nwg.x + wid.x) * WORKGROUP_SIZE + lidx;
  let n = arrayLength(&inputBuffer);
  let sg_sum = subgroupAdd(select(0u, inputBuffer[min(i, n - 1u)], i < n));
  if (sgid == 0u) {
    atomicAdd(&outputBuffer, sg_sum);
  }
}
"""


class AtomicReducePerWorkgroup(BaseAtomicReduce):
    granularity = "workgroup"

    def kernel(self):
        return self._header() + """
var<workgroup> wg_acc: atomic<u32>;

@compute @workgroup_size(WORKGROUP_SIZE)
fn main(@builtin(local_invocation_index) lidx: u32,
        @builtin(workgroup_id) wid: vec3u,
        @builtin(num_workgroups) nwg: vec3u) {
  /* workgroup memory is not zeroed on every backend */
  if (lidx == 0u) {
    atomicStore(&wg_acc, 0u);
  }
  workgroupBarrier();
  let i = (wid.y * nwg.x + wid.x) * WORKGROUP_SIZE + lidx;
  if (i < arrayLength(&inputBuffer)) {
    atomicAdd(&wg_acc, inputBuffer[i]);
  }
  workgroupBarrier();
  if (lidx == 0u) {
    atomicAdd(&outputBuffer, atomicLoad(&wg_acc));
  }
}
"""

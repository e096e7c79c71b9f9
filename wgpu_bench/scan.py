"""Scan primitives: the shared BaseScan and the three-kernel hierarchical scan.

BaseScan owns the parameters every scan takes (input length, datatype,
binary operator, scan type) and the CPU reference. The decoupled-lookback
scan lives in scan_dldf.py.
"""

import logging

import numpy as np

from .binop import BinOp, BinOpAdd, make_binop
from .primitive import UNIFORM_USAGE, AllocateBuffer, BasePrimitive, BufferSpec, Kernel
from .util import div_round_up
from .wgsl import linearized_workgroup_id, wg_scan_function

logger = logging.getLogger(__name__)

SCAN_TYPES = ("inclusive", "exclusive", "reduce")


# ============================================================================
# BaseScan
# ============================================================================

class BaseScan(BasePrimitive):
    """Inclusive/exclusive scan or reduction of `inputBuffer` into `outputBuffer`."""

    category = "scan"
    parameters = {
        "input_length": 2**20,
        "datatype": "u32",
        "binop": None,
        "type": "exclusive",
    }
    known_buffers = ("inputBuffer", "outputBuffer")

    def check_parameters(self):
        if self.type not in SCAN_TYPES:
            raise ValueError(
                f"{type(self).__name__}: scan type (currently {self.type}) "
                f"must be one of {SCAN_TYPES}"
            )
        if self.binop is None:
            self.binop = BinOpAdd(self.datatype)
        elif not isinstance(self.binop, BinOp):
            self.binop = make_binop(self.binop, self.datatype)
        if self.binop.datatype != self.datatype:
            raise ValueError(
                f"{type(self).__name__}: datatype ({self.datatype}) is incompatible "
                f"with binop datatype ({self.binop.datatype})"
            )
        if self.datatype.is_64bit:
            raise ValueError(f"{type(self).__name__} does not support {self.datatype}")
        if int(self.input_length) < 1:
            raise ValueError(f"{type(self).__name__}: input_length must be positive")
        self.input_length = int(self.input_length)

    def default_label(self):
        return f"{type(self).__name__} ({self.type}, {self.datatype}, {self.binop})"

    @property
    def output_length(self):
        return 1 if self.type == "reduce" else self.input_length

    def buffer_specs(self):
        return [
            BufferSpec("inputBuffer", self.datatype, self.input_length, "input"),
            BufferSpec("outputBuffer", self.datatype, self.output_length, "output"),
        ]

    @property
    def bytes_transferred(self):
        return (self.input_length + self.output_length) * self.datatype.bytes_per_element

    def extra_fields(self):
        return {"input_bytes": self.input_length * self.datatype.bytes_per_element}

    def reference(self):
        values = self.get_buffer(self.input_label).host[: self.input_length]
        if self.type == "inclusive":
            return self.binop.inclusive_scan(values)
        if self.type == "exclusive":
            return self.binop.exclusive_scan(values)
        return np.atleast_1d(self.binop.reduce(values))


# ============================================================================
# HierarchicalScan
# ============================================================================

class HierarchicalScan(BaseScan):
    """Reduce-then-scan over three kernels.

    1. reduce each workgroup's elements into `partials`
    2. exclusive-scan `partials` with a single workgroup
    3. scan each workgroup and combine with its scanned partial

    One element per invocation. Workgroup scans use shared memory only, so
    no subgroup support is needed.
    """

    BLOCK_DIM = 256

    def check_parameters(self):
        super().check_parameters()
        if self.type == "reduce":
            raise ValueError("HierarchicalScan computes inclusive or exclusive scans only")

    @property
    def workgroup_count(self):
        return div_round_up(self.input_length, self.BLOCK_DIM)

    def extra_fields(self):
        fields = super().extra_fields()
        fields.update(workgroup_size=self.BLOCK_DIM, workgroup_count=self.workgroup_count)
        return fields

    def _prelude(self):
        t = self.datatype.wgsl
        return f"""
struct ScanParameters {{
  size: u32,
  num_partials: u32,
  pad0: u32,
  pad1: u32,
}};

const BLOCK_DIM: u32 = {self.BLOCK_DIM}u;
var<workgroup> wg_scan: array<{t}, BLOCK_DIM>;
var<workgroup> wg_total: {t};

{self.binop.wgslfn}
{wg_scan_function(self.binop)}
"""

    def reduce_kernel(self):
        t = self.datatype.wgsl
        e = self.binop.wgsl_identity
        return f"""
@group(0) @binding(0) var<storage, read_write> partials: array<{t}>;
@group(0) @binding(1) var<storage, read> inputBuffer: array<{t}>;
@group(0) @binding(2) var<uniform> scanParameters: ScanParameters;
{self._prelude()}
@compute @workgroup_size(BLOCK_DIM)
fn main(@builtin(local_invocation_index) lidx: u32,
        @builtin(workgroup_id) wid: vec3u,
        @builtin(num_workgroups) nwg: vec3u) {{
  {linearized_workgroup_id()}
  if (wgid >= scanParameters.num_partials) {{
    return;
  }}
  let gid = wgid * BLOCK_DIM + lidx;
  let v = select({e}, inputBuffer[min(gid, scanParameters.size - 1u)], gid < scanParameters.size);
  let s = wgScan(lidx, v);
  if (lidx == 0u) {{
    partials[wgid] = s.total;
  }}
}}
"""

    def scan_partials_kernel(self):
        t = self.datatype.wgsl
        e = self.binop.wgsl_identity
        return f"""
@group(0) @binding(0) var<storage, read_write> partials: array<{t}>;
@group(0) @binding(1) var<uniform> scanParameters: ScanParameters;
{self._prelude()}
@compute @workgroup_size(BLOCK_DIM)
fn main(@builtin(local_invocation_index) lidx: u32) {{
  let n = scanParameters.num_partials;
  var carry: {t} = {e};
  for (var base = 0u; base < n; base += BLOCK_DIM) {{
    let i = base + lidx;
    let v = select({e}, partials[min(i, n - 1u)], i < n);
    let s = wgScan(lidx, v);
    if (i < n) {{
      partials[i] = binop(carry, s.exclusive);
    }}
    carry = binop(carry, s.total);
  }}
}}
"""

    def scan_and_add_kernel(self):
        t = self.datatype.wgsl
        e = self.binop.wgsl_identity
        which = "inclusive" if self.type == "inclusive" else "exclusive"
        return f"""
@group(0) @binding(0) var<storage, read_write> outputBuffer: array<{t}>;
@group(0) @binding(1) var<storage, read> inputBuffer: array<{t}>;
@group(0) @binding(2) var<storage, read> partials: array<{t}>;
@group(0) @binding(3) var<uniform> scanParameters: ScanParameters;
{self._prelude()}
@compute @workgroup_size(BLOCK_DIM)
fn main(@builtin(local_invocation_index) lidx: u32,
        @builtin(workgroup_id) wid: vec3u,
        @builtin(num_workgroups) nwg: vec3u) {{
  {linearized_workgroup_id()}
  if (wgid >= scanParameters.num_partials) {{
    return;
  }}
  let gid = wgid * BLOCK_DIM + lidx;
  let v = select({e}, inputBuffer[min(gid, scanParameters.size - 1u)], gid < scanParameters.size);
  let s = wgScan(lidx, v);
  if (gid < scanParameters.size) {{
    outputBuffer[gid] = binop(partials[wgid], s.{which});
  }}
}}
"""

    def compute(self):
        count = self.workgroup_count
        parameters = np.array([self.input_length, count, 0, 0], dtype=np.uint32)
        geometry = lambda: self.simple_dispatch_geometry(count)
        return [
            AllocateBuffer(
                label="scanParameters",
                size=parameters.nbytes,
                usage=UNIFORM_USAGE,
                populate_with=parameters,
            ),
            AllocateBuffer(
                label="partials",
                size=count * self.datatype.bytes_per_element,
                datatype=self.datatype.name,
            ),
            Kernel(
                kernel=self.reduce_kernel,
                bindings=("partials", "inputBuffer", "scanParameters"),
                buffer_types=("storage", "read-only-storage", "uniform"),
                dispatch_geometry=geometry,
                label="reduce each workgroup into partials",
            ),
            Kernel(
                kernel=self.scan_partials_kernel,
                bindings=("partials", "scanParameters"),
                buffer_types=("storage", "uniform"),
                dispatch_geometry=lambda: (1, 1),
                label="single-workgroup exclusive scan of partials",
            ),
            Kernel(
                kernel=self.scan_and_add_kernel,
                bindings=("outputBuffer", "inputBuffer", "partials", "scanParameters"),
                buffer_types=("storage", "read-only-storage", "read-only-storage", "uniform"),
                dispatch_geometry=geometry,
                label=f"{self.type} scan of each workgroup plus partials",
            ),
        ]

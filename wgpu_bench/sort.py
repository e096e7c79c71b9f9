"""One-sweep LSD radix sort of 32-bit keys, optionally carrying u32 payloads.

Kernels, in dispatch order:

    global_hist     per-tile 8-bit digit counts for all four passes, summed
                    into `hist`
    onesweep_scan   one workgroup per pass; exclusive scan of that pass's
                    256 digit counts, published as tile 0's inclusive prefix
    onesweep_pass   (x4) claim a tile, publish its digit counts, look back
                    through predecessors for the global digit offsets, rank
                    the tile's keys with a stable workgroup split sort and
                    scatter them

Keys stay in their raw 32-bit form in memory; digits are taken from the
datatype's radix mapping so signed integers and floats sort in natural
order. Passes ping-pong between keysInOut and keysTemp, so the sorted keys
end up back in keysInOut.

Partially based on the one-sweep sort of Thomas Smith
(https://github.com/b0nes164/GPUSorting, MIT License).
"""

import logging

import numpy as np

from .errors import UnsupportedDevice
from .primitive import UNIFORM_USAGE, AllocateBuffer, BasePrimitive, BufferSpec, Kernel
from .util import div_round_up, format_mismatches
from .wgsl import linearized_workgroup_id, wg_exclusive_scan_u32

logger = logging.getLogger(__name__)

BLOCK_DIM = 256
RADIX = 256
RADIX_BITS = 8
KEY_BITS = 32
SORT_PASSES = KEY_BITS // RADIX_BITS
KEYS_PER_THREAD = 15
PART_SIZE = BLOCK_DIM * KEYS_PER_THREAD

# wg_keys, wg_hist, wg_scan, wg_broadcast in onesweep_pass
PASS_WORKGROUP_BYTES = (PART_SIZE + RADIX + BLOCK_DIM + 1) * 4

SORT_TYPES = ("keysonly", "keyvalue")
SORT_DATATYPES = ("u32", "i32", "f32")


class BaseSort(BasePrimitive):
    """Sorts `keysInOut` in place (and `payloadInOut` alongside, for keyvalue)."""

    category = "sort"
    in_place = True
    parameters = {
        "input_length": 2**20,
        "datatype": "u32",
        "type": "keysonly",
    }
    known_buffers = ("keysInOut", "keysTemp", "payloadInOut", "payloadTemp")

    output_label = "keysInOut"
    input_label = "keysInOut"

    def check_parameters(self):
        if self.type not in SORT_TYPES:
            raise ValueError(f"{type(self).__name__}: type must be one of {SORT_TYPES}")
        if self.datatype.name not in SORT_DATATYPES:
            raise ValueError(
                f"{type(self).__name__}: datatype must be one of {SORT_DATATYPES}"
            )
        if int(self.input_length) < 1:
            raise ValueError(f"{type(self).__name__}: input_length must be positive")
        self.input_length = int(self.input_length)

    def default_label(self):
        return f"{type(self).__name__} ({self.type}, {self.datatype})"

    @property
    def key_value(self):
        return self.type == "keyvalue"

    def buffer_specs(self):
        specs = [BufferSpec("keysInOut", self.datatype, self.input_length, "inout")]
        if self.key_value:
            specs.append(
                BufferSpec("payloadInOut", "u32", self.input_length, "inout", "sequential")
            )
        return specs

    def extra_fields(self):
        return {"input_bytes": self.input_length * self.datatype.bytes_per_element}

    # ---- Validation ----

    def _original(self, label):
        buf = self.get_buffer(label)
        return buf.backup if buf.has_backup else buf.host

    def reference(self):
        """Host stable sort of the original keys: (keys, permutation)."""
        keys = self._original("keysInOut")[: self.input_length]
        order = np.argsort(self.datatype.key_to_u32(keys), kind="stable")
        return keys[order], order

    def validate(self):
        expected_keys, order = self.reference()
        actual_keys = self.get_buffer("keysInOut").host
        if actual_keys is None:
            return "keysInOut was not read back"
        actual_keys = actual_keys[: self.input_length]
        # compare bit patterns so -0.0 and 0.0 are distinct, as the radix order has it
        ok = expected_keys.view(np.uint32) == actual_keys.view(np.uint32)
        errors = format_mismatches(expected_keys, actual_keys, ok)
        if errors or not self.key_value:
            return errors
        expected_payload = self._original("payloadInOut")[: self.input_length][order]
        actual_payload = self.get_buffer("payloadInOut").host[: self.input_length]
        return format_mismatches(expected_payload, actual_payload,
                                 expected_payload == actual_payload)


# ============================================================================
# OneSweepSort
# ============================================================================

class OneSweepSort(BaseSort):

    @property
    def thread_blocks(self):
        return div_round_up(self.input_length, PART_SIZE)

    def check_parameters(self):
        super().check_parameters()
        available = self.device.limits["max-compute-workgroup-storage-size"]
        if available < PASS_WORKGROUP_BYTES:
            raise UnsupportedDevice(
                f"{type(self).__name__} needs {PASS_WORKGROUP_BYTES} bytes of "
                f"workgroup storage, device offers {available}"
            )

    @property
    def bytes_transferred(self):
        key_bytes = self.input_length * 4
        per_pass = 2 * key_bytes * (2 if self.key_value else 1)
        return key_bytes + SORT_PASSES * per_pass

    def extra_fields(self):
        fields = super().extra_fields()
        fields.update(
            workgroup_size=BLOCK_DIM,
            workgroup_count=self.thread_blocks,
            keys_per_thread=KEYS_PER_THREAD,
        )
        return fields

    def kernel(self):
        t = self.datatype.wgsl
        mapped = "keyToU32(raw)" if t == "u32" else f"keyToU32(bitcast<{t}>(raw))"
        payload_bindings = ""
        payload_scatter = ""
        if self.key_value:
            payload_bindings = """
@group(0) @binding(6) var<storage, read> payload_in: array<u32>;
@group(0) @binding(7) var<storage, read_write> payload_out: array<u32>;"""
            payload_scatter = "payload_out[dest] = payload_in[src];"
        return f"""
struct SortInfo {{
  size: u32,
  shift: u32,
  thread_blocks: u32,
  seed: u32,
}};

@group(0) @binding(0) var<uniform> info: SortInfo;
@group(0) @binding(1) var<storage, read_write> bump: array<atomic<u32>>;
@group(0) @binding(2) var<storage, read_write> hist: array<atomic<u32>>;
@group(0) @binding(3) var<storage, read_write> pass_hist: array<atomic<u32>>;
@group(0) @binding(4) var<storage, read> keys_in: array<u32>;
@group(0) @binding(5) var<storage, read_write> keys_out: array<u32>;{payload_bindings}

const BLOCK_DIM = {BLOCK_DIM}u;
const RADIX = {RADIX}u;
const RADIX_MASK = {RADIX - 1}u;
const RADIX_BITS = {RADIX_BITS}u;
const SORT_PASSES = {SORT_PASSES}u;
const KEYS_PER_THREAD = {KEYS_PER_THREAD}u;
const PART_SIZE = BLOCK_DIM * KEYS_PER_THREAD;

/* pass_hist entries: (value << 2) | flag */
const FLAG_NOT_READY = 0u;
const FLAG_REDUCTION = 1u;
const FLAG_INCLUSIVE = 2u;
const FLAG_MASK = 3u;

var<workgroup> wg_global_hist: array<atomic<u32>, RADIX * SORT_PASSES>;
var<workgroup> wg_hist: array<atomic<u32>, RADIX>;
/* (digit << 16) | tile-local key index */
var<workgroup> wg_keys: array<u32, PART_SIZE>;
var<workgroup> wg_scan: array<u32, BLOCK_DIM>;
var<workgroup> wg_broadcast: u32;

{self.datatype.key_to_u32_wgsl}

fn mappedKey(raw: u32) -> u32 {{
  return {mapped};
}}
{wg_exclusive_scan_u32()}

@compute @workgroup_size(BLOCK_DIM)
fn global_hist(@builtin(local_invocation_index) lidx: u32,
               @builtin(workgroup_id) wid: vec3u,
               @builtin(num_workgroups) nwg: vec3u) {{
  {linearized_workgroup_id()}
  if (wgid >= info.thread_blocks) {{
    return;
  }}
  for (var i = lidx; i < RADIX * SORT_PASSES; i += BLOCK_DIM) {{
    atomicStore(&wg_global_hist[i], 0u);
  }}
  workgroupBarrier();

  let tile_base = wgid * PART_SIZE;
  for (var k = 0u; k < KEYS_PER_THREAD; k += 1u) {{
    let i = tile_base + k * BLOCK_DIM + lidx;
    if (i < info.size) {{
      let key = mappedKey(keys_in[i]);
      for (var p = 0u; p < SORT_PASSES; p += 1u) {{
        atomicAdd(&wg_global_hist[p * RADIX + ((key >> (p * RADIX_BITS)) & RADIX_MASK)], 1u);
      }}
    }}
  }}
  workgroupBarrier();

  for (var i = lidx; i < RADIX * SORT_PASSES; i += BLOCK_DIM) {{
    let count = atomicLoad(&wg_global_hist[i]);
    if (count != 0u) {{
      atomicAdd(&hist[i], count);
    }}
  }}
}}

@compute @workgroup_size(BLOCK_DIM)
fn onesweep_scan(@builtin(local_invocation_index) lidx: u32,
                 @builtin(workgroup_id) wid: vec3u) {{
  let pass_index = wid.x;
  let s = wgExclusiveScanU32(lidx, atomicLoad(&hist[pass_index * RADIX + lidx]));
  atomicStore(&pass_hist[pass_index * info.thread_blocks * RADIX + lidx],
              (s.x << 2u) | FLAG_INCLUSIVE);
}}

@compute @workgroup_size(BLOCK_DIM)
fn onesweep_pass(@builtin(local_invocation_index) lidx: u32) {{
  if (lidx == 0u) {{
    wg_broadcast = atomicAdd(&bump[info.shift / RADIX_BITS], 1u);
  }}
  let partid = workgroupUniformLoad(&wg_broadcast);
  if (partid >= info.thread_blocks) {{
    return;
  }}
  let tile_base = partid * PART_SIZE;
  let n_valid = min(info.size - tile_base, PART_SIZE);
  let pass_base = (info.shift / RADIX_BITS) * info.thread_blocks * RADIX;

  /* digit counts; invalid slots get digit RADIX_MASK so they rank last */
  atomicStore(&wg_hist[lidx], 0u);
  workgroupBarrier();
  for (var k = 0u; k < KEYS_PER_THREAD; k += 1u) {{
    let slot = lidx * KEYS_PER_THREAD + k;
    var digit = RADIX_MASK;
    if (slot < n_valid) {{
      digit = (mappedKey(keys_in[tile_base + slot]) >> info.shift) & RADIX_MASK;
      atomicAdd(&wg_hist[digit], 1u);
    }}
    wg_keys[slot] = (digit << 16u) | slot;
  }}
  workgroupBarrier();

  /* one invocation per digit from here on */
  let count = atomicLoad(&wg_hist[lidx]);
  let publish = partid < info.thread_blocks - 1u;
  let next_slot = pass_base + (partid + 1u) * RADIX + lidx;
  if (publish) {{
    atomicStore(&pass_hist[next_slot], (count << 2u) | FLAG_REDUCTION);
  }}

  var prev = 0u;
  var lookback_id = partid;
  loop {{
    let flag_payload = atomicLoad(&pass_hist[pass_base + lookback_id * RADIX + lidx]);
    let flag = flag_payload & FLAG_MASK;
    if (flag == FLAG_INCLUSIVE) {{
      prev += flag_payload >> 2u;
      break;
    }}
    if (flag == FLAG_REDUCTION) {{
      prev += flag_payload >> 2u;
      lookback_id -= 1u;
    }}
  }}
  if (publish) {{
    atomicStore(&pass_hist[next_slot], ((prev + count) << 2u) | FLAG_INCLUSIVE);
  }}

  /* dest = global digit offset + (sorted slot - first slot of the digit) */
  let local_start = wgExclusiveScanU32(lidx, count).x;
  atomicStore(&wg_hist[lidx], prev - local_start);

  /* stable split sort on one digit bit at a time */
  for (var bit = 16u; bit < 16u + RADIX_BITS; bit += 1u) {{
    var entries: array<u32, KEYS_PER_THREAD>;
    var zeros = 0u;
    for (var k = 0u; k < KEYS_PER_THREAD; k += 1u) {{
      entries[k] = wg_keys[lidx * KEYS_PER_THREAD + k];
      zeros += ((entries[k] >> bit) & 1u) ^ 1u;
    }}
    let s = wgExclusiveScanU32(lidx, zeros);
    var zero_rank = s.x;
    var one_rank = s.y + lidx * KEYS_PER_THREAD - s.x;
    for (var k = 0u; k < KEYS_PER_THREAD; k += 1u) {{
      if (((entries[k] >> bit) & 1u) == 0u) {{
        wg_keys[zero_rank] = entries[k];
        zero_rank += 1u;
      }} else {{
        wg_keys[one_rank] = entries[k];
        one_rank += 1u;
      }}
    }}
    workgroupBarrier();
  }}

  for (var k = 0u; k < KEYS_PER_THREAD; k += 1u) {{
    let slot = lidx + k * BLOCK_DIM;
    if (slot < n_valid) {{
      let entry = wg_keys[slot];
      let src = tile_base + (entry & 0xffffu);
      let dest = atomicLoad(&wg_hist[entry >> 16u]) + slot;
      keys_out[dest] = keys_in[src];
      {payload_scatter}
    }}
  }}
}}
"""

    def compute(self):
        blocks = self.thread_blocks
        n = self.input_length
        actions = []
        for p in range(SORT_PASSES):
            info = np.array([n, p * RADIX_BITS, blocks, 0], dtype=np.uint32)
            actions.append(AllocateBuffer(
                label=f"info{p}", size=info.nbytes, usage=UNIFORM_USAGE, populate_with=info
            ))
        actions += [
            AllocateBuffer(label="bump", size=SORT_PASSES * 4),
            AllocateBuffer(label="hist", size=RADIX * SORT_PASSES * 4),
            AllocateBuffer(label="passHist", size=RADIX * SORT_PASSES * blocks * 4),
            AllocateBuffer(label="keysTemp", size=n * 4),
        ]
        if self.key_value:
            actions.append(AllocateBuffer(label="payloadTemp", size=n * 4))

        geometry = lambda: self.simple_dispatch_geometry(blocks)
        common = ("bump", "hist", "passHist")
        common_types = ("storage", "storage", "storage")
        actions += [
            Kernel(
                kernel=self.kernel,
                entry_point="global_hist",
                bindings=("info0",) + common + ("keysInOut",),
                buffer_types=("uniform",) + common_types + ("read-only-storage",),
                dispatch_geometry=geometry,
                label=f"one-sweep global histogram ({self.datatype})",
                resets=common,
            ),
            Kernel(
                kernel=self.kernel,
                entry_point="onesweep_scan",
                bindings=("info0",) + common,
                buffer_types=("uniform",) + common_types,
                dispatch_geometry=lambda: (SORT_PASSES, 1),
                label="one-sweep digit scan",
            ),
        ]
        ping, pong = ("keysInOut", "payloadInOut"), ("keysTemp", "payloadTemp")
        for p in range(SORT_PASSES):
            src, dst = (ping, pong) if p % 2 == 0 else (pong, ping)
            bindings = (f"info{p}",) + common + (src[0], dst[0])
            types = ("uniform",) + common_types + ("read-only-storage", "storage")
            if self.key_value:
                bindings += (src[1], dst[1])
                types += ("read-only-storage", "storage")
            actions.append(Kernel(
                kernel=self.kernel,
                entry_point="onesweep_pass",
                bindings=bindings,
                buffer_types=types,
                dispatch_geometry=geometry,
                label=f"one-sweep pass {p} ({self.type}, {self.datatype})",
            ))
        return actions

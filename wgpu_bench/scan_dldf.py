"""Single-pass scan with decoupled lookback and decoupled fallback.

Each workgroup claims a tile of PART_SIZE elements from an atomic bump
counter, scans it locally, publishes its reduction to the spine, then walks
backward through predecessor tiles until it finds an inclusive prefix. If a
predecessor has not published within MAX_SPIN_COUNT polls, the stalled
workgroup re-reduces that tile itself and merges the result into the spine
with atomicMax, which keeps lookback making progress when the owning
workgroup has not been scheduled.

Spine entries are two u32 words. Each word holds a 2-bit flag and 16 bits
of the 32-bit tile value, so a whole value is published without 64-bit
atomics; split() and join() move between the two forms.

Partially based on the decoupled fallback scan of Thomas Smith
(https://github.com/b0nes164/GPUPrefixSums, MIT License).
"""

import logging

import numpy as np

from .primitive import UNIFORM_USAGE, AllocateBuffer, Kernel
from .scan import BaseScan
from .util import div_round_up
from .wgsl import subgroup_functions, vec4_functions, wg_reduce_function

logger = logging.getLogger(__name__)

BLOCK_DIM = 256
VEC4_SPT = 4
PART_SIZE = BLOCK_DIM * VEC4_SPT * 4


class DLDFScan(BaseScan):
    """Decoupled-lookback / decoupled-fallback scan and reduce."""

    requires_subgroups = True
    parameters = {**BaseScan.parameters, "simulate_mask": 0}
    known_buffers = BaseScan.known_buffers + ("scanParameters", "scanBump", "spine")

    def check_parameters(self):
        super().check_parameters()
        mask = int(self.simulate_mask)
        if not 0 <= mask < 2**32:
            raise ValueError(f"{type(self).__name__}: simulate_mask must fit in a u32")
        self.simulate_mask = mask

    @property
    def work_tiles(self):
        return div_round_up(self.input_length, PART_SIZE)

    @property
    def vec_size(self):
        return div_round_up(self.input_length, 4)

    def extra_fields(self):
        fields = super().extra_fields()
        fields.update(workgroup_size=BLOCK_DIM, workgroup_count=self.work_tiles)
        return fields

    # ---- WGSL ----

    def _header(self):
        t = self.datatype.wgsl
        scan = self.type in ("inclusive", "exclusive")
        output = f"array<vec4<{t}>>" if scan else f"array<{t}>"
        return f"""
struct ScanParameters {{
  size: u32,
  vec_size: u32,
  work_tiles: u32,
  simulate_mask: u32,
}};

@group(0) @binding(0) var<storage, read> inputBuffer: array<vec4<{t}>>;
@group(0) @binding(1) var<storage, read_write> outputBuffer: {output};
@group(0) @binding(2) var<uniform> scanParameters: ScanParameters;
@group(0) @binding(3) var<storage, read_write> scan_bump: atomic<u32>;
/* atomics cannot be vector members, hence the nested array */
@group(0) @binding(4) var<storage, read_write> spine: array<array<atomic<u32>, 2>>;

const BLOCK_DIM: u32 = {BLOCK_DIM}u;
const SPLIT_MEMBERS = 2u;
const MIN_SUBGROUP_SIZE = 4u;
const MAX_PARTIALS_SIZE = 2u * BLOCK_DIM / MIN_SUBGROUP_SIZE;

const VEC4_SPT = {VEC4_SPT}u;
const VEC_TILE_SIZE = BLOCK_DIM * VEC4_SPT;

const FLAG_NOT_READY = 0u;
const FLAG_READY = 0x40000000u;
const FLAG_INCLUSIVE = 0x80000000u;
const FLAG_MASK = 0xC0000000u;
const VALUE_MASK = 0xffffu;
const ALL_READY = 3u;

const MAX_SPIN_COUNT = 4u;
const LOCKED = 1u;
const UNLOCKED = 0u;

var<workgroup> wg_control: u32;
var<workgroup> wg_broadcast_tile_id: u32;
var<workgroup> wg_broadcast_prev_red: {t};
var<workgroup> wg_partials: array<{t}, MAX_PARTIALS_SIZE>;
var<workgroup> wg_fallback: array<{t}, MAX_PARTIALS_SIZE>;

@diagnostic(off, subgroup_uniformity)
fn unsafeShuffle(x: u32, source: u32) -> u32 {{
  return subgroupShuffle(x, source);
}}

/* only the low SPLIT_MEMBERS lanes ever vote, so .x suffices for any subgroup size */
@diagnostic(off, subgroup_uniformity)
fn unsafeBallot(pred: bool) -> u32 {{
  return subgroupBallot(pred).x;
}}

/* inverse of split(): recombine my 16-bit half with my partner lane's */
fn join(mine: u32, tid: u32) -> {t} {{
  let xor = tid ^ 1u;
  let theirs: u32 = unsafeShuffle(mine, xor);
  return bitcast<{t}>((mine << (16u * tid)) | (theirs << (16u * xor)));
}}

fn split(x: {t}, tid: u32) -> u32 {{
  return (bitcast<u32>(x) >> (tid * 16u)) & VALUE_MASK;
}}

{self.binop.wgslfn}
{vec4_functions(self.binop)}
{subgroup_functions(self.binop)}
{wg_reduce_function(self.binop)}

/* elements at or past `size` read as the identity */
fn loadVec4(i: u32) -> vec4<{t}> {{
  let index = vec4<u32>(i * 4u) + vec4<u32>(0u, 1u, 2u, 3u);
  return select(vec4<{t}>({self.binop.wgsl_identity}), inputBuffer[i],
                index < vec4<u32>(scanParameters.size));
}}
"""

    def _tile_scan(self):
        t = self.datatype.wgsl
        e = self.binop.wgsl_identity
        to_exclusive = (
            "t_scan[k] = vec4InclusiveToExclusive(t_scan[k]);"
            if self.type == "exclusive" else ""
        )
        return f"""
  var t_scan = array<vec4<{t}>, VEC4_SPT>();
  {{
    /* thread i of a subgroup reads vec4s i, i+sgsz, i+2*sgsz, ... */
    var i = s_offset + tile_id * VEC_TILE_SIZE;
    if (tile_id < scanParameters.work_tiles - 1u) {{
      for (var k = 0u; k < VEC4_SPT; k += 1u) {{
        t_scan[k] = vec4InclusiveScan(inputBuffer[i]);
        i += sgsz;
      }}
    }}
    if (tile_id == scanParameters.work_tiles - 1u) {{
      for (var k = 0u; k < VEC4_SPT; k += 1u) {{
        t_scan[k] = vec4<{t}>({e});
        if (i < scanParameters.vec_size) {{
          t_scan[k] = vec4InclusiveScan(loadVec4(i));
        }}
        i += sgsz;
      }}
    }}

    var prev: {t} = {e};
    let lane_mask = sgsz - 1u;
    /* source lane is the preceding one, lane 0 wraps to the last */
    let circular_shift = (sgid + lane_mask) & lane_mask;
    for (var k = 0u; k < VEC4_SPT; k += 1u) {{
      let sg_scan = subgroupInclusiveOpScan(binop(select(prev, {e}, sgid != 0u), t_scan[k].w),
                                            sgid, sgsz);
      /* lanes > 0 get the prefix of earlier lanes; lane 0 gets the subgroup total */
      let t = subgroupShuffle(sg_scan, circular_shift);
      {to_exclusive}
      t_scan[k] = vec4ScalarBinopV4(select(prev, t, sgid != 0u), t_scan[k]);
      prev = t;
    }}

    if (sgid == 0u) {{
      wg_partials[sid] = prev;
    }}
  }}"""

    def _tile_reduce(self):
        t = self.datatype.wgsl
        e = self.binop.wgsl_identity
        return f"""
  {{
    var subgroup_reduction: {t} = {e};
    var i = s_offset + tile_id * VEC_TILE_SIZE;
    if (tile_id < scanParameters.work_tiles - 1u) {{
      for (var k = 0u; k < VEC4_SPT; k += 1u) {{
        subgroup_reduction = binop(subgroup_reduction, subgroupReduce(vec4Reduce(inputBuffer[i])));
        i += sgsz;
      }}
    }}
    if (tile_id == scanParameters.work_tiles - 1u) {{
      for (var k = 0u; k < VEC4_SPT; k += 1u) {{
        let red = select({e}, vec4Reduce(loadVec4(min(i, scanParameters.vec_size - 1u))),
                         i < scanParameters.vec_size);
        subgroup_reduction = binop(subgroup_reduction, subgroupReduce(red));
        i += sgsz;
      }}
    }}
    if (sgid == 0u) {{
      wg_partials[sid] = subgroup_reduction;
    }}
  }}"""

    def _raking_scan_and_lookback(self):
        t = self.datatype.wgsl
        e = self.binop.wgsl_identity
        return f"""
  workgroupBarrier();

  /* subgroup-size agnostic inclusive scan across the subgroup partials */
  let lane_log = u32(countTrailingZeros(sgsz));
  let local_spine: u32 = BLOCK_DIM >> lane_log;
  let aligned_size_base = 1u << ((u32(countTrailingZeros(local_spine)) + lane_log - 1u) / lane_log * lane_log);
  /* aligned_size_base is 1 when the subgroup is as wide as the workgroup */
  let aligned_size = select(aligned_size_base, BLOCK_DIM, aligned_size_base == 1u);
  {{
    var offset = 0u;
    var top_offset = 0u;
    let lane_pred = sgid == sgsz - 1u;
    for (var j = sgsz; j <= aligned_size; j <<= lane_log) {{
      let level_size = local_spine >> offset;
      let pred = lidx < level_size;
      let t = subgroupInclusiveOpScan(select({e}, wg_partials[min(lidx + top_offset, MAX_PARTIALS_SIZE - 1u)], pred),
                                      sgid, sgsz);
      if (pred) {{
        wg_partials[lidx + top_offset] = t;
        if (lane_pred) {{
          wg_partials[sid + level_size + top_offset] = t;
        }}
      }}
      workgroupBarrier();

      if (j != sgsz) {{
        let rshift = j >> lane_log;
        let index = lidx + rshift;
        if (index < local_spine && (index & (j - 1u)) >= rshift) {{
          wg_partials[index] = binop(wg_partials[(index >> offset) + top_offset - 1u], wg_partials[index]);
        }}
      }}
      top_offset += level_size;
      offset += lane_log;
    }}
  }}
  workgroupBarrier();

  /* publish the tile reduction; tile 0 is inclusive by definition.
     Tiles selected by simulate_mask skip this, so successors must fall back. */
  if (lidx < SPLIT_MEMBERS && (tile_id & scanParameters.simulate_mask) == 0u) {{
    let t = split(wg_partials[local_spine - 1u], lidx) | select(FLAG_READY, FLAG_INCLUSIVE, tile_id == 0u);
    atomicStore(&spine[tile_id][lidx], t);
  }}

  if (tile_id != 0u) {{
    var prev_red: {t} = {e};
    var lookback_id = tile_id - 1u;
    loop {{
      if (workgroupUniformLoad(&wg_control) == UNLOCKED) {{
        break;
      }}
      if (isSubgroupZero(lidx, sgsz)) {{
        var spin_count = 0u;
        while (spin_count < MAX_SPIN_COUNT) {{
          var flag_payload: u32 = 0u;
          if (lidx < SPLIT_MEMBERS) {{
            flag_payload = atomicLoad(&spine[lookback_id][lidx]);
          }}
          if (unsafeBallot((flag_payload & FLAG_MASK) > FLAG_NOT_READY) == ALL_READY) {{
            var seen_inclusive = unsafeBallot((flag_payload & FLAG_MASK) == FLAG_INCLUSIVE);
            if (seen_inclusive != 0u) {{
              /* one word is inclusive, so the other is on its way */
              while (seen_inclusive != ALL_READY) {{
                if (lidx < SPLIT_MEMBERS) {{
                  flag_payload = atomicLoad(&spine[lookback_id][lidx]);
                }}
                seen_inclusive = unsafeBallot((flag_payload & FLAG_MASK) == FLAG_INCLUSIVE);
              }}
              prev_red = binop(join(flag_payload & VALUE_MASK, lidx), prev_red);
              if (lidx < SPLIT_MEMBERS) {{
                let t = split(binop(prev_red, wg_partials[local_spine - 1u]), lidx) | FLAG_INCLUSIVE;
                atomicStore(&spine[tile_id][lidx], t);
              }}
              if (lidx == 0u) {{
                wg_control = UNLOCKED;
                wg_broadcast_prev_red = prev_red;
              }}
              break;
            }} else {{
              prev_red = binop(join(flag_payload & VALUE_MASK, lidx), prev_red);
              spin_count = 0u;
              lookback_id -= 1u;
            }}
          }} else {{
            spin_count += 1u;
          }}
        }}
        if (lidx == 0u && spin_count == MAX_SPIN_COUNT) {{
          wg_broadcast_tile_id = lookback_id;
        }}
      }}

      /* still locked: lookback stalled at wg_broadcast_tile_id, fall back */
      if (workgroupUniformLoad(&wg_control) == LOCKED) {{
        let fallback_id = workgroupUniformLoad(&wg_broadcast_tile_id);
        var t_red: {t} = {e};
        var i = s_offset + fallback_id * VEC_TILE_SIZE;
        for (var k = 0u; k < VEC4_SPT; k += 1u) {{
          t_red = binop(t_red, vec4Reduce(inputBuffer[i]));
          i += sgsz;
        }}
        let f_red = wgReduce(t_red, lidx, sgid, sgsz);

        if (isSubgroupZero(lidx, sgsz)) {{
          let f_split = split(f_red, lidx) | select(FLAG_READY, FLAG_INCLUSIVE, fallback_id == 0u);
          var f_payload: u32 = 0u;
          if (lidx < SPLIT_MEMBERS) {{
            f_payload = atomicMax(&spine[fallback_id][lidx], f_split);
          }}
          let incl_found = unsafeBallot((f_payload & FLAG_MASK) == FLAG_INCLUSIVE) == ALL_READY;
          if (incl_found) {{
            prev_red = binop(join(f_payload & VALUE_MASK, lidx), prev_red);
          }} else {{
            prev_red = binop(f_red, prev_red);
          }}

          if (fallback_id == 0u || incl_found) {{
            if (lidx < SPLIT_MEMBERS) {{
              let t = split(binop(prev_red, wg_partials[local_spine - 1u]), lidx) | FLAG_INCLUSIVE;
              atomicStore(&spine[tile_id][lidx], t);
            }}
            if (lidx == 0u) {{
              wg_control = UNLOCKED;
              wg_broadcast_prev_red = prev_red;
            }}
          }} else {{
            lookback_id -= 1u;
          }}
        }}
      }}
    }}
  }}
"""

    def _writeback(self):
        e = self.binop.wgsl_identity
        if self.type == "reduce":
            return f"""
  let prev_red = workgroupUniformLoad(&wg_broadcast_prev_red);
  if (tile_id == scanParameters.work_tiles - 1u && lidx == 0u) {{
    outputBuffer[0] = binop(prev_red, wg_partials[local_spine - 1u]);
  }}"""
        return f"""
  let prev_red = workgroupUniformLoad(&wg_broadcast_prev_red);
  var i = s_offset + tile_id * VEC_TILE_SIZE;
  let prev = binop(prev_red, select({e}, wg_partials[max(sid, 1u) - 1u], sid != 0u));
  if (tile_id < scanParameters.work_tiles - 1u) {{
    for (var k = 0u; k < VEC4_SPT; k += 1u) {{
      outputBuffer[i] = vec4ScalarBinopV4(prev, t_scan[k]);
      i += sgsz;
    }}
  }}
  if (tile_id == scanParameters.work_tiles - 1u) {{
    for (var k = 0u; k < VEC4_SPT; k += 1u) {{
      if (i < scanParameters.vec_size) {{
        outputBuffer[i] = vec4ScalarBinopV4(prev, t_scan[k]);
      }}
      i += sgsz;
    }}
  }}"""

    def kernel(self):
        body = self._tile_reduce() if self.type == "reduce" else self._tile_scan()
        return f"""{self._header()}
@compute @workgroup_size(BLOCK_DIM, 1, 1)
fn main(@builtin(local_invocation_index) lidx: u32,
        @builtin(subgroup_invocation_id) sgid: u32,
        @builtin(subgroup_size) sgsz: u32) {{
  let sid = lidx / sgsz;

  /* claim a tile; tile 0 never looks back, so seed its prefix here */
  if (lidx == 0u) {{
    wg_broadcast_tile_id = atomicAdd(&scan_bump, 1u);
    wg_broadcast_prev_red = {self.binop.wgsl_identity};
    wg_control = LOCKED;
  }}
  let tile_id = workgroupUniformLoad(&wg_broadcast_tile_id);
  /* 2D dispatch may launch more workgroups than there are tiles */
  if (tile_id >= scanParameters.work_tiles) {{
    return;
  }}
  let s_offset = sgid + sid * sgsz * VEC4_SPT;
{body}
{self._raking_scan_and_lookback()}
{self._writeback()}
}}
"""

    # ---- Actions ----

    def compute(self):
        tiles = self.work_tiles
        parameters = np.array(
            [self.input_length, self.vec_size, tiles, self.simulate_mask], dtype=np.uint32
        )
        logger.debug(f"{self.label}: {tiles} tiles of {PART_SIZE} elements")
        return [
            AllocateBuffer(
                label="scanParameters",
                size=parameters.nbytes,
                usage=UNIFORM_USAGE,
                populate_with=parameters,
            ),
            AllocateBuffer(label="scanBump", size=4),
            AllocateBuffer(label="spine", size=2 * tiles * 4),
            Kernel(
                kernel=self.kernel,
                bindings=("inputBuffer", "outputBuffer", "scanParameters",
                          "scanBump", "spine"),
                buffer_types=("read-only-storage", "storage", "uniform",
                              "storage", "storage"),
                dispatch_geometry=lambda: self.simple_dispatch_geometry(tiles),
                label=f"DLDF {self.type} scan ({self.datatype}, {self.binop})",
                resets=("scanBump", "spine"),
            ),
        ]

"""Reusable WGSL fragments parameterized by a binary operator.

Every fragment assumes the shader already defines `binop` (BinOp.wgslfn).
Subgroup scans use the WGSL builtin when one exists for the operator and
otherwise fall back to a Hillis-Steele scan over subgroupShuffleUp.
"""


def vec4_functions(binop):
    """vec4 helpers: in-register inclusive scan, exclusive shift, reduce, broadcast op."""
    t = binop.datatype.wgsl
    e = binop.wgsl_identity
    return f"""
fn vec4InclusiveScan(v: vec4<{t}>) -> vec4<{t}> {{
  let y = binop(v.x, v.y);
  let z = binop(y, v.z);
  return vec4<{t}>(v.x, y, z, binop(z, v.w));
}}

/* inclusive scan of a vec4 -> exclusive scan of the same vec4 */
fn vec4InclusiveToExclusive(v: vec4<{t}>) -> vec4<{t}> {{
  return vec4<{t}>({e}, v.x, v.y, v.z);
}}

fn vec4Reduce(v: vec4<{t}>) -> {t} {{
  return binop(binop(v.x, v.y), binop(v.z, v.w));
}}

fn vec4ScalarBinopV4(s: {t}, v: vec4<{t}>) -> vec4<{t}> {{
  return vec4<{t}>(binop(s, v.x), binop(s, v.y), binop(s, v.z), binop(s, v.w));
}}
"""


def subgroup_functions(binop):
    """subgroupReduce and subgroupInclusiveOpScan for this operator."""
    t = binop.datatype.wgsl
    if binop.subgroup_inclusive is not None:
        inclusive = f"""
fn subgroupInclusiveOpScan(x: {t}, sgid: u32, sgsz: u32) -> {t} {{
  return {binop.subgroup_inclusive}(x);
}}"""
    else:
        inclusive = f"""
fn subgroupInclusiveOpScan(x: {t}, sgid: u32, sgsz: u32) -> {t} {{
  var v = x;
  for (var delta = 1u; delta < sgsz; delta <<= 1u) {{
    let up = subgroupShuffleUp(v, delta);
    v = select(v, binop(up, v), sgid >= delta);
  }}
  return v;
}}"""
    return f"""
fn subgroupReduce(x: {t}) -> {t} {{
  return {binop.subgroup_reduce}(x);
}}
{inclusive}

fn isSubgroupZero(lidx: u32, sgsz: u32) -> bool {{
  return lidx < sgsz;
}}
"""


def wg_reduce_function(binop, scratch="wg_fallback", block_dim="BLOCK_DIM"):
    """Workgroup-wide reduction through a workgroup scratch array.

    Must be called from workgroup-uniform control flow. Every invocation
    receives the reduction.
    """
    t = binop.datatype.wgsl
    e = binop.wgsl_identity
    return f"""
fn wgReduce(x: {t}, lidx: u32, sgid: u32, sgsz: u32) -> {t} {{
  let sid = lidx / sgsz;
  let r = subgroupReduce(x);
  if (sgid == 0u) {{
    {scratch}[sid] = r;
  }}
  workgroupBarrier();
  var acc: {t} = {e};
  let subgroups = {block_dim} / sgsz;
  for (var j = 0u; j < subgroups; j += 1u) {{
    acc = binop(acc, {scratch}[j]);
  }}
  workgroupBarrier();
  return acc;
}}
"""


def wg_exclusive_scan_u32(scratch="wg_scan", block_dim="BLOCK_DIM"):
    """Subgroup-free exclusive add-scan of one u32 per invocation.

    Returns vec2u(exclusive prefix, workgroup total). Must be called from
    workgroup-uniform control flow.
    """
    return f"""
fn wgExclusiveScanU32(lidx: u32, v: u32) -> vec2u {{
  {scratch}[lidx] = v;
  workgroupBarrier();
  for (var d = 1u; d < {block_dim}; d <<= 1u) {{
    var t = 0u;
    if (lidx >= d) {{
      t = {scratch}[lidx - d];
    }}
    workgroupBarrier();
    {scratch}[lidx] += t;
    workgroupBarrier();
  }}
  let inclusive = {scratch}[lidx];
  let total = {scratch}[{block_dim} - 1u];
  workgroupBarrier();
  return vec2u(inclusive - v, total);
}}
"""


def wg_scan_function(binop, scratch="wg_scan", block_dim="BLOCK_DIM"):
    """Subgroup-free workgroup scan of one element per invocation.

    Declares `struct WgScan { inclusive, exclusive, total }` and
    `fn wgScan(lidx, v) -> WgScan`. `scratch` must be a workgroup array of
    at least `block_dim` elements. Must be called from workgroup-uniform
    control flow.
    """
    t = binop.datatype.wgsl
    e = binop.wgsl_identity
    return f"""
struct WgScan {{
  inclusive: {t},
  exclusive: {t},
  total: {t},
}};

fn wgScan(lidx: u32, v: {t}) -> WgScan {{
  {scratch}[lidx] = v;
  workgroupBarrier();
  for (var d = 1u; d < {block_dim}; d <<= 1u) {{
    var t: {t} = {e};
    if (lidx >= d) {{
      t = {scratch}[lidx - d];
    }}
    workgroupBarrier();
    {scratch}[lidx] = binop(t, {scratch}[lidx]);
    workgroupBarrier();
  }}
  var r: WgScan;
  r.inclusive = {scratch}[lidx];
  r.exclusive = select({e}, {scratch}[max(lidx, 1u) - 1u], lidx > 0u);
  r.total = {scratch}[{block_dim} - 1u];
  workgroupBarrier();
  return r;
}}
"""


def linearized_workgroup_id():
    """WGSL statement computing `wgid` from a 2D dispatch."""
    return "let wgid = wid.x + wid.y * nwg.x;"

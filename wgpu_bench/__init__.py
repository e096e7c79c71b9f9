"""
wgpu_bench: WebGPU compute primitive benchmarks and regression suites.

Runs parallel primitives (decoupled-lookback scan, one-sweep radix sort,
memory bandwidth, multiply-add and atomic reduction kernels) on a wgpu-py
device, validates them against numpy references and times them with GPU
timestamp queries.

Modules:
    primitive  - BasePrimitive, action list, execute/validate
    scan_dldf  - DLDF single-pass scan / reduce
    sort       - one-sweep radix sort
    testsuite  - TestSuite and PlotSpec
    driver     - Driver, DriverConfig, ResultRow
"""

from wgpu_bench.binop import BINOPS, BinOpAdd, BinOpMax, BinOpMin, BinOpMultiply, make_binop
from wgpu_bench.buffer import INIT_POLICIES, Buffer
from wgpu_bench.cache import PipelineCache
from wgpu_bench.datatype import Datatype
from wgpu_bench.device import get_device, release_device, request_device
from wgpu_bench.driver import Driver, DriverConfig, ResultRow
from wgpu_bench.errors import (
    BenchmarkError, DeviceLost, ResourceLimit, UnsupportedDevice, ValidationFailure,
)
from wgpu_bench.madd import Madd
from wgpu_bench.membw import MembwGSL, MembwSimple
from wgpu_bench.primitive import AllocateBuffer, BasePrimitive, Kernel
from wgpu_bench.reduce import (
    AtomicReducePerElement, AtomicReducePerSubgroup, AtomicReducePerWorkgroup,
)
from wgpu_bench.scan import HierarchicalScan
from wgpu_bench.scan_dldf import DLDFScan
from wgpu_bench.sort import OneSweepSort
from wgpu_bench.suites import SUITES
from wgpu_bench.testsuite import PlotSpec, TestSuite

__version__ = "0.1.0"

__all__ = [
    # Building blocks
    "Datatype", "Buffer", "INIT_POLICIES", "PipelineCache",
    "BINOPS", "BinOpAdd", "BinOpMax", "BinOpMin", "BinOpMultiply", "make_binop",
    "get_device", "request_device", "release_device",
    # Primitives
    "BasePrimitive", "AllocateBuffer", "Kernel",
    "DLDFScan", "HierarchicalScan", "OneSweepSort",
    "MembwSimple", "MembwGSL", "Madd",
    "AtomicReducePerElement", "AtomicReducePerSubgroup", "AtomicReducePerWorkgroup",
    # Suites and driver
    "TestSuite", "PlotSpec", "SUITES",
    "Driver", "DriverConfig", "ResultRow",
    # Errors
    "BenchmarkError", "UnsupportedDevice", "ResourceLimit", "ValidationFailure", "DeviceLost",
]

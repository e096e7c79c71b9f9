"""Primitive base class and the action list it executes.

A primitive declares the buffers it binds, and its compute() returns a list
of actions: AllocateBuffer registers a scratch device buffer, Kernel compiles
(through the process-wide pipeline cache) and dispatches one shader entry
point. execute() runs one untimed warmup iteration and then `trials` timed
iterations, accumulating GPU (timestamp) and CPU (wall clock) time.
"""

import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import wgpu

from .buffer import STORAGE_USAGE, Buffer
from .cache import PipelineCache
from .datatype import Datatype
from .binop import BinOp
from .device import has_subgroups, has_timestamps, max_workgroups_per_dimension
from .errors import UnsupportedDevice
from .timing import MAX_TIMED_PASSES, TimingHelper
from .util import dispatch_geometry, f32_approx_eq_array, format_mismatches

logger = logging.getLogger(__name__)

UNIFORM_USAGE = wgpu.BufferUsage.UNIFORM | wgpu.BufferUsage.COPY_DST


# ============================================================================
# Actions
# ============================================================================

@dataclass(frozen=True)
class AllocateBuffer:
    """Register a scratch device buffer unless one exists under `label`."""
    label: str
    size: int
    usage: int = STORAGE_USAGE
    datatype: str = "u32"
    populate_with: Optional[np.ndarray] = field(default=None, compare=False)


@dataclass(frozen=True)
class Kernel:
    """Compile-and-dispatch step.

    `kernel` and `dispatch_geometry` are thunks so that shader text and
    workgroup counts can depend on values computed in compute(). Buffers
    named in `resets` are zero-filled before every dispatch.
    """
    kernel: Callable[[], str]
    bindings: Tuple[str, ...]
    buffer_types: Tuple[str, ...]
    dispatch_geometry: Callable[[], Tuple[int, ...]]
    entry_point: str = "main"
    label: str = ""
    resets: Tuple[str, ...] = ()

    def __post_init__(self):
        if len(self.bindings) != len(self.buffer_types):
            raise ValueError(
                f"Kernel '{self.label}': {len(self.bindings)} bindings but "
                f"{len(self.buffer_types)} buffer types"
            )


@dataclass(frozen=True)
class BufferSpec:
    """A buffer the driver creates and registers for a primitive.

    role is one of "input" (initialized, uploaded), "output" (read back),
    "inout" (initialized, uploaded, read back, restored before each timed
    trial) or "temp" (device only).
    """
    label: str
    datatype: Any
    length: int
    role: str
    initialize: Any = None


@dataclass
class TimingResult:
    gpu_kernel_ns: List[int]
    cpu_total_ns: int
    trials: int

    @property
    def gpu_total_ns(self):
        return sum(self.gpu_kernel_ns)


def _camel(name):
    return re.sub(r"_([a-z0-9])", lambda m: m.group(1).upper(), name)


# ============================================================================
# BasePrimitive
# ============================================================================

class BasePrimitive(ABC):
    """Base for all benchmarked primitives.

    Subclasses declare `parameters` (name -> default) and `known_buffers`,
    and implement compute(), buffer_specs() and bytes_transferred.
    """

    category = ""
    parameters: Dict[str, Any] = {}
    known_buffers: Tuple[str, ...] = ()
    in_place = False
    requires_subgroups = False

    pipeline_cache = PipelineCache()

    def __init__(self, device, label=None, gpu_timestamps=True, **params):
        unknown = sorted(set(params) - set(self.parameters))
        if unknown:
            raise ValueError(
                f"{type(self).__name__} got unknown parameters {unknown}; "
                f"accepted: {sorted(self.parameters)}"
            )
        for name, default in self.parameters.items():
            setattr(self, name, params.get(name, default))
        if "datatype" in self.parameters:
            self.datatype = Datatype(self.datatype)

        self.device = device
        self.gpu_timestamps = bool(gpu_timestamps) and has_timestamps(device)
        if self.requires_subgroups and not has_subgroups(device):
            raise UnsupportedDevice(f"{type(self).__name__} requires subgroup support")

        self.known = list(self.known_buffers)
        self.buffers: Dict[str, Buffer] = {}
        self._actions = None
        self._prepared = None
        self._scratch: List[str] = []
        self.reset_timing()

        self.check_parameters()
        self.label = label or self.default_label()

    # ---- Subclass hooks ----

    def check_parameters(self):
        """Validate parameter values; raise ValueError on bad ones."""

    def default_label(self):
        return type(self).__name__

    @abstractmethod
    def compute(self) -> list:
        """Return the action list; called once per instance."""

    @abstractmethod
    def buffer_specs(self) -> List[BufferSpec]:
        """Buffers the driver must create and register before execute()."""

    @property
    @abstractmethod
    def bytes_transferred(self):
        """Bytes moved to/from memory per trial, for bandwidth figures."""

    def gflops(self, gputime_ns):
        return None

    def extra_fields(self):
        """Derived scalar fields added to describe()."""
        return {}

    # ---- Buffers ----

    def register_buffer(self, buffer):
        self.buffers[buffer.label] = buffer
        if buffer.label not in self.known:
            self.known.append(buffer.label)
        return buffer

    def get_buffer(self, label):
        return self.buffers.get(label)

    def destroy_scratch_buffers(self):
        """Destroy the buffers compute() allocated; registered buffers are left alone."""
        for label in self._scratch:
            buf = self.buffers.pop(label, None)
            if buf is not None:
                buf.destroy()
        self._scratch = []
        self._prepared = None

    # ---- Dispatch helpers ----

    def simple_dispatch_geometry(self, workgroup_count):
        return dispatch_geometry(workgroup_count, max_workgroups_per_dimension(self.device))

    # ---- Execution ----

    def actions(self):
        if self._actions is None:
            self._actions = list(self.compute())
        return self._actions

    def _allocate(self, action):
        if action.label in self.buffers:
            return
        datatype = Datatype(action.datatype)
        length = -(-action.size // datatype.bytes_per_element)
        buf = Buffer(
            device=self.device,
            datatype=datatype,
            length=length,
            label=action.label,
            create_device=True,
            usage=action.usage,
        )
        if action.populate_with is not None:
            self.device.queue.write_buffer(buf.device_buffer, 0, action.populate_with)
        self.register_buffer(buf)
        self._scratch.append(action.label)

    def _bind_group(self, entry, kernel, specs):
        resources = []
        for i, label in enumerate(kernel.bindings):
            buf = self.buffers.get(label)
            if buf is None or buf.device_buffer is None:
                raise ValueError(
                    f"{self.label}: kernel '{kernel.label}' binds '{label}' "
                    f"but no device buffer is registered under that name"
                )
            spec = specs.get(label)
            if spec is not None:
                self._check_binding(spec, buf)
            resources.append({
                "binding": i,
                "resource": {"buffer": buf.device_buffer, "offset": 0,
                             "size": buf.device_buffer.size},
            })
        return self.device.create_bind_group(
            label=kernel.label, layout=entry.bind_group_layout, entries=resources
        )

    def _check_binding(self, spec, buf):
        """A registered buffer must have the datatype and at least the length it was declared with."""
        datatype = Datatype(spec.datatype)
        if buf.datatype != datatype:
            raise ValueError(
                f"{self.label}: '{spec.label}' has datatype {buf.datatype}, expected {datatype}"
            )
        needed = spec.length * datatype.bytes_per_element
        if buf.device_buffer.size < needed:
            raise ValueError(
                f"{self.label}: '{spec.label}' holds {buf.device_buffer.size} bytes, "
                f"expected at least {needed}"
            )

    def _prepare(self):
        """Allocate scratch buffers and resolve pipelines and bind groups once."""
        if self._prepared is not None:
            return self._prepared
        prepared = []
        specs = {spec.label: spec for spec in self.buffer_specs()}
        for action in self.actions():
            if isinstance(action, AllocateBuffer):
                self._allocate(action)
            elif isinstance(action, Kernel):
                entry = self.pipeline_cache.get_or_create(
                    self.device, action.kernel(), action.buffer_types,
                    entry_point=action.entry_point, label=action.label or self.label,
                )
                prepared.append((action, entry.pipeline, self._bind_group(entry, action, specs)))
            else:
                raise TypeError(f"Unknown action {action!r}")
        self._prepared = prepared
        return prepared

    def _encode_iteration(self, encoder, kernels, timing=None):
        for kernel, pipeline, bind_group in kernels:
            for label in kernel.resets:
                encoder.clear_buffer(self.buffers[label].device_buffer)
            if timing is not None:
                compute_pass = timing.begin_compute_pass(encoder, kernel.label)
            else:
                compute_pass = encoder.begin_compute_pass(label=kernel.label)
            compute_pass.set_pipeline(pipeline)
            compute_pass.set_bind_group(0, bind_group)
            compute_pass.dispatch_workgroups(*kernel.dispatch_geometry())
            compute_pass.end()

    def execute(self, trials=1, enable_gpu_timing=True, enable_cpu_timing=True,
                warmup=True):
        """Run an optional untimed warmup iteration, then `trials` timed ones.

        Args:
            trials: number of timed iterations (0 runs only the warmup)
            enable_gpu_timing: record timestamp durations when supported
            enable_cpu_timing: record wall-clock time around submission
            warmup: run the untimed prepass first
        """
        kernels = self._prepare()
        queue = self.device.queue

        if warmup:
            encoder = self.device.create_command_encoder(label=f"{self.label} warmup")
            self._encode_iteration(encoder, kernels)
            queue.submit([encoder.finish()])
            queue.on_submitted_work_done_sync()

        if trials <= 0 or not kernels:
            return

        timed = enable_gpu_timing and self.gpu_timestamps
        per_batch = max(1, MAX_TIMED_PASSES // len(kernels))
        helpers = []
        start = time.perf_counter_ns()
        remaining = trials
        while remaining > 0:
            batch = min(per_batch, remaining)
            remaining -= batch
            encoder = self.device.create_command_encoder(label=f"{self.label} timed")
            helper = TimingHelper(self.device, batch * len(kernels)) if timed else None
            for _ in range(batch):
                self._encode_iteration(encoder, kernels, helper)
            queue.submit([encoder.finish()])
            if helper is not None:
                helpers.append(helper)
        queue.on_submitted_work_done_sync()
        elapsed = time.perf_counter_ns() - start

        per_kernel = [0] * len(kernels)
        for helper in helpers:
            for i, duration in enumerate(helper.get_result()):
                per_kernel[i % len(kernels)] += duration
            helper.destroy()

        if len(self._gpu_kernel_ns) != len(kernels):
            self._gpu_kernel_ns = [0] * len(kernels)
        self._gpu_kernel_ns = [a + b for a, b in zip(self._gpu_kernel_ns, per_kernel)]
        if enable_cpu_timing:
            self._cpu_total_ns += elapsed
        self._timed_trials += trials

    def get_timing_result(self):
        return TimingResult(
            gpu_kernel_ns=list(self._gpu_kernel_ns),
            cpu_total_ns=self._cpu_total_ns,
            trials=self._timed_trials,
        )

    def reset_timing(self):
        self._gpu_kernel_ns = []
        self._cpu_total_ns = 0
        self._timed_trials = 0

    # ---- Validation ----

    def validate(self):
        """Compare outputs to the CPU reference; "" on success."""
        expected = self.reference()
        actual = self.get_buffer(self.output_label).host
        if actual is None:
            return f"{self.output_label} was not read back"
        actual = actual[: expected.size]
        if actual.size != expected.size:
            return f"Expected {expected.size} output elements, saw {actual.size}."
        if self.datatype.is_float:
            ok = f32_approx_eq_array(expected, actual)
        else:
            ok = expected == actual
        return format_mismatches(expected, actual, ok)

    output_label = "outputBuffer"
    input_label = "inputBuffer"

    def reference(self):
        raise NotImplementedError(f"{type(self).__name__} has no CPU reference")

    # ---- Reporting ----

    def describe(self):
        """Flat scalar fields of this run, camelCase keys."""
        row = {"label": self.label}
        for name in self.parameters:
            value = getattr(self, name)
            if isinstance(value, (Datatype, BinOp)):
                value = str(value)
            row[_camel(name)] = value
        for name, value in self.extra_fields().items():
            row[_camel(name)] = value
        return row

    def unique_key(self, fields):
        """Typed dedup key for this run."""
        described = self.describe()
        values = []
        for f in fields:
            value = described.get(_camel(f), getattr(self, f, None))
            values.append(str(value) if isinstance(value, (Datatype, BinOp)) else value)
        return tuple(values)

    def __repr__(self):
        return f"{type(self).__name__}({self.label!r})"

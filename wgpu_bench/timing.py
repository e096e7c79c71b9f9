"""GPU timestamp timing around compute passes.

TimingHelper hands out compute passes that write a begin/end timestamp pair.
When the last declared pass ends, the query set is resolved and copied into
a mappable buffer in the same encoder; get_result() maps it after the
submission completes and returns one duration (ns) per pass.

States: free -> in-progress -> need-resolve -> wait-for-result -> free.
"""

import enum
import logging

import numpy as np
import wgpu

from .device import has_timestamps
from .errors import DeviceLost

logger = logging.getLogger(__name__)

# WebGPU caps a query set at 4096 queries, i.e. 2048 timed passes.
MAX_QUERIES = 4096
MAX_TIMED_PASSES = MAX_QUERIES // 2


class TimingState(enum.Enum):
    FREE = "free"
    IN_PROGRESS = "in-progress"
    NEED_RESOLVE = "need-resolve"
    WAIT_FOR_RESULT = "wait-for-result"


class _TimedComputePass:
    """Proxy for a compute pass encoder; end() advances the helper."""

    def __init__(self, helper, encoder, compute_pass):
        self._helper = helper
        self._encoder = encoder
        self._pass = compute_pass

    def end(self):
        self._pass.end()
        self._helper._pass_ended(self._encoder)

    def __getattr__(self, name):
        return getattr(self._pass, name)


class TimingHelper:
    """Timestamp pairs around the next `num_kernels` compute passes."""

    def __init__(self, device, num_kernels):
        if num_kernels > MAX_TIMED_PASSES:
            raise ValueError(
                f"At most {MAX_TIMED_PASSES} passes can be timed at once, got {num_kernels}"
            )
        self.device = device
        self.num_kernels = num_kernels
        self.enabled = has_timestamps(device) and num_kernels > 0
        self.state = TimingState.FREE
        self._passes_begun = 0
        self._passes_ended = 0
        self._query_set = None
        self._resolve_buffer = None
        self._result_buffer = None
        if self.enabled:
            size = 2 * num_kernels * 8
            self._query_set = device.create_query_set(
                type=wgpu.QueryType.timestamp, count=2 * num_kernels
            )
            self._resolve_buffer = device.create_buffer(
                size=size,
                usage=wgpu.BufferUsage.QUERY_RESOLVE | wgpu.BufferUsage.COPY_SRC,
            )
            self._result_buffer = device.create_buffer(
                size=size,
                usage=wgpu.BufferUsage.COPY_DST | wgpu.BufferUsage.MAP_READ,
            )

    def begin_compute_pass(self, encoder, label=""):
        """Begin a compute pass on `encoder`, timed if timestamps are available."""
        if not self.enabled:
            return encoder.begin_compute_pass(label=label)
        if self.state not in (TimingState.FREE, TimingState.IN_PROGRESS):
            raise RuntimeError(f"Cannot begin a timed pass in state {self.state.value}")
        if self._passes_begun >= self.num_kernels:
            raise RuntimeError(f"All {self.num_kernels} timed passes already begun")
        index = self._passes_begun
        self._passes_begun += 1
        self.state = TimingState.IN_PROGRESS
        compute_pass = encoder.begin_compute_pass(
            label=label,
            timestamp_writes={
                "query_set": self._query_set,
                "beginning_of_pass_write_index": 2 * index,
                "end_of_pass_write_index": 2 * index + 1,
            },
        )
        return _TimedComputePass(self, encoder, compute_pass)

    def _pass_ended(self, encoder):
        self._passes_ended += 1
        if self._passes_ended < self.num_kernels:
            return
        self.state = TimingState.NEED_RESOLVE
        count = 2 * self.num_kernels
        encoder.resolve_query_set(self._query_set, 0, count, self._resolve_buffer, 0)
        encoder.copy_buffer_to_buffer(
            self._resolve_buffer, 0, self._result_buffer, 0, self._result_buffer.size
        )
        self.state = TimingState.WAIT_FOR_RESULT

    def get_result(self):
        """Per-pass durations in ns; call after the encoder's work has completed."""
        if not self.enabled:
            return [0] * self.num_kernels
        if self.state != TimingState.WAIT_FOR_RESULT:
            raise RuntimeError(f"No timing result to read in state {self.state.value}")
        try:
            self._result_buffer.map_sync(mode=wgpu.MapMode.READ)
            raw = self._result_buffer.read_mapped()
            self._result_buffer.unmap()
        except (wgpu.GPUError, RuntimeError) as e:
            raise DeviceLost(f"Mapping timestamp results failed: {e}") from e
        stamps = np.frombuffer(raw, dtype=np.uint64).astype(np.int64)
        durations = stamps[1::2] - stamps[0::2]
        if (durations < 0).any():
            logger.warning("Negative GPU timestamp delta; clamping to zero")
            durations = np.maximum(durations, 0)
        self.reset()
        return [int(d) for d in durations]

    def reset(self):
        self.state = TimingState.FREE
        self._passes_begun = 0
        self._passes_ended = 0

    def destroy(self):
        for buf in (self._resolve_buffer, self._result_buffer):
            if buf is not None:
                buf.destroy()
        if self._query_set is not None:
            self._query_set.destroy()
        self._resolve_buffer = self._result_buffer = self._query_set = None
        self.enabled = False

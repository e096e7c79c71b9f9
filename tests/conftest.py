"""Shared fixtures: a recording fake of the wgpu object model and the real device.

FakeDevice implements the subset of the WebGPU API that buffers, the timing
helper, the pipeline cache and the primitive base use. Buffer contents are
real bytes so that uploads, copies, clears and readbacks behave; compute
dispatches run a Python handler registered per entry point.
"""

import numpy as np
import pytest
import wgpu

from wgpu_bench.primitive import BasePrimitive

FAKE_TIMESTAMP_STEP_NS = 100


class FakeBuffer:
    def __init__(self, label, size, usage):
        self.label = label
        self.size = size
        self.usage = usage
        self.data = bytearray(size)
        self.destroyed = False
        self.mapped = False

    def map_sync(self, mode):
        if self.destroyed:
            raise RuntimeError(f"map of destroyed buffer '{self.label}'")
        self.mapped = True

    def read_mapped(self):
        return bytes(self.data)

    def unmap(self):
        self.mapped = False

    def destroy(self):
        self.destroyed = True

    def view(self, dtype):
        return np.frombuffer(self.data, dtype=dtype)


class FakeQuerySet:
    def __init__(self, type, count):
        self.type = type
        self.count = count
        self.destroyed = False

    def destroy(self):
        self.destroyed = True


class FakeShaderModule:
    def __init__(self, label, code):
        self.label = label
        self.code = code


class FakeBindGroupLayout:
    def __init__(self, label, entries):
        self.label = label
        self.entries = entries


class FakePipelineLayout:
    def __init__(self, label, bind_group_layouts):
        self.label = label
        self.bind_group_layouts = bind_group_layouts


class FakePipeline:
    def __init__(self, label, layout, compute):
        self.label = label
        self.layout = layout
        self.module = compute["module"]
        self.entry_point = compute["entry_point"]


class FakeBindGroup:
    def __init__(self, label, layout, entries):
        self.label = label
        self.layout = layout
        self.buffers = [e["resource"]["buffer"] for e in sorted(entries, key=lambda e: e["binding"])]


class FakeComputePass:
    def __init__(self, encoder, label, timestamp_writes):
        self.encoder = encoder
        self.label = label
        self.timestamp_writes = timestamp_writes
        self.pipeline = None
        self.bind_group = None

    def set_pipeline(self, pipeline):
        self.pipeline = pipeline

    def set_bind_group(self, index, bind_group):
        self.bind_group = bind_group

    def dispatch_workgroups(self, x, y=1, z=1):
        self.encoder.commands.append(("dispatch", self.pipeline, self.bind_group, (x, y, z), self.label))

    def end(self):
        pass


class FakeCommandEncoder:
    def __init__(self, label):
        self.label = label
        self.commands = []

    def begin_compute_pass(self, label="", timestamp_writes=None):
        return FakeComputePass(self, label, timestamp_writes)

    def clear_buffer(self, buffer, offset=0, size=None):
        self.commands.append(("clear", buffer, offset, size))

    def copy_buffer_to_buffer(self, src, src_offset, dst, dst_offset, size):
        self.commands.append(("copy", src, src_offset, dst, dst_offset, size))

    def resolve_query_set(self, query_set, first_query, query_count, destination, destination_offset):
        self.commands.append(("resolve", query_set, first_query, query_count, destination, destination_offset))

    def finish(self):
        return list(self.commands)


class FakeQueue:
    def __init__(self, device):
        self.device = device
        self.submitted = 0

    def write_buffer(self, buffer, offset, data):
        raw = np.ascontiguousarray(data).tobytes() if isinstance(data, np.ndarray) else bytes(data)
        if offset + len(raw) > buffer.size:
            raise ValueError(f"write_buffer past the end of '{buffer.label}'")
        buffer.data[offset:offset + len(raw)] = raw

    def submit(self, command_buffers):
        for commands in command_buffers:
            for command in commands:
                self.device.run_command(command)
            self.submitted += 1

    def on_submitted_work_done_sync(self):
        pass


class FakeAdapter:
    def __init__(self):
        self.info = {
            "vendor": "fake",
            "architecture": "fake-arch",
            "device": "Fake GPU",
            "description": "recording fake device",
            "adapter_type": "CPU",
            "backend_type": "Null",
        }


class FakeDevice:
    """Records what the harness asks of a device and executes it on the host."""

    def __init__(self, features=("timestamp-query", "subgroups"), limits=None):
        self.features = set(features)
        self.limits = {
            "max-buffer-size": 1 << 30,
            "max-storage-buffer-binding-size": (1 << 30) - 4,
            "max-compute-workgroup-storage-size": 32 * 1024,
            "max-compute-workgroups-per-dimension": 65535,
        }
        self.limits.update(limits or {})
        self.adapter = FakeAdapter()
        self.queue = FakeQueue(self)
        self.buffers = []
        self.pipelines = []
        self.dispatches = []
        self.handlers = {}
        self.destroyed = False

    def create_buffer(self, label="", size=0, usage=0):
        buf = FakeBuffer(label, size, usage)
        self.buffers.append(buf)
        return buf

    def create_query_set(self, type, count):
        return FakeQuerySet(type, count)

    def create_shader_module(self, label="", code=""):
        return FakeShaderModule(label, code)

    def create_bind_group_layout(self, label="", entries=()):
        return FakeBindGroupLayout(label, list(entries))

    def create_pipeline_layout(self, label="", bind_group_layouts=()):
        return FakePipelineLayout(label, list(bind_group_layouts))

    def create_compute_pipeline(self, label="", layout=None, compute=None):
        pipeline = FakePipeline(label, layout, compute)
        self.pipelines.append(pipeline)
        return pipeline

    def create_bind_group(self, label="", layout=None, entries=()):
        return FakeBindGroup(label, layout, list(entries))

    def create_command_encoder(self, label=""):
        return FakeCommandEncoder(label)

    def destroy(self):
        self.destroyed = True

    def run_command(self, command):
        kind = command[0]
        if kind == "clear":
            _, buf, offset, size = command
            end = buf.size if size is None else offset + size
            buf.data[offset:end] = bytes(end - offset)
        elif kind == "copy":
            _, src, src_offset, dst, dst_offset, size = command
            dst.data[dst_offset:dst_offset + size] = src.data[src_offset:src_offset + size]
        elif kind == "resolve":
            _, query_set, first, count, dst, dst_offset = command
            stamps = (np.arange(first, first + count, dtype=np.uint64)
                      * np.uint64(FAKE_TIMESTAMP_STEP_NS))
            raw = stamps.tobytes()
            dst.data[dst_offset:dst_offset + len(raw)] = raw
        elif kind == "dispatch":
            _, pipeline, bind_group, geometry, label = command
            self.dispatches.append((pipeline.entry_point, geometry, label))
            handler = self.handlers.get(pipeline.entry_point)
            if handler is not None:
                handler(bind_group.buffers, geometry)
        else:
            raise ValueError(f"Unknown command {kind}")


@pytest.fixture
def fake_device():
    return FakeDevice()


@pytest.fixture(autouse=True)
def fresh_pipeline_cache():
    cache = BasePrimitive.pipeline_cache
    cache.clear()
    cache.enable()
    yield cache
    cache.clear()
    cache.enable()


@pytest.fixture(scope="session")
def gpu_device():
    """The real process-wide device; skips when no adapter is available."""
    from wgpu_bench.device import request_device
    from wgpu_bench.errors import UnsupportedDevice

    try:
        return request_device()
    except (UnsupportedDevice, RuntimeError, wgpu.GPUError) as e:
        pytest.skip(f"No WebGPU device: {e}")

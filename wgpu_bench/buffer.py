"""Typed buffers: a numpy host array paired with a wgpu device buffer.

A Buffer optionally owns a host array, a device storage buffer, a mappable
staging buffer for readback, and a host backup used to restore inputs that
a primitive overwrites in place.
"""

import logging

import numpy as np
import wgpu

from .datatype import as_datatype
from .errors import DeviceLost, ResourceLimit

logger = logging.getLogger(__name__)

STORAGE_USAGE = (
    wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_SRC | wgpu.BufferUsage.COPY_DST
)
MAPPABLE_USAGE = wgpu.BufferUsage.MAP_READ | wgpu.BufferUsage.COPY_DST

# Device buffers are padded so that vec4 loads of the final element stay in range.
DEVICE_ALIGNMENT = 16


# ============================================================================
# Host initialization policies
# ============================================================================

def _bitreverse(indices):
    x = indices.astype(np.uint32)
    x = ((x >> 1) & 0x55555555) | ((x & 0x55555555) << 1)
    x = ((x >> 2) & 0x33333333) | ((x & 0x33333333) << 2)
    x = ((x >> 4) & 0x0F0F0F0F) | ((x & 0x0F0F0F0F) << 4)
    x = ((x >> 8) & 0x00FF00FF) | ((x & 0x00FF00FF) << 8)
    return ((x >> 16) | (x << 16)).astype(np.uint32)


def _to_dtype(values, dtype):
    """Cast, wrapping negatives into unsigned types."""
    if np.issubdtype(dtype, np.unsignedinteger) and np.issubdtype(values.dtype, np.signedinteger):
        return values.astype(np.int64).astype(dtype)
    return values.astype(dtype)


def _zeros(length, dtype, rng):
    return np.zeros(length, dtype=dtype)


def _sequential(length, dtype, rng):
    return _to_dtype(np.arange(length, dtype=np.int64), dtype)


def _identity_per_lane(length, dtype, rng):
    # stays exactly representable in an f32 significand
    return _to_dtype(np.arange(length, dtype=np.int64) & (2**22 - 1), dtype)


def _abs_under_1024(length, dtype, rng):
    values = np.floor(rng.random(length) * 2049.0 - 1024.0)
    if np.issubdtype(dtype, np.floating):
        return values.astype(dtype)
    return _to_dtype(values.astype(np.int64), dtype)


def _minus_one_to_one(length, dtype, rng):
    if not np.issubdtype(dtype, np.floating):
        raise ValueError("randomizeMinusOneToOne needs a floating-point datatype")
    return (rng.random(length) * 2.0 - 1.0).astype(dtype)


def _xor_beef(length, dtype, rng):
    return _to_dtype(np.arange(length, dtype=np.int64) ^ 0xBEEF, dtype)


def _constant(length, dtype, rng):
    return np.full(length, 42, dtype=dtype)


def _bitreverse_policy(length, dtype, rng):
    values = _bitreverse(np.arange(length, dtype=np.int64))
    if np.issubdtype(dtype, np.floating):
        return (values & (2**22 - 1)).astype(dtype)
    if dtype == np.int32:
        return values.view(np.int32).copy()
    return values.astype(dtype)


def _fisher_yates(length, dtype, rng):
    if np.issubdtype(dtype, np.floating):
        values = _identity_per_lane(length, dtype, rng)
    else:
        values = _sequential(length, dtype, rng)
    rng.shuffle(values)
    return values


INIT_POLICIES = {
    "zeros": _zeros,
    "sequential": _sequential,
    "identity-per-lane": _identity_per_lane,
    "randomizeAbsUnder1024": _abs_under_1024,
    "randomizeMinusOneToOne": _minus_one_to_one,
    "xor-beef": _xor_beef,
    "constant": _constant,
    "bitreverse": _bitreverse_policy,
    "fisher-yates": _fisher_yates,
}


def make_host_array(policy, length, dtype, rng=None):
    """Build a host array of `length` elements according to `policy`.

    Args:
        policy: policy name from INIT_POLICIES, True for "sequential", or a
            callable (length, dtype, rng) -> array
        length: element count
        dtype: numpy dtype of the result
        rng: numpy Generator used by the random policies
    """
    dtype = np.dtype(dtype)
    rng = rng if rng is not None else np.random.default_rng()
    if policy is True:
        policy = "sequential"
    if callable(policy):
        values = np.asarray(policy(length, dtype, rng))
    else:
        try:
            fn = INIT_POLICIES[policy]
        except KeyError:
            raise ValueError(
                f"Unknown initialization policy '{policy}', "
                f"expected one of {sorted(INIT_POLICIES)}"
            ) from None
        values = fn(length, dtype, rng)
    if values.shape != (length,):
        raise ValueError(f"Initializer produced shape {values.shape}, expected ({length},)")
    return np.ascontiguousarray(values, dtype=dtype)


# ============================================================================
# Buffer
# ============================================================================

class Buffer:
    """Host array + device buffer (+ staging buffer, + host backup)."""

    def __init__(self, device=None, datatype="u32", length=0, label=None,
                 create_host=False, initialize_host=None, create_device=False,
                 initialize_device=False, create_mappable=False,
                 store_host_backup=False, usage=None, rng=None):
        """Create the requested parts of the buffer.

        Args:
            device: wgpu device; required when create_device is set
            datatype: element datatype name or Datatype
            length: element count
            label: name under which primitives bind this buffer
            create_host: allocate a host array (zero-filled)
            initialize_host: initialization policy for the host array;
                implies create_host
            create_device: allocate a device storage buffer
            initialize_device: upload the host array after allocation
            create_mappable: allocate a MAP_READ staging buffer for readback
            store_host_backup: snapshot the initialized host array
            usage: override for the device buffer usage flags
            rng: numpy Generator for random initialization policies
        """
        self.device = device
        self.datatype = as_datatype(datatype)
        self.length = int(length)
        self.label = label or f"Buffer (datatype: {self.datatype}; length: {self.length})"
        self.usage = STORAGE_USAGE if usage is None else usage

        self.host = None
        self.backup = None
        self.device_buffer = None
        self.mappable = None

        if create_host or initialize_host:
            if initialize_host:
                self.host = make_host_array(
                    initialize_host, self.length, self.datatype.numpy_dtype, rng
                )
            else:
                self.host = np.zeros(self.length, dtype=self.datatype.numpy_dtype)
            if store_host_backup:
                self.store_host_backup()

        if create_device:
            if device is None:
                raise ValueError(f"Buffer '{self.label}': create_device needs a device")
            self.device_buffer = self._create(self.label, self.usage)
            if initialize_device:
                self.copy_host_to_device()
            if create_mappable:
                self.mappable = self._create(f"mappable | {self.label}", MAPPABLE_USAGE)

    # ---- Properties ----

    @property
    def size(self):
        """Payload size in bytes."""
        return self.length * self.datatype.bytes_per_element

    @property
    def device_size(self):
        """Allocated device size in bytes, padded for vec4 access."""
        size = max(self.size, DEVICE_ALIGNMENT)
        return -(-size // DEVICE_ALIGNMENT) * DEVICE_ALIGNMENT

    @property
    def has_backup(self):
        return self.backup is not None

    def matches(self, datatype, length):
        return self.datatype == as_datatype(datatype) and self.length == length

    # ---- Device side ----

    def _create(self, label, usage):
        limits = self.device.limits
        size = self.device_size
        if usage & wgpu.BufferUsage.STORAGE:
            limit = limits["max-storage-buffer-binding-size"]
            if size > limit:
                raise ResourceLimit(label, size, limit)
        limit = limits["max-buffer-size"]
        if size > limit:
            raise ResourceLimit(label, size, limit)
        return self.device.create_buffer(label=label, size=size, usage=usage)

    def copy_host_to_device(self):
        if self.host is None:
            raise ValueError(f"Buffer '{self.label}' has no host array to upload")
        if self.host.size:
            self.device.queue.write_buffer(self.device_buffer, 0, self.host)

    def copy_device_to_host(self):
        """Read the device buffer back into the host array via the staging buffer."""
        if self.mappable is None:
            raise ValueError(f"Buffer '{self.label}' was created without a mappable buffer")
        encoder = self.device.create_command_encoder(
            label=f"encoder: {self.label} -> mappable"
        )
        encoder.copy_buffer_to_buffer(
            self.device_buffer, 0, self.mappable, 0, self.device_size
        )
        self.device.queue.submit([encoder.finish()])
        try:
            self.mappable.map_sync(mode=wgpu.MapMode.READ)
            data = self.mappable.read_mapped()
            self.mappable.unmap()
        except (wgpu.GPUError, RuntimeError) as e:
            raise DeviceLost(f"Mapping '{self.label}' for readback failed: {e}") from e
        values = np.frombuffer(data, dtype=self.datatype.numpy_dtype, count=self.length)
        self.host = values.copy()
        return self.host

    # ---- Host backup ----

    def store_host_backup(self):
        if self.host is None:
            raise ValueError(f"Buffer '{self.label}' has no host array to back up")
        self.backup = self.host.copy()

    def restore_host_from_backup(self):
        if self.backup is None:
            raise ValueError(f"Buffer '{self.label}' has no host backup")
        self.host = self.backup.copy()

    def destroy(self):
        for buf in (self.device_buffer, self.mappable):
            if buf is not None:
                buf.destroy()
        self.device_buffer = None
        self.mappable = None

    def __repr__(self):
        return f"Buffer({self.label!r}, {self.datatype}, length={self.length})"

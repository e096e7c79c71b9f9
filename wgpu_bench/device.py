"""Process-wide wgpu device used by every primitive.

The adapter is requested with the high-performance power preference. Optional
features (timestamp queries, subgroups) are enabled when the adapter has them,
and the large-buffer limits the benchmarks need are requested, clamped to what
the adapter offers.
"""

import atexit
import logging

import wgpu
import wgpu.backends.wgpu_native  # noqa: F401

from .errors import UnsupportedDevice

logger = logging.getLogger(__name__)

# ============================================================================
# Device Singleton
# ============================================================================

GIB = 1 << 30

TIMESTAMP_FEATURE = "timestamp-query"
# wgpu-native has exposed subgroup support under both names
SUBGROUP_FEATURES = ("subgroup", "subgroups")

DEFAULT_MAX_BUFFER_SIZE = 2 * GIB
MIN_WORKGROUP_STORAGE_SIZE = 32 * 1024

_device = None


def _requested_limits(adapter, max_buffer_size):
    """Limits to request, each clamped to the adapter's own limit."""
    wanted = {
        "max-buffer-size": max_buffer_size,
        "max-storage-buffer-binding-size": max_buffer_size - 4,
        "max-compute-workgroup-storage-size": MIN_WORKGROUP_STORAGE_SIZE,
    }
    limits = {}
    for name, value in wanted.items():
        available = adapter.limits.get(name, value)
        if available < value:
            logger.warning(
                f"Adapter limit {name}={available} is below the requested {value}"
            )
            value = available
        limits[name] = value
    return limits


def request_device(max_buffer_size=DEFAULT_MAX_BUFFER_SIZE,
                   power_preference="high-performance"):
    """Create (or return the existing) process-wide device.

    Args:
        max_buffer_size: desired maxBufferSize in bytes, clamped to the adapter
        power_preference: adapter selection hint passed to wgpu
    """
    global _device
    if _device is not None:
        return _device

    adapter = wgpu.gpu.request_adapter_sync(power_preference=power_preference)
    if adapter is None:
        raise UnsupportedDevice("No WebGPU adapter available")

    features = []
    if TIMESTAMP_FEATURE in adapter.features:
        features.append(TIMESTAMP_FEATURE)
    features.extend(f for f in SUBGROUP_FEATURES if f in adapter.features)

    limits = _requested_limits(adapter, max_buffer_size)
    try:
        _device = adapter.request_device_sync(
            label="wgpu-bench device",
            required_features=features,
            required_limits=limits,
        )
    except wgpu.GPUError as e:
        raise UnsupportedDevice(f"Device request failed: {e}") from e

    info = adapter.info
    logger.info(
        f"Using {info.get('device', '?')} ({info.get('adapter_type', '?')}, "
        f"{info.get('backend_type', '?')}), features: {sorted(features)}"
    )
    return _device


def get_device():
    """Get or create the device singleton."""
    return request_device()


def release_device():
    """Destroy the device singleton; the next get_device() makes a new one."""
    global _device
    if _device is not None:
        _device.destroy()
        _device = None


def _cleanup():
    """Cleanup wgpu resources on exit."""
    global _device
    if _device is not None:
        try:
            _device.destroy()
        except wgpu.GPUError as e:
            logger.debug(f"Device destroy at exit failed: {e}")
        _device = None


atexit.register(_cleanup)


# ============================================================================
# Capability Queries
# ============================================================================

def has_timestamps(device):
    return TIMESTAMP_FEATURE in device.features


def has_subgroups(device):
    return any(f in device.features for f in SUBGROUP_FEATURES)


def subgroup_size_range(device):
    """(min, max) subgroup size reported by the adapter, or (None, None)."""
    info = device.adapter.info
    limits = device.limits
    lo = info.get("subgroup_min_size", limits.get("min-subgroup-size"))
    hi = info.get("subgroup_max_size", limits.get("max-subgroup-size"))
    return lo, hi


def max_workgroups_per_dimension(device):
    return device.limits["max-compute-workgroups-per-dimension"]


def gpu_info(device):
    """Adapter identification attached to every result row."""
    info = device.adapter.info
    lo, hi = subgroup_size_range(device)
    return {
        "vendor": info.get("vendor", ""),
        "architecture": info.get("architecture", ""),
        "device": info.get("device", ""),
        "description": info.get("description", ""),
        "adapterType": info.get("adapter_type", ""),
        "backend": info.get("backend_type", ""),
        "subgroupMinSize": lo,
        "subgroupMaxSize": hi,
    }

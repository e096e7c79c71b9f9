"""Exception taxonomy for the benchmark harness.

UnsupportedDevice aborts the driver, ResourceLimit skips the current
parameter tuple, ValidationFailure is counted and reported, and DeviceLost
aborts the running suite.
"""


class BenchmarkError(Exception):
    """Base class for all harness errors."""


class UnsupportedDevice(BenchmarkError):
    """The adapter or device lacks a capability a primitive needs."""


class ResourceLimit(BenchmarkError):
    """A requested allocation exceeds a device limit."""

    def __init__(self, label, requested, limit):
        self.label = label
        self.requested = requested
        self.limit = limit
        super().__init__(
            f"Buffer '{label}' needs {requested} bytes, device limit is {limit}"
        )


class ValidationFailure(BenchmarkError):
    """GPU output disagrees with the CPU reference."""


class DeviceLost(BenchmarkError):
    """Mapping or submission failed; device state can no longer be trusted."""

"""Exception types shared by the sidecar modules."""

from __future__ import annotations


class GpuBackendError(RuntimeError):
    """Raised when a backend cannot be initialised or a query fails."""


class MetricUnavailableError(GpuBackendError):
    """A single metric could not be read from a device."""


class SamplingError(GpuBackendError):
    """A required metric failed, so the whole sampling pass is discarded."""


class ProcessTableError(RuntimeError):
    """The OS process table could not be queried."""


class RecordSerializationError(RuntimeError):
    """A sample record could not be encoded as JSON."""

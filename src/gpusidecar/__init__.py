"""gpusidecar: GPU telemetry as JSON lines, attributed to a process tree.

Once per second every installed NVIDIA GPU is queried through NVML and a
single flat JSON object is written to stdout::

    {"_sampling_duration_ms":3.1,"_timestamp":1700000000.0,"gpu.0.gpu":87,...}

Metrics that cannot be read are left out of the record.  When the
monitored process (or one of its descendants) is running on a device, the
attributable metrics are repeated under ``gpu.process.<index>.*``.

Backends:

* **NVML** -- via *pynvml*.  Install with ``pip install nvidia-ml-py``.
* **None / Null** -- every pass yields ``{"gpu.count": 0}``; used when NVML
  cannot be initialised.
"""

__version__: str = "0.1.0"

from typing import List

from .backends import BaseDeviceBackend, NullDeviceBackend, NvmlDeviceBackend, make_backend
from .errors import (
    GpuBackendError,
    MetricUnavailableError,
    ProcessTableError,
    RecordSerializationError,
    SamplingError,
)
from .proctree import ChildLister, PgrepChildLister, resolve_process_tree
from .sampler import MetricSampler, SampleRecord, fallback_record, is_attributed
from .scheduler import FixedCadenceScheduler, JsonLineEmitter, SamplingLoop

__all__: List[str] = [
    "BaseDeviceBackend",
    "ChildLister",
    "FixedCadenceScheduler",
    "GpuBackendError",
    "JsonLineEmitter",
    "MetricSampler",
    "MetricUnavailableError",
    "NullDeviceBackend",
    "NvmlDeviceBackend",
    "PgrepChildLister",
    "ProcessTableError",
    "RecordSerializationError",
    "SampleRecord",
    "SamplingError",
    "SamplingLoop",
    "fallback_record",
    "is_attributed",
    "make_backend",
    "resolve_process_tree",
]

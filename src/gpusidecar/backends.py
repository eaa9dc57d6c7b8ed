"""Device query backends.

* **NVML** -- :class:`NvmlDeviceBackend` calls the NVIDIA Management
  Library through *pynvml* (``pip install nvidia-ml-py``).
* **Null** -- :class:`NullDeviceBackend` stands in for NVML once
  initialisation has failed; every query reports "not available", so each
  sampling pass degrades to the zero-device record.

Every query either returns a value or raises
:class:`~gpusidecar.errors.MetricUnavailableError`.  Queries are
independent: one failing metric never prevents reading another.  Whether a
failure is fatal for the pass is decided by the sampler, not here.
"""

from __future__ import annotations

import abc
import logging
from typing import Any, Callable, List, Tuple, TypeVar

from .errors import GpuBackendError, MetricUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: ``nvmlBrandType_t`` codes -> display names.
BRAND_NAMES = {
    0: "Unknown",
    1: "Quadro",
    2: "Tesla",
    3: "NVS",
    4: "Grid",
    5: "GeForce",
    6: "Titan",
    7: "NVIDIA Virtual Applications",
    8: "NVIDIA Virtual PC",
    9: "NVIDIA Virtual Compute Server",
    10: "NVIDIA RTX Virtual Workstation",
    11: "NVIDIA Cloud Gaming",
    12: "Quadro RTX",
    13: "NVIDIA RTX",
    14: "NVIDIA",
    15: "GeForce RTX",
    16: "Titan RTX",
}

#: ``nvmlDeviceArchitecture_t`` codes -> display names.
ARCHITECTURE_NAMES = {
    2: "Kepler",
    3: "Maxwell",
    4: "Pascal",
    5: "Volta",
    6: "Turing",
    7: "Ampere",
    8: "Ada",
    9: "Hopper",
    10: "Blackwell",
}


def format_cuda_version(version: int) -> str:
    """Turn NVML's packed CUDA driver version (e.g. ``12020``) into ``"12.2"``."""
    major = version // 1000
    minor = (version % 1000) // 10
    return f"{major}.{minor}"


def _decode(value: Any) -> str:
    return value.decode() if isinstance(value, (bytes, bytearray)) else str(value)


class BaseDeviceBackend(abc.ABC):
    """Abstract query interface over the device-management library.

    ``handle`` arguments are whatever :meth:`device_handle` returned for
    the current pass; callers must not keep them across passes.
    """

    @abc.abstractmethod
    def device_count(self) -> int:
        """Number of installed devices."""

    @abc.abstractmethod
    def device_handle(self, index: int) -> Any:
        """Opaque handle for the device at *index*."""

    @abc.abstractmethod
    def cuda_driver_version(self) -> str:
        """CUDA version supported by the driver, as ``"major.minor"``."""

    @abc.abstractmethod
    def name(self, handle: Any) -> str: ...

    @abc.abstractmethod
    def brand(self, handle: Any) -> str: ...

    @abc.abstractmethod
    def fan_speed(self, handle: Any) -> int:
        """Fan speed as a percentage of the maximum."""

    @abc.abstractmethod
    def encoder_utilization(self, handle: Any) -> int: ...

    @abc.abstractmethod
    def utilization_rates(self, handle: Any) -> Tuple[int, int]:
        """``(gpu_pct, memory_pct)`` over the driver's last sample period."""

    @abc.abstractmethod
    def memory_info(self, handle: Any) -> Tuple[int, int]:
        """``(used_bytes, total_bytes)``."""

    @abc.abstractmethod
    def temperature(self, handle: Any) -> int:
        """GPU die temperature (°C)."""

    @abc.abstractmethod
    def power_usage(self, handle: Any) -> int:
        """Board power draw in milliwatts."""

    @abc.abstractmethod
    def enforced_power_limit(self, handle: Any) -> int:
        """Effective power limit in milliwatts."""

    @abc.abstractmethod
    def graphics_clock(self, handle: Any) -> int: ...

    @abc.abstractmethod
    def memory_clock(self, handle: Any) -> int: ...

    @abc.abstractmethod
    def pcie_link_gen(self, handle: Any) -> int: ...

    @abc.abstractmethod
    def max_pcie_link_gen(self, handle: Any) -> int: ...

    @abc.abstractmethod
    def pcie_link_width(self, handle: Any) -> int: ...

    @abc.abstractmethod
    def max_pcie_link_width(self, handle: Any) -> int: ...

    @abc.abstractmethod
    def pcie_link_speed(self, handle: Any) -> int:
        """Current PCIe link speed in MB/s per lane."""

    @abc.abstractmethod
    def cuda_cores(self, handle: Any) -> int: ...

    @abc.abstractmethod
    def architecture(self, handle: Any) -> str: ...

    @abc.abstractmethod
    def compute_process_ids(self, handle: Any) -> List[int]: ...

    @abc.abstractmethod
    def graphics_process_ids(self, handle: Any) -> List[int]: ...

    def close(self) -> None:  # noqa: B027 - intentionally empty
        """Release any resources held by the backend (optional)."""


class NvmlDeviceBackend(BaseDeviceBackend):
    """Queries devices through NVML.

    The library is initialised once in the constructor and stays
    initialised until :meth:`close`.

    Requires:
      pip install nvidia-ml-py
    """

    def __init__(self) -> None:
        try:
            import pynvml  # type: ignore
        except Exception as e:
            raise GpuBackendError(
                "NVML backend requested but pynvml not available. "
                "Install with: pip install nvidia-ml-py"
            ) from e

        self._pynvml = pynvml
        try:
            pynvml.nvmlInit()
        except Exception as e:
            raise GpuBackendError(f"NVML initialisation failed: {e}") from e
        self._closed = False

    def _query(self, what: str, fn: Callable[[], T]) -> T:
        # fn also converts the reply; malformed replies are unavailable metrics.
        try:
            return fn()
        except Exception as e:
            raise MetricUnavailableError(f"{what}: {e}") from e

    def device_count(self) -> int:
        return self._query("device count", lambda: int(self._pynvml.nvmlDeviceGetCount()))

    def device_handle(self, index: int) -> Any:
        return self._query(
            f"handle for device {index}",
            lambda: self._pynvml.nvmlDeviceGetHandleByIndex(index),
        )

    def cuda_driver_version(self) -> str:
        return self._query(
            "CUDA driver version",
            lambda: format_cuda_version(int(self._pynvml.nvmlSystemGetCudaDriverVersion())),
        )

    def name(self, handle: Any) -> str:
        return self._query("name", lambda: _decode(self._pynvml.nvmlDeviceGetName(handle)))

    def brand(self, handle: Any) -> str:
        return self._query(
            "brand",
            lambda: BRAND_NAMES.get(int(self._pynvml.nvmlDeviceGetBrand(handle)), "Unknown"),
        )

    def fan_speed(self, handle: Any) -> int:
        return self._query("fan speed", lambda: int(self._pynvml.nvmlDeviceGetFanSpeed(handle)))

    def encoder_utilization(self, handle: Any) -> int:
        # Returns [utilization, sampling_period_us].
        return self._query(
            "encoder utilization",
            lambda: int(self._pynvml.nvmlDeviceGetEncoderUtilization(handle)[0]),
        )

    def utilization_rates(self, handle: Any) -> Tuple[int, int]:
        def read() -> Tuple[int, int]:
            util = self._pynvml.nvmlDeviceGetUtilizationRates(handle)
            return int(util.gpu), int(util.memory)

        return self._query("utilization rates", read)

    def memory_info(self, handle: Any) -> Tuple[int, int]:
        def read() -> Tuple[int, int]:
            mem = self._pynvml.nvmlDeviceGetMemoryInfo(handle)
            return int(mem.used), int(mem.total)

        return self._query("memory info", read)

    def temperature(self, handle: Any) -> int:
        p = self._pynvml
        return self._query(
            "temperature",
            lambda: int(p.nvmlDeviceGetTemperature(handle, p.NVML_TEMPERATURE_GPU)),
        )

    def power_usage(self, handle: Any) -> int:
        return self._query("power usage", lambda: int(self._pynvml.nvmlDeviceGetPowerUsage(handle)))

    def enforced_power_limit(self, handle: Any) -> int:
        return self._query(
            "enforced power limit",
            lambda: int(self._pynvml.nvmlDeviceGetEnforcedPowerLimit(handle)),
        )

    def graphics_clock(self, handle: Any) -> int:
        p = self._pynvml
        return self._query(
            "graphics clock",
            lambda: int(p.nvmlDeviceGetClockInfo(handle, p.NVML_CLOCK_GRAPHICS)),
        )

    def memory_clock(self, handle: Any) -> int:
        p = self._pynvml
        return self._query(
            "memory clock", lambda: int(p.nvmlDeviceGetClockInfo(handle, p.NVML_CLOCK_MEM))
        )

    def pcie_link_gen(self, handle: Any) -> int:
        return self._query(
            "PCIe link generation",
            lambda: int(self._pynvml.nvmlDeviceGetCurrPcieLinkGeneration(handle)),
        )

    def max_pcie_link_gen(self, handle: Any) -> int:
        return self._query(
            "max PCIe link generation",
            lambda: int(self._pynvml.nvmlDeviceGetMaxPcieLinkGeneration(handle)),
        )

    def pcie_link_width(self, handle: Any) -> int:
        return self._query(
            "PCIe link width",
            lambda: int(self._pynvml.nvmlDeviceGetCurrPcieLinkWidth(handle)),
        )

    def max_pcie_link_width(self, handle: Any) -> int:
        return self._query(
            "max PCIe link width",
            lambda: int(self._pynvml.nvmlDeviceGetMaxPcieLinkWidth(handle)),
        )

    def pcie_link_speed(self, handle: Any) -> int:
        return self._query(
            "PCIe link speed", lambda: int(self._pynvml.nvmlDeviceGetPcieSpeed(handle))
        )

    def cuda_cores(self, handle: Any) -> int:
        return self._query(
            "core count", lambda: int(self._pynvml.nvmlDeviceGetNumGpuCores(handle))
        )

    def architecture(self, handle: Any) -> str:
        return self._query(
            "architecture",
            lambda: ARCHITECTURE_NAMES.get(
                int(self._pynvml.nvmlDeviceGetArchitecture(handle)), "Unknown"
            ),
        )

    def compute_process_ids(self, handle: Any) -> List[int]:
        return self._query(
            "compute processes",
            lambda: [
                int(p.pid) for p in self._pynvml.nvmlDeviceGetComputeRunningProcesses(handle)
            ],
        )

    def graphics_process_ids(self, handle: Any) -> List[int]:
        return self._query(
            "graphics processes",
            lambda: [
                int(p.pid) for p in self._pynvml.nvmlDeviceGetGraphicsRunningProcesses(handle)
            ],
        )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._pynvml.nvmlShutdown()
        except Exception:
            logger.debug("nvmlShutdown failed", exc_info=True)


class NullDeviceBackend(BaseDeviceBackend):
    """Backend used when no real library could be initialised.

    Every query raises :class:`MetricUnavailableError`, so the sampler
    always falls back to ``{"gpu.count": 0}``.  The :attr:`reason`
    attribute records *why* no real backend was used.
    """

    def __init__(self, reason: str):
        self.reason = reason

    def _unavailable(self, *_args: Any) -> Any:
        raise MetricUnavailableError(f"no device backend ({self.reason})")

    device_count = _unavailable
    device_handle = _unavailable
    cuda_driver_version = _unavailable
    name = _unavailable
    brand = _unavailable
    fan_speed = _unavailable
    encoder_utilization = _unavailable
    utilization_rates = _unavailable
    memory_info = _unavailable
    temperature = _unavailable
    power_usage = _unavailable
    enforced_power_limit = _unavailable
    graphics_clock = _unavailable
    memory_clock = _unavailable
    pcie_link_gen = _unavailable
    max_pcie_link_gen = _unavailable
    pcie_link_width = _unavailable
    max_pcie_link_width = _unavailable
    pcie_link_speed = _unavailable
    cuda_cores = _unavailable
    architecture = _unavailable
    compute_process_ids = _unavailable
    graphics_process_ids = _unavailable


def make_backend(kind: str = "auto", strict: bool = False) -> BaseDeviceBackend:
    """Instantiate the requested backend.

    ``"auto"`` and ``"nvml"`` try NVML; on failure a
    :class:`NullDeviceBackend` carrying the reason is returned unless
    *strict* is set, in which case the :class:`GpuBackendError` propagates.
    ``"none"`` disables real sampling.  Initialisation is attempted exactly
    once; a failed backend is never retried.
    """
    kind = kind.lower()
    if kind not in ("auto", "nvml", "none"):
        raise ValueError("backend must be one of: auto, nvml, none")

    if kind == "none":
        return NullDeviceBackend("Backend disabled (backend='none').")

    try:
        return NvmlDeviceBackend()
    except GpuBackendError as e:
        if strict:
            raise
        logger.warning("GPU metrics unavailable, emitting zero-device records: %s", e)
        return NullDeviceBackend(f"NVML: {e}")

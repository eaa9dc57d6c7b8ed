"""Shared test doubles.

Nothing here touches a real GPU or spawns a process: devices come from
:class:`ScriptedBackend` and the process table from :class:`FakeChildLister`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Set

import pytest

from gpusidecar.backends import BaseDeviceBackend
from gpusidecar.errors import MetricUnavailableError, ProcessTableError
from gpusidecar.proctree import ChildLister


def device_metrics(**overrides: Any) -> Dict[str, Any]:
    """A healthy device; pass ``metric=FAIL`` to make a query fail."""
    base: Dict[str, Any] = {
        "name": "Tesla T4",
        "brand": "Tesla",
        "fan_speed": 33,
        "encoder_utilization": 0,
        "utilization_rates": (87, 41),
        "memory_info": (4 * 1024**3, 16 * 1024**3),
        "temperature": 65,
        "power_usage": 52_500,
        "enforced_power_limit": 70_000,
        "graphics_clock": 1590,
        "memory_clock": 5000,
        "pcie_link_gen": 3,
        "max_pcie_link_gen": 3,
        "pcie_link_width": 16,
        "max_pcie_link_width": 16,
        "pcie_link_speed": 16,
        "cuda_cores": 2560,
        "architecture": "Turing",
        "compute_process_ids": [],
        "graphics_process_ids": [],
    }
    base.update(overrides)
    return base


#: Marker for a scripted metric failure.
FAIL = object()


class ScriptedBackend(BaseDeviceBackend):
    """Backend whose answers (and failures) are scripted per device."""

    def __init__(
        self,
        devices: Optional[List[Dict[str, Any]]] = None,
        cuda_version: Any = "12.2",
        count: Any = None,
    ) -> None:
        self.devices = devices if devices is not None else [device_metrics()]
        self._cuda_version = cuda_version
        self._count = count
        self.calls: List[str] = []
        self.closed = False

    def _answer(self, handle: int, metric: str) -> Any:
        self.calls.append(metric)
        value = self.devices[handle][metric]
        if value is FAIL:
            raise MetricUnavailableError(f"{metric}: Not Supported")
        return value

    def device_count(self) -> int:
        if self._count is FAIL:
            raise MetricUnavailableError("device count: Uninitialized")
        return len(self.devices) if self._count is None else self._count

    def device_handle(self, index: int) -> Any:
        if self.devices[index].get("handle") is FAIL:
            raise MetricUnavailableError(f"handle for device {index}: GPU is lost")
        return index

    def cuda_driver_version(self) -> str:
        if self._cuda_version is FAIL:
            raise MetricUnavailableError("CUDA driver version: Not Supported")
        return self._cuda_version

    def name(self, handle: Any) -> str:
        return self._answer(handle, "name")

    def brand(self, handle: Any) -> str:
        return self._answer(handle, "brand")

    def fan_speed(self, handle: Any) -> int:
        return self._answer(handle, "fan_speed")

    def encoder_utilization(self, handle: Any) -> int:
        return self._answer(handle, "encoder_utilization")

    def utilization_rates(self, handle: Any):
        return self._answer(handle, "utilization_rates")

    def memory_info(self, handle: Any):
        return self._answer(handle, "memory_info")

    def temperature(self, handle: Any) -> int:
        return self._answer(handle, "temperature")

    def power_usage(self, handle: Any) -> int:
        return self._answer(handle, "power_usage")

    def enforced_power_limit(self, handle: Any) -> int:
        return self._answer(handle, "enforced_power_limit")

    def graphics_clock(self, handle: Any) -> int:
        return self._answer(handle, "graphics_clock")

    def memory_clock(self, handle: Any) -> int:
        return self._answer(handle, "memory_clock")

    def pcie_link_gen(self, handle: Any) -> int:
        return self._answer(handle, "pcie_link_gen")

    def max_pcie_link_gen(self, handle: Any) -> int:
        return self._answer(handle, "max_pcie_link_gen")

    def pcie_link_width(self, handle: Any) -> int:
        return self._answer(handle, "pcie_link_width")

    def max_pcie_link_width(self, handle: Any) -> int:
        return self._answer(handle, "max_pcie_link_width")

    def pcie_link_speed(self, handle: Any) -> int:
        return self._answer(handle, "pcie_link_speed")

    def cuda_cores(self, handle: Any) -> int:
        return self._answer(handle, "cuda_cores")

    def architecture(self, handle: Any) -> str:
        return self._answer(handle, "architecture")

    def compute_process_ids(self, handle: Any) -> List[int]:
        return self._answer(handle, "compute_process_ids")

    def graphics_process_ids(self, handle: Any) -> List[int]:
        return self._answer(handle, "graphics_process_ids")

    def close(self) -> None:
        self.closed = True


class FakeChildLister(ChildLister):
    """In-memory process table: ``{parent: [children]}``."""

    def __init__(self, tree: Optional[Dict[int, List[int]]] = None, failing: Set[int] = frozenset()):
        self.tree = tree or {}
        self.failing = set(failing)
        self.queried: List[int] = []

    def children(self, pid: int) -> List[int]:
        self.queried.append(pid)
        if pid in self.failing:
            raise ProcessTableError(f"cannot list children of {pid}")
        return list(self.tree.get(pid, []))


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()

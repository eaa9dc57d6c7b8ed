"""One sampling pass: query every device and build a flat record.

Record layout
-------------
Keys are flat strings.  Global keys are ``gpu.count``, ``cuda_version``
and ``_sampling_duration_ms`` (the emitter adds ``_timestamp``).  Device
metrics live under ``gpu.<index>.<field>``; when the monitored process
tree is using a device, the attributable subset is repeated under
``gpu.process.<index>.<field>``.

Failure policy
--------------
Metrics are split into *required* and *optional*.  An optional metric
that fails is left out of the record.  A required metric that fails
(including the device handle lookup) discards the whole pass with
:class:`~gpusidecar.errors.SamplingError`; :meth:`MetricSampler.sample_or_fallback`
then substitutes the zero-device record.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from .backends import BaseDeviceBackend
from .errors import GpuBackendError, SamplingError
from .proctree import ChildLister, PgrepChildLister, resolve_process_tree

logger = logging.getLogger(__name__)

Scalar = Union[bool, int, float, str]

#: Fields copied to ``gpu.process.<i>.*`` when the device is attributed.
ATTRIBUTED_FIELDS: Tuple[str, ...] = (
    "gpu",
    "memory",
    "memoryAllocated",
    "memoryAllocatedBytes",
    "temp",
    "powerWatts",
    "enforcedPowerLimitWatts",
    "powerPercent",
)


class SampleRecord:
    """Sparse, insertion-ordered mapping of record keys to JSON scalars.

    Only ``bool``, ``int``, finite ``float`` and ``str`` values are
    accepted; a metric that could not be read is simply never set.
    """

    def __init__(self) -> None:
        self._values: Dict[str, Scalar] = {}

    def set(self, key: str, value: Scalar) -> None:
        if not isinstance(value, (bool, int, float, str)):
            raise TypeError(
                f"record value for {key!r} must be a JSON scalar, got {type(value).__name__}"
            )
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError(f"record value for {key!r} is not finite: {value!r}")
        self._values[key] = value

    def get(self, key: str, default: Optional[Scalar] = None) -> Optional[Scalar]:
        return self._values.get(key, default)

    def as_dict(self) -> Dict[str, Scalar]:
        return dict(self._values)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __getitem__(self, key: str) -> Scalar:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"SampleRecord({self._values!r})"


def fallback_record() -> SampleRecord:
    """The record emitted when no device data could be collected."""
    rec = SampleRecord()
    rec.set("gpu.count", 0)
    return rec


def is_attributed(
    compute_pids: Iterable[int], graphics_pids: Iterable[int], process_set: Set[int]
) -> bool:
    """True iff any pid in *process_set* runs a compute or graphics workload."""
    return not process_set.isdisjoint(compute_pids) or not process_set.isdisjoint(graphics_pids)


def device_process_lists(backend: BaseDeviceBackend, handle: Any) -> Tuple[List[int], List[int]]:
    """``(compute_pids, graphics_pids)`` for a device.

    A list the device cannot report is returned empty; attribution is best
    effort and never fails a pass.
    """
    try:
        compute = list(backend.compute_process_ids(handle))
    except GpuBackendError as e:
        logger.debug("Compute process list unavailable: %s", e)
        compute = []
    try:
        graphics = list(backend.graphics_process_ids(handle))
    except GpuBackendError as e:
        logger.debug("Graphics process list unavailable: %s", e)
        graphics = []
    return compute, graphics


class MetricSampler:
    """Builds one :class:`SampleRecord` per call for all installed devices.

    Parameters
    ----------
    backend:
        Device query facade.
    root_pid:
        Process whose tree the ``gpu.process.*`` keys are attributed to.
        ``0`` is passed through like any other pid.
    child_lister:
        Source of the process table.  Defaults to :class:`PgrepChildLister`.
    clock:
        Monotonic clock used for ``_sampling_duration_ms``.
    """

    def __init__(
        self,
        backend: BaseDeviceBackend,
        root_pid: int = 0,
        child_lister: Optional[ChildLister] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.backend = backend
        self.root_pid = int(root_pid)
        self.child_lister = child_lister if child_lister is not None else PgrepChildLister()
        self.clock = clock
        self._last_error_msg = ""

    def sample(self) -> SampleRecord:
        """Run one pass.

        Raises
        ------
        SamplingError
            If the device count or any required metric of any device
            cannot be read.  No partial record is returned.
        """
        t0 = self.clock()
        b = self.backend
        rec = SampleRecord()

        count = self._required("device count", b.device_count)
        rec.set("gpu.count", count)

        try:
            rec.set("cuda_version", b.cuda_driver_version())
        except GpuBackendError as e:
            logger.debug("CUDA version unavailable: %s", e)

        # Resolved lazily: only needed once some device reports processes.
        process_set: Optional[Set[int]] = None

        for i in range(count):
            handle = self._required(f"handle for device {i}", lambda: b.device_handle(i))

            attributed = False
            compute, graphics = device_process_lists(b, handle)
            if compute or graphics:
                if process_set is None:
                    process_set = resolve_process_tree(self.root_pid, self.child_lister)
                attributed = is_attributed(compute, graphics, process_set)

            fields = self._device_fields(handle)
            for field, value in fields.items():
                rec.set(f"gpu.{i}.{field}", value)

            if attributed:
                for field in ATTRIBUTED_FIELDS:
                    if field in fields:
                        rec.set(f"gpu.process.{i}.{field}", fields[field])

        rec.set("_sampling_duration_ms", (self.clock() - t0) * 1000.0)
        return rec

    def sample_or_fallback(self) -> SampleRecord:
        """Like :meth:`sample`, but a failed pass yields ``{"gpu.count": 0}``."""
        try:
            rec = self.sample()
        except SamplingError as e:
            msg = str(e)
            # Repeats of the same failure go to debug.
            if msg != self._last_error_msg:
                logger.warning("GPU sampling failed, emitting zero-device record: %s", msg)
                self._last_error_msg = msg
            else:
                logger.debug("GPU sampling failed: %s", msg)
            return fallback_record()
        self._last_error_msg = ""
        return rec

    # ------------------------------------------------------------------

    def _required(self, what: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except GpuBackendError as e:
            raise SamplingError(f"required metric failed ({what}): {e}") from e

    def _optional(self, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except GpuBackendError as e:
            logger.debug("Optional metric unavailable: %s", e)
            return None

    def _device_fields(self, h: Any) -> Dict[str, Scalar]:
        b = self.backend
        req = self._required
        opt = self._optional
        out: Dict[str, Scalar] = {}

        out["name"] = req("name", lambda: b.name(h))
        out["brand"] = req("brand", lambda: b.brand(h))

        fan = opt(lambda: b.fan_speed(h))
        if fan is not None:
            out["fanSpeed"] = fan

        enc = opt(lambda: b.encoder_utilization(h))
        if enc is not None:
            out["encoderUtilization"] = enc

        util_gpu, util_mem = req("utilization rates", lambda: b.utilization_rates(h))
        out["gpu"] = util_gpu
        out["memory"] = util_mem

        used, total = req("memory info", lambda: b.memory_info(h))
        out["memoryTotal"] = total
        if total > 0:
            out["memoryAllocated"] = used / total * 100.0
        out["memoryAllocatedBytes"] = used

        out["temp"] = req("temperature", lambda: b.temperature(h))

        power_w = req("power usage", lambda: b.power_usage(h)) / 1000.0
        out["powerWatts"] = power_w

        limit_mw = opt(lambda: b.enforced_power_limit(h))
        if limit_mw is not None:
            limit_w = limit_mw / 1000.0
            out["enforcedPowerLimitWatts"] = limit_w
            if limit_w > 0:
                out["powerPercent"] = power_w / limit_w * 100.0

        out["graphicsClock"] = req("graphics clock", lambda: b.graphics_clock(h))
        out["memoryClock"] = req("memory clock", lambda: b.memory_clock(h))
        out["pcieLinkGen"] = req("PCIe link generation", lambda: b.pcie_link_gen(h))

        speed = opt(lambda: b.pcie_link_speed(h))
        if speed is not None:
            out["pcieLinkSpeed"] = speed * 1_000_000

        out["pcieLinkWidth"] = req("PCIe link width", lambda: b.pcie_link_width(h))
        out["maxPcieLinkGen"] = req("max PCIe link generation", lambda: b.max_pcie_link_gen(h))
        out["maxPcieLinkWidth"] = req("max PCIe link width", lambda: b.max_pcie_link_width(h))
        out["cudaCores"] = req("core count", lambda: b.cuda_cores(h))
        out["architecture"] = req("architecture", lambda: b.architecture(h))

        return out

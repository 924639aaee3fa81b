"""Ksmtuned daemon: drives the kernel KSM sysfs interface for one node."""

import logging
import os
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Optional

from ..config import DEFAULT_KSM_PATH, DEFAULT_MEMINFO_PATH, MONITOR_INTERVAL_SECONDS
from ..errors import KsmtunedError

logger = logging.getLogger(__name__)

# Ksmtuned spec.run values
RUN_STOP = "stop"
RUN_RUN = "run"
RUN_PRUNE = "prune"
RUN_VALUES = (RUN_STOP, RUN_RUN, RUN_PRUNE)

# Values of the sysfs "run" file
KSM_STOP = 0
KSM_RUN = 1
KSM_PRUNE = 2

# Ksmtuned spec.mode values
MODE_STANDARD = "standard"
MODE_HIGH = "high"
MODE_CUSTOMIZED = "customized"
MODES = (MODE_STANDARD, MODE_HIGH, MODE_CUSTOMIZED)

DEFAULT_THRES_COEF = 20

PHASES = {
    KSM_STOP: "Stopped",
    KSM_RUN: "Running",
    KSM_PRUNE: "Pruned",
}


@dataclass(frozen=True)
class KsmtunedParameters:
    """Scan tuning knobs."""
    sleep_msec: int = 20
    boost: int = 0
    decay: int = 0
    min_pages: int = 100
    max_pages: int = 100

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KsmtunedParameters":
        default = cls()
        return cls(
            sleep_msec=int(data.get("sleepMsec", default.sleep_msec)),
            boost=int(data.get("boost", default.boost)),
            decay=int(data.get("decay", default.decay)),
            min_pages=int(data.get("minPages", default.min_pages)),
            max_pages=int(data.get("maxPages", default.max_pages)),
        )

    def validate(self) -> None:
        for name in ("sleep_msec", "boost", "decay", "min_pages", "max_pages"):
            if getattr(self, name) < 0:
                raise KsmtunedError(f"{name} must not be negative")
        if self.min_pages > self.max_pages:
            raise KsmtunedError(
                f"minPages ({self.min_pages}) must not exceed maxPages ({self.max_pages})"
            )


PRESETS = {
    MODE_STANDARD: KsmtunedParameters(sleep_msec=20, boost=0, decay=0, min_pages=100, max_pages=100),
    MODE_HIGH: KsmtunedParameters(sleep_msec=20, boost=300, decay=50, min_pages=100, max_pages=10000),
}


@dataclass(frozen=True)
class KsmtunedSpec:
    """Parsed Ksmtuned specification."""
    run: str = RUN_STOP
    mode: str = MODE_STANDARD
    thres_coef: int = DEFAULT_THRES_COEF
    merge_across_nodes: int = 1
    parameters: KsmtunedParameters = field(default_factory=KsmtunedParameters)

    @classmethod
    def from_crd(cls, crd_object: Dict[str, Any]) -> "KsmtunedSpec":
        """Create KsmtunedSpec from a Ksmtuned object."""
        spec = crd_object.get("spec", {}) or {}
        try:
            return cls(
                run=spec.get("run", RUN_STOP),
                mode=spec.get("mode", MODE_STANDARD),
                thres_coef=int(spec.get("thresCoef", DEFAULT_THRES_COEF)),
                merge_across_nodes=int(spec.get("mergeAcrossNodes", 1)),
                parameters=KsmtunedParameters.from_dict(spec.get("ksmtunedParameters", {}) or {}),
            )
        except (TypeError, ValueError) as e:
            raise KsmtunedError(f"invalid ksmtuned spec: {e}") from e

    def validate(self) -> None:
        if self.run not in RUN_VALUES:
            raise KsmtunedError(f"invalid run {self.run!r}, expected one of {', '.join(RUN_VALUES)}")
        if self.mode not in MODES:
            raise KsmtunedError(f"invalid mode {self.mode!r}, expected one of {', '.join(MODES)}")
        if not 0 <= self.thres_coef <= 100:
            raise KsmtunedError(f"thresCoef must be between 0 and 100, got {self.thres_coef}")
        if self.merge_across_nodes not in (0, 1):
            raise KsmtunedError(f"mergeAcrossNodes must be 0 or 1, got {self.merge_across_nodes}")
        self.effective_parameters().validate()

    def effective_parameters(self) -> KsmtunedParameters:
        """Parameters of the preset for the mode, or the custom ones."""
        return PRESETS.get(self.mode, self.parameters)


@dataclass(frozen=True)
class KsmStats:
    """Counters read from the KSM sysfs directory."""
    run: int = KSM_STOP
    shared: int = 0
    sharing: int = 0
    unshared: int = 0
    volatile: int = 0
    full_scans: int = 0
    stable_node_chains: int = 0
    stable_node_dups: int = 0

    @property
    def phase(self) -> str:
        return PHASES.get(self.run, "Unknown")

    def to_status(self) -> Dict[str, Any]:
        return {
            "ksmdPhase": self.phase,
            "shared": self.shared,
            "sharing": self.sharing,
            "unshared": self.unshared,
            "volatile": self.volatile,
            "fullScans": self.full_scans,
            "stableNodeChains": self.stable_node_chains,
            "stableNodeDups": self.stable_node_dups,
        }


STAT_FILES = {
    "shared": "pages_shared",
    "sharing": "pages_sharing",
    "unshared": "pages_unshared",
    "volatile": "pages_volatile",
    "full_scans": "full_scans",
    "stable_node_chains": "stable_node_chains",
    "stable_node_dups": "stable_node_dups",
}


def read_meminfo(path: str = DEFAULT_MEMINFO_PATH) -> Dict[str, int]:
    """Parse /proc/meminfo into kB values."""
    values = {}
    try:
        with open(path) as f:
            for line in f:
                name, _, rest = line.partition(":")
                parts = rest.split()
                if parts:
                    values[name.strip()] = int(parts[0])
    except (OSError, ValueError) as e:
        raise KsmtunedError(f"error reading {path}: {e}") from e
    return values


class Ksmtuned:
    """
    Adapter over the kernel KSM daemon of one node.

    While the spec asks for run=run, a background loop periodically compares
    free memory with thresCoef and boosts or decays pages_to_scan, starting
    ksmd when memory is short and stopping it otherwise.
    """

    def __init__(
        self,
        ctx,
        node_name: str,
        ksm_path: str = DEFAULT_KSM_PATH,
        meminfo_path: str = DEFAULT_MEMINFO_PATH,
        monitor_interval: float = MONITOR_INTERVAL_SECONDS,
        on_tuned: Optional[Callable[[], None]] = None,
    ):
        self.ctx = ctx
        self.node_name = node_name
        self.ksm_path = ksm_path
        self.meminfo_path = meminfo_path
        self.monitor_interval = monitor_interval
        self.on_tuned = on_tuned

        self._spec = KsmtunedSpec()
        self._lock = threading.RLock()
        self._loop_lock = threading.Lock()
        self._loop_thread: Optional[threading.Thread] = None
        self._loop_stop = threading.Event()
        self._wake = threading.Event()
        self._stopped = False

    def _path(self, name: str) -> str:
        return os.path.join(self.ksm_path, name)

    def read(self, name: str) -> int:
        path = self._path(name)
        try:
            with open(path) as f:
                return int(f.read().strip())
        except (OSError, ValueError) as e:
            raise KsmtunedError(f"error reading {path}: {e}") from e

    def write(self, name: str, value: int) -> None:
        path = self._path(name)
        try:
            with open(path, "w") as f:
                f.write(f"{value}\n")
        except OSError as e:
            raise KsmtunedError(f"error writing {value} to {path}: {e}") from e
        logger.debug(f"Set {name}={value}")

    @property
    def spec(self) -> KsmtunedSpec:
        with self._lock:
            return self._spec

    @property
    def stopped(self) -> bool:
        with self._lock:
            return self._stopped

    @property
    def running(self) -> bool:
        thread = self._loop_thread
        return thread is not None and thread.is_alive()

    def apply(self, spec: KsmtunedSpec) -> None:
        """Validate spec and bring KSM in line with it."""
        spec.validate()
        params = spec.effective_parameters()

        if self.stopped:
            logger.debug(f"Ksmtuned stopped on node {self.node_name}, ignoring spec")
            return

        if spec.run != RUN_RUN:
            self._stop_loop()

        with self._lock:
            if self._stopped:
                return
            previous = self._spec
            self._spec = spec

            if self.read("merge_across_nodes") != spec.merge_across_nodes:
                # merge_across_nodes only changes once every page is unmerged
                self.write("run", KSM_PRUNE)
                self.write("merge_across_nodes", spec.merge_across_nodes)
            self.write("sleep_millisecs", params.sleep_msec)

            if spec.run == RUN_RUN:
                pages = self.read("pages_to_scan")
                bounded = min(max(pages, params.min_pages), params.max_pages)
                if bounded != pages:
                    self.write("pages_to_scan", bounded)
            else:
                self.write("run", KSM_PRUNE if spec.run == RUN_PRUNE else KSM_STOP)

        if spec.run == RUN_RUN:
            self._start_loop()
            self._wake.set()

        if previous != spec:
            logger.info(f"Applied ksmtuned spec for node {self.node_name}: run={spec.run} mode={spec.mode}")

    def tune(self) -> int:
        """Run one tuning pass; return the new pages_to_scan."""
        with self._lock:
            if self._stopped:
                return self.read("pages_to_scan")
            spec = self._spec
            params = spec.effective_parameters()

            meminfo = read_meminfo(self.meminfo_path)
            total = meminfo.get("MemTotal", 0)
            available = meminfo.get("MemAvailable", meminfo.get("MemFree", 0))
            if total <= 0:
                raise KsmtunedError(f"no MemTotal in {self.meminfo_path}")
            free_percent = available * 100 / total

            pages = self.read("pages_to_scan")
            if free_percent < spec.thres_coef:
                pages = min(pages + params.boost, params.max_pages)
                run = KSM_RUN
            else:
                pages = max(pages - params.decay, params.min_pages)
                run = KSM_STOP

            self.write("pages_to_scan", pages)
            if self.read("run") != run:
                self.write("run", run)

        logger.debug(
            f"Tuned ksm: free={free_percent:.1f}% threshold={spec.thres_coef}% "
            f"pages_to_scan={pages} run={run}"
        )
        return pages

    def _start_loop(self) -> None:
        with self._loop_lock:
            if self._stopped:
                return
            if self.running:
                return
            self._loop_stop = threading.Event()
            self._loop_thread = threading.Thread(
                target=self._loop,
                args=(self._loop_stop,),
                name="ksmtuned",
                daemon=True
            )
            self._loop_thread.start()
        logger.info("Started ksmtuned loop")

    def _stop_loop(self) -> None:
        # never called with self._lock held: the loop needs it to finish a pass
        with self._loop_lock:
            thread = self._loop_thread
            if thread is None:
                return
            self._loop_stop.set()
            self._wake.set()
            if thread is not threading.current_thread():
                thread.join(timeout=self.monitor_interval)
            self._loop_thread = None
        logger.info("Stopped ksmtuned loop")

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set() and not self.ctx.cancelled:
            try:
                self.tune()
                if self.on_tuned is not None:
                    self.on_tuned()
            except KsmtunedError as e:
                logger.error(f"Ksmtuned tuning failed: {e}")
            self._wake.wait(self.monitor_interval)
            self._wake.clear()

    def stats(self) -> KsmStats:
        values = {attr: self.read(name) for attr, name in STAT_FILES.items()}
        return KsmStats(run=self.read("run"), **values)

    def stop(self) -> None:
        """
        Stop the tuning loop and ksmd. Safe to call more than once.

        Specs applied after stop are ignored, so events still dispatched by
        the watchers cannot restart ksmd.
        """
        with self._lock:
            self._stopped = True
        self._stop_loop()
        with self._lock:
            self.write("run", KSM_STOP)
            self._spec = replace(self._spec, run=RUN_STOP)
        logger.info(f"Ksmtuned stopped on node {self.node_name}")

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type

import numpy as np

from .errors import ConfigurationError
from .events import EventCounter
from .grid import BoundaryType
from .sandpile import GridValueType, SandPile
from .toppling import TopplingMethod
from .utils import DEFAULT_FEEDS, RandomStreams, RunResult

logger = logging.getLogger(__name__)

# Every dissipation cell that gets populated receives this many grains
PARTICLES_PER_DISS_CELL = 5.0

# Cell heights are binned to this many steps per grain
GRAINS_PER_CELL_RESOLUTION = 1000

COUNTER_NAMES = ("grains_before", "grains_lost", "critical_cells", "grains_per_cell")


@dataclass
class ExperimentConfig:
    system_size: int = 64
    toppling_method: TopplingMethod = TopplingMethod.BTW1987
    boundary_type: Optional[BoundaryType] = None
    timespan: int = 10_000
    no_trials: int = 1
    skip: int = 0
    feeds: Tuple[int, ...] = DEFAULT_FEEDS
    no_pics: int = 0
    dissipative_mode: bool = False
    dissipation_rate: float = 0.1
    dissipation_amount: float = 4.0
    dissipation_cell_capacity: float = 10.0
    dissipation_total: float = 500.0
    dissipation_threshold: float = 4.0
    toppling_threshold: float = -1.0
    count_during_avalanches: bool = False
    run_id: str = ""

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> "ExperimentConfig":
        """
        Build a config from a parameter mapping (e.g. from ``load_params``).
        Enums may be given by member name ("BTW1987") or by value. Unknown
        keys are rejected.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(params) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
        values = dict(params)
        if "toppling_method" in values:
            values["toppling_method"] = _parse_enum(TopplingMethod, values["toppling_method"])
        if values.get("boundary_type") is not None:
            values["boundary_type"] = _parse_enum(BoundaryType, values["boundary_type"])
        if "feeds" in values:
            values["feeds"] = tuple(int(f) for f in values["feeds"])
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["toppling_method"] = self.toppling_method.name
        out["boundary_type"] = None if self.boundary_type is None else self.boundary_type.name
        out["feeds"] = list(self.feeds)
        return out

    def describe(self) -> str:
        lines = [
            "Configuration:",
            f"  System size (one side): {self.system_size}",
            f"  Toppling method: {self.toppling_method}",
            f"  Boundary type: {self.boundary_type or 'default of toppling method'}",
            f"  Time span: {self.timespan} (skip first {self.skip})",
            f"  Number of trials: {self.no_trials}",
            f"  Number of pictures: {self.no_pics}",
            f"  Random feeds: {', '.join(str(f) for f in self.feeds)}",
            f"  Dissipative mode: {self.dissipative_mode} (rate {self.dissipation_rate:g})",
            f"  Dissipation amount: {self.dissipation_amount:g}",
        ]
        if self.toppling_method in (TopplingMethod.ROSSUM2011, TopplingMethod.ROSSUM2011_DISS):
            lines += [
                f"  Dissipation cell capacity: {self.dissipation_cell_capacity:g}",
                f"  Dissipation total: {self.dissipation_total:g}",
                f"  Dissipation threshold: {self.dissipation_threshold:g}",
            ]
        if self.toppling_threshold >= 0:
            lines.append(f"  Toppling threshold: {self.toppling_threshold:g}")
        else:
            lines.append("  Toppling threshold: default of toppling method")
        return "\n".join(lines)


def _parse_enum(enum_cls: Type[Enum], value: Any) -> Enum:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        if value in enum_cls.__members__:
            return enum_cls[value]
        for member in enum_cls:
            if member.value == value:
                return member
    raise ConfigurationError(f"Unknown {enum_cls.__name__}: {value!r}")


class Experiment:
    """
    Drives a sandpile for ``timespan`` ticks per trial and records per-avalanche
    statistics, normalised by the number of cells:

    - grains_before:  grains on the grid just before relaxing
    - grains_lost:    grains that left the grid during the avalanche (+1, so
                      that a fully conservative avalanche shows up as 1/L^2)
    - critical_cells:  change in the number of critical cells (after - before),
                       can be negative
    - grains_per_cell: height of every cell after the avalanche (not normalised)
    """

    def __init__(self, config: ExperimentConfig) -> None:
        self.config = config
        self.streams = RandomStreams.from_feeds(config.feeds)
        self.sandpile = SandPile(
            config.system_size,
            config.toppling_method,
            config.boundary_type or BoundaryType.UNDEFINED,
            self.streams,
        )
        self.n_cells = float(config.system_size * config.system_size)
        self.counters: Dict[str, EventCounter] = {name: EventCounter() for name in COUNTER_NAMES}
        self.snapshots: Dict[str, List[np.ndarray]] = {}
        self.pic_interval = config.timespan // config.no_pics if config.no_pics > 0 else 0
        self._configure()

    def _configure(self) -> None:
        config = self.config
        toppling = self.sandpile.get_toppling()
        if toppling is not None:
            toppling.set_dissipative_mode(config.dissipative_mode)
            toppling.set_dissipation_threshold(config.dissipation_threshold)
            toppling.set_toppling_threshold(config.toppling_threshold)
            toppling.set_cell_capacity(4 * toppling.threshold)
            toppling.set_dissipation_rate(config.dissipation_rate)
            toppling.set_dissipation_amount(config.dissipation_amount)
            toppling.set_counter_during_avalanches(config.count_during_avalanches)

        diss_toppling = self.sandpile.get_diss_toppling()
        if diss_toppling is not None:
            diss_toppling.set_cell_capacity(config.dissipation_cell_capacity)
            self.sandpile.populate(
                int(config.dissipation_total / PARTICLES_PER_DISS_CELL), PARTICLES_PER_DISS_CELL
            )

    def _snapshot(self) -> None:
        kinds = []
        if self.sandpile.grid is not None:
            kinds.append(GridValueType.NCN)
        if self.sandpile.diss_grid is not None:
            kinds.append(GridValueType.DISSIPATION)
        for gvt in kinds:
            key = gvt.name.lower()
            self.snapshots.setdefault(key, []).append(self.sandpile.get_values(gvt))

    def tick(self, t: int) -> int:
        """Advance one time step and return the (measured) avalanche size."""
        sandpile = self.sandpile
        measure = t > self.config.skip

        if sandpile.grid is None:
            avalanche_size = sandpile.relax(measure)
        else:
            sandpile.drive()
            grains_before = sandpile.get_value(GridValueType.HEIGHT_SCALED)
            critical_before = sandpile.get_value(GridValueType.CRITICAL_CELLS)
            avalanche_size = sandpile.relax(measure)
            if avalanche_size > 0:
                grains_after = sandpile.get_value(GridValueType.HEIGHT_SCALED)
                critical_after = sandpile.get_value(GridValueType.CRITICAL_CELLS)
                self.counters["grains_before"].add_event(grains_before / self.n_cells)
                self.counters["grains_lost"].add_event(
                    (grains_before - grains_after + 1) / self.n_cells
                )
                self.counters["critical_cells"].add_event(
                    (critical_after - critical_before) / self.n_cells
                )
                resolution = GRAINS_PER_CELL_RESOLUTION
                for height in sandpile.coarsen(1):
                    self.counters["grains_per_cell"].add_event(
                        int(float(height) * resolution) / resolution
                    )

        if self.pic_interval and t % self.pic_interval == 0:
            self._snapshot()
        return avalanche_size

    def trial(self, index: int) -> None:
        self.sandpile.clear()
        timespan = self.config.timespan
        step = max(1, timespan // 50)
        for t in range(timespan):
            self.tick(t)
            if t % step == 0:
                done = int(50 * t / timespan)
                print(f"\r  trial {index + 1}/{self.config.no_trials} [{'#' * done}{'.' * (50 - done)}]", end="")
        print(f"\r  trial {index + 1}/{self.config.no_trials} [{'#' * 50}]")

    def run(self) -> RunResult:
        config = self.config
        logger.info("Run experiment %s", config.run_id or "(unnamed)")
        start = time.time()
        for index in range(config.no_trials):
            self.trial(index)
        elapsed = time.time() - start

        counters = {name: c.get_events() for name, c in self.counters.items() if len(c)}
        grains = self.sandpile.get_grains_during_avalanches()
        if grains is not None and len(grains):
            counters["grains_during_avalanches"] = grains.get_events()

        snapshots = {name: np.stack(pics) for name, pics in self.snapshots.items()}
        meta = config.to_dict()
        meta["elapsed_seconds"] = elapsed
        meta["boundary_type_used"] = self.sandpile.boundary_type.name
        return RunResult(
            avalanches=self.sandpile.get_avalanches(),
            counters=counters,
            snapshots=snapshots,
            meta=meta,
        )


__all__ = [
    "ExperimentConfig",
    "Experiment",
    "COUNTER_NAMES",
    "GRAINS_PER_CELL_RESOLUTION",
    "PARTICLES_PER_DISS_CELL",
]

# src/sandpile_sim/utils.py
from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .errors import ConfigurationError

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover
    tomllib = None  # type: ignore

# grid sweep, toppling, direction, drive, dissipation, neighbour
DEFAULT_FEEDS = (230895, 9237593, 33480, 233480, 1233480, 334340)
STREAM_NAMES = ("grid", "toppling", "direction", "drive", "dissipation", "neighbour")


@dataclass
class RandomStreams:
    """
    One generator per independent random stream of a simulation.

    Each stream is seeded once from its feed and then consumed for the rest of
    the run, so identical feeds give identical avalanche sequences.
    """

    grid: np.random.Generator
    toppling: np.random.Generator
    direction: np.random.Generator
    drive: np.random.Generator
    dissipation: np.random.Generator
    neighbour: np.random.Generator

    @classmethod
    def from_feeds(cls, feeds: Sequence[int] = DEFAULT_FEEDS) -> "RandomStreams":
        if len(feeds) < len(STREAM_NAMES):
            raise ConfigurationError(
                f"Not enough feeds for random generators: need {len(STREAM_NAMES)}, got {len(feeds)}"
            )
        gens = {name: np.random.default_rng(int(feed)) for name, feed in zip(STREAM_NAMES, feeds)}
        return cls(**gens)

    @staticmethod
    def seed_feeds(seed: int) -> List[int]:
        """Derive six feeds from one seed (for batches of independent runs)."""
        feeds = np.random.SeedSequence(seed).generate_state(len(STREAM_NAMES))
        return [int(f) for f in feeds]

    @classmethod
    def from_seed(cls, seed: int) -> "RandomStreams":
        return cls.from_feeds(cls.seed_feeds(seed))


@dataclass
class RunResult:
    """Common container for sandpile experiment outputs."""

    avalanches: Dict[int, int] = field(default_factory=dict)
    counters: Dict[str, Dict[float, int]] = field(default_factory=dict)
    snapshots: Dict[str, np.ndarray] = field(default_factory=dict)
    meta: Optional[Dict[str, Any]] = None

    def ensure_meta(self) -> Dict[str, Any]:
        if self.meta is None:
            self.meta = {}
        return self.meta


def now_str() -> str:
    return time.strftime("%Y%m%d-%H%M%S")


def _histogram_arrays(events: Dict[Any, int]) -> tuple[np.ndarray, np.ndarray]:
    values = np.array(list(events.keys()), dtype=np.float64)
    counts = np.array(list(events.values()), dtype=np.int64)
    return values, counts


def save_run_result(
    path: str | os.PathLike[str], result: RunResult, *, overwrite: bool = True
) -> None:
    """Serialize a RunResult to a compressed .npz file."""
    out_dir = Path(path).parent
    out_dir.mkdir(parents=True, exist_ok=True)
    out: Dict[str, Any] = {}

    sizes, counts = _histogram_arrays(result.avalanches)
    out["avalanche_sizes"] = sizes.astype(np.int64)
    out["avalanche_counts"] = counts

    for name, events in result.counters.items():
        values, counts = _histogram_arrays(events)
        out[f"counter_{name}_values"] = values
        out[f"counter_{name}_counts"] = counts

    # Snapshots are stacked arrays (n_pics, L*L)
    for name, stack in result.snapshots.items():
        out[f"snapshot_{name}"] = np.asarray(stack, dtype=np.float32)

    out["meta"] = result.meta or {}

    if not overwrite and Path(path).exists():
        raise FileExistsError(f"{path} already exists")
    np.savez_compressed(path, **out)


def load_run_result(path: str | os.PathLike[str]) -> RunResult:
    """Load a .npz written by ``save_run_result``."""
    data = np.load(path, allow_pickle=True)
    avalanches = {
        int(s): int(c) for s, c in zip(data["avalanche_sizes"], data["avalanche_counts"])
    }

    counters: Dict[str, Dict[float, int]] = {}
    snapshots: Dict[str, np.ndarray] = {}
    for key in data.files:
        if key.startswith("counter_") and key.endswith("_values"):
            name = key[len("counter_"):-len("_values")]
            counts = data[f"counter_{name}_counts"]
            counters[name] = {float(v): int(c) for v, c in zip(data[key], counts)}
        elif key.startswith("snapshot_"):
            snapshots[key[len("snapshot_"):]] = data[key]

    meta = None
    if "meta" in data:
        meta_raw = data["meta"]
        if hasattr(meta_raw, "item"):
            try:
                meta = meta_raw.item()
            except ValueError:
                meta = meta_raw
        else:
            meta = meta_raw

    return RunResult(avalanches=avalanches, counters=counters, snapshots=snapshots, meta=meta)


def load_params(path: str | os.PathLike[str]) -> Dict[str, Any]:
    """
    Load simulation parameters from JSON or TOML.
    """
    path = str(path)
    with open(path, "rb") as fh:
        data = fh.read()
    suffix = Path(path).suffix.lower()
    if suffix in {".json", ""}:
        return json.loads(data.decode("utf-8"))
    if suffix in {".toml", ".tml"}:
        if tomllib is None:
            raise RuntimeError("tomllib is unavailable; cannot parse TOML files")
        return tomllib.loads(data.decode("utf-8"))
    raise ValueError(f"Unsupported parameter file format: {suffix}")

"""
Power-law Analysis of Avalanche Size Distributions.

Fits P(s) ~ s^(-tau) to the avalanche histogram of one or more runs:
1. Logarithmic binning of the raw histogram (counts per unit size)
2. Linear regression of log P(s) against log s inside a fitting window
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Dict, List

import numpy as np
from matplotlib import pyplot as plt
from scipy.stats import linregress

SRC = Path(__file__).resolve().parents[1]
if str(SRC) not in sys.path:
    sys.path.append(str(SRC))

from sandpile_sim import utils  # type: ignore[import]


def merge_histograms(histograms: List[Dict[int, int]]) -> Dict[int, int]:
    merged: Dict[int, int] = {}
    for hist in histograms:
        for size, count in hist.items():
            merged[size] = merged.get(size, 0) + count
    return merged


def log_binned_distribution(
    avalanches: Dict[int, int], bins_per_decade: int = 10
) -> tuple[np.ndarray, np.ndarray]:
    """
    Probability density of avalanche sizes on logarithmic bins.

    Returns the geometric bin centres and the density (count / bin width /
    total). Empty bins are dropped.
    """
    if not avalanches:
        raise ValueError("No avalanches recorded. Cannot build a distribution.")

    sizes = np.array(list(avalanches.keys()), dtype=np.float64)
    counts = np.array(list(avalanches.values()), dtype=np.float64)
    if np.any(sizes <= 0):
        raise ValueError("Avalanche sizes must be positive.")

    s_max = sizes.max()
    n_bins = max(1, int(np.ceil(np.log10(s_max + 1) * bins_per_decade)))
    edges = np.logspace(0, np.log10(s_max + 1), n_bins + 1)
    hist, _ = np.histogram(sizes, bins=edges, weights=counts)

    widths = np.diff(edges)
    centres = np.sqrt(edges[:-1] * edges[1:])
    density = hist / widths / counts.sum()

    valid = density > 0
    return centres[valid], density[valid]


def fit_exponent(
    centres: np.ndarray,
    density: np.ndarray,
    s_min: float = 1.0,
    s_max: float | None = None,
) -> tuple[float, float, float]:
    """
    Fit log P(s) = -tau * log s + C over ``s_min <= s <= s_max``.

    Returns:
        Tuple of (tau, r_squared, intercept)
    """
    mask = centres >= s_min
    if s_max is not None:
        mask &= centres <= s_max
    if mask.sum() < 3:
        raise ValueError("Too few bins inside the fitting window.")

    slope, intercept, r_value, p_value, std_err = linregress(
        np.log(centres[mask]), np.log(density[mask])
    )
    return -slope, r_value**2, intercept


def analyse_runs(
    paths: List[str],
    output_path: str | Path | None = None,
    s_min: float = 1.0,
    s_max: float | None = None,
    show_plot: bool = False,
) -> float:
    """
    Load runs, fit the avalanche exponent and plot the distribution.
    """
    histograms = []
    for path in paths:
        print(f"Loading {path}...")
        result = utils.load_run_result(path)
        histograms.append(result.avalanches)
    avalanches = merge_histograms(histograms)
    print(f"Avalanches found: {sum(avalanches.values()):,} (largest {max(avalanches) if avalanches else 0})")

    centres, density = log_binned_distribution(avalanches)
    tau, r_squared, intercept = fit_exponent(centres, density, s_min=s_min, s_max=s_max)

    print("\n" + "=" * 60)
    print("AVALANCHE SIZE DISTRIBUTION")
    print("=" * 60)
    print(f"Exponent (tau): {tau:.5f}")
    print(f"R² (Linearity): {r_squared:.6f}")
    print(f"Fitting Range: s = {s_min:g} to {s_max if s_max is not None else centres[-1]:g}")
    print("=" * 60)

    fig, ax = plt.subplots(figsize=(7, 6))
    ax.loglog(centres, density, "o", color="black", alpha=0.6, label="Simulation Data")
    fit_s = centres[centres >= s_min]
    if s_max is not None:
        fit_s = fit_s[fit_s <= s_max]
    ax.loglog(fit_s, np.exp(intercept) * fit_s ** (-tau), color="red", linestyle="--", linewidth=2,
              label=f"Fit: $\\tau = {tau:.3f}$")
    ax.set_xlabel(r"$s$")
    ax.set_ylabel(r"$P(s)$")
    ax.set_title(f"Avalanche sizes: $P(s) \\sim s^{{-{tau:.2f}}}$ (R² = {r_squared:.4f})")
    ax.legend()
    ax.grid(True, which="both", linestyle="--", alpha=0.4)
    plt.tight_layout()

    if output_path is None:
        first = Path(paths[0])
        output_path = first.with_name(first.stem + "_avalanches.png")
    else:
        output_path = Path(output_path)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(output_path, dpi=150, bbox_inches="tight")
    print(f"\nFigure saved to: {output_path}")

    if show_plot:
        plt.show()
    else:
        plt.close()
    return tau


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Fit the avalanche size exponent of sandpile runs."
    )
    parser.add_argument("files", nargs="+", help="Paths to .npz run results (histograms are merged)")
    parser.add_argument("--s-min", type=float, default=1.0, help="Lower end of the fitting window")
    parser.add_argument("--s-max", type=float, default=None, help="Upper end of the fitting window")
    parser.add_argument(
        "--out",
        type=str,
        help="Output path for the figure (default: <first input>_avalanches.png)"
    )
    parser.add_argument(
        "--show",
        action="store_true",
        help="Display plot interactively"
    )
    args = parser.parse_args()

    analyse_runs(args.files, output_path=args.out, s_min=args.s_min, s_max=args.s_max, show_plot=args.show)


if __name__ == "__main__":
    main()

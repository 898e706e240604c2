# src/scripts/plot_avalanches.py
import argparse
import os
import sys
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

SRC = Path(__file__).resolve().parents[1]
if str(SRC) not in sys.path:
    sys.path.append(str(SRC))

from sandpile_sim import utils  # type: ignore[import]


def format_title(meta):
    """
    Format a title string with important statistics from metadata.

    Args:
        meta: Dictionary containing run metadata

    Returns:
        Formatted title string
    """
    if not meta:
        return None

    parts = [
        f"Method={meta.get('toppling_method', '?')}",
        f"L={meta.get('system_size', '?')}",
        f"T={meta.get('timespan', '?')}",
    ]
    boundary = meta.get("boundary_type_used")
    if boundary is not None:
        parts.append(f"BC={boundary}")
    seed = meta.get("seed")
    if seed is not None:
        parts.append(f"seed={seed}")
    return " | ".join(parts)


def plot_distribution(avalanches, ax, color="black"):
    """Raw avalanche size histogram on log-log axes."""
    if not avalanches:
        ax.text(0.5, 0.5, "no avalanches", ha="center", va="center", transform=ax.transAxes)
        return
    sizes = np.array(sorted(avalanches), dtype=np.float64)
    counts = np.array([avalanches[s] for s in sorted(avalanches)], dtype=np.float64)
    ax.loglog(sizes, counts / counts.sum(), ".", color=color, alpha=0.5)
    ax.set_xlabel(r"$s$")
    ax.set_ylabel(r"$P(s)$")
    ax.grid(True, which="both", linestyle="--", alpha=0.4)


def plot_snapshot(values, ax, title, cmap="viridis"):
    """Show one row-major snapshot as an L x L image."""
    side = int(round(np.sqrt(values.size)))
    if side * side != values.size:
        raise ValueError(f"Snapshot of {values.size} values is not square")
    im = ax.imshow(values.reshape(side, side), interpolation="nearest", origin="upper", cmap=cmap)
    ax.set_title(title)
    ax.set_aspect("equal")
    ax.axis("off")
    return im


def render(result, output=None, frame=-1, dpi=150):
    """
    Avalanche distribution next to the chosen frame of every stored snapshot
    series (non-critical neighbourhood, dissipation field).
    """
    names = sorted(result.snapshots)
    fig, axes = plt.subplots(1, 1 + len(names), figsize=(5 * (1 + len(names)), 5))
    axes = np.atleast_1d(axes)

    plot_distribution(result.avalanches, axes[0])
    axes[0].set_title("Avalanche sizes")

    for ax, name in zip(axes[1:], names):
        stack = result.snapshots[name]
        n_frames = stack.shape[0]
        index = frame if frame >= 0 else n_frames + frame
        im = plot_snapshot(stack[index], ax, f"{name} (frame {index + 1}/{n_frames})")
        fig.colorbar(im, ax=ax, fraction=0.046, pad=0.04)

    title = format_title(result.meta)
    if title:
        fig.suptitle(title)
    plt.tight_layout()

    if output:
        os.makedirs(os.path.dirname(output) if os.path.dirname(output) else ".", exist_ok=True)
        plt.savefig(output, dpi=dpi, bbox_inches="tight")
        print(f"Saved figure to {output}")

    plt.close(fig)


def main():
    parser = argparse.ArgumentParser(
        description="Plot the avalanche distribution and snapshots of a saved sandpile run"
    )
    parser.add_argument(
        "file",
        nargs="?",
        default="results/run.npz",
        help="Path to .npz run result"
    )
    parser.add_argument(
        "--frame",
        type=int,
        default=-1,
        help="Snapshot frame to show (default: last)"
    )
    parser.add_argument(
        "--out",
        type=str,
        default=None,
        help="Output image path (default: <input>.png)"
    )
    parser.add_argument("--dpi", type=int, default=150, help="Output DPI")
    args = parser.parse_args()

    result = utils.load_run_result(args.file)
    output = args.out or str(Path(args.file).with_suffix(".png"))
    render(result, output=output, frame=args.frame, dpi=args.dpi)


if __name__ == "__main__":
    main()

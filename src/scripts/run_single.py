#!/usr/bin/env python3
"""
Single Sandpile Experiment Runner

Runs one sandpile experiment (one or more trials of the drive/relax cycle)
and stores the avalanche histogram, counters and snapshots in a .npz file.
Parameters come from the command line or from a JSON/TOML file.
"""

import argparse
import logging
import sys
import time
from pathlib import Path

# Add src directory to path
SRC = Path(__file__).resolve().parents[1]
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from sandpile_sim import BoundaryType, Experiment, ExperimentConfig, TopplingMethod, utils


def build_config(args) -> ExperimentConfig:
    """Parameter file first, then explicit command line options on top."""
    params = utils.load_params(args.config) if args.config else {}
    overrides = {
        "toppling_method": args.method,
        "system_size": args.L,
        "boundary_type": args.boundary,
        "timespan": args.timespan,
        "no_trials": args.trials,
        "skip": args.skip,
        "no_pics": args.pics,
        "run_id": args.run_id,
    }
    params.update({k: v for k, v in overrides.items() if v is not None})
    if args.seed is not None:
        params["feeds"] = utils.RandomStreams.seed_feeds(args.seed)
    return ExperimentConfig.from_dict(params)


def main():
    parser = argparse.ArgumentParser(
        description="Run a single sandpile experiment",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="JSON or TOML parameter file",
    )
    parser.add_argument(
        "--method",
        choices=[m.name for m in TopplingMethod if m != TopplingMethod.UNDEFINED],
        default=None,
        help="Toppling method (default: BTW1987)",
    )
    parser.add_argument(
        "--L",
        type=int,
        default=None,
        help="Number of cells along one side of the grid",
    )
    parser.add_argument(
        "--boundary",
        choices=[b.name for b in BoundaryType if b != BoundaryType.UNDEFINED],
        default=None,
        help="Boundary type (default: the toppling method's own)",
    )
    parser.add_argument("--timespan", type=int, default=None, help="Grains dropped per trial")
    parser.add_argument("--trials", type=int, default=None, help="Number of trials")
    parser.add_argument("--skip", type=int, default=None, help="Unmeasured ticks at the start of a trial")
    parser.add_argument("--pics", type=int, default=None, help="Snapshots per trial")
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Derive all random feeds from this seed (default: historical feeds)",
    )
    parser.add_argument("--run-id", type=str, default=None, help="Name stored with the result")
    parser.add_argument(
        "--out",
        type=str,
        default=None,
        help="Output .npz file path (auto-generated if not provided)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )

    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    config = build_config(args)
    print(config.describe())
    print()

    start_time = time.time()
    experiment = Experiment(config)
    result = experiment.run()
    elapsed_time = time.time() - start_time

    if args.out is None:
        timestamp = utils.now_str()
        output_dir = Path("results")
        output_dir.mkdir(exist_ok=True)
        args.out = str(
            output_dir
            / f"{config.toppling_method.name}_L{config.system_size}_T{config.timespan}_{timestamp}.npz"
        )

    utils.save_run_result(args.out, result)

    n_avalanches = sum(result.avalanches.values())
    print(f"\nSimulation completed successfully!")
    print(f"   Time elapsed: {elapsed_time:.2f} seconds")
    print(f"   Avalanches recorded: {n_avalanches}")
    if result.avalanches:
        print(f"   Largest avalanche: {max(result.avalanches)}")
    print(f"   Output saved to: {args.out}")

    return 0


if __name__ == "__main__":
    sys.exit(main())

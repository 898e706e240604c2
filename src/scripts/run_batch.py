#!/usr/bin/env python3
"""
Batch Sandpile Experiment Runner

Runs the same experiment for several system sizes and seeds in parallel,
for finite-size scaling of the avalanche distribution.
"""

import argparse
import json
import logging
import sys
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Dict

# Add src directory to path
SRC = Path(__file__).resolve().parents[1]
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from sandpile_sim import Experiment, ExperimentConfig, TopplingMethod, utils


def run_single_experiment(
    params: Dict[str, Any], L: int, seed: int, output_path: str
) -> Dict[str, Any]:
    """
    Run a single experiment and save it.

    Called in parallel by ProcessPoolExecutor, so it has to live at module level.
    """
    values = dict(params)
    values["system_size"] = L
    values["feeds"] = utils.RandomStreams.seed_feeds(seed)
    values["run_id"] = f"L{L}_S{seed}"
    config = ExperimentConfig.from_dict(values)

    result = Experiment(config).run()
    result.ensure_meta()["seed"] = seed
    utils.save_run_result(output_path, result)

    return {
        "output_path": output_path,
        "L": L,
        "seed": seed,
        "avalanches": int(sum(result.avalanches.values())),
        "largest": int(max(result.avalanches)) if result.avalanches else 0,
        "success": True,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Run a batch of sandpile experiments",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--method",
        choices=[m.name for m in TopplingMethod if m != TopplingMethod.UNDEFINED],
        required=True,
        help="Toppling method",
    )
    parser.add_argument(
        "--sizes",
        type=int,
        nargs="+",
        required=True,
        help="System sizes L to simulate",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=1,
        help="Number of seeds per system size (default: 1)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="JSON or TOML parameter file shared by all runs",
    )
    parser.add_argument(
        "--jobs",
        type=int,
        default=1,
        help="Number of parallel processes (default: 1)",
    )
    parser.add_argument(
        "--base-seed",
        type=int,
        default=42,
        help="Base seed (each run gets base_seed + index) (default: 42)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )

    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    params = utils.load_params(args.config) if args.config else {}
    params["toppling_method"] = args.method

    timestamp = utils.now_str()
    size_tag = "-".join(str(L) for L in args.sizes)
    batch_dir = Path("results") / "batches" / f"{args.method}_L{size_tag}_S{args.base_seed}_{timestamp}"
    batch_dir.mkdir(parents=True, exist_ok=True)

    manifest = {
        "method": args.method,
        "sizes": args.sizes,
        "count": args.count,
        "base_seed": args.base_seed,
        "jobs": args.jobs,
        "timestamp": timestamp,
        "params": params,
    }

    manifest_path = batch_dir / "manifest.json"
    with open(manifest_path, "w") as f:
        json.dump(manifest, f, indent=2)

    total = len(args.sizes) * args.count
    print(f"Batch started:")
    print(f"  Method: {args.method}")
    print(f"  System sizes: {args.sizes}")
    print(f"  Runs per size: {args.count}")
    print(f"  Parallel jobs: {args.jobs}")
    print(f"  Output directory: {batch_dir}")
    print()

    tasks = []
    for L in args.sizes:
        for i in range(args.count):
            seed = args.base_seed + i
            output_path = str(batch_dir / f"L{L}_S{seed}.npz")
            tasks.append((params, L, seed, output_path))

    start_time = time.time()
    results = []
    failed = []

    with ProcessPoolExecutor(max_workers=args.jobs) as executor:
        future_to_task = {
            executor.submit(run_single_experiment, *task): task
            for task in tasks
        }

        completed = 0
        for future in as_completed(future_to_task):
            completed += 1
            task = future_to_task[future]
            try:
                result = future.result()
                results.append(result)
                print(
                    f"  [{completed}/{total}] Completed: L={result['L']}, seed={result['seed']}, "
                    f"avalanches={result['avalanches']}"
                )
            except Exception as e:
                failed.append({"L": task[1], "seed": task[2], "error": str(e)})
                print(f"  [{completed}/{total}] FAILED: L={task[1]}, seed={task[2]} - {e}")

    elapsed_time = time.time() - start_time

    manifest["results"] = {
        "total": total,
        "successful": len(results),
        "failed": len(failed),
        "elapsed_seconds": elapsed_time,
    }
    manifest["runs"] = results
    if failed:
        manifest["failures"] = failed

    with open(manifest_path, "w") as f:
        json.dump(manifest, f, indent=2)

    print()
    print("=" * 60)
    print("Batch completed!")
    print(f"  Successful: {len(results)}/{total}")
    print(f"  Failed: {len(failed)}/{total}")
    print(f"  Total time: {elapsed_time:.2f} seconds")
    print(f"  Manifest: {manifest_path}")
    print("=" * 60)

    return 0 if len(failed) == 0 else 1


if __name__ == "__main__":
    sys.exit(main())

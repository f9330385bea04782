#!/usr/bin/env python3
"""Plot aggregate throughput vs batch width from the summary.json files of a results dir."""
from __future__ import annotations

import argparse
from collections import defaultdict
from pathlib import Path

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt

from tokbench.engine.results import load_summaries


def main() -> None:
    parser = argparse.ArgumentParser(description="Throughput vs batch width, one line per variant/model/dataset")
    parser.add_argument("results_dir", type=Path)
    parser.add_argument("--out", type=Path, default=Path("throughput.png"))
    args = parser.parse_args()

    summaries = load_summaries(args.results_dir)
    if not summaries:
        print(f"No summary.json files under {args.results_dir}")
        return

    series: dict[str, list[tuple[int, float]]] = defaultdict(list)
    for s in summaries:
        label = f"{s['variant']} / {Path(s['model']).stem} / {s['dataset']}"
        series[label].append((s["batch"], s["throughput"]))

    plt.figure()
    for label, points in sorted(series.items()):
        points.sort()
        plt.plot([p[0] for p in points], [p[1] for p in points], marker="o", label=label)

    plt.xlabel("batch width")
    plt.ylabel("tokens/sec (prompt + completion)")
    plt.title("Aggregate throughput vs batch width")
    plt.legend(fontsize="small")
    plt.savefig(args.out, bbox_inches="tight")
    plt.close()

    print(f"Plot saved to {args.out}")


if __name__ == "__main__":
    main()

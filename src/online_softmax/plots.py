"""Plotting utilities for softmax benchmark results."""

from typing import List, Optional

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns

from .bench import BenchResult
from .column import Column


def plot_latency(results: List[BenchResult], title: str = "Softmax latency", path: Optional[str] = None):
    """Latency and throughput vs column size, one line per algorithm.

    Args:
        results: Rows from bench.benchmark_softmax.
        title:   Figure title.
        path:    If given, the figure is also saved there.

    Returns:
        The matplotlib Figure.
    """
    sns.set_theme(style="whitegrid", palette="muted", font_scale=1.1)
    pal = sns.color_palette("deep")

    algorithms = list(dict.fromkeys(r.algorithm for r in results))

    fig, axes = plt.subplots(1, 2, figsize=(14, 5))
    fig.suptitle(title, fontsize=13, fontweight="bold")

    for k, name in enumerate(algorithms):
        rows = sorted((r for r in results if r.algorithm == name), key=lambda r: r.size)
        sizes = [r.size for r in rows]

        # Latency with min/max band
        mean = np.array([r.timing.mean_ms for r in rows])
        lo = np.array([r.timing.min_ms for r in rows])
        hi = np.array([r.timing.max_ms for r in rows])
        axes[0].plot(sizes, mean, marker="o", color=pal[k % len(pal)], label=name)
        axes[0].fill_between(sizes, lo, hi, color=pal[k % len(pal)], alpha=0.15)

        axes[1].plot(sizes, [r.throughput_melems for r in rows], marker="o",
                     color=pal[k % len(pal)], label=name)

    axes[0].set_xscale("log")
    axes[0].set_yscale("log")
    axes[0].set_xlabel("Column size N")
    axes[0].set_ylabel("Latency (ms)")
    axes[0].set_title("Latency (mean, min–max band)")
    axes[0].legend()

    axes[1].set_xscale("log")
    axes[1].set_xlabel("Column size N")
    axes[1].set_ylabel("Throughput (M elements/s)")
    axes[1].set_title("Throughput")
    axes[1].legend()

    plt.tight_layout()
    if path is not None:
        fig.savefig(path, dpi=150)
    return fig


def plot_distributions(logits: Column, title: str = "Softmax outputs", path: Optional[str] = None):
    """Bar chart of the input logits next to each algorithm's output."""
    sns.set_theme(style="whitegrid", palette="muted", font_scale=1.1)
    pal = sns.color_palette("deep")

    outputs = {
        "two_pass": logits.softmax_two_pass(),
        "two_pass_unrolled": logits.softmax_two_pass_unrolled(),
        "online": logits.softmax_online(),
    }

    idx = np.arange(len(logits))
    width = 0.8 / len(outputs)

    fig, axes = plt.subplots(1, 2, figsize=(12, 4))
    fig.suptitle(title, fontsize=13, fontweight="bold")

    axes[0].bar(idx, logits.to_numpy(), color=pal[7])
    axes[0].set_xlabel("Index i")
    axes[0].set_ylabel("$x_i$")
    axes[0].set_title("Logits")

    for k, (name, out) in enumerate(outputs.items()):
        axes[1].bar(idx + k * width, out.to_numpy(), width=width, color=pal[k], label=name)
        out.release()
    axes[1].set_xlabel("Index i")
    axes[1].set_ylabel("$p_i$")
    axes[1].set_title("softmax(x)")
    axes[1].legend(fontsize=9)

    plt.tight_layout()
    if path is not None:
        fig.savefig(path, dpi=150)
    return fig

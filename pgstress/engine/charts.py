from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns

from .controller import RunReport

LOGGER = logging.getLogger("pgstress.engine.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 150
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

THROUGHPUT_COLOR = "#2E86AB"
LATENCY_COLORS = {
    "avg_latency_ms": "#2E86AB",
    "p95_ms": "#F18F01",
    "p99_ms": "#C73E1D",
}
ERROR_COLOR = "#A23B72"
FAILURE_COLOR = "#C73E1D"


def render_report_chart(report: RunReport, chart_path: Path, title: str = "Progressive DB Stress Test") -> Path | None:
    """Throughput, latency and error rate against concurrency, one panel each."""
    df = report.to_dataframe()
    if df.empty:
        LOGGER.warning("No stage results available for chart %s", chart_path)
        return None

    concurrency = df["concurrency"].to_numpy()
    fig, (ax_tps, ax_latency, ax_errors) = plt.subplots(3, 1, figsize=(10, 11), sharex=True)

    ax_tps.plot(concurrency, df["throughput"], marker="o", linewidth=2.5, markersize=7, color=THROUGHPUT_COLOR)
    ax_tps.set_ylabel("Throughput (ops/sec)", fontweight="semibold")
    ax_tps.set_title(title, fontweight="bold", pad=15)

    for column, color in LATENCY_COLORS.items():
        label = "avg" if column == "avg_latency_ms" else column.replace("_ms", "")
        ax_latency.plot(concurrency, df[column], marker="o", linewidth=2, color=color, label=label)
    ax_latency.set_ylabel("Latency (ms)", fontweight="semibold")
    ax_latency.set_ylim(bottom=0)
    ax_latency.legend(loc="upper left", frameon=True, fancybox=True)

    ax_errors.bar(
        concurrency,
        df["error_rate"].to_numpy() * 100,
        width=_bar_width(concurrency),
        color=ERROR_COLOR,
        alpha=0.8,
        edgecolor="white",
    )
    ax_errors.set_ylabel("Error rate (%)", fontweight="semibold")
    ax_errors.set_xlabel("Concurrency", fontweight="semibold")
    ax_errors.set_ylim(bottom=0)

    failed = report.failed_concurrency
    if failed is not None:
        for ax in (ax_tps, ax_latency, ax_errors):
            ax.axvline(failed, color=FAILURE_COLOR, linestyle="--", linewidth=1.5, alpha=0.8)
        ax_tps.annotate(
            f"critical failure @ {failed}",
            xy=(failed, ax_tps.get_ylim()[1]),
            xytext=(-6, -14),
            textcoords="offset points",
            ha="right",
            color=FAILURE_COLOR,
            fontweight="semibold",
        )

    for ax in (ax_tps, ax_latency, ax_errors):
        ax.grid(True, alpha=0.3, linestyle="--")
        ax.spines["top"].set_visible(False)
        ax.spines["right"].set_visible(False)

    plt.tight_layout()
    chart_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)
    return chart_path


def _bar_width(concurrency: np.ndarray) -> float:
    if len(concurrency) < 2:
        return max(float(concurrency[0]) * 0.5, 1.0) if len(concurrency) else 1.0
    return float(np.min(np.diff(np.sort(concurrency)))) * 0.6 or 1.0

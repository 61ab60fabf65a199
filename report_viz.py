"""Static charts for generated reports (PNG via matplotlib/seaborn)."""

from __future__ import annotations

from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import pandas as pd  # noqa: E402
import seaborn as sns  # noqa: E402

WEEKDAY_LABELS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
MONTH_LABELS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
                "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


def heatmap_frame(heatmap: list[list[int]]) -> pd.DataFrame:
    """The 7x24 weekday/hour grid as a labelled DataFrame."""
    return pd.DataFrame(heatmap, index=WEEKDAY_LABELS[:len(heatmap)], columns=range(24))


def monthly_frame(report: dict) -> pd.DataFrame:
    rows = report.get("monthly_top_friends") or []
    df = pd.DataFrame(rows, columns=["month", "display_name", "message_count"])
    df["label"] = df["month"].map(lambda m: MONTH_LABELS[int(m) - 1])
    return df


def plot_activity_heatmap(heatmap: list[list[int]], path: str | Path) -> Path:
    """Save the weekday x hour activity heatmap to *path*."""
    path = Path(path)
    df = heatmap_frame(heatmap)

    plt.figure(figsize=(15, 5))
    sns.heatmap(df, cmap="YlOrRd", linewidths=0.5, cbar_kws={"label": "Messages"})
    plt.title("Activity by Weekday and Hour", fontsize=14, pad=20)
    plt.xlabel("Hour of Day", fontsize=12)
    plt.ylabel("Weekday", fontsize=12)
    plt.tight_layout()
    plt.savefig(path, dpi=150, bbox_inches="tight")
    plt.close()
    return path


def plot_monthly_top_friends(report: dict, path: str | Path) -> Path:
    """Save a bar chart of each month's top contact to *path*."""
    path = Path(path)
    df = monthly_frame(report)

    plt.figure(figsize=(15, 8))
    ax = sns.barplot(x="label", y="message_count", data=df, color="skyblue")
    for i, row in df.iterrows():
        if pd.notna(row["display_name"]):
            ax.annotate(
                row["display_name"],
                (i, row["message_count"]),
                ha="center", va="bottom", fontsize=9, rotation=45,
            )
    year = report.get("year") or "All Time"
    plt.title(f"Top Contact per Month ({year})", fontsize=14, pad=20)
    plt.xlabel("Month", fontsize=12)
    plt.ylabel("Messages with Top Contact", fontsize=12)
    plt.grid(True, axis="y", alpha=0.3)
    plt.tight_layout()
    plt.savefig(path, dpi=150, bbox_inches="tight")
    plt.close()
    return path

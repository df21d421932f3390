"""Shape funnel query results returned by the executor."""

import math
from typing import List, NamedTuple, Optional

import pandas as pd

from queries.funnel_timing import TOTAL_STEP


class TimingRow(NamedTuple):
    from_step: int
    to_step: int
    from_url: Optional[str]
    to_url: Optional[str]
    avg_seconds: Optional[float]
    median_seconds: Optional[float]

    @property
    def is_total(self) -> bool:
        return self.from_step == TOTAL_STEP


def _rounded(value) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    return float(round(float(value)))


def to_funnel_frame(df: pd.DataFrame) -> pd.DataFrame:
    """
    Drop-off table from funnel count rows.

    Args:
        df: Rows with step_number, step and count columns

    Returns:
        DataFrame with step (0-based), label, count, percentage_of_next
        and dropoff_percentage; percentages are None for the last step or
        when a step has no sessions
    """
    if df.empty:
        return pd.DataFrame(columns=["step", "label", "count", "percentage_of_next", "dropoff_percentage"])

    ordered = df.sort_values("step_number").reset_index(drop=True)
    counts = ordered["count"].fillna(0).astype(int).tolist()

    percentage_of_next = []
    for index, count in enumerate(counts):
        if index + 1 < len(counts) and count > 0:
            percentage_of_next.append(int(round(counts[index + 1] / count * 100)))
        else:
            percentage_of_next.append(None)

    return pd.DataFrame({
        "step": ordered["step_number"].astype(int) - 1,
        "label": ordered["step"],
        "count": counts,
        "percentage_of_next": pd.Series(percentage_of_next, dtype="object"),
        "dropoff_percentage": pd.Series(
            [None if p is None else 100 - p for p in percentage_of_next], dtype="object"
        ),
    })


def to_timing_rows(df: pd.DataFrame) -> List[TimingRow]:
    """TimingRow per result row, seconds rounded to whole numbers."""
    rows = []
    for record in df.to_dict("records"):
        rows.append(TimingRow(
            from_step=int(record["from_step"]),
            to_step=int(record["to_step"]),
            from_url=record.get("from_url"),
            to_url=record.get("to_url"),
            avg_seconds=_rounded(record.get("avg_seconds")),
            median_seconds=_rounded(record.get("median_seconds")),
        ))
    return rows


def format_duration(seconds: Optional[float]) -> str:
    """Human readable duration, e.g. '1h 2m 3s'."""
    if seconds is None or (isinstance(seconds, float) and math.isnan(seconds)):
        return "-"

    total = int(round(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)

    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def to_timing_frame(rows: List[TimingRow]) -> pd.DataFrame:
    """Display table for timing rows: step pairs first, the full funnel last."""
    ordered = sorted(rows, key=lambda r: (r.is_total, r.from_step))
    return pd.DataFrame({
        "steps": ["Total" if r.is_total else f"{r.from_step + 1} → {r.to_step + 1}" for r in ordered],
        "from_url": [r.from_url for r in ordered],
        "to_url": [r.to_url for r in ordered],
        "average": [format_duration(r.avg_seconds) for r in ordered],
        "median": [format_duration(r.median_seconds) for r in ordered],
    }, columns=["steps", "from_url", "to_url", "average", "median"])

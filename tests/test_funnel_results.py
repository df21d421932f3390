"""
Tests for shaping funnel query results.
"""
import pandas as pd
import pytest

from queries.funnel_results import format_duration, to_funnel_frame, to_timing_frame, to_timing_rows


def test_funnel_frame_orders_steps_and_computes_dropoff():
    df = pd.DataFrame({
        "step_number": [2, 1, 3],
        "step": ["2: /b", "1: /a", "3: /c"],
        "count": [50, 100, 0],
    })
    frame = to_funnel_frame(df)

    assert frame["step"].tolist() == [0, 1, 2]
    assert frame["label"].tolist() == ["1: /a", "2: /b", "3: /c"]
    assert frame["count"].tolist() == [100, 50, 0]
    assert frame["percentage_of_next"].tolist() == [50, 0, None]
    assert frame["dropoff_percentage"].tolist() == [50, 100, None]


def test_funnel_frame_handles_empty_steps():
    df = pd.DataFrame({"step_number": [1, 2], "step": ["1: /a", "2: /b"], "count": [0, 0]})
    assert to_funnel_frame(df)["percentage_of_next"].tolist() == [None, None]


def test_funnel_frame_empty_result():
    frame = to_funnel_frame(pd.DataFrame())
    assert frame.empty
    assert list(frame.columns) == ["step", "label", "count", "percentage_of_next", "dropoff_percentage"]


def test_timing_rows():
    df = pd.DataFrame({
        "from_step": [-1, 0],
        "to_step": [1, 1],
        "from_url": ["Total", "/a"],
        "to_url": ["Total", "/b"],
        "avg_seconds": [12.4, 30.6],
        "median_seconds": [None, 30.0],
    })
    total, pair = to_timing_rows(df)

    assert total.is_total
    assert total.avg_seconds == 12.0
    assert total.median_seconds is None
    assert not pair.is_total
    assert (pair.from_url, pair.to_url) == ("/a", "/b")
    assert pair.avg_seconds == 31.0


@pytest.mark.parametrize("seconds,expected", [
    (None, "-"),
    (float("nan"), "-"),
    (5, "5s"),
    (125, "2m 5s"),
    (3725.4, "1h 2m 5s"),
])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_timing_frame_lists_total_last_with_readable_durations():
    rows = to_timing_rows(pd.DataFrame({
        "from_step": [-1, 0, 1],
        "to_step": [2, 1, 2],
        "from_url": ["Total", "/a", "/b"],
        "to_url": ["Total", "/b", "/c"],
        "avg_seconds": [200.0, 65.0, None],
        "median_seconds": [180.0, 5.0, 3725.0],
    }))
    frame = to_timing_frame(rows)

    assert frame["steps"].tolist() == ["1 → 2", "2 → 3", "Total"]
    assert frame["average"].tolist() == ["1m 5s", "-", "3m 20s"]
    assert frame["median"].tolist() == ["5s", "1h 2m 5s", "3m 0s"]


def test_timing_frame_empty():
    assert list(to_timing_frame([]).columns) == ["steps", "from_url", "to_url", "average", "median"]

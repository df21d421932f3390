"""Funnel time spent: seconds between consecutive URL steps."""

import logging
from typing import List, Optional, Sequence

from queries.funnel_count import build_stage_cte, website_and_date_filters
from queries.funnel_steps import MIN_FUNNEL_STEPS, FunnelStep, timing_steps
from queries.tables import DEFAULT_PROJECT_ID, EVENT_VIEW, PAGEVIEW_EVENT_TYPE, table_ref
from utils.sql_escape import normalize_url_sql, quote_sql_literal

logger = logging.getLogger(__name__)

TOTAL_STEP = -1

PORTABLE_HEADER = """-- Time spent between funnel steps, for Metabase
-- Average and median seconds from each step to the next, plus the full funnel.
--
-- Metabase setup:
-- 1. Click the "created_at" variable in the right-hand panel
-- 2. Set the variable type to "Field Filter"
-- 3. Map it to umami_views.event -> created_at
-- 4. Choose a period and run the query
"""


def _duration_select(
    from_step: int,
    to_step: int,
    from_url: str,
    to_url: str,
    from_time: str,
    to_time: str
) -> str:
    diff = f"TIMESTAMP_DIFF({to_time}, {from_time}, SECOND)"
    return (
        f"SELECT {from_step} AS from_step, {to_step} AS to_step, "
        f"{quote_sql_literal(from_url)} AS from_url, {quote_sql_literal(to_url)} AS to_url,\n"
        f"           AVG({diff}) AS avg_seconds,\n"
        f"           APPROX_QUANTILES({diff}, 100)[OFFSET(50)] AS median_seconds,\n"
        f"           COUNT(*) AS sessions\n"
        f"    FROM timing_data"
    )


def _timing_selects(steps: List[FunnelStep]) -> List[str]:
    selects = [
        _duration_select(i, i + 1, steps[i].value, steps[i + 1].value, f"time{i + 1}", f"time{i + 2}")
        for i in range(len(steps) - 1)
    ]
    last = len(steps)
    selects.append(
        _duration_select(TOTAL_STEP, last - 1, "Total", "Total", "time1", f"time{last}")
    )
    return selects


def build_query(
    steps: Sequence[FunnelStep],
    only_direct_entry: bool = True,
    website_id: Optional[str] = None,
    project_id: str = DEFAULT_PROJECT_ID
) -> str:
    """
    Build SQL for average and median seconds between funnel steps.

    Only URL steps take part. Sessions count when they reached the last step.
    One row per adjacent pair (0-based from_step/to_step) and a total row
    with from_step = -1 spanning first to last step.

    Returns:
        SQL text, or "" when fewer than two URL steps remain
    """
    steps = timing_steps(steps)
    if len(steps) < MIN_FUNNEL_STEPS:
        logger.warning("Funnel timing needs at least %d URL steps, got %d", MIN_FUNNEL_STEPS, len(steps))
        return ""

    website_filter, date_filter = website_and_date_filters(website_id)

    stage_ctes = ",\n    ".join(
        build_stage_cte(
            i,
            step,
            steps[i - 1] if i > 0 else None,
            only_direct_entry,
            value_column="url_path",
            prev_value_column="prev_url_path",
        )
        for i, step in enumerate(steps)
    )

    last = len(steps)
    time_columns = ", ".join(f"step{i + 1}.time{i + 1}" for i in range(last))
    joins = "\n        ".join(
        f"LEFT JOIN step{i + 1} ON step1.session_id = step{i + 1}.session_id"
        for i in range(1, last)
    )
    timing_selects = "\n    UNION ALL\n    ".join(_timing_selects(steps))

    query = f"""
    WITH events_raw AS (
        SELECT
            session_id,
            {normalize_url_sql('url_path')} AS url_path,
            created_at
        FROM {table_ref(project_id, EVENT_VIEW)}
        WHERE website_id = {website_filter}
          AND event_type = {PAGEVIEW_EVENT_TYPE}
          {date_filter}
    ),
    events AS (
        SELECT
            *,
            LAG(url_path) OVER (PARTITION BY session_id ORDER BY created_at) AS prev_url_path
        FROM events_raw
    ),
    {stage_ctes},
    timing_data AS (
        SELECT
            {time_columns}
        FROM step1
        {joins}
        WHERE step{last}.time{last} IS NOT NULL
    )
    {timing_selects}
    ORDER BY from_step
    """

    logger.debug(
        "Compiled funnel timing query",
        extra={"steps": last, "direct_entry": only_direct_entry, "portable": website_id is not None},
    )
    return query


def build_portable_query(
    steps: Sequence[FunnelStep],
    only_direct_entry: bool,
    website_id: str,
    project_id: str = DEFAULT_PROJECT_ID
) -> str:
    """Timing query to paste into Metabase, with the website id inlined."""
    query = build_query(steps, only_direct_entry, website_id=website_id, project_id=project_id)
    if not query:
        return ""
    return PORTABLE_HEADER + query

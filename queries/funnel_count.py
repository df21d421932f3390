"""Funnel drop-off: sessions reaching each step, as one BigQuery query."""

import logging
from datetime import date, datetime, time, timezone
from typing import Dict, Any, List, Optional, Sequence

from queries.funnel_steps import (
    MIN_FUNNEL_STEPS,
    PARAM_CONTAINS,
    SCOPE_CURRENT_PATH,
    FunnelStep,
    StepParam,
    normalize_steps,
)
from queries.tables import (
    CUSTOM_EVENT_TYPE,
    DEFAULT_PROJECT_ID,
    EVENT_DATA_VIEW,
    EVENT_VIEW,
    PAGEVIEW_EVENT_TYPE,
    table_ref,
)
from utils.sql_escape import match_literal, match_operator, normalize_url_sql, quote_sql_literal

logger = logging.getLogger(__name__)

PORTABLE_DATE_FILTER = "[[AND {{created_at}}]]"
BOUND_DATE_FILTER = "AND created_at BETWEEN @startDate AND @endDate"
BOUND_WEBSITE_FILTER = "@websiteId"

PORTABLE_HEADER = """-- Funnel analysis for Metabase
-- Run the query and pick "Funnel" as the visualization.
--
-- Metabase setup:
-- 1. Click the "created_at" variable in the right-hand panel
-- 2. Set the variable type to "Field Filter"
-- 3. Map it to umami_views.event -> created_at
-- 4. Choose a period and run the query
"""


def event_type_for(step: FunnelStep) -> int:
    return PAGEVIEW_EVENT_TYPE if step.is_path else CUSTOM_EVENT_TYPE


def build_query_params(
    website_id: str,
    start_date: date,
    end_date: date
) -> Dict[str, Any]:
    """
    Bound parameters for the query built without a website_id.
    The end date is inclusive up to 23:59:59 UTC.
    """
    return {
        "websiteId": website_id,
        "startDate": datetime.combine(start_date, time.min, tzinfo=timezone.utc),
        "endDate": datetime.combine(end_date, time(23, 59, 59), tzinfo=timezone.utc),
    }


def website_and_date_filters(website_id: Optional[str]) -> tuple:
    """(website expression, date predicate) for the bound or portable variant."""
    if website_id is None:
        return BOUND_WEBSITE_FILTER, BOUND_DATE_FILTER
    return quote_sql_literal(website_id), PORTABLE_DATE_FILTER


def build_param_filter(
    param: StepParam,
    step_index: int,
    param_index: int,
    project_id: str
) -> str:
    """EXISTS check against the event parameter table for one step parameter."""
    alias = f"{step_index}_{param_index}"
    if param.operator == PARAM_CONTAINS:
        operator, value = "LIKE", f"%{param.value}%"
    else:
        operator, value = "=", param.value
    return f"""EXISTS (
            SELECT 1
            FROM {table_ref(project_id, EVENT_DATA_VIEW)} d_{alias}
            CROSS JOIN UNNEST(d_{alias}.event_parameters) p_{alias}
            WHERE d_{alias}.website_event_id = e.event_id
              AND d_{alias}.website_id = e.website_id
              AND d_{alias}.created_at = e.created_at
              AND p_{alias}.data_key = {quote_sql_literal(param.key)}
              AND p_{alias}.string_value {operator} {quote_sql_literal(value)}
        )"""


def build_stage_cte(
    index: int,
    step: FunnelStep,
    prev_step: Optional[FunnelStep],
    only_direct_entry: bool,
    value_column: str,
    prev_value_column: str,
    predicates: Sequence[str] = (),
    columns: Sequence[str] = ()
) -> str:
    """
    CTE step<n>: per session, the earliest time step n matched after step n-1.

    Args:
        index: 0-based position of the step
        step: Step to match
        prev_step: Previous step, None for the funnel entry
        only_direct_entry: Require the row right before the match to be the previous step
        value_column: Column compared to the step value
        prev_value_column: Lagged value_column, used for direct entry
        predicates: Extra WHERE predicates on the events row
        columns: Extra aggregated select columns

    Returns:
        CTE definition without a trailing comma
    """
    number = index + 1
    select = [
        "e.session_id",
        f"MIN(e.created_at) AS time{number}",
        *columns,
    ]
    where = [f"e.{value_column} {match_operator(step.value)} {match_literal(step.value)}"]
    joins = ""

    if prev_step is not None:
        joins = f"\n        JOIN step{index} prev ON e.session_id = prev.session_id"
        where.append(f"e.created_at > prev.time{index}")
        if only_direct_entry:
            where.append(
                f"e.{prev_value_column} {match_operator(prev_step.value)} {match_literal(prev_step.value)}"
            )

    where.extend(predicates)

    select_sql = ",\n            ".join(select)
    where_sql = "\n          AND ".join(where)
    return f"""step{number} AS (
        SELECT
            {select_sql}
        FROM events e{joins}
        WHERE {where_sql}
        GROUP BY e.session_id
    )"""


def _count_stage(
    index: int,
    steps: List[FunnelStep],
    only_direct_entry: bool,
    project_id: str
) -> str:
    step = steps[index]
    prev_step = steps[index - 1] if index > 0 else None

    predicates = [f"e.event_type = {event_type_for(step)}"]
    if step.is_event and step.event_scope == SCOPE_CURRENT_PATH and prev_step is not None:
        predicates.append(f"e.url_path_normalized = prev.url_path{index}")
    predicates.extend(
        build_param_filter(param, index, param_index, project_id)
        for param_index, param in enumerate(step.params)
    )

    return build_stage_cte(
        index,
        step,
        prev_step,
        only_direct_entry,
        value_column="step_value",
        prev_value_column="prev_step_value",
        predicates=predicates,
        columns=[
            f"ARRAY_AGG(e.url_path_normalized ORDER BY e.created_at LIMIT 1)[OFFSET(0)] AS url_path{index + 1}"
        ],
    )


def build_query(
    steps: Sequence[FunnelStep],
    only_direct_entry: bool = True,
    website_id: Optional[str] = None,
    project_id: str = DEFAULT_PROJECT_ID
) -> str:
    """
    Build SQL counting sessions at each funnel step.

    Without website_id the query is bound: @websiteId, @startDate and @endDate
    (see build_query_params). With website_id the id is inlined and the date
    window is left to Metabase's {{created_at}} field filter.

    Returns:
        SQL text, or "" when fewer than two usable steps remain
    """
    steps = normalize_steps(steps)
    if len(steps) < MIN_FUNNEL_STEPS:
        logger.warning("Funnel needs at least %d steps, got %d", MIN_FUNNEL_STEPS, len(steps))
        return ""

    website_filter, date_filter = website_and_date_filters(website_id)
    event_types = sorted({event_type_for(s) for s in steps})
    url_norm_sql = normalize_url_sql("url_path")

    stage_ctes = ",\n    ".join(
        _count_stage(i, steps, only_direct_entry, project_id) for i in range(len(steps))
    )

    count_rows = "\n    UNION ALL\n    ".join(
        f"SELECT {i + 1} AS step_number, {quote_sql_literal(f'{i + 1}: {step.value}')} AS step, "
        f"(SELECT COUNT(*) FROM step{i + 1}) AS count"
        for i, step in enumerate(steps)
    )

    query = f"""
    WITH events_raw AS (
        SELECT
            session_id,
            event_id,
            website_id,
            event_type,
            CASE
                WHEN event_type = {PAGEVIEW_EVENT_TYPE} THEN {url_norm_sql}
                WHEN event_type = {CUSTOM_EVENT_TYPE} THEN event_name
                ELSE NULL
            END AS step_value,
            {url_norm_sql} AS url_path_normalized,
            created_at
        FROM {table_ref(project_id, EVENT_VIEW)}
        WHERE website_id = {website_filter}
          AND event_type IN ({', '.join(str(t) for t in event_types)})
          {date_filter}
    ),
    events AS (
        SELECT
            *,
            LAG(step_value) OVER (PARTITION BY session_id ORDER BY created_at) AS prev_step_value
        FROM events_raw
    ),
    {stage_ctes}
    {count_rows}
    ORDER BY step_number ASC
    """

    logger.debug(
        "Compiled funnel count query",
        extra={"steps": len(steps), "direct_entry": only_direct_entry, "portable": website_id is not None},
    )
    return query


def build_portable_query(
    steps: Sequence[FunnelStep],
    only_direct_entry: bool,
    website_id: str,
    project_id: str = DEFAULT_PROJECT_ID
) -> str:
    """Funnel query to paste into Metabase, with the website id inlined."""
    query = build_query(steps, only_direct_entry, website_id=website_id, project_id=project_id)
    if not query:
        return ""
    return PORTABLE_HEADER + query

"""BigQuery job configuration and query text utilities for the analytics dashboard."""

import re
from datetime import date, datetime
from typing import Optional, Dict, Any, NamedTuple, Union

from google.cloud import bigquery

from utils.sql_escape import escape_sql_literal, quote_sql_literal

DEFAULT_MAX_BYTES_BILLED = 2000000000000  # 2 TB limit

_LABEL_PATTERN = re.compile(r"[^a-z0-9_-]")


def build_date_filter(
    start_date: Union[str, date],
    end_date: Union[str, date],
    timestamp_field: str = "created_at"
) -> str:
    """
    Build an inclusive BETWEEN clause for TIMESTAMP columns.

    Args:
        start_date: Start date (date or YYYY-MM-DD string)
        end_date: End date (date or YYYY-MM-DD string), included up to 23:59:59
        timestamp_field: Qualified name of the timestamp column

    Returns:
        SQL predicate for date filtering
    """
    if isinstance(start_date, date):
        start_date = start_date.strftime("%Y-%m-%d")
    if isinstance(end_date, date):
        end_date = end_date.strftime("%Y-%m-%d")
    return (
        f"{timestamp_field} BETWEEN TIMESTAMP('{start_date}') "
        f"AND TIMESTAMP('{end_date}T23:59:59')"
    )


def build_audit_labels(
    user_ident: str,
    analysis_type: Optional[str] = None,
    dry_run: bool = False
) -> Dict[str, str]:
    """
    Build BigQuery job labels identifying who ran what.
    Label values must be lowercase alphanumerics, '_' or '-'.
    """
    labels = {
        "user_ident": _LABEL_PATTERN.sub("_", (user_ident or "unknown").lower()),
        "user_type": "internal",
        "job_mode": "dry_run" if dry_run else "execution",
    }
    if analysis_type:
        labels["analysis_type"] = _LABEL_PATTERN.sub("_", analysis_type.lower())
    return labels


def _query_parameter(name: str, value: Any):
    if isinstance(value, bool):
        return bigquery.ScalarQueryParameter(name, "BOOL", value)
    if isinstance(value, int):
        return bigquery.ScalarQueryParameter(name, "INT64", value)
    if isinstance(value, float):
        return bigquery.ScalarQueryParameter(name, "FLOAT64", value)
    if isinstance(value, datetime):
        return bigquery.ScalarQueryParameter(name, "TIMESTAMP", value)
    if isinstance(value, date):
        return bigquery.ScalarQueryParameter(name, "DATE", value)
    if isinstance(value, str):
        return bigquery.ScalarQueryParameter(name, "STRING", value)
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return bigquery.ArrayQueryParameter(name, "STRING", list(value))
    raise ValueError(f"Unsupported query parameter type for @{name}: {type(value).__name__}")


def build_job_config(
    params: Optional[Dict[str, Any]] = None,
    dry_run: bool = False,
    labels: Optional[Dict[str, str]] = None,
    maximum_bytes_billed: int = DEFAULT_MAX_BYTES_BILLED
) -> bigquery.QueryJobConfig:
    """
    Build the job config the executor submits a compiled query with.

    Args:
        params: Named query parameters (@name in the SQL)
        dry_run: Only estimate bytes processed
        labels: Job labels, see build_audit_labels
        maximum_bytes_billed: Cost cap for the job

    Returns:
        Configured QueryJobConfig
    """
    job_config = bigquery.QueryJobConfig()
    job_config.maximum_bytes_billed = maximum_bytes_billed
    job_config.dry_run = dry_run
    job_config.use_query_cache = not dry_run

    if labels:
        job_config.labels = labels

    if params:
        job_config.query_parameters = [
            _query_parameter(k, v) for k, v in params.items()
        ]

    return job_config


class QueryJob(NamedTuple):
    """Compiled SQL and the job config the executor submits it with."""
    sql: str
    job_config: bigquery.QueryJobConfig


def prepare_query_job(
    sql: str,
    params: Optional[Dict[str, Any]],
    user_ident: str,
    analysis_type: str,
    dry_run: bool = False,
    maximum_bytes_billed: int = DEFAULT_MAX_BYTES_BILLED
) -> QueryJob:
    """Bundle a bound query with its parameters, audit labels and cost cap."""
    labels = build_audit_labels(user_ident, analysis_type, dry_run)
    job_config = build_job_config(params, dry_run, labels, maximum_bytes_billed)
    return QueryJob(sql, job_config)


def describe_job_config(job_config: bigquery.QueryJobConfig) -> Dict[str, Any]:
    """Plain dict of the settings a job will run with, for display."""
    return {
        "dry_run": bool(job_config.dry_run),
        "maximum_bytes_billed": job_config.maximum_bytes_billed,
        "labels": dict(job_config.labels or {}),
        "query_parameters": [p.to_api_repr() for p in job_config.query_parameters],
    }


def _render_parameter(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, datetime):
        return f"TIMESTAMP('{value.isoformat()}')"
    if isinstance(value, date):
        return f"DATE('{value.isoformat()}')"
    if isinstance(value, str):
        return quote_sql_literal(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_render_parameter(v) for v in value) + "]"
    return escape_sql_literal(str(value))


def substitute_query_parameters(query: str, params: Optional[Dict[str, Any]]) -> str:
    """
    Inline @name parameters so a bound query can be read or copied.
    Longer names go first so @step10 is not clobbered by @step1.
    """
    if not query or not params:
        return query

    substituted = query
    for key in sorted(params, key=len, reverse=True):
        rendered = _render_parameter(params[key])
        substituted = re.sub(rf"@{re.escape(key)}\b", lambda _m: rendered, substituted)
    return substituted

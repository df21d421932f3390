"""
Umami Analytics Workbench
Streamlit front end for the SQL template editor and the funnel query builder.
Queries are compiled here and handed to the warehouse executor; nothing is run from this app.
"""

import logging
from dataclasses import replace

import pandas as pd
import streamlit as st

from utils.config import load_settings
from utils.filters import render_filters, display_filter_summary
from utils.logging_setup import setup_logging
from utils.bigquery_client import describe_job_config, prepare_query_job, substitute_query_parameters

from queries import funnel_count, funnel_timing
from queries.funnel_results import to_funnel_frame, to_timing_frame, to_timing_rows
from queries.funnel_steps import (
    EVENT,
    EVENT_SCOPES,
    PARAM_CONTAINS,
    PARAM_EQUALS,
    PATH,
    add_step,
    add_step_param,
    direct_entry_from_param,
    direct_entry_to_param,
    parse_steps_from_params,
    remove_step,
    remove_step_param,
    steps_to_params,
    update_step_event_scope,
    update_step_kind,
    update_step_param,
    update_step_value,
    validate_steps,
    validate_timing_steps,
)
from queries.sql_template import (
    apply_filters_to_sql,
    apply_website_id_only,
    ensure_website_placeholder,
    extract_custom_variables,
    find_unresolved_placeholders,
    format_sql_template,
    is_single_statement,
    validate_filter_context,
)

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = """SELECT
  url_path,
  COUNT(DISTINCT session_id) AS sessions
FROM `{project_id}.umami_views.event`
WHERE website_id = {{{{website_id}}}}
  AND url_path = [[ {{{{url_sti}}}} --]] '/'
  [[AND {{{{created_at}}}}]]
GROUP BY url_path
ORDER BY sessions DESC
LIMIT 100"""


def render_sql_editor_tab(ctx, settings):
    """Render the SQL editor: template in, warehouse-ready SQL out."""
    st.header("🧮 SQL Editor")

    if 'sql_template' not in st.session_state:
        st.session_state.sql_template = DEFAULT_TEMPLATE.format(project_id=settings.gcp_project_id)

    col_format, col_website, _ = st.columns([1, 1, 3])
    with col_format:
        if st.button("✨ Format", help="Pretty-print the template, keeping {{...}} and [[...]] intact"):
            try:
                st.session_state.sql_template = format_sql_template(st.session_state.sql_template)
            except Exception as e:
                st.error(f"Could not format SQL: {str(e)}")
    with col_website:
        if st.button("🌐 Add website filter"):
            st.session_state.sql_template = ensure_website_placeholder(
                st.session_state.sql_template, settings.gcp_project_id
            )

    template = st.text_area("SQL template", key="sql_template", height=300)

    if not is_single_statement(template):
        st.warning("The editor runs exactly one SQL statement.")

    # Custom variables
    variable_names = extract_custom_variables(template)
    values = {}
    if variable_names:
        st.subheader("Variables")
        cols = st.columns(min(len(variable_names), 3))
        for index, name in enumerate(variable_names):
            with cols[index % len(cols)]:
                values[name] = st.text_input(name, key=f"sql_var_{name}")

    ctx = replace(ctx, variables=values)

    for problem in validate_filter_context(template, ctx):
        st.warning(problem)

    try:
        sql = apply_filters_to_sql(template, ctx)
    except Exception as e:
        st.error(f"Error building SQL: {str(e)}")
        return

    unresolved = find_unresolved_placeholders(sql)
    if unresolved:
        st.info("Unresolved placeholders: " + ", ".join(sorted(set(unresolved))))

    st.subheader("SQL sent to BigQuery")
    st.code(sql, language="sql")

    with st.expander("📋 Copy for Metabase"):
        st.caption("Only the website id is filled in; the other filters stay as Metabase variables.")
        st.code(apply_website_id_only(template, ctx.website_id), language="sql")


def get_funnel_steps():
    """Steps held in session state, seeded from the share link."""
    if 'funnel_steps' not in st.session_state:
        st.session_state.funnel_steps = parse_steps_from_params(st.query_params.get_all("step"))
    return st.session_state.funnel_steps


def render_step_editor(index, step):
    """Widgets for one funnel step; returns True when the step list changed."""
    steps = st.session_state.funnel_steps
    cols = st.columns([1, 3, 2, 1])

    with cols[0]:
        kind = st.selectbox(
            f"Step {index + 1}",
            options=[PATH, EVENT],
            index=0 if step.is_path else 1,
            format_func=lambda x: "URL" if x == PATH else "Event",
            key=f"step_kind_{index}"
        )
        if kind != step.kind:
            st.session_state.funnel_steps = update_step_kind(steps, index, kind)
            return True

    with cols[1]:
        value = st.text_input(
            "URL path" if step.is_path else "Event name",
            value=step.value,
            key=f"step_value_{index}",
            help="Use * as a wildcard, e.g. /soknad/*"
        )
        if value != step.value:
            st.session_state.funnel_steps = update_step_value(steps, index, value)

    with cols[2]:
        if step.is_event:
            scope = st.selectbox(
                "Where",
                options=list(EVENT_SCOPES),
                index=list(EVENT_SCOPES).index(step.event_scope) if step.event_scope in EVENT_SCOPES else 0,
                format_func=lambda x: "On the previous step's page" if x == EVENT_SCOPES[0] else "Anywhere",
                key=f"step_scope_{index}"
            )
            if scope != step.event_scope:
                st.session_state.funnel_steps = update_step_event_scope(st.session_state.funnel_steps, index, scope)

    with cols[3]:
        if st.button("🗑️", key=f"remove_step_{index}", help="Remove step"):
            st.session_state.funnel_steps = remove_step(st.session_state.funnel_steps, index)
            return True

    if step.is_event:
        for param_index, param in enumerate(step.params):
            pcols = st.columns([1, 2, 1, 2, 1])
            with pcols[1]:
                key = st.text_input("Parameter", value=param.key, key=f"param_key_{index}_{param_index}")
            with pcols[2]:
                operator = st.selectbox(
                    "Operator",
                    options=[PARAM_EQUALS, PARAM_CONTAINS],
                    index=0 if param.operator == PARAM_EQUALS else 1,
                    key=f"param_op_{index}_{param_index}"
                )
            with pcols[3]:
                param_value = st.text_input("Value", value=param.value, key=f"param_value_{index}_{param_index}")
            with pcols[4]:
                if st.button("✖", key=f"remove_param_{index}_{param_index}"):
                    st.session_state.funnel_steps = remove_step_param(st.session_state.funnel_steps, index, param_index)
                    return True
            for field, new_value in (("key", key), ("operator", operator), ("value", param_value)):
                if new_value != getattr(param, field):
                    st.session_state.funnel_steps = update_step_param(
                        st.session_state.funnel_steps, index, param_index, field, new_value
                    )
        if st.button("➕ Parameter filter", key=f"add_param_{index}"):
            st.session_state.funnel_steps = add_step_param(st.session_state.funnel_steps, index)
            return True

    return False


def render_job_settings(job):
    with st.expander("⚙️ Job settings"):
        st.caption("Parameters, labels and cost cap the query is submitted with.")
        st.json(describe_job_config(job.job_config))


def render_funnel_results():
    """Drop-off and time spent tables from the executor's CSV exports."""
    with st.expander("📥 Results"):
        funnel_file = st.file_uploader("Funnel result (CSV)", type="csv", key="funnel_result_csv")
        if funnel_file is not None:
            try:
                st.dataframe(to_funnel_frame(pd.read_csv(funnel_file)), use_container_width=True, hide_index=True)
            except Exception as e:
                st.error(f"Could not read funnel result: {str(e)}")

        timing_file = st.file_uploader("Time spent result (CSV)", type="csv", key="timing_result_csv")
        if timing_file is not None:
            try:
                rows = to_timing_rows(pd.read_csv(timing_file))
                st.dataframe(to_timing_frame(rows), use_container_width=True, hide_index=True)
            except Exception as e:
                st.error(f"Could not read time spent result: {str(e)}")


def render_funnel_tab(ctx, settings):
    """Render the funnel builder and the compiled queries."""
    st.header("🔻 Funnel Analysis")

    steps = get_funnel_steps()
    for index, step in enumerate(steps):
        if render_step_editor(index, step):
            st.rerun()

    if st.button("➕ Add step"):
        st.session_state.funnel_steps = add_step(st.session_state.funnel_steps)
        st.rerun()

    only_direct_entry = st.checkbox(
        "Only direct progression",
        value=direct_entry_from_param(st.query_params.get("strict")),
        help="Count a step only when the session came straight from the previous step"
    )

    steps = st.session_state.funnel_steps
    st.query_params["step"] = steps_to_params(steps)
    st.query_params["strict"] = direct_entry_to_param(only_direct_entry)

    problem = validate_steps(steps)
    if problem:
        st.warning(problem)
        return
    if not ctx.website_id:
        st.warning("Select a website in the sidebar.")
        return

    date_from, date_to = ctx.date_window()
    params = funnel_count.build_query_params(ctx.website_id, date_from, date_to)
    user_ident = st.session_state.get('user_email') or settings.user_ident
    jobs = {}

    try:
        count_sql = funnel_count.build_query(steps, only_direct_entry, project_id=settings.gcp_project_id)
        jobs["funnel"] = prepare_query_job(
            count_sql, params, user_ident, "funnel", maximum_bytes_billed=settings.max_bytes_billed
        )
        st.subheader("Funnel query")
        st.code(substitute_query_parameters(count_sql, params), language="sql")
        render_job_settings(jobs["funnel"])

        with st.expander("📋 Copy for Metabase"):
            st.code(
                funnel_count.build_portable_query(steps, only_direct_entry, ctx.website_id, settings.gcp_project_id),
                language="sql"
            )
    except Exception as e:
        st.error(f"Error building funnel query: {str(e)}")

    st.markdown("---")
    st.subheader("⏱️ Time spent")
    timing_problem = validate_timing_steps(steps)
    if timing_problem:
        st.info(timing_problem)
    else:
        try:
            timing_sql = funnel_timing.build_query(steps, only_direct_entry, project_id=settings.gcp_project_id)
            jobs["funnel_timing"] = prepare_query_job(
                timing_sql, params, user_ident, "funnel_timing", maximum_bytes_billed=settings.max_bytes_billed
            )
            st.code(substitute_query_parameters(timing_sql, params), language="sql")
            render_job_settings(jobs["funnel_timing"])

            with st.expander("📋 Copy for Metabase"):
                st.code(
                    funnel_timing.build_portable_query(steps, only_direct_entry, ctx.website_id, settings.gcp_project_id),
                    language="sql"
                )
        except Exception as e:
            st.error(f"Error building timing query: {str(e)}")

    # Handed to the query executor
    st.session_state.funnel_jobs = jobs
    logger.info("Funnel queries prepared", extra={"steps": len(steps), "jobs": ",".join(jobs)})

    st.markdown("---")
    render_funnel_results()


def main():
    """Main application function."""

    # Page configuration
    st.set_page_config(
        page_title="Umami Analytics Workbench",
        page_icon="📊",
        layout="wide",
        initial_sidebar_state="expanded"
    )

    settings = load_settings()
    setup_logging(settings.log_level)

    st.title("📊 Umami Analytics Workbench")

    st.sidebar.markdown("### 📑 Select Tool")
    current_tab = st.sidebar.radio(
        "Tool",
        options=["sql_editor", "funnel"],
        format_func=lambda x: {
            "sql_editor": "🧮 SQL Editor",
            "funnel": "🔻 Funnel Analysis"
        }.get(x, x),
        label_visibility="collapsed"
    )

    st.sidebar.markdown("---")

    ctx = render_filters(settings)
    display_filter_summary(ctx)

    st.markdown("---")

    if current_tab == "sql_editor":
        render_sql_editor_tab(ctx, settings)
    else:
        render_funnel_tab(ctx, settings)


if __name__ == "__main__":
    main()

"""Filter UI components for the analytics dashboard."""

import streamlit as st
from datetime import datetime, timedelta
from queries.sql_template import FilterContext, PATH_EQUALS, PATH_STARTS_WITH, parse_url_paths
from utils.config import Settings


# Page URL keys for the shareable filters, by session state name
SHARED_FILTER_PARAMS = {
    'filter_website_id': "websiteId",
    'filter_website_domain': "domain",
    'filter_url_path': "urlPath",
    'filter_path_operator': "pathOperator",
}


def filters_from_query_params(params) -> dict:
    """Shareable filter values from the page URL, with defaults for missing keys."""
    values = {name: params.get(key, "") for name, key in SHARED_FILTER_PARAMS.items()}
    if values['filter_path_operator'] not in (PATH_EQUALS, PATH_STARTS_WITH):
        values['filter_path_operator'] = PATH_EQUALS
    return values


def filters_to_query_params(values: dict) -> dict:
    """Page URL entries for the shareable filters held in session state."""
    return {key: values.get(name, "") for name, key in SHARED_FILTER_PARAMS.items()}


def init_filter_defaults(settings: Settings):
    """Initialize default filter values in session state, seeded from the page URL."""
    default_end_date = datetime.now().date()
    default_start_date = default_end_date - timedelta(days=settings.default_lookback_days)

    for name, value in filters_from_query_params(st.query_params).items():
        if name not in st.session_state:
            st.session_state[name] = value
    if 'filter_start_date' not in st.session_state:
        st.session_state.filter_start_date = default_start_date
    if 'filter_end_date' not in st.session_state:
        st.session_state.filter_end_date = default_end_date


def render_filters(settings: Settings) -> FilterContext:
    """
    Render filter sidebar and return the selected filter context.

    Args:
        settings: Runtime settings (project id, lookback window)

    Returns:
        FilterContext for the template engine
    """
    init_filter_defaults(settings)

    st.sidebar.header("📊 Filters")

    with st.sidebar.form(key="filters_form"):
        st.subheader("Website")
        website_id = st.text_input(
            "Website ID",
            value=st.session_state.filter_website_id,
            help="Umami website id (UUID)"
        )
        website_domain = st.text_input(
            "Domain",
            value=st.session_state.filter_website_domain,
            help="Used for {{nettside}} in SQL templates"
        )

        st.subheader("URL path")
        url_path = st.text_input(
            "Paths",
            value=st.session_state.filter_url_path,
            help="One or more paths separated by commas"
        )
        path_operator = st.radio(
            "Match",
            options=[PATH_EQUALS, PATH_STARTS_WITH],
            index=[PATH_EQUALS, PATH_STARTS_WITH].index(st.session_state.filter_path_operator),
            format_func=lambda x: {PATH_EQUALS: "Equals", PATH_STARTS_WITH: "Starts with"}.get(x, x),
            horizontal=True
        )

        st.subheader("Date Range")
        default_end_date = datetime.now().date()
        start_date = st.date_input(
            "Start Date",
            value=st.session_state.filter_start_date,
            max_value=default_end_date
        )
        end_date = st.date_input(
            "End Date",
            value=st.session_state.filter_end_date,
            max_value=default_end_date
        )

        st.markdown("---")
        submitted = st.form_submit_button("🚀 Apply", use_container_width=True, type="primary")

        if submitted:
            st.session_state.filter_website_id = website_id.strip()
            st.session_state.filter_website_domain = website_domain.strip()
            st.session_state.filter_url_path = url_path.strip()
            st.session_state.filter_path_operator = path_operator
            st.session_state.filter_start_date = start_date
            st.session_state.filter_end_date = end_date
            st.query_params.update(filters_to_query_params(st.session_state))

    # Validate date range
    if start_date > end_date:
        st.sidebar.error("Start date must be before end date")
        start_date = end_date

    days_diff = (end_date - start_date).days
    st.sidebar.markdown("---")
    st.sidebar.caption(f"📅 Date Range: {days_diff + 1} days")

    return FilterContext(
        website_id=st.session_state.filter_website_id,
        website_domain=st.session_state.filter_website_domain or None,
        url_paths=parse_url_paths(st.session_state.filter_url_path),
        path_operator=st.session_state.filter_path_operator,
        date_from=start_date,
        date_to=end_date,
        project_id=settings.gcp_project_id,
        reference_date=default_end_date,
        default_lookback_days=settings.default_lookback_days,
    )


def display_filter_summary(ctx: FilterContext):
    """Display a summary of applied filters in the main area."""
    with st.expander("🔍 Applied Filters", expanded=False):
        cols = st.columns(3)

        with cols[0]:
            st.caption(f"Website: {ctx.website_id or 'None selected'}")
            if ctx.website_domain:
                st.caption(f"Domain: {ctx.website_domain}")

        with cols[1]:
            if ctx.url_paths:
                if len(ctx.url_paths) <= 3:
                    path_text = ', '.join(ctx.url_paths)
                else:
                    path_text = f"{len(ctx.url_paths)} paths"
                operator_text = "starts with" if ctx.path_operator == PATH_STARTS_WITH else "equals"
                st.caption(f"Path {operator_text}: {path_text}")
            else:
                st.caption("Paths: All")

        with cols[2]:
            date_from, date_to = ctx.date_window()
            st.metric("Date Range", f"{date_from} to {date_to}")

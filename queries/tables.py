"""Warehouse table references used by the templates and funnel queries."""

DEFAULT_PROJECT_ID = "team-umami-prod"

EVENT_VIEW = "umami_views.event"
SESSION_VIEW = "umami_views.session"
EVENT_DATA_VIEW = "umami_views.event_data"
LEGACY_EVENT_TABLE = "umami.public_website_event"
LEGACY_SESSION_TABLE = "umami.public_session"

# Umami event_type values
PAGEVIEW_EVENT_TYPE = 1
CUSTOM_EVENT_TYPE = 2


def table_ref(project_id: str, table: str) -> str:
    """Backtick-quoted fully qualified table name."""
    return f"`{project_id}.{table}`"

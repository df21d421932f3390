"""String escaping and normalization helpers shared by the SQL builders."""

import re
from urllib.parse import unquote, urlsplit

NUMERIC_PATTERN = re.compile(r"^-?\d+(\.\d+)?$")


def escape_sql_literal(value: str) -> str:
    """Double every single quote so the value is safe inside '...'."""
    return value.replace("'", "''")


def quote_sql_literal(value: str) -> str:
    """Return value as a single-quoted, escaped SQL string literal."""
    return f"'{escape_sql_literal(value)}'"


def is_numeric(value: str) -> bool:
    return bool(NUMERIC_PATTERN.match(value))


def has_wildcard(value: str) -> bool:
    return "*" in value


def wildcard_to_like(value: str) -> str:
    """Translate user-facing '*' wildcards to SQL LIKE '%' wildcards."""
    return value.replace("*", "%")


def match_operator(value: str) -> str:
    """Pick '=' for literal values and 'LIKE' for wildcarded ones."""
    return "LIKE" if has_wildcard(value) else "="


def match_literal(value: str) -> str:
    """Quoted literal to pair with match_operator(value)."""
    return quote_sql_literal(wildcard_to_like(value))


def normalize_url_to_path(value: str) -> str:
    """
    Reduce a URL or path to the canonical path form stored in the warehouse.

    Strips scheme and host, query string and fragment, collapses repeated
    slashes and drops a trailing slash. A blank input stays blank; a path
    that collapses to nothing becomes '/'.
    """
    trimmed = value.strip()
    if not trimmed:
        return ""

    trimmed = re.split(r"[?#]", trimmed, maxsplit=1)[0]

    if "://" in trimmed:
        trimmed = unquote(urlsplit(trimmed).path)
    elif trimmed.startswith("/") and "." in trimmed:
        # "/www.example.com/path" pasted from an address bar
        head, sep, tail = trimmed[1:].partition("/")
        if sep and "." in head:
            trimmed = "/" + tail
    elif not trimmed.startswith("/") and "." in trimmed and "/" in trimmed:
        trimmed = unquote(urlsplit("https://" + trimmed).path)

    trimmed = re.sub(r"/{2,}", "/", trimmed)
    trimmed = trimmed.rstrip("/")
    if not trimmed:
        return "/"
    if not trimmed.startswith("/") and not has_wildcard(trimmed[:1]):
        trimmed = "/" + trimmed
    return trimmed


def normalize_url_sql(column: str = "url_path") -> str:
    """
    SQL expression normalizing a URL path column the same way
    normalize_url_to_path does for user input.
    """
    stripped = f"RTRIM(REGEXP_REPLACE(REGEXP_REPLACE({column}, r'[?#].*', ''), r'//+', '/'), '/')"
    return f"COALESCE(NULLIF({stripped}, ''), '/')"

"""
Metabase-style SQL templates: placeholder substitution and formatter support.

A template is split into literal text and directive tokens by one regex whose
alternation order is the precedence of the directives. Each directive kind is
resolved by its own handler; literal text passes through untouched. The engine
never raises: a directive it cannot resolve is emitted as written so callers
can spot it with find_unresolved_placeholders().
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

import sqlparse

from queries.tables import (
    DEFAULT_PROJECT_ID,
    EVENT_VIEW,
    LEGACY_EVENT_TABLE,
    LEGACY_SESSION_TABLE,
    SESSION_VIEW,
    table_ref,
)
from utils.bigquery_client import build_date_filter
from utils.sql_escape import escape_sql_literal, is_numeric, quote_sql_literal, wildcard_to_like

logger = logging.getLogger(__name__)

PATH_EQUALS = "equals"
PATH_STARTS_WITH = "starts-with"
PATH_COLUMN = "url_path"

ENTITY_ID = "entity_id"
DOMAIN = "domain"
PATH_ASSIGNMENT = "path_assignment"
PATH_CONDITION = "path_condition"
DATE_RANGE = "date_range"
VARIABLE = "variable"

BUILTIN_VARIABLES = {
    "website_id", "entity_id", "nettside", "domain", "url_sti", "url_path", "path", "created_at",
}

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<entity_id>(?:(?P<entity_quote>['"])\s*)?\{\{\s*(?:website_id|entity_id)\s*\}\}(?(entity_quote)\s*(?P=entity_quote)))
    | (?P<domain>(?:(?P<domain_quote>['"])\s*)?\{\{\s*(?:nettside|domain)\s*\}\}(?(domain_quote)\s*(?P=domain_quote)))
    | (?P<path_assignment>
        (?:(?P<column>[^\s=]+)(?P<gap>\s*))?
        =(?P<spacing>\s*)
        \[\[\s*\{\{\s*(?:url_sti|url_path|path)\s*\}\}\s*--\s*\]\]\s*
        (?P<default>'[^']*')
      )
    | (?P<path_condition>\[\[\s*AND\s*\{\{\s*(?:url_sti|url_path|path)\s*\}\}\s*\]\])
    | (?P<date_range>\[\[\s*AND\s*\{\{\s*created_at\s*\}\}\s*\]\])
    | (?P<variable>\{\{\s*(?P<name>\w+)\s*\}\})
    """,
    re.IGNORECASE | re.VERBOSE,
)

_KINDS = (ENTITY_ID, DOMAIN, PATH_ASSIGNMENT, PATH_CONDITION, DATE_RANGE, VARIABLE)

_UNRESOLVED_PATTERN = re.compile(r"\[\[[^\]]*\]\]|\{\{[^}]+\}\}")
_OPTIONAL_BLOCK_PATTERN = re.compile(r"\[\[[^\]]*\]\]")
_VARIABLE_BLOCK_PATTERN = re.compile(r"\{\{[^}]+\}\}")
_UUID_WEBSITE_ID_PATTERN = re.compile(r"""(website_id\s*=\s*)(['"])([0-9a-f-]{36})\2""", re.IGNORECASE)


@dataclass(frozen=True)
class FilterContext:
    """Current filter selection the template is bound to."""
    website_id: str = ""
    website_domain: Optional[str] = None
    url_paths: Tuple[str, ...] = ()
    path_operator: str = PATH_EQUALS
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    variables: Dict[str, str] = field(default_factory=dict)
    project_id: str = DEFAULT_PROJECT_ID
    reference_date: date = field(default_factory=date.today)
    default_lookback_days: int = 30

    def date_window(self) -> Tuple[date, date]:
        """Resolved (from, to); a missing bound falls back to the lookback window."""
        date_from = self.date_from or self.reference_date - timedelta(days=self.default_lookback_days)
        date_to = self.date_to or self.reference_date
        return date_from, date_to


class Token(NamedTuple):
    kind: str
    text: str
    match: Optional[re.Match]


class SanitizedSql(NamedTuple):
    sanitized: str
    placeholders: Dict[str, str]


def parse_url_paths(value: Optional[str]) -> Tuple[str, ...]:
    """Split the comma-separated path filter kept in the page URL."""
    if not value:
        return ()
    return tuple(p.strip() for p in value.split(",") if p.strip())


def tokenize(template: str) -> List[Token]:
    """Split a template into literal spans and directive tokens."""
    tokens = []
    position = 0
    for match in _TOKEN_PATTERN.finditer(template):
        if match.start() > position:
            tokens.append(Token("literal", template[position:match.start()], None))
        kind = next(k for k in _KINDS if match.group(k) is not None)
        tokens.append(Token(kind, match.group(0), match))
        position = match.end()
    if position < len(template):
        tokens.append(Token("literal", template[position:], None))
    return tokens


def _mentions(sql: str, table: str) -> bool:
    return re.search(rf"{re.escape(table)}\b", sql) is not None


def _projection_table(template: str, project_id: str) -> str:
    if _mentions(template, EVENT_VIEW):
        return table_ref(project_id, EVENT_VIEW)
    if _mentions(template, SESSION_VIEW):
        return table_ref(project_id, SESSION_VIEW)
    if _mentions(template, LEGACY_SESSION_TABLE) and not _mentions(template, LEGACY_EVENT_TABLE):
        return table_ref(project_id, LEGACY_SESSION_TABLE)
    return table_ref(project_id, EVENT_VIEW)


class _Resolver:
    """Resolves directive tokens for one template/context pair."""

    def __init__(self, template: str, ctx: FilterContext):
        self.ctx = ctx
        self.date_table = _projection_table(template, ctx.project_id)
        self.date_from, self.date_to = ctx.date_window()
        self.date_applied = False
        self.handlers: Dict[str, Callable[[Token], str]] = {
            ENTITY_ID: self.entity_id,
            DOMAIN: self.domain,
            PATH_ASSIGNMENT: self.path_assignment,
            PATH_CONDITION: self.path_condition,
            DATE_RANGE: self.date_range,
            VARIABLE: self.variable,
        }

    def resolve(self, token: Token) -> str:
        handler = self.handlers.get(token.kind)
        if handler is None:
            return token.text
        return handler(token)

    def entity_id(self, token: Token) -> str:
        if not self.ctx.website_id:
            return token.text
        return quote_sql_literal(self.ctx.website_id)

    def domain(self, token: Token) -> str:
        if not self.ctx.website_domain:
            return token.text
        return quote_sql_literal(self.ctx.website_domain)

    def path_assignment(self, token: Token) -> str:
        """
        Rewrite `<lhs> = [[ {{url_path}} --]] '<default>'`.

        Only the comparison is rewritten, so any expression may stand on the
        left. The OR form repeats the left operand and needs it as one
        whitespace-free term.
        """
        match = token.match
        column = match.group("column")
        gap = match.group("gap") or ""
        lhs = f"{column}{gap or ' '}" if column else ""
        assign = f"{column or ''}{gap}={match.group('spacing')}"
        paths = self.ctx.url_paths

        if not paths:
            return f"{assign}{match.group('default')}"

        if self.ctx.path_operator == PATH_STARTS_WITH:
            if len(paths) == 1:
                return f"{lhs}LIKE {_prefix_literal(paths[0])}"
            if not column:
                logger.warning("Path filter with several starts-with paths needs a column before '='")
                return token.text
            likes = " OR ".join(f"{column} LIKE {_prefix_literal(p)}" for p in paths)
            return f"({likes})"

        if len(paths) == 1:
            return f"{assign}{quote_sql_literal(paths[0])}"
        return f"{lhs}IN ({', '.join(quote_sql_literal(p) for p in paths)})"

    def path_condition(self, token: Token) -> str:
        paths = self.ctx.url_paths
        if not paths:
            return ""

        if self.ctx.path_operator == PATH_STARTS_WITH:
            if len(paths) > 1:
                logger.warning("Conditional path filter does not support several starts-with paths")
                return token.text
            return f"AND {PATH_COLUMN} LIKE {_prefix_literal(paths[0])}"

        if len(paths) == 1:
            return f"AND {PATH_COLUMN} = {quote_sql_literal(paths[0])}"
        return f"AND {PATH_COLUMN} IN ({', '.join(quote_sql_literal(p) for p in paths)})"

    def date_range(self, token: Token) -> str:
        self.date_applied = True
        return "AND " + self.date_predicate(self.date_table)

    def date_predicate(self, table: str) -> str:
        return build_date_filter(self.date_from, self.date_to, f"{table}.created_at")

    def variable(self, token: Token) -> str:
        value = self.ctx.variables.get(token.match.group("name"))
        if value is None or value == "":
            return token.text
        return value if is_numeric(value) else quote_sql_literal(value)

    def mirror_date_filter(self, sql: str) -> str:
        """Bound joined session tables with the same window as the projection table."""
        if not self.date_applied:
            return sql

        inserted = self.date_predicate(self.date_table)
        for table in (SESSION_VIEW, LEGACY_SESSION_TABLE):
            ref = table_ref(self.ctx.project_id, table)
            if ref == self.date_table or not _mentions(sql, table):
                continue
            if re.search(rf"{re.escape(table)}[^\n]*created_at", sql, re.IGNORECASE):
                continue

            mirrored = self.date_predicate(ref)
            if inserted in sql:
                sql = sql.replace(inserted, f"{inserted} AND {mirrored}", 1)
            elif re.search(r"\bWHERE\b", sql, re.IGNORECASE):
                sql = re.sub(r"\bWHERE\b", lambda m: f"{m.group(0)} {mirrored} AND", sql, count=1, flags=re.IGNORECASE)
            else:
                continue
            logger.debug("Mirrored date filter onto %s", ref)
        return sql


def _prefix_literal(path: str) -> str:
    return f"'{escape_sql_literal(wildcard_to_like(path))}%'"


def apply_filters_to_sql(template: str, ctx: FilterContext) -> str:
    """
    Bind a SQL template to the current filter context.

    Args:
        template: SQL containing {{...}} placeholders and [[...]] blocks
        ctx: Filter values to bind

    Returns:
        SQL text; directives that cannot be resolved are left as written
    """
    resolver = _Resolver(template, ctx)
    sql = "".join(resolver.resolve(token) for token in tokenize(template))
    return resolver.mirror_date_filter(sql)


def apply_website_id_only(sql: str, website_id: str) -> str:
    """Substitute only {{website_id}}, leaving every other directive in place."""
    if not website_id:
        return sql
    replacement = quote_sql_literal(website_id)
    return "".join(
        replacement if token.kind == ENTITY_ID else token.text
        for token in tokenize(sql)
    )


def ensure_website_placeholder(sql: str, project_id: str = DEFAULT_PROJECT_ID) -> str:
    """Add a website_id placeholder filter unless the query already filters on website."""
    if (
        re.search(r"\{\{\s*(?:website_id|entity_id)\s*\}\}", sql, re.IGNORECASE)
        or re.search(r"\{\{\s*(?:nettside|domain)\s*\}\}", sql, re.IGNORECASE)
        or re.search(r"""website_id\s*=\s*['"]""", sql, re.IGNORECASE)
        or re.search(r"website_domain\s*=", sql, re.IGNORECASE)
    ):
        return sql

    predicate = f"{table_ref(project_id, EVENT_VIEW)}.website_id = '{{{{website_id}}}}'"
    if re.search(r"\bWHERE\b", sql, re.IGNORECASE):
        return re.sub(r"\bWHERE\b", lambda m: f"{m.group(0)} {predicate} AND", sql, count=1, flags=re.IGNORECASE)

    trimmed = sql.rstrip()
    suffix = ";" if trimmed.endswith(";") else ""
    base = trimmed[:-1] if suffix else trimmed
    return f"{base} WHERE {predicate}{suffix}"


def extract_website_id(sql: str) -> Optional[str]:
    match = _UUID_WEBSITE_ID_PATTERN.search(sql)
    return match.group(3) if match else None


def replace_hardcoded_website_id(sql: str, new_website_id: str) -> str:
    escaped = escape_sql_literal(new_website_id)
    return _UUID_WEBSITE_ID_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}{escaped}{m.group(2)}", sql)


def extract_custom_variables(sql: str) -> List[str]:
    """Names of {{name}} placeholders that must be filled in by the user, in order."""
    names = []
    for token in tokenize(sql):
        if token.kind != VARIABLE:
            continue
        name = token.match.group("name")
        if name.lower() not in BUILTIN_VARIABLES and name not in names:
            names.append(name)
    return names


def find_unresolved_placeholders(sql: str) -> List[str]:
    """Directives still present in bound SQL."""
    return _UNRESOLVED_PATTERN.findall(sql)


def validate_filter_context(template: str, ctx: FilterContext) -> List[str]:
    """
    Check a template against the filter context before binding it.

    Returns:
        Human readable problems; empty when the template can be bound cleanly
    """
    problems = []
    kinds = {token.kind for token in tokenize(template)}

    if ENTITY_ID in kinds and not ctx.website_id:
        problems.append("Select a website to fill in {{website_id}}.")
    if DOMAIN in kinds and not ctx.website_domain:
        problems.append("The selected website has no domain for {{nettside}}.")
    if (
        PATH_CONDITION in kinds
        and ctx.path_operator == PATH_STARTS_WITH
        and len(ctx.url_paths) > 1
    ):
        problems.append("The optional path filter accepts only one 'starts with' path.")
    if ctx.date_from and ctx.date_to and ctx.date_from > ctx.date_to:
        problems.append("Start date must be before end date.")

    missing = [
        name for name in extract_custom_variables(template)
        if not ctx.variables.get(name)
    ]
    if missing:
        problems.append("Fill in variables: " + ", ".join(missing))
    return problems


def sanitize_placeholders(sql: str) -> SanitizedSql:
    """
    Swap directives for valid SQL so a generic formatter or parser accepts the template.

    [[...]] blocks become comments and {{...}} placeholders become string
    literals, each carrying a unique token.
    """
    placeholders: Dict[str, str] = {}
    counter = 0

    def optional_block(match: re.Match) -> str:
        nonlocal counter
        token = f"__METABASE_OPT_{counter}__"
        counter += 1
        placeholders[token] = match.group(0)
        return f"/* {token} */"

    def variable_block(match: re.Match) -> str:
        nonlocal counter
        token = f"__METABASE_VAR_{counter}__"
        counter += 1
        placeholders[token] = match.group(0)
        return f"'{token}'"

    sanitized = _OPTIONAL_BLOCK_PATTERN.sub(optional_block, sql)
    sanitized = _VARIABLE_BLOCK_PATTERN.sub(variable_block, sanitized)
    return SanitizedSql(sanitized, placeholders)


def restore_placeholders(sql: str, placeholders: Dict[str, str]) -> str:
    """Put back the directives replaced by sanitize_placeholders()."""
    restored = sql
    for token, original in placeholders.items():
        restored = re.sub(rf"/\*\s*{token}\s*\*/", lambda _m: original, restored)
        restored = re.sub(rf"'{token}'", lambda _m: original, restored)
    return restored


def format_sql_template(sql: str) -> str:
    """Pretty-print a template without disturbing its directives."""
    sanitized = sanitize_placeholders(sql)
    formatted = sqlparse.format(
        sanitized.sanitized,
        reindent=True,
        keyword_case="upper",
        strip_comments=False,
    )
    return restore_placeholders(formatted, sanitized.placeholders)


def is_single_statement(sql: str) -> bool:
    """True when the template holds exactly one SQL statement."""
    sanitized = sanitize_placeholders(sql).sanitized
    statements = [s for s in sqlparse.split(sanitized) if s.strip().strip(";").strip()]
    return len(statements) == 1

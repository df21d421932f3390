"""
Tests for SQL template binding and the sanitize/restore pass.
"""
from datetime import date

import pytest

from queries.sql_template import (
    DATE_RANGE,
    ENTITY_ID,
    PATH_ASSIGNMENT,
    PATH_CONDITION,
    PATH_STARTS_WITH,
    VARIABLE,
    FilterContext,
    apply_filters_to_sql,
    apply_website_id_only,
    ensure_website_placeholder,
    extract_custom_variables,
    extract_website_id,
    find_unresolved_placeholders,
    format_sql_template,
    is_single_statement,
    parse_url_paths,
    replace_hardcoded_website_id,
    restore_placeholders,
    sanitize_placeholders,
    tokenize,
    validate_filter_context,
)

WEBSITE_UUID = "6f9a1c2e-3b4d-4e5f-8a9b-0c1d2e3f4a5b"
JANUARY = {"date_from": date(2024, 1, 1), "date_to": date(2024, 1, 31), "project_id": "p"}
JANUARY_BETWEEN = "BETWEEN TIMESTAMP('2024-01-01') AND TIMESTAMP('2024-01-31T23:59:59')"


def ctx(**kwargs):
    kwargs.setdefault("reference_date", date(2024, 3, 31))
    return FilterContext(**kwargs)


# ── Website and domain ─────────────────────────────────────────────────────────

def test_website_id_is_quoted_and_escaped():
    sql = apply_filters_to_sql("WHERE e.website_id = {{website_id}}", ctx(website_id="abc'1"))
    assert sql == "WHERE e.website_id = 'abc''1'"


def test_entity_id_placeholder_is_the_website_id():
    sql = apply_filters_to_sql("WHERE e.website_id = {{entity_id}}", ctx(website_id="abc'1"))
    assert sql == "WHERE e.website_id = 'abc''1'"
    assert apply_filters_to_sql("'{{ entity_id }}'", ctx(website_id="abc")) == "'abc'"


@pytest.mark.parametrize("template", [
    "website_id = '{{website_id}}'",
    'website_id = "{{ website_id }}"',
    "website_id = {{ WEBSITE_ID }}",
])
def test_quote_wrapped_website_id_is_replaced_once(template):
    assert apply_filters_to_sql(template, ctx(website_id="abc")) == "website_id = 'abc'"


def test_empty_website_id_leaves_placeholder():
    template = "WHERE website_id = {{website_id}}"
    assert apply_filters_to_sql(template, ctx()) == template


def test_domain_placeholder_uses_selected_domain():
    sql = apply_filters_to_sql(
        "WHERE d = {{nettside}} OR d = '{{domain}}'",
        ctx(website_domain="www.nav.no"),
    )
    assert sql == "WHERE d = 'www.nav.no' OR d = 'www.nav.no'"


def test_domain_without_value_is_left_untouched():
    assert apply_filters_to_sql("{{nettside}}", ctx(website_id="abc")) == "{{nettside}}"


@pytest.mark.parametrize("value", ["o'brien", "''", "a'b'c", "'; DROP TABLE x; --"])
def test_substituted_literals_double_every_quote(value):
    sql = apply_filters_to_sql("{{website_id}}|{{nettside}}|{{v}}", ctx(
        website_id=value, website_domain=value, variables={"v": value},
    ))
    expected = "'" + value.replace("'", "''") + "'"
    assert sql == "|".join([expected] * 3)
    assert sql.count("'") % 2 == 0


# ── Path filter ────────────────────────────────────────────────────────────────

ASSIGNMENT = "WHERE url_path = [[ {{url_sti}} --]] '/'"


def test_assignment_without_path_keeps_default():
    assert apply_filters_to_sql(ASSIGNMENT, ctx()) == "WHERE url_path = '/'"


def test_assignment_single_path_equals():
    assert apply_filters_to_sql(ASSIGNMENT, ctx(url_paths=("/soknad",))) == "WHERE url_path = '/soknad'"


def test_assignment_many_paths_equals():
    sql = apply_filters_to_sql(ASSIGNMENT, ctx(url_paths=("/a", "/b")))
    assert sql == "WHERE url_path IN ('/a', '/b')"


def test_assignment_single_path_starts_with():
    sql = apply_filters_to_sql(ASSIGNMENT, ctx(url_paths=("/a",), path_operator=PATH_STARTS_WITH))
    assert sql == "WHERE url_path LIKE '/a%'"


def test_assignment_many_paths_starts_with():
    sql = apply_filters_to_sql(
        "WHERE e.url_path = [[{{url_path}} -- ]] '/'",
        ctx(url_paths=("/a", "/b"), path_operator=PATH_STARTS_WITH),
    )
    assert sql == "WHERE (e.url_path LIKE '/a%' OR e.url_path LIKE '/b%')"


def test_starts_with_translates_wildcards():
    sql = apply_filters_to_sql(ASSIGNMENT, ctx(url_paths=("/a*/skjema",), path_operator=PATH_STARTS_WITH))
    assert sql == "WHERE url_path LIKE '/a%/skjema%'"


def test_path_values_are_escaped():
    sql = apply_filters_to_sql(ASSIGNMENT, ctx(url_paths=("/o'k",)))
    assert sql == "WHERE url_path = '/o''k'"


LOWERED = "WHERE LOWER(url_path) = [[ {{url_sti}} --]] '/'"


@pytest.mark.parametrize("context,expected", [
    (ctx(), "WHERE LOWER(url_path) = '/'"),
    (ctx(url_paths=("/a",)), "WHERE LOWER(url_path) = '/a'"),
    (ctx(url_paths=("/a", "/b")), "WHERE LOWER(url_path) IN ('/a', '/b')"),
    (ctx(url_paths=("/a",), path_operator=PATH_STARTS_WITH), "WHERE LOWER(url_path) LIKE '/a%'"),
    (
        ctx(url_paths=("/a", "/b"), path_operator=PATH_STARTS_WITH),
        "WHERE (LOWER(url_path) LIKE '/a%' OR LOWER(url_path) LIKE '/b%')",
    ),
])
def test_assignment_accepts_an_expression_on_the_left(context, expected):
    sql = apply_filters_to_sql(LOWERED, context)
    assert sql == expected
    assert find_unresolved_placeholders(sql) == []


def test_assignment_keeps_compact_spacing():
    assert apply_filters_to_sql("url_path=[[{{url_path}}--]]'/'", ctx()) == "url_path='/'"
    assert apply_filters_to_sql("url_path=[[{{url_path}}--]]'/'", ctx(url_paths=("/a", "/b"))) == \
        "url_path IN ('/a', '/b')"


def test_path_placeholder_alias():
    assert apply_filters_to_sql("WHERE 1=1 [[ AND {{path}} ]]", ctx(url_paths=("/a",))) == \
        "WHERE 1=1 AND url_path = '/a'"
    assert apply_filters_to_sql("WHERE url_path = [[ {{path}} --]] '/'", ctx(url_paths=("/a",))) == \
        "WHERE url_path = '/a'"


CONDITION = "WHERE 1=1 [[AND {{url_sti}} ]]"


def test_condition_without_path_is_removed():
    assert apply_filters_to_sql(CONDITION, ctx()) == "WHERE 1=1 "


def test_condition_single_path():
    assert apply_filters_to_sql(CONDITION, ctx(url_paths=("/a",))) == "WHERE 1=1 AND url_path = '/a'"
    assert apply_filters_to_sql(
        CONDITION, ctx(url_paths=("/a",), path_operator=PATH_STARTS_WITH)
    ) == "WHERE 1=1 AND url_path LIKE '/a%'"


def test_condition_many_paths_equals_uses_in():
    sql = apply_filters_to_sql(CONDITION, ctx(url_paths=("/a", "/b")))
    assert sql == "WHERE 1=1 AND url_path IN ('/a', '/b')"


def test_condition_many_starts_with_paths_is_left_unresolved():
    context = ctx(url_paths=("/a", "/b"), path_operator=PATH_STARTS_WITH)
    sql = apply_filters_to_sql(CONDITION, context)
    assert sql == CONDITION
    assert find_unresolved_placeholders(sql) == ["[[AND {{url_sti}} ]]"]
    assert any("starts with" in p for p in validate_filter_context(CONDITION, context))


def test_parse_url_paths():
    assert parse_url_paths("/a, /b,,") == ("/a", "/b")
    assert parse_url_paths("") == ()
    assert parse_url_paths(None) == ()


# ── Date range ─────────────────────────────────────────────────────────────────

def test_date_range_uses_event_view():
    template = "SELECT * FROM `p.umami_views.event` WHERE x = 1 [[AND {{created_at}}]]"
    sql = apply_filters_to_sql(template, ctx(**JANUARY))
    assert sql == (
        "SELECT * FROM `p.umami_views.event` WHERE x = 1 "
        f"AND `p.umami_views.event`.created_at {JANUARY_BETWEEN}"
    )


def test_date_range_defaults_to_lookback_window():
    template = "SELECT * FROM `p.umami_views.session` WHERE 1=1 [[ AND {{ created_at }} ]]"
    sql = apply_filters_to_sql(template, ctx(project_id="p"))
    assert "`p.umami_views.session`.created_at BETWEEN TIMESTAMP('2024-03-01') " \
           "AND TIMESTAMP('2024-03-31T23:59:59')" in sql


def test_date_range_with_only_start_date_ends_on_reference_date():
    sql = apply_filters_to_sql("[[AND {{created_at}}]]", ctx(date_from=date(2024, 2, 1), project_id="p"))
    assert sql == (
        "AND `p.umami_views.event`.created_at "
        "BETWEEN TIMESTAMP('2024-02-01') AND TIMESTAMP('2024-03-31T23:59:59')"
    )


def test_date_range_picks_legacy_session_table():
    template = "SELECT * FROM `p.umami.public_session` WHERE 1=1 [[AND {{created_at}}]]"
    sql = apply_filters_to_sql(template, ctx(**JANUARY))
    assert f"AND `p.umami.public_session`.created_at {JANUARY_BETWEEN}" in sql


def test_event_data_view_is_not_mistaken_for_event_view():
    template = "SELECT * FROM `p.umami_views.event_data` JOIN `p.umami_views.session` USING (session_id) " \
               "WHERE 1=1 [[AND {{created_at}}]]"
    sql = apply_filters_to_sql(template, ctx(**JANUARY))
    assert f"AND `p.umami_views.session`.created_at {JANUARY_BETWEEN}" in sql


MIRROR_TEMPLATE = """SELECT COUNT(*)
FROM `p.umami_views.event` e
JOIN `p.umami.public_session` s ON e.session_id = s.session_id
WHERE e.website_id = {{website_id}}
[[AND {{created_at}}]]"""


def test_joined_session_table_gets_the_same_window():
    sql = apply_filters_to_sql(MIRROR_TEMPLATE, ctx(website_id="abc", **JANUARY))
    assert (
        f"AND `p.umami_views.event`.created_at {JANUARY_BETWEEN} "
        f"AND `p.umami.public_session`.created_at {JANUARY_BETWEEN}"
    ) in sql
    assert sql.count(JANUARY_BETWEEN) == 2


def test_already_bounded_session_table_is_not_mirrored():
    template = MIRROR_TEMPLATE.replace(
        "ON e.session_id = s.session_id",
        "ON e.session_id = s.session_id AND s.created_at > TIMESTAMP('2024-01-01')",
    )
    sql = apply_filters_to_sql(template, ctx(website_id="abc", **JANUARY))
    assert sql.count(JANUARY_BETWEEN) == 1


def test_no_mirroring_without_date_directive():
    template = MIRROR_TEMPLATE.replace("[[AND {{created_at}}]]", "")
    assert "BETWEEN" not in apply_filters_to_sql(template, ctx(website_id="abc", **JANUARY))


# ── Custom variables ───────────────────────────────────────────────────────────

@pytest.mark.parametrize("value,expected", [
    ("10", "10"),
    ("-1.5", "-1.5"),
    ("1.", "'1.'"),
    ("abc", "'abc'"),
    ("o'k", "'o''k'"),
])
def test_custom_variable_values(value, expected):
    sql = apply_filters_to_sql("LIMIT {{ limit }}", ctx(variables={"limit": value}))
    assert sql == f"LIMIT {expected}"


def test_unset_variables_stay_in_output():
    sql = apply_filters_to_sql("WHERE a = {{a}} AND b = {{b}}", ctx(variables={"a": "1", "b": ""}))
    assert sql == "WHERE a = 1 AND b = {{b}}"
    assert find_unresolved_placeholders(sql) == ["{{b}}"]


def test_extract_custom_variables_skips_builtins():
    template = "{{website_id}} {{limit}} [[AND {{created_at}}]] {{event_name}} {{limit}} {{nettside}}"
    assert extract_custom_variables(template) == ["limit", "event_name"]
    assert extract_custom_variables("{{entity_id}} {{domain}} {{path}} {{url_sti}}") == []


def test_tokenize_classifies_directives_in_precedence_order():
    template = "a = {{website_id}} AND url_path = [[{{url_path}}--]] '/' [[AND {{url_path}}]] " \
               "[[AND {{created_at}}]] {{x}}"
    kinds = [t.kind for t in tokenize(template) if t.kind != "literal"]
    assert kinds == [ENTITY_ID, PATH_ASSIGNMENT, PATH_CONDITION, DATE_RANGE, VARIABLE]
    assert "".join(t.text for t in tokenize(template)) == template


# ── Template helpers ───────────────────────────────────────────────────────────

def test_apply_website_id_only_keeps_other_directives():
    template = "WHERE website_id = {{website_id}} [[AND {{created_at}}]] AND x = {{x}}"
    assert apply_website_id_only(template, "abc") == \
        "WHERE website_id = 'abc' [[AND {{created_at}}]] AND x = {{x}}"
    assert apply_website_id_only(template, "") == template


def test_ensure_website_placeholder_inserts_into_where():
    sql = ensure_website_placeholder("SELECT * FROM t WHERE a = 1", "p")
    assert sql == "SELECT * FROM t WHERE `p.umami_views.event`.website_id = '{{website_id}}' AND a = 1"


def test_ensure_website_placeholder_appends_where():
    sql = ensure_website_placeholder("SELECT * FROM t;\n", "p")
    assert sql == "SELECT * FROM t WHERE `p.umami_views.event`.website_id = '{{website_id}}';"


@pytest.mark.parametrize("sql", [
    "SELECT * FROM t WHERE website_id = {{website_id}}",
    "SELECT * FROM t WHERE domain = {{nettside}}",
    f"SELECT * FROM t WHERE website_id = '{WEBSITE_UUID}'",
    "SELECT * FROM t WHERE website_domain = 'nav.no'",
])
def test_ensure_website_placeholder_leaves_existing_filters(sql):
    assert ensure_website_placeholder(sql) == sql


def test_hardcoded_website_id_helpers():
    sql = f"SELECT * FROM t WHERE website_id = '{WEBSITE_UUID}'"
    assert extract_website_id(sql) == WEBSITE_UUID
    assert extract_website_id("SELECT 1") is None

    other = "00000000-0000-0000-0000-000000000000"
    assert replace_hardcoded_website_id(sql, other) == f"SELECT * FROM t WHERE website_id = '{other}'"


def test_validate_filter_context_reports_problems():
    template = "WHERE website_id = {{website_id}} AND n = {{n}}"
    problems = validate_filter_context(template, ctx(date_from=date(2024, 2, 1), date_to=date(2024, 1, 1)))
    assert any("website" in p for p in problems)
    assert any("Start date" in p for p in problems)
    assert "Fill in variables: n" in problems

    assert validate_filter_context(template, ctx(website_id="abc", variables={"n": "1"})) == []


# ── Sanitize / restore ─────────────────────────────────────────────────────────

TEMPLATES = [
    "SELECT 1",
    "WHERE website_id = {{website_id}}",
    "WHERE url_path = [[ {{url_sti}} --]] '/' [[AND {{created_at}}]] AND x = '{{x}}'",
    "SELECT {{a}}, {{ b }} FROM t WHERE [[ AND {{c}} ]] [[AND {{d}}]]",
]


@pytest.mark.parametrize("template", TEMPLATES)
def test_restore_reverses_sanitize(template):
    sanitized = sanitize_placeholders(template)
    assert "{{" not in sanitized.sanitized
    assert "[[" not in sanitized.sanitized
    assert restore_placeholders(sanitized.sanitized, sanitized.placeholders) == template


def test_sanitize_tokens():
    sanitized = sanitize_placeholders("WHERE a = {{a}} [[AND {{created_at}}]]")
    assert sanitized.sanitized == "WHERE a = '__METABASE_VAR_1__' /* __METABASE_OPT_0__ */"
    assert sanitized.placeholders == {
        "__METABASE_OPT_0__": "[[AND {{created_at}}]]",
        "__METABASE_VAR_1__": "{{a}}",
    }


def test_restore_tolerates_reformatted_comments():
    sanitized = sanitize_placeholders("WHERE 1=1 [[AND {{created_at}}]]")
    reformatted = sanitized.sanitized.replace("/* __METABASE_OPT_0__ */", "/*__METABASE_OPT_0__   */")
    assert restore_placeholders(reformatted, sanitized.placeholders) == "WHERE 1=1 [[AND {{created_at}}]]"


def test_format_keeps_directives():
    template = "select url_path, count(*) from `p.umami_views.event` where website_id = {{website_id}} " \
               "[[AND {{created_at}}]] group by url_path"
    formatted = format_sql_template(template)
    assert "{{website_id}}" in formatted
    assert "[[AND {{created_at}}]]" in formatted
    assert "SELECT" in formatted
    assert "__METABASE_" not in formatted


def test_is_single_statement():
    assert is_single_statement("SELECT {{a}} FROM t [[AND {{created_at}}]];")
    assert not is_single_statement("SELECT 1; SELECT 2")
    assert not is_single_statement("   ")

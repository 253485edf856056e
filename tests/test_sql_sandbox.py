"""
Tests for the SQL sandbox: statement shape, table allow-list, keyword
blacklist, comment and quoting handling.
"""

from unittest.mock import patch

import pytest
from sqlglot.errors import ParseError

from ace_assistant.core.errors import SandboxError
from ace_assistant.services.sql_sandbox import (
    SQLSandbox,
    ensure_select_allowed,
    extract_cte_names,
    extract_table_names,
    find_forbidden_keywords,
    strip_sql_comments,
    validate_select,
)


class TestStatementShape:
    def test_simple_select_allowed(self):
        result = validate_select("SELECT * FROM violations")
        assert result.ok
        assert result.normalized_statement == "SELECT * FROM violations"
        assert result.reason is None

    def test_trailing_semicolon_is_trimmed(self):
        result = validate_select("select count(*) from violations;  \n")
        assert result.ok
        assert result.normalized_statement == "select count(*) from violations"

    def test_mixed_case_keywords_and_table(self):
        assert validate_select("SeLeCt bus_route_id FROM VIOLATIONS").ok

    @pytest.mark.parametrize("sql", [
        "DELETE FROM violations",
        "update violations set bus_route_id = 'M15'",
        "show tables",
        "explain select * from violations",
    ])
    def test_non_select_rejected(self, sql):
        result = validate_select(sql)
        assert not result.ok
        assert result.reason == "Only SELECT statements are allowed."

    def test_multiple_statements_rejected(self):
        result = validate_select("select 1; drop table violations")
        assert not result.ok
        assert result.reason == "Multiple statements are not allowed."

    @pytest.mark.parametrize("sql", [None, "", "   ", "-- just a comment"])
    def test_empty_statement_rejected(self, sql):
        result = validate_select(sql)
        assert not result.ok
        assert result.reason == "SQL statement required."


class TestTableAllowList:
    def test_unknown_table_rejected(self):
        result = validate_select("select * from users")
        assert not result.ok
        assert result.reason == "Access to table(s) not permitted: users."

    def test_join_to_unknown_table_rejected(self):
        result = validate_select(
            "select * from violations v join secrets s on s.id = v.violation_id"
        )
        assert not result.ok
        assert "secrets" in result.reason

    def test_comma_join_checked(self):
        result = validate_select("select * from violations v, pg_user u")
        assert not result.ok
        assert "pg_user" in result.reason

    def test_schema_qualified_and_quoted_names(self):
        assert validate_select("select * from public.violations").ok
        assert validate_select('select * from "cuny_campus_locations"').ok

    def test_all_allowed_tables(self):
        for table in (
            "violations",
            "cuny_campus_locations",
            "bus_segment_speeds_2025",
            "bus_segment_speeds_2023_2024",
        ):
            assert validate_select(f"select * from {table} limit 5").ok, table

    def test_cte_names_are_not_tables(self):
        sql = (
            "with monthly as (select bus_route_id, count(*) as n from violations group by 1) "
            "select * from monthly order by n desc"
        )
        assert extract_cte_names(sql) == ["monthly"]
        assert validate_select(sql).ok

    def test_extract_syntax_is_not_a_table(self):
        sql = "select extract(year from last_occurrence) as y, count(*) from violations group by 1"
        assert extract_table_names(sql) == ["violations"]
        assert validate_select(sql).ok

    def test_is_distinct_from_is_not_a_table(self):
        sql = "select * from violations where bus_route_id is not distinct from stop_id"
        assert extract_table_names(sql) == ["violations"]

    def test_extract_table_names_order_and_dedupe(self):
        sql = (
            "select * from violations v "
            "join cuny_campus_locations c on true "
            "join violations v2 on true"
        )
        assert extract_table_names(sql) == ["violations", "cuny_campus_locations"]

    def test_custom_allow_list(self):
        sandbox = SQLSandbox(allowed_tables=["Violations"])
        assert sandbox.validate("select * from violations").ok
        assert not sandbox.validate("select * from cuny_campus_locations").ok


class TestForbiddenKeywords:
    def test_keyword_inside_cte_rejected(self):
        result = validate_select(
            "with gone as (delete from violations returning *) select * from gone"
        )
        assert not result.ok
        assert result.reason == "Statement contains forbidden keywords: delete."

    def test_keywords_reported_in_declaration_order(self):
        assert find_forbidden_keywords("DROP x; delete y; insert z") == ["insert", "delete", "drop"]

    def test_column_names_containing_keywords_allowed(self):
        assert find_forbidden_keywords("select updated_at, created_by from violations") == []
        assert validate_select("select updated_at from violations").ok


class TestComments:
    def test_line_comment_cannot_hide_second_statement(self):
        result = validate_select("select * from violations -- ; drop table violations")
        assert result.ok
        assert result.normalized_statement == "select * from violations"

    def test_block_comment_stripped(self):
        result = validate_select("select /* delete */ * from violations")
        assert result.ok
        assert "delete" not in result.normalized_statement

    def test_comment_markers_inside_literals_survive(self):
        sql = "select * from violations where stop_name = 'a--b /* c */'"
        assert strip_sql_comments(sql) == sql
        result = validate_select(sql)
        assert result.ok
        assert result.normalized_statement == sql

    def test_unterminated_block_comment_stripped(self):
        assert strip_sql_comments("select 1 /* open").strip() == "select 1"


DANGEROUS_STATEMENTS = [
    "select 1; drop table violations",
    "select * from violations; delete from violations",
    "DELETE FROM violations",
    "update violations set bus_route_id = 'M15'",
    "insert into violations (violation_id) values (4)",
    "drop table violations",
    "truncate violations",
    "alter table violations add column note text",
    "grant select on violations to public",
    "create table copy as select * from violations",
    "with gone as (delete from violations returning *) select * from gone",
]


class TestLayersAgree:
    @pytest.mark.parametrize("sql", DANGEROUS_STATEMENTS)
    def test_validation_rejects(self, sql):
        assert not validate_select(sql).ok

    @pytest.mark.parametrize("sql", DANGEROUS_STATEMENTS)
    def test_keyword_blacklist_flags(self, sql):
        assert find_forbidden_keywords(sql)

    def test_semicolon_inside_block_comment_accepted(self):
        result = validate_select("SELECT * FROM /*; DROP TABLE x; */ violations")
        assert result.ok
        assert "drop" not in result.normalized_statement.lower()

    def test_second_statement_after_semicolon_rejected(self):
        result = validate_select("SELECT * FROM violations; DROP TABLE x;")
        assert not result.ok
        assert result.reason == "Multiple statements are not allowed."

    def test_rejection_names_the_table(self):
        result = validate_select("SELECT * FROM secrets")
        assert not result.ok
        assert "secrets" in result.reason


class TestQuoting:
    def test_escape_string_cannot_hide_table(self):
        sql = "select E'\\'' from secrets order by a using < --' from violations"
        assert extract_table_names(strip_sql_comments(sql)) == ["secrets"]
        result = validate_select(sql)
        assert not result.ok
        assert result.reason == "Access to table(s) not permitted: secrets."

    @pytest.mark.parametrize("sql", [
        "select $$'$$ from secrets --' from violations",
        "select $x$'$x$ from secrets --' from violations",
    ])
    def test_dollar_quoted_string_cannot_hide_table(self, sql):
        assert "secrets" in extract_table_names(sql)
        result = validate_select(sql)
        assert not result.ok
        assert "secrets" in result.reason

    def test_comment_markers_inside_dollar_quotes_survive(self):
        sql = "select $body$ -- /* not a comment $body$ as note from violations"
        assert strip_sql_comments(sql) == sql
        assert extract_table_names(sql) == ["violations"]

    def test_quote_inside_comment_opens_no_literal(self):
        sql = "select 1 from violations -- it's\njoin secrets on true"
        assert extract_table_names(strip_sql_comments(sql)) == ["violations", "secrets"]

    def test_quote_inside_quoted_identifier_opens_no_literal(self):
        sql = 'select "o\'clock" from violations v join secrets s on true'
        assert extract_table_names(sql) == ["violations", "secrets"]

    def test_unparseable_statement_rejected(self):
        with patch("ace_assistant.services.sql_sandbox.sqlglot.parse", side_effect=ParseError("bad token")):
            result = validate_select("select * from violations")
        assert not result.ok
        assert result.reason == "Statement could not be parsed."

    def test_parse_failure_ignored_without_ast_pass(self):
        with patch("ace_assistant.services.sql_sandbox.sqlglot.parse", side_effect=ParseError("bad token")):
            assert SQLSandbox(use_ast=False).validate("select * from violations").ok


class TestEnsure:
    def test_returns_normalized_statement(self):
        assert ensure_select_allowed("select * from violations;") == "select * from violations"

    def test_raises_sandbox_error_with_reason(self):
        with pytest.raises(SandboxError) as exc_info:
            ensure_select_allowed("drop table violations")
        assert exc_info.value.reason == "Only SELECT statements are allowed."
        assert exc_info.value.code == "ACE-SQL-001"

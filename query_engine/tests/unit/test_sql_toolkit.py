"""Unit tests for the sqlglot-backed SQL toolkit."""

from __future__ import annotations

import pytest

from query_engine.sql_toolkit import (
    Dialect,
    SqlParseError,
    TableRef,
    get_sql_toolkit,
    register_implementation,
    reset_toolkit,
)

# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestFactory:
    def test_singleton(self):
        assert get_sql_toolkit() is get_sql_toolkit()

    def test_register_custom_implementation(self):
        sentinel = object()
        register_implementation(lambda: sentinel)  # type: ignore[arg-type, return-value]
        assert get_sql_toolkit() is sentinel
        reset_toolkit()
        assert get_sql_toolkit() is not sentinel


# ---------------------------------------------------------------------------
# Table extraction
# ---------------------------------------------------------------------------


class TestExtractTables:
    def test_join_and_comma_join(self):
        tk = get_sql_toolkit()
        result = tk.scope_analyzer.extract_tables(
            "SELECT * FROM orders o, audit_log a JOIN customers c ON c.id = a.id",
            Dialect.POSTGRES,
        )
        names = [t.name for t in result.referenced_tables]
        assert names == ["audit_log", "customers", "orders"]

    def test_cte_names_excluded(self):
        tk = get_sql_toolkit()
        result = tk.scope_analyzer.extract_tables(
            "WITH recent AS (SELECT * FROM orders) SELECT * FROM recent",
            Dialect.POSTGRES,
        )
        assert [t.name for t in result.referenced_tables] == ["orders"]
        assert result.cte_names == ("recent",)

    def test_subquery_tables_found(self):
        tk = get_sql_toolkit()
        result = tk.scope_analyzer.extract_tables(
            "SELECT * FROM orders WHERE customer_id IN (SELECT id FROM secrets)",
            Dialect.POSTGRES,
        )
        assert {t.name for t in result.referenced_tables} == {"orders", "secrets"}

    def test_schema_qualified(self):
        tk = get_sql_toolkit()
        result = tk.scope_analyzer.extract_tables("SELECT * FROM shop.Orders", Dialect.POSTGRES)
        assert result.referenced_tables == (TableRef(schema="shop", name="orders"),)
        assert result.referenced_tables[0].fully_qualified == "shop.orders"

    def test_parse_error(self):
        tk = get_sql_toolkit()
        with pytest.raises(SqlParseError):
            tk.scope_analyzer.extract_tables("SELECT * FROM orders WHERE (id = 1", Dialect.POSTGRES)


# ---------------------------------------------------------------------------
# Column filters
# ---------------------------------------------------------------------------


class TestColumnFilters:
    def test_root_conjunct(self):
        tk = get_sql_toolkit()
        result = tk.scope_analyzer.column_filters(
            "SELECT * FROM orders o WHERE o.store_id = 42 AND o.total > 10",
            "store_id",
            Dialect.POSTGRES,
        )
        assert [(f.qualifier, f.value) for f in result.root_filters] == [("o", "42")]
        assert result.is_compound is False

    def test_or_branch_is_not_a_root_filter(self):
        tk = get_sql_toolkit()
        result = tk.scope_analyzer.column_filters(
            "SELECT * FROM orders WHERE store_id = 42 OR total > 0",
            "store_id",
            Dialect.POSTGRES,
        )
        assert result.root_filters == ()
        assert [f.value for f in result.all_filters] == ["42"]

    def test_reversed_and_in_filters(self):
        tk = get_sql_toolkit()
        result = tk.scope_analyzer.column_filters(
            "SELECT * FROM orders WHERE 7 = store_id AND id IN (SELECT id FROM orders WHERE store_id IN (1, 2))",
            "store_id",
            Dialect.POSTGRES,
        )
        assert sorted(f.value for f in result.all_filters) == ["1", "2", "7"]

    def test_placeholder_detected(self):
        tk = get_sql_toolkit()
        result = tk.scope_analyzer.column_filters(
            "SELECT * FROM orders WHERE store_id = ?", "store_id", Dialect.MYSQL
        )
        assert result.has_placeholders is True

    def test_union_is_compound(self):
        tk = get_sql_toolkit()
        result = tk.scope_analyzer.column_filters(
            "SELECT id FROM orders UNION SELECT id FROM customers",
            "store_id",
            Dialect.POSTGRES,
        )
        assert result.is_compound is True
        assert result.root_filters == ()


# ---------------------------------------------------------------------------
# Primary table
# ---------------------------------------------------------------------------


class TestPrimaryTable:
    def test_alias_kept(self):
        tk = get_sql_toolkit()
        ref = tk.scope_analyzer.primary_table(
            "SELECT o.id FROM orders o JOIN customers c ON c.id = o.customer_id",
            Dialect.POSTGRES,
        )
        assert ref is not None
        assert ref.name == "orders"
        assert ref.alias == "o"
        assert ref.reference_name == "o"

    def test_no_alias(self):
        tk = get_sql_toolkit()
        ref = tk.scope_analyzer.primary_table("SELECT id FROM orders", Dialect.POSTGRES)
        assert ref is not None
        assert ref.reference_name == "orders"

    @pytest.mark.parametrize(
        "table, expected",
        [("Orders", "Orders"), ('"Orders"', '"Orders"'), ("shop.Orders", "Orders")],
    )
    def test_reference_name_keeps_written_form(self, table: str, expected: str):
        tk = get_sql_toolkit()
        ref = tk.scope_analyzer.primary_table(f"SELECT id FROM {table}", Dialect.POSTGRES)
        assert ref is not None
        assert ref.name == "orders"
        assert ref.reference_name == expected
        assert ref == TableRef(schema=ref.schema, name="orders")

    def test_derived_table_has_no_primary(self):
        tk = get_sql_toolkit()
        ref = tk.scope_analyzer.primary_table(
            "SELECT * FROM (SELECT id FROM orders) sub", Dialect.POSTGRES
        )
        assert ref is None

    def test_cte_source_has_no_primary(self):
        tk = get_sql_toolkit()
        ref = tk.scope_analyzer.primary_table(
            "WITH recent AS (SELECT * FROM orders) SELECT * FROM recent", Dialect.POSTGRES
        )
        assert ref is None

    def test_select_without_from(self):
        tk = get_sql_toolkit()
        assert tk.scope_analyzer.primary_table("SELECT 1", Dialect.POSTGRES) is None


# ---------------------------------------------------------------------------
# Safety guard
# ---------------------------------------------------------------------------


class TestSafetyGuard:
    @pytest.mark.parametrize(
        "sql",
        [
            "SELECT id FROM orders",
            "WITH r AS (SELECT id FROM orders) SELECT * FROM r",
            "SELECT id FROM orders UNION SELECT id FROM customers",
        ],
    )
    def test_reads_are_safe(self, sql: str):
        result = get_sql_toolkit().safety_guard.check_read_only(sql, Dialect.POSTGRES)
        assert result.is_safe, result.violations
        assert result.checked_statements == 1

    def test_multiple_statements(self):
        result = get_sql_toolkit().safety_guard.check_read_only(
            "SELECT 1; SELECT 2", Dialect.POSTGRES
        )
        assert not result.is_safe
        assert "MULTIPLE_STATEMENTS" in {v.violation_type for v in result.violations}

    def test_delete_is_not_a_query(self):
        result = get_sql_toolkit().safety_guard.check_read_only(
            "DELETE FROM orders WHERE id = 1", Dialect.POSTGRES
        )
        types = {v.violation_type for v in result.violations}
        assert "NOT_A_QUERY" in types
        assert "DELETE" in types

    def test_select_into_table(self):
        result = get_sql_toolkit().safety_guard.check_read_only(
            "SELECT * INTO new_orders FROM orders", Dialect.POSTGRES
        )
        assert not result.is_safe

    def test_forbidden_function(self):
        result = get_sql_toolkit().safety_guard.check_read_only(
            "SELECT pg_sleep(10) FROM orders", Dialect.POSTGRES
        )
        assert not result.is_safe
        assert result.violations[0].violation_type == "FORBIDDEN_FUNCTION"
        assert result.violations[0].target == "pg_sleep"

    @pytest.mark.parametrize(
        "sql",
        [
            "SELECT * FROM orders WHERE id > ?",
            "SELECT * FROM orders WHERE id > :min_id",
            "SELECT * FROM orders LIMIT 10 OFFSET ?",
        ],
    )
    def test_unbound_parameter(self, sql: str):
        result = get_sql_toolkit().safety_guard.check_read_only(sql, Dialect.POSTGRES)
        assert not result.is_safe
        assert [v.violation_type for v in result.violations] == ["UNBOUND_PARAMETER"]

    def test_unparseable(self):
        result = get_sql_toolkit().safety_guard.check_read_only(
            "SELECT * FROM orders WHERE (id = 1", Dialect.POSTGRES
        )
        assert not result.is_safe
        assert result.violations[0].violation_type == "UNPARSEABLE"
        assert result.checked_statements == 0

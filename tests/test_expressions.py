"""
Tests for compiling FILTER expressions, aggregates and value definitions to Polars.
"""

import datetime

import polars as pl
import pytest

from rdf_datalake.catalog.datatypes import (
    XSD_STRING,
    XSD_INTEGER,
    XSD_DOUBLE,
    XSD_BOOLEAN,
    XSD_DATE,
    XSD_DATETIME,
)
from rdf_datalake.errors import BackendError
from rdf_datalake.execution.expressions import (
    ExpressionBuilder,
    cast_expr,
    datatype_for,
    dtype_for,
)
from rdf_datalake.planning.schema import ColumnRef, LexicalForm, LanguageTag, CastTo
from rdf_datalake.sparql import parse_query, AggregateExpression, Variable


@pytest.fixture
def people():
    return pl.DataFrame({
        "name": ["Alice", "bob", None],
        "age": [30, 25, None],
        "score": ["1.5", "x", "3"],
        "home": ["http://ex.org/a", "_:b1", "plain"],
        "name_lang": ["en", "en-GB", None],
    })


def filter_rows(df, text, prefixes=None):
    """Apply the FILTER of 'SELECT * WHERE { ... FILTER(text) }' to df."""
    query = parse_query(f"SELECT * WHERE {{ ?s <http://ex.org/p> ?name FILTER({text}) }}")
    builder = ExpressionBuilder(prefixes, dict(df.schema))
    return df.filter(builder.build_filter(query.where.filters[0].expression))


class TestDtypes:
    """Tests for datatype and dtype mapping."""

    def test_dtype_for(self):
        assert dtype_for(XSD_INTEGER) == pl.Int64
        assert dtype_for("http://www.w3.org/2001/XMLSchema#int") == pl.Int64
        assert dtype_for(XSD_DOUBLE) == pl.Float64
        assert dtype_for("http://example.org/custom") == pl.Utf8

    def test_datatype_for(self):
        assert datatype_for(pl.UInt32) == XSD_INTEGER
        assert datatype_for(pl.Float32) == XSD_DOUBLE
        assert datatype_for(pl.Boolean) == XSD_BOOLEAN
        assert datatype_for(pl.Date) == XSD_DATE
        assert datatype_for(pl.Datetime("us")) == XSD_DATETIME
        assert datatype_for(pl.Utf8) == XSD_STRING

    def test_cast_strings(self):
        df = pl.DataFrame({"v": ["true", "2024-01-31", "nope"]})
        out = df.select(
            cast_expr(pl.col("v"), pl.Utf8, pl.Boolean).alias("b"),
            cast_expr(pl.col("v"), pl.Utf8, pl.Date).alias("d"),
        )
        assert out["b"].to_list() == [True, False, False]
        assert out["d"].to_list() == [None, datetime.date(2024, 1, 31), None]


class TestFilters:
    """Tests for FILTER compilation."""

    def test_comparisons(self, people):
        assert filter_rows(people, "?age >= 30")["name"].to_list() == ["Alice"]
        assert filter_rows(people, "?age != 30 && ?age > 1")["name"].to_list() == ["bob"]

    def test_not_and_or(self, people):
        result = filter_rows(people, '!(?name = "Alice") || ?age = 30')
        assert result["name"].to_list() == ["Alice", "bob"]

    def test_string_column_compared_numerically(self, people):
        """Unparseable values never match a numeric comparison."""
        assert filter_rows(people, "?score > 1")["score"].to_list() == ["1.5", "3"]

    def test_regex_case_insensitive(self, people):
        assert filter_rows(people, 'REGEX(?name, "^B", "i")')["name"].to_list() == ["bob"]

    def test_string_functions(self, people):
        assert filter_rows(people, 'STRSTARTS(?name, "Al")')["name"].to_list() == ["Alice"]
        assert filter_rows(people, 'CONTAINS(LCASE(?name), "ob")')["name"].to_list() == ["bob"]
        assert filter_rows(people, "STRLEN(?name) = 5")["name"].to_list() == ["Alice"]

    def test_bound(self, people):
        assert filter_rows(people, "BOUND(?age)").height == 2
        assert filter_rows(people, "!BOUND(?name)").height == 1

    def test_term_kinds(self, people):
        assert filter_rows(people, "isIRI(?home)")["home"].to_list() == ["http://ex.org/a"]
        assert filter_rows(people, "isBlank(?home)")["home"].to_list() == ["_:b1"]
        assert filter_rows(people, "isLiteral(?home)")["home"].to_list() == ["plain"]

    def test_lang_and_langmatches(self, people):
        assert filter_rows(people, 'LANG(?name) = "en"')["name"].to_list() == ["Alice"]
        assert filter_rows(people, 'LANGMATCHES(LANG(?name), "en")').height == 2

    def test_lang_without_tags(self):
        df = pl.DataFrame({"name": ["a"]})
        assert filter_rows(df, 'LANG(?name) = ""').height == 1

    def test_iri_constant_expanded(self):
        df = pl.DataFrame({"name": ["http://ex.org/a", "http://ex.org/b"]})
        result = filter_rows(df, "?name = ex:a", prefixes={"ex": "http://ex.org/"})
        assert result["name"].to_list() == ["http://ex.org/a"]

    def test_unsupported_function(self, people):
        with pytest.raises(BackendError, match="Unsupported function"):
            filter_rows(people, "SHA1(?name)")


class TestAggregates:
    """Tests for aggregate compilation."""

    def test_aggregates(self):
        df = pl.DataFrame({"g": ["a", "a", "b"], "v": [1, 1, 5], "s": ["x", "y", "z"]})
        builder = ExpressionBuilder()
        aggs = [
            builder.build_aggregate(AggregateExpression("COUNT", None, Variable("n"))),
            builder.build_aggregate(AggregateExpression("COUNT", Variable("v"), Variable("d"), distinct=True)),
            builder.build_aggregate(AggregateExpression("SUM", Variable("v"), Variable("total"))),
            builder.build_aggregate(AggregateExpression("GROUP_CONCAT", Variable("s"), Variable("all"), separator="|")),
        ]
        out = df.group_by("g", maintain_order=True).agg(aggs)

        assert out.rows() == [("a", 2, 1, 2.0, "x|y"), ("b", 1, 1, 5.0, "z")]

    def test_star_only_for_count(self):
        with pytest.raises(BackendError):
            ExpressionBuilder().build_aggregate(AggregateExpression("SUM", None, Variable("x")))


class TestDefinitions:
    """Tests for compiling schema definitions."""

    def test_definitions(self):
        df = pl.DataFrame({"age": [1, 2], "flag": [True, False], "label_lang": ["en", "de"]})
        builder = ExpressionBuilder(columns=dict(df.schema))

        expr, dtype = builder.compile_definition(CastTo(ColumnRef("age"), XSD_DOUBLE))
        assert dtype == pl.Float64
        assert df.select(expr)["age"].to_list() == [1.0, 2.0]

        expr, dtype = builder.compile_definition(LexicalForm(ColumnRef("flag")))
        assert dtype == pl.Utf8
        assert df.select(expr.alias("flag"))["flag"].to_list() == ["true", "false"]

        expr, _ = builder.compile_definition(LanguageTag("label"))
        assert df.select(expr)["label_lang"].to_list() == ["en", "de"]

    def test_missing_column(self):
        with pytest.raises(BackendError, match="no column"):
            ExpressionBuilder(columns={}).compile_definition(ColumnRef("x"))

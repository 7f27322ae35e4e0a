"""
Tests for datatype promotion and schema reconciliation.
"""

import pytest

from rdf_datalake.catalog import SourceCatalog, SourceMapper
from rdf_datalake.catalog.datatypes import (
    XSD,
    XSD_STRING,
    XSD_INTEGER,
    XSD_DECIMAL,
    XSD_DOUBLE,
    XSD_DATE,
    XSD_DATETIME,
    XSD_BOOLEAN,
    RDF_LANGSTRING,
    IRI_TYPE,
)
from rdf_datalake.errors import TypeConflict
from rdf_datalake.planning import (
    JoinPlanner,
    ColumnRef,
    LexicalForm,
    LanguageTag,
    CastTo,
    promote,
    reconcile,
    check_declared,
)
from rdf_datalake.sparql import extract

EX = "http://example.org/"


class TestPromote:
    """Tests for the least-upper-bound datatype."""

    def test_single_type_kept(self):
        assert promote("x", {XSD_DATE}) == XSD_DATE

    def test_empty_is_string(self):
        assert promote("x", set()) == XSD_STRING

    def test_numeric_widening(self):
        assert promote("x", {XSD_INTEGER, XSD_DECIMAL}) == XSD_DECIMAL
        assert promote("x", {XSD_INTEGER, XSD_DOUBLE, XSD_DECIMAL}) == XSD_DOUBLE

    def test_integer_subtypes_collapse(self):
        assert promote("x", {XSD + "int", XSD + "long"}) == XSD_INTEGER

    def test_temporal(self):
        assert promote("x", {XSD_DATE, XSD_DATETIME}) == XSD_DATETIME

    def test_string_like_kinds(self):
        assert promote("x", {IRI_TYPE, XSD_STRING}) == XSD_STRING
        assert promote("x", {RDF_LANGSTRING, IRI_TYPE}) == XSD_STRING

    def test_string_with_custom_type(self):
        assert promote("x", {XSD_STRING, "http://example.org/dt/code"}) == XSD_STRING

    def test_string_and_integer_conflict(self):
        """Text and numbers have no common representation."""
        with pytest.raises(TypeConflict) as exc_info:
            promote("age", {XSD_STRING, XSD_INTEGER})
        assert exc_info.value.subject == "?age"
        assert "xsd:integer" in exc_info.value.message

    def test_boolean_and_date_conflict(self):
        with pytest.raises(TypeConflict):
            promote("flag", {XSD_BOOLEAN, XSD_DATE})


class TestReconcile:
    """Tests for deriving a target schema."""

    def test_definitions(self):
        schema = reconcile(
            ["age", "home", "score"],
            {
                "age": {XSD_INTEGER},
                "home": {IRI_TYPE},
                "score": {XSD_INTEGER, XSD_DOUBLE},
            },
        )

        assert schema.names == ("age", "home", "score")
        assert schema.field("age").definition == ColumnRef("age")
        assert schema.field("home").definition == LexicalForm(ColumnRef("home"))
        assert schema.field("score").definition == CastTo(ColumnRef("score"), XSD_DOUBLE)
        assert schema.datatype_of("home") == XSD_STRING

    def test_nullable_from_counts(self):
        schema = reconcile(["a", "b"], {"a": {XSD_INTEGER}, "b": {XSD_INTEGER}}, {"a": 2})
        assert schema.field("a").nullable
        assert not schema.field("b").nullable

    def test_language_companion(self):
        schema = reconcile(["label"], {"label": {RDF_LANGSTRING}})

        assert schema.names == ("label", "label_lang")
        assert schema.field("label_lang").definition == LanguageTag("label")
        assert str(schema.field("label").definition) == "STR(label)"

    def test_conflict_propagates(self):
        with pytest.raises(TypeConflict):
            reconcile(["v"], {"v": {XSD_BOOLEAN, XSD_INTEGER}})

    def test_unknown_field(self):
        with pytest.raises(KeyError):
            reconcile(["a"], {}).field("b")


class TestCheckDeclared:
    """Tests for reconciling catalog declarations before reading data."""

    def _catalog(self, first, second):
        return SourceCatalog.from_dict({
            "prefixes": {"ex": EX},
            "sources": [
                {"id": "a", "path": "a.csv", "subject": "id",
                 "predicates": {"ex:age": {"column": "age", "datatype": first}}},
                {"id": "b", "path": "b.csv", "subject": "id",
                 "predicates": {"ex:age": {"column": "age", "datatype": second}}},
            ],
        })

    def _check(self, catalog):
        extracted = extract(f"PREFIX ex: <{EX}> SELECT ?age WHERE {{ ?p ex:age ?age }}")
        resolution = SourceMapper(catalog).resolve(extracted.stars)
        plan = JoinPlanner().plan(extracted, resolution)
        return check_declared(extracted.stars, plan.needed, resolution)

    def test_compatible_declarations(self):
        schemas = self._check(self._catalog("integer", "decimal"))
        assert schemas["p"].datatype_of("age") == XSD_DECIMAL

    def test_conflicting_declarations(self):
        with pytest.raises(TypeConflict) as exc_info:
            self._check(self._catalog("string", "integer"))
        assert exc_info.value.subject == "?age"

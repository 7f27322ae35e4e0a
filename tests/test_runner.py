"""
End-to-end tests for the query runner over the sample data lake.
"""

import pytest

from rdf_datalake.catalog import load_catalog
from rdf_datalake.catalog.datatypes import XSD_STRING, XSD_INTEGER
from rdf_datalake.errors import BackendError, TypeConflict, UnresolvedStar
from rdf_datalake.execution import PolarsExecutor
from rdf_datalake.runner import QueryRunner, QueryState, QuerySuccess, QueryFailure

EX = "http://example.org/"
PREFIX = f"PREFIX ex: <{EX}>\n"


def person(n):
    return f"{EX}person/{n}"


def company(name):
    return f"{EX}company/{name}"


def city(name):
    return f"{EX}city/{name}"


class FailingExecutor(PolarsExecutor):
    """Executor whose final evaluation raises a foreign exception."""

    def run(self, relation):
        raise RuntimeError("disk on fire")


class TestScenarios:
    """The reference scenarios: single star, two stars, type conflict, unresolved star."""

    @pytest.fixture
    def runner(self, catalog):
        return QueryRunner(catalog)

    def test_single_star(self, runner):
        """Every person's name comes back typed as a string."""
        outcome = runner.run(PREFIX + "SELECT ?name WHERE { ?p ex:name ?name }")

        assert isinstance(outcome, QuerySuccess)
        assert outcome.ok
        assert outcome.result.columns == ["name"]
        assert outcome.result.datatypes == [XSD_STRING]
        assert sorted(row[0] for row in outcome.result.rows) == ["Alice", "Bob", "Carol"]
        assert outcome.stats.join_count == 0

    def test_two_stars_across_formats(self, runner):
        """A CSV star joins an N-Triples star on the company IRI."""
        outcome = runner.run(PREFIX + """
            SELECT ?p ?l WHERE {
                ?p ex:worksAt ?c .
                ?c ex:locatedIn ?l .
            }
        """)

        assert outcome.ok, outcome
        assert outcome.result.columns == ["p", "l"]
        assert sorted(map(tuple, outcome.result.rows)) == [
            (person(1), city("berlin")),
            (person(2), city("paris")),
            (person(3), city("berlin")),
        ]
        assert outcome.stats.join_count == 1
        assert outcome.stats.star_count == 2

    def test_type_conflict(self, lake_dir, write_file):
        """One source declares ex:age a string, another an integer."""
        write_file("more_people.csv", "id,age\n9,old\n")
        write_file("conflict.yaml", f"""
            prefixes: {{ex: "{EX}"}}
            sources:
              - id: people
                path: people.csv
                subject: id
                predicates:
                  ex:age: {{column: age, datatype: xsd:integer}}
              - id: more
                path: more_people.csv
                subject: id
                predicates:
                  ex:age: {{column: age, datatype: xsd:string}}
        """)
        runner = QueryRunner(load_catalog(lake_dir / "conflict.yaml"))

        outcome = runner.run(PREFIX + "SELECT ?a WHERE { ?p ex:age ?a }")

        assert isinstance(outcome, QueryFailure)
        assert outcome.kind == "TypeConflict"
        assert isinstance(outcome.error, TypeConflict)
        assert outcome.subject == "?a"
        assert QueryState.STARS_FETCHED not in outcome.stats.transitions

    def test_unresolved_star(self, runner):
        outcome = runner.run(PREFIX + "SELECT ?s WHERE { ?p ex:name ?n ; ex:salary ?s }")

        assert not outcome.ok
        assert isinstance(outcome.error, UnresolvedStar)
        assert outcome.subject == "p"
        assert outcome.stats.transitions == [
            QueryState.PARSED,
            QueryState.STARS_EXTRACTED,
            QueryState.FAILED,
        ]


class TestLifecycle:
    """Tests for query states and failure reporting."""

    def test_successful_transitions(self, catalog):
        outcome = QueryRunner(catalog).run(PREFIX + "SELECT ?n WHERE { ?p ex:name ?n }")

        assert outcome.stats.transitions == [
            QueryState.PARSED,
            QueryState.STARS_EXTRACTED,
            QueryState.SOURCES_RESOLVED,
            QueryState.PLANNED,
            QueryState.STARS_FETCHED,
            QueryState.JOINED,
            QueryState.POST_PROCESSED,
            QueryState.MATERIALIZED,
            QueryState.SUCCEEDED,
        ]
        assert outcome.stats.state == QueryState.SUCCEEDED
        assert outcome.stats.rows_returned == 3
        assert outcome.to_dict()["status"] == "success"

    def test_malformed_query(self, catalog):
        outcome = QueryRunner(catalog).run("SELECT WHERE")

        assert outcome.kind == "MalformedQuery"
        assert outcome.stats.transitions == [QueryState.FAILED]
        assert outcome.to_dict()["error"]["kind"] == "MalformedQuery"

    def test_disconnected_query(self, catalog):
        outcome = QueryRunner(catalog).run(PREFIX + """
            SELECT ?n ?l WHERE { ?p ex:name ?n . ?c ex:locatedIn ?l }
        """)
        assert outcome.kind == "DisconnectedQuery"

    def test_foreign_exception_becomes_backend_error(self, catalog):
        outcome = QueryRunner(catalog, FailingExecutor()).run(
            PREFIX + "SELECT ?n WHERE { ?p ex:name ?n }"
        )

        assert isinstance(outcome.error, BackendError)
        assert "disk on fire" in outcome.message
        assert outcome.stats.transitions[-2:] == [QueryState.POST_PROCESSED, QueryState.FAILED]

    def test_missing_source_file(self, catalog, lake_dir):
        (lake_dir / "companies.nt").unlink()
        outcome = QueryRunner(catalog).run(PREFIX + "SELECT ?l WHERE { ?c ex:locatedIn ?l }")

        assert outcome.kind == "BackendError"
        assert outcome.subject == "kg"
        assert QueryState.STARS_FETCHED not in outcome.stats.transitions

    def test_run_file(self, catalog, write_file):
        path = write_file("q.sparql", PREFIX + "SELECT ?n WHERE { ?p ex:name ?n }")
        assert QueryRunner(catalog).run_file(path).ok

    def test_run_missing_file(self, catalog, tmp_path):
        outcome = QueryRunner(catalog).run_file(tmp_path / "missing.sparql")
        assert outcome.kind == "MalformedQuery"
        assert outcome.stats.state == QueryState.FAILED


class TestQueryFeatures:
    """Tests for filters, modifiers and TRANSFORM through the whole pipeline."""

    @pytest.fixture
    def runner(self, catalog):
        return QueryRunner(catalog)

    def test_local_filter(self, runner):
        outcome = runner.run(PREFIX + "SELECT ?n WHERE { ?p ex:name ?n ; ex:age ?a FILTER(?a > 26) }")
        assert outcome.result.rows == [["Alice"]]
        assert outcome.stats.filter_counts == {"p": 1}

    def test_constant_objects(self, runner):
        outcome = runner.run(PREFIX + 'SELECT ?p WHERE { ?p a ex:Person ; ex:name "Bob" }')
        assert outcome.result.rows == [[person(2)]]
        assert outcome.stats.filter_counts == {"p": 2}

    def test_constant_subject_tabular(self, runner):
        outcome = runner.run(PREFIX + f"SELECT ?name WHERE {{ <{person(1)}> ex:name ?name }}")
        assert outcome.result.rows == [["Alice"]]
        assert outcome.stats.filter_counts == {f"<{person(1)}>": 1}

    def test_constant_subject_triples(self, runner):
        outcome = runner.run(PREFIX + f"SELECT ?l WHERE {{ <{company('acme')}> ex:locatedIn ?l }}")
        assert outcome.result.rows == [[city("berlin")]]

    def test_global_filter(self, runner):
        outcome = runner.run(PREFIX + f"""
            SELECT ?n ?l WHERE {{
                ?p ex:name ?n ; ex:worksAt ?c .
                ?c ex:locatedIn ?l
                FILTER(?n = "Alice" || ?l = "{city('paris')}")
            }}
        """)
        assert sorted(map(tuple, outcome.result.rows)) == [
            ("Alice", city("berlin")),
            ("Bob", city("paris")),
        ]

    def test_language_filter(self, runner):
        outcome = runner.run(PREFIX + """
            SELECT ?c ?label WHERE { ?c ex:label ?label FILTER(LANG(?label) = "en") }
        """)

        assert outcome.result.columns == ["c", "label"]
        assert sorted(map(tuple, outcome.result.rows)) == [
            (company("acme"), "Acme"),
            (company("globex"), "Globex"),
        ]

    def test_group_and_order(self, runner):
        outcome = runner.run(PREFIX + """
            SELECT ?c (COUNT(?p) AS ?n) WHERE { ?p ex:worksAt ?c }
            GROUP BY ?c ORDER BY DESC(?n)
        """)

        assert outcome.result.columns == ["c", "n"]
        assert outcome.result.rows == [[company("acme"), 2], [company("globex"), 1]]
        assert outcome.result.datatypes[1] == XSD_INTEGER

    def test_order_limit_offset(self, runner):
        outcome = runner.run(PREFIX + """
            SELECT ?n WHERE { ?p ex:name ?n } ORDER BY DESC(?n) LIMIT 1 OFFSET 1
        """)
        assert outcome.result.rows == [["Bob"]]

    def test_nulls_sort_last(self, runner):
        outcome = runner.run(PREFIX + "SELECT ?n ?a WHERE { ?p ex:name ?n ; ex:age ?a } ORDER BY ?a")
        assert [row[0] for row in outcome.result.rows] == ["Bob", "Alice", "Carol"]

    def test_distinct(self, runner):
        outcome = runner.run(PREFIX + "SELECT DISTINCT ?c WHERE { ?p ex:worksAt ?c }")
        assert outcome.result.row_count == 2

    def test_default_limit(self, catalog):
        runner = QueryRunner(catalog, default_limit=2)
        outcome = runner.run(PREFIX + "SELECT ?n WHERE { ?p ex:name ?n }")
        assert outcome.result.row_count == 2

    def test_transform(self, tmp_path, write_file):
        """Join keys spelled differently are rewritten before the join."""
        write_file("staff.csv", "id,name,worksFor\n1,Alice,101\n2,Bob,102\n")
        write_file("firms.csv", "code,cname\nC1,Acme\nC2,Globex\n")
        write_file("catalog.yaml", f"""
            prefixes: {{ex: "{EX}"}}
            sources:
              - id: staff
                path: staff.csv
                subject: id
                predicates:
                  ex:name: name
                  ex:worksFor: {{column: worksFor, datatype: integer}}
              - id: firms
                path: firms.csv
                subject: code
                predicates:
                  ex:cname: cname
        """)
        runner = QueryRunner(load_catalog(tmp_path / "catalog.yaml"))

        outcome = runner.run(PREFIX + """
            SELECT ?name ?n WHERE { ?p ex:name ?name ; ex:worksFor ?c . ?c ex:cname ?n }
            TRANSFORM(?p?c.l.scl(_-100) && ?p?c.r.replc("C","").toInt)
        """)

        assert outcome.ok, outcome
        assert sorted(map(tuple, outcome.result.rows)) == [("Alice", "Acme"), ("Bob", "Globex")]


class TestExplain:
    """Tests for query plans."""

    def test_explain_two_stars(self, catalog):
        plan = QueryRunner(catalog).explain(PREFIX + """
            SELECT ?l WHERE { ?p ex:worksAt ?c ; ex:name ?n . ?c ex:locatedIn ?l }
        """)

        assert [s["key"] for s in plan.stars] == ["p", "c"]
        assert [(j["left"], j["right"], j["variables"]) for j in plan.joins] == [("p", "c", ["c"])]
        assert plan.joins[0]["weight"] == pytest.approx(1 / 3 + 1 / 2, abs=1e-5)
        assert plan.selected == [f"c:{EX}locatedIn"]
        assert plan.output_columns == ["l"]
        predicates = {p["predicate"]: p for p in plan.stars[0]["predicates"]}
        assert predicates[EX + "worksAt"]["sources"] == ["people"]
        assert not predicates[EX + "name"]["needed"]
        assert plan.stars[0]["schema"] == {"c": "xsd:string"}
        assert "JOIN" in str(plan)

    def test_explain_raises(self, catalog):
        with pytest.raises(UnresolvedStar):
            QueryRunner(catalog).explain(PREFIX + "SELECT ?s WHERE { ?p ex:salary ?s }")

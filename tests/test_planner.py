"""
Tests for join planning.
"""

import networkx as nx
import pytest

from rdf_datalake.catalog import SourceCatalog, SourceMapper
from rdf_datalake.errors import DisconnectedQuery
from rdf_datalake.planning import JoinPlanner, JoinStep, build_variable_map, order_joins
from rdf_datalake.planning.planner import attribute_filters, shared_variables
from rdf_datalake.sparql import extract, SUBJECT

EX = "http://example.org/"


def chain_catalog(datatypes=None):
    """One CSV source serving ex:p1..ex:p3, ex:name and ex:age."""
    datatypes = datatypes or {}
    predicates = {}
    for name in ("p1", "p2", "p3", "name", "age"):
        entry = {"column": name}
        if name in datatypes:
            entry["datatype"] = datatypes[name]
        predicates[f"ex:{name}"] = entry
    return SourceCatalog.from_dict({
        "prefixes": {"ex": EX},
        "sources": [{"id": "t", "path": "t.csv", "subject": "id", "predicates": predicates}],
    })


def plan_query(text, catalog=None, weights=None):
    catalog = catalog or chain_catalog()
    extracted = extract(f"PREFIX ex: <{EX}>\n" + text)
    resolution = SourceMapper(catalog).resolve(extracted.stars)
    return extracted, JoinPlanner(weights).plan(extracted, resolution)


class TestJoinOrder:
    """Tests for the greedy join sequence."""

    def test_chain_equal_weights_breaks_ties_on_keys(self):
        """With equal weights the lexicographically smallest pair seeds the walk."""
        _, plan = plan_query("SELECT ?d WHERE { ?a ex:p1 ?b . ?b ex:p2 ?c . ?c ex:p3 ?d }")

        assert [(s.left, s.right) for s in plan.sequence] == [("a", "b"), ("b", "c")]
        assert plan.join_order == ("a", "b", "c")
        assert plan.sequence[0].variables == ("b",)
        assert plan.sequence[0].weight == 2.0

    def test_filter_makes_star_lighter(self):
        _, plan = plan_query("""
            SELECT ?d WHERE { ?a ex:p1 ?b . ?b ex:p2 ?c . ?c ex:p3 ?d FILTER(?d > 1) }
        """)

        assert plan.star_weights == {"a": 1.0, "b": 1.0, "c": 0.5}
        assert plan.sequence == (
            JoinStep("b", "c", ("c",), 1.5),
            JoinStep("b", "a", ("b",), 2.0),
        )

    def test_sequence_is_deterministic(self):
        text = "SELECT ?d WHERE { ?c ex:p3 ?d . ?b ex:p2 ?c . ?a ex:p1 ?b }"
        first = plan_query(text)[1].sequence
        assert all(plan_query(text)[1].sequence == first for _ in range(3))
        assert [(s.left, s.right) for s in first] == [("a", "b"), ("b", "c")]

    def test_single_star_has_no_joins(self):
        _, plan = plan_query("SELECT ?n WHERE { ?p ex:name ?n }")
        assert plan.sequence == ()
        assert plan.join_order == ("p",)
        assert not plan.is_joined("p")

    def test_joined_stars(self):
        _, plan = plan_query("SELECT ?c WHERE { ?a ex:p1 ?b . ?b ex:p2 ?c }")
        assert plan.joined_stars == frozenset({"a", "b"})
        assert plan.join_pairs == {("a", "b"): EX + "p1"}

    def test_disconnected_stars(self):
        """Stars sharing only an object variable are not joinable."""
        with pytest.raises(DisconnectedQuery):
            plan_query("SELECT ?n WHERE { ?p ex:name ?n . ?q ex:name ?n }")

    def test_unreachable_star(self):
        with pytest.raises(DisconnectedQuery) as exc_info:
            plan_query("SELECT ?c ?y WHERE { ?a ex:p1 ?b . ?b ex:p2 ?c . ?x ex:name ?y }")
        assert exc_info.value.subject == "x"

    def test_order_joins_on_graph(self):
        graph = nx.Graph()
        graph.add_edge("x", "y", variables=("y",), direction=("x", "y"), weight=3.0)
        graph.add_edge("y", "z", variables=("z",), direction=("y", "z"), weight=1.0)
        assert order_joins(graph) == (
            JoinStep("y", "z", ("z",), 1.0),
            JoinStep("y", "x", ("y",), 3.0),
        )


class TestStarWeights:
    """Tests for the star weight heuristic."""

    def test_datatypes_lower_weight(self):
        catalog = chain_catalog({"name": "string", "age": "integer"})
        _, plan = plan_query("SELECT ?n ?a WHERE { ?p ex:name ?n ; ex:age ?a }", catalog)
        assert plan.star_weights["p"] == pytest.approx(1 / 3, abs=1e-6)

    def test_constant_objects_count_as_filters(self):
        extracted, plan = plan_query('SELECT ?p WHERE { ?p ex:name "Bob" }')
        assert plan.filter_count(extracted.star("p")) == 1
        assert plan.star_weights["p"] == 0.5

    def test_constant_subject_counts_as_filter(self):
        extracted, plan = plan_query(f"SELECT ?n WHERE {{ <{EX}t/1> ex:name ?n }}")
        assert plan.filter_count(extracted.star(f"<{EX}t/1>")) == 1
        assert plan.star_weights[f"<{EX}t/1>"] == 0.5

    def test_format_weights(self):
        _, plan = plan_query("SELECT ?n WHERE { ?p ex:name ?n }", weights={"csv": 4.0})
        assert plan.star_weights["p"] == 4.0


class TestNeededPredicates:
    """Tests for predicate pruning."""

    def test_join_and_projection(self):
        _, plan = plan_query("SELECT ?c WHERE { ?a ex:p1 ?b ; ex:name ?n . ?b ex:p2 ?c }")
        assert plan.needed.all == frozenset({("a", EX + "p1"), ("b", EX + "p2")})
        assert plan.needed.selected == (("b", EX + "p2"),)

    def test_filter_variable_is_needed(self):
        extracted, plan = plan_query("SELECT ?n WHERE { ?p ex:name ?n ; ex:age ?a FILTER(?a > 3) }")
        assert plan.needed.for_star(extracted.star("p")) == (EX + "name", EX + "age")
        assert plan.needed.is_selected("p", EX + "name")
        assert not plan.needed.is_selected("p", EX + "age")

    def test_unused_star_keeps_anchor(self):
        _, plan = plan_query("SELECT ?p WHERE { ?p ex:name ?n ; ex:age ?a }")
        assert plan.needed.all == frozenset({("p", EX + "name")})
        assert plan.needed.selected == ()

    def test_order_and_group_variables(self):
        _, plan = plan_query("""
            SELECT ?n (COUNT(?p) AS ?k) WHERE { ?p ex:name ?n ; ex:age ?a ; ex:p1 ?x }
            GROUP BY ?n ORDER BY ?n
        """)
        assert ("p", EX + "name") in plan.needed.all
        assert ("p", EX + "age") not in plan.needed.all

    @pytest.mark.parametrize("query", [
        "SELECT ?n WHERE { ?p ex:name ?n }",
        "SELECT ?p WHERE { ?p ex:name ?n ; ex:age ?a }",
        "SELECT ?c ?n WHERE { ?a ex:p1 ?b ; ex:name ?n . ?b ex:p2 ?c }",
        "SELECT ?n WHERE { ?p ex:name ?n ; ex:age ?a FILTER(?a > 3) } ORDER BY ?a",
        "SELECT ?n (COUNT(?p) AS ?k) WHERE { ?p ex:name ?n ; ex:p1 ?x } GROUP BY ?n",
        'SELECT ?d WHERE { ?a ex:p1 ?b . ?b ex:p2 "x" ; ex:p3 ?d }',
        f"SELECT ?n WHERE {{ <{EX}t/1> ex:name ?n }}",
    ])
    def test_selected_is_subset_of_all(self, query):
        _, plan = plan_query(query)
        assert set(plan.needed.selected) <= plan.needed.all


class TestFilterAttribution:
    """Tests for local and global filter placement."""

    def test_local_and_global(self):
        extracted = extract(f"""
            PREFIX ex: <{EX}>
            SELECT ?n ?c WHERE {{
                ?a ex:name ?n ; ex:p1 ?b . ?b ex:p2 ?c
                FILTER(?n = "x") FILTER(?n != ?c) FILTER(?b != ?c)
            }}
        """)
        local, global_filters = attribute_filters(extracted.stars, extracted.filters)

        assert [str(f) for f in local["a"]] == ['FILTER(?n = "x")']
        assert [str(f) for f in local["b"]] == ["FILTER(?b != ?c)"]
        assert [str(f) for f in global_filters] == ["FILTER(?n != ?c)"]

    def test_variable_map_prefers_subject(self):
        extracted = extract(f"PREFIX ex: <{EX}> SELECT * WHERE {{ ?a ex:p1 ?b . ?b ex:p2 ?c }}")
        assert build_variable_map(extracted.stars) == {
            "a": ("a", SUBJECT),
            "b": ("b", SUBJECT),
            "c": ("b", EX + "p2"),
        }
        assert shared_variables(extracted.stars) == {"b"}

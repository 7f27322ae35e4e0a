"""
Join planning over star patterns.

Stars become the nodes of an undirected join graph; an edge links star A and
star B when an object variable of A is the subject variable of B. Each star
gets a heuristic weight (lower is smaller-first) and the join order is a
greedy minimum-weight spanning walk over that graph:

    seed:   the lightest edge
    extend: the lightest edge leaving the joined frontier

Ties are broken on the sorted pair of star keys so the sequence is
deterministic for a given query and catalog.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import networkx as nx

from rdf_datalake.catalog.mapper import SourceResolution
from rdf_datalake.errors import DisconnectedQuery
from rdf_datalake.sparql.ast import Filter, Variable
from rdf_datalake.sparql.extractor import SUBJECT, ExtractedQuery, Star

logger = logging.getLogger(__name__)

WEIGHT_PRECISION = 6


@dataclass(frozen=True)
class NeededPredicates:
    """
    Predicates a query actually uses, as (star key, predicate IRI) pairs.

    all: used by any clause (join keys, filters, projection, ordering,
        grouping, aggregates, TRANSFORM, constant objects)
    selected: pairs whose object variable is projected, in projection order
    """
    all: frozenset
    selected: tuple = ()

    def for_star(self, star: Star) -> tuple[str, ...]:
        """Needed predicates of one star, in the star's pattern order."""
        return tuple(p for p in star.predicates if (star.key, p) in self.all)

    def is_selected(self, star_key: str, predicate: str) -> bool:
        return (star_key, predicate) in self.selected


@dataclass(frozen=True)
class JoinStep:
    """One pairwise join: the relation so far (left) with a new star (right)."""
    left: str
    right: str
    variables: tuple[str, ...]
    weight: float

    def __str__(self) -> str:
        on = ", ".join(f"?{v}" for v in self.variables)
        return f"{self.left} ⋈ {self.right} ON {on} (w={self.weight})"


@dataclass(frozen=True)
class JoinPlan:
    """Everything the executor needs to fetch and combine the stars."""
    needed: NeededPredicates
    graph: nx.Graph = field(compare=False, hash=False)
    sequence: tuple[JoinStep, ...] = ()
    star_weights: Dict[str, float] = field(default_factory=dict, hash=False)
    local_filters: Dict[str, tuple[Filter, ...]] = field(default_factory=dict, hash=False)
    global_filters: tuple[Filter, ...] = ()
    variable_map: Dict[str, tuple[str, str]] = field(default_factory=dict, hash=False)
    joined_stars: frozenset = frozenset()
    join_pairs: Dict[tuple[str, str], str] = field(default_factory=dict, hash=False)

    def is_joined(self, star_key: str) -> bool:
        return star_key in self.joined_stars

    def filter_count(self, star: Star) -> int:
        """Local filters plus constant-term constraints of a star."""
        return len(self.local_filters.get(star.key, ())) + star.constraint_count

    @property
    def join_order(self) -> tuple[str, ...]:
        """Star keys in the order they enter the joined relation."""
        if not self.sequence:
            return tuple(self.graph.nodes)[:1]
        order = [self.sequence[0].left]
        for step in self.sequence:
            order.append(step.right)
        return tuple(order)


class JoinPlanner:
    """
    Builds a JoinPlan for an extracted query and its source resolution.

    weights maps a source format to its relative cost factor (the catalog's
    per-format weights); formats without an entry weigh 1.0.
    """

    def __init__(self, weights: Optional[Dict[str, float]] = None):
        self.weights = dict(weights or {})

    def plan(self, query: ExtractedQuery, resolution: SourceResolution) -> JoinPlan:
        """
        Plan the joins of a query.

        Raises:
            DisconnectedQuery: more than one star and the join graph does not
                connect all of them
        """
        variable_map = build_variable_map(query.stars)
        local_filters, global_filters = attribute_filters(query.stars, query.filters)
        needed = self.needed_predicates(query, variable_map)

        star_weights = {
            star.key: self.star_weight(
                star, resolution, len(local_filters.get(star.key, ())) + star.constraint_count
            )
            for star in query.stars
        }

        graph, join_pairs = build_join_graph(query.stars, star_weights)
        sequence = order_joins(graph)
        joined = frozenset(key for step in sequence for key in (step.left, step.right))

        plan = JoinPlan(
            needed=needed,
            graph=graph,
            sequence=sequence,
            star_weights=star_weights,
            local_filters=local_filters,
            global_filters=global_filters,
            variable_map=variable_map,
            joined_stars=joined,
            join_pairs=join_pairs,
        )
        logger.debug(f"Star weights: {star_weights}")
        logger.debug(f"Join sequence: {[str(step) for step in sequence]}")
        return plan

    def needed_predicates(
        self,
        query: ExtractedQuery,
        variable_map: Dict[str, tuple[str, str]],
    ) -> NeededPredicates:
        used = set(query.projection)
        for filter in query.filters:
            used |= filter.variables
        used.update(c.variable.name for c in query.order_by)
        if query.group_by is not None:
            used.update(query.group_by.keys)
            used.update(a.argument.name for a in query.group_by.aggregates if a.argument is not None)
        used.update(clause.target_column for clause in query.transforms)
        used |= shared_variables(query.stars)

        needed = set()
        for star in query.stars:
            star_needed = [
                (star.key, predicate) for predicate, obj in star.predicate_objects
                if not isinstance(obj, Variable) or obj.name in used
            ]
            if not star_needed:
                # Keep one pattern so the star's subjects can still be enumerated
                star_needed = [(star.key, star.predicates[0])]
            needed.update(star_needed)

        selected = []
        for name in query.projection:
            star_key, predicate = variable_map[name]
            if predicate != SUBJECT and (star_key, predicate) not in selected:
                selected.append((star_key, predicate))

        return NeededPredicates(all=frozenset(needed), selected=tuple(selected))

    def star_weight(self, star: Star, resolution: SourceResolution, filter_count: int) -> float:
        """
        format_weight / ((1 + distinct declared datatypes) * (1 + filters)).

        More datatypes and more filters suggest a smaller relation, so the
        star weighs less and is preferred early in the join order.
        """
        sources = resolution[star.key]
        formats = [d.format for d in sources.descriptors]
        if formats:
            format_weight = sum(self.weights.get(f, 1.0) for f in formats) / len(formats)
        else:
            format_weight = 1.0
        weight = format_weight / ((1 + len(sources.datatypes)) * (1 + filter_count))
        return round(weight, WEIGHT_PRECISION)


def build_variable_map(stars: tuple[Star, ...]) -> Dict[str, tuple[str, str]]:
    """
    Map every bound variable to one (star key, predicate) pair.

    A subject variable maps to (its star, SUBJECT); any other variable maps to
    its first binding in query order.
    """
    variable_map: Dict[str, tuple[str, str]] = {}
    for star in stars:
        if star.subject_variable:
            variable_map[star.subject_variable] = (star.key, SUBJECT)
    for star in stars:
        for predicate, obj in star.predicate_objects:
            if isinstance(obj, Variable):
                variable_map.setdefault(obj.name, (star.key, predicate))
    return variable_map


def shared_variables(stars: tuple[Star, ...]) -> set[str]:
    """Variables bound by more than one pattern position."""
    seen: set[str] = set()
    shared: set[str] = set()
    for star in stars:
        names = [star.subject_variable] if star.subject_variable else []
        names += [o.name for _, o in star.predicate_objects if isinstance(o, Variable)]
        for name in names:
            if name in seen:
                shared.add(name)
            seen.add(name)
    return shared


def attribute_filters(
    stars: tuple[Star, ...],
    filters: tuple[Filter, ...],
) -> tuple[Dict[str, tuple[Filter, ...]], tuple[Filter, ...]]:
    """Split filters into per-star local filters and post-join global filters."""
    local: Dict[str, list[Filter]] = {}
    global_filters = []
    for filter in filters:
        names = filter.variables
        owner = next((s for s in stars if all(s.binds(n) for n in names)), None)
        if owner is None:
            global_filters.append(filter)
        else:
            local.setdefault(owner.key, []).append(filter)
    return {k: tuple(v) for k, v in local.items()}, tuple(global_filters)


def build_join_graph(
    stars: tuple[Star, ...],
    star_weights: Dict[str, float],
) -> tuple[nx.Graph, Dict[tuple[str, str], str]]:
    """
    Build the undirected join graph over star keys.

    Edge attributes: variables (sorted shared variables), direction (the
    (A, B) pair as first discovered) and weight. Also returns the join pair
    map (A, B) -> predicate of A binding B's subject.
    """
    graph = nx.Graph()
    graph.add_nodes_from(star.key for star in stars)
    by_subject = {star.subject_variable: star for star in stars if star.subject_variable}
    join_pairs: Dict[tuple[str, str], str] = {}

    for star in stars:
        for name, predicate in star.object_variables.items():
            other = by_subject.get(name)
            if other is None or other.key == star.key:
                continue
            join_pairs[(star.key, other.key)] = predicate
            if graph.has_edge(star.key, other.key):
                data = graph.edges[star.key, other.key]
                data["variables"] = tuple(sorted(set(data["variables"]) | {name}))
                continue
            graph.add_edge(
                star.key,
                other.key,
                variables=(name,),
                direction=(star.key, other.key),
                weight=round(star_weights[star.key] + star_weights[other.key], WEIGHT_PRECISION),
            )
    return graph, join_pairs


def order_joins(graph: nx.Graph) -> tuple[JoinStep, ...]:
    """
    Greedy minimum-weight spanning walk over the join graph.

    Raises:
        DisconnectedQuery: the walk cannot reach every star
    """
    if graph.number_of_nodes() <= 1:
        return ()
    if graph.number_of_edges() == 0:
        stars = sorted(graph.nodes)
        raise DisconnectedQuery(
            f"No star shares a join variable with another; stars {stars} would form a Cartesian product",
            subject=stars[0],
        )

    def edge_key(edge: tuple[str, str]):
        u, v = edge
        return graph.edges[u, v]["weight"], tuple(sorted(edge))

    seed = min(graph.edges, key=edge_key)
    data = graph.edges[seed]
    left, right = data["direction"]
    sequence = [JoinStep(left, right, data["variables"], data["weight"])]
    joined = {left, right}

    while True:
        frontier = [
            (u, v) for u in joined for v in graph.neighbors(u) if v not in joined
        ]
        if not frontier:
            break
        u, v = min(frontier, key=edge_key)
        data = graph.edges[u, v]
        sequence.append(JoinStep(u, v, data["variables"], data["weight"]))
        joined.add(v)

    unreached = [node for node in graph.nodes if node not in joined]
    if unreached:
        raise DisconnectedQuery(
            f"Stars {unreached} are not connected to the rest of the query",
            subject=unreached[0],
        )
    return tuple(sequence)

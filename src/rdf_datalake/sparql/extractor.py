"""
Pattern extraction: query text -> star-shaped basic graph patterns.

A star groups every triple pattern sharing one subject. Stars are the unit the
rest of the pipeline works with: sources are resolved per star, each star is
fetched as one relation, and stars are joined along shared variables.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from rdf_datalake.errors import MalformedQuery
from rdf_datalake.sparql.ast import (
    SelectQuery, TriplePattern,
    Variable, IRI, Literal, BlankNode, Term,
    Filter, AggregateExpression, OrderCondition,
)
from rdf_datalake.sparql.parser import parse_query
from rdf_datalake.sparql.transform import TransformClause, strip_transform, parse_transform

logger = logging.getLogger(__name__)

# Pseudo-predicate under which a star's subject variable is recorded
SUBJECT = "ID"


def term_key(term: Term, prefixes: dict[str, str]) -> str:
    """Canonical text of a constant term, used to key constant-subject stars."""
    if isinstance(term, IRI):
        return f"<{term.expand(prefixes)}>"
    return str(term)


@dataclass(frozen=True)
class Star:
    """
    A star-shaped pattern: one subject and its (predicate, object) pairs.

    key is the subject variable name, or the text of a constant subject.
    Predicates are full IRIs.
    """
    key: str
    subject: Term
    predicate_objects: tuple[tuple[str, Term], ...]
    patterns: tuple[TriplePattern, ...] = ()

    @property
    def subject_variable(self) -> Optional[str]:
        return self.subject.name if isinstance(self.subject, Variable) else None

    @property
    def constant_subject(self) -> Optional[str]:
        """Full IRI of a constant subject."""
        return self.key[1:-1] if isinstance(self.subject, IRI) else None

    @property
    def constraint_count(self) -> int:
        """Constant objects plus a constant subject; each restricts rows like a filter."""
        return len(self.constant_objects) + (self.constant_subject is not None)

    @property
    def predicates(self) -> tuple[str, ...]:
        """Distinct predicates in query order."""
        return tuple(dict.fromkeys(p for p, _ in self.predicate_objects))

    @property
    def object_variables(self) -> dict[str, str]:
        """Object variable name -> first predicate binding it."""
        bound: dict[str, str] = {}
        for predicate, obj in self.predicate_objects:
            if isinstance(obj, Variable):
                bound.setdefault(obj.name, predicate)
        return bound

    @property
    def constant_objects(self) -> tuple[tuple[str, Term], ...]:
        """(predicate, constant) pairs; these behave like equality filters."""
        return tuple(
            (p, o) for p, o in self.predicate_objects if not isinstance(o, Variable)
        )

    @property
    def variables(self) -> tuple[str, ...]:
        names = []
        if self.subject_variable:
            names.append(self.subject_variable)
        for _, obj in self.predicate_objects:
            if isinstance(obj, Variable) and obj.name not in names:
                names.append(obj.name)
        return tuple(names)

    def binds(self, variable: str) -> bool:
        return variable in self.variables

    def __str__(self) -> str:
        pairs = "; ".join(f"<{p}> {o}" for p, o in self.predicate_objects)
        return f"{self.key}: {{ {pairs} }}"


@dataclass(frozen=True)
class GroupSpec:
    """GROUP BY keys plus the aggregates computed per group."""
    keys: tuple[str, ...]
    aggregates: tuple[AggregateExpression, ...]

    @property
    def output_columns(self) -> tuple[str, ...]:
        return self.keys + tuple(a.alias.name for a in self.aggregates)


@dataclass(frozen=True)
class ExtractedQuery:
    """Everything the planner needs from one query."""
    stars: tuple[Star, ...]
    filters: tuple[Filter, ...]
    projection: tuple[str, ...]
    distinct: bool = False
    order_by: tuple[OrderCondition, ...] = ()
    group_by: Optional[GroupSpec] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    transforms: tuple[TransformClause, ...] = ()
    prefixes: dict[str, str] = field(default_factory=dict)
    output_columns: tuple[str, ...] = ()

    def star(self, key: str) -> Star:
        for star in self.stars:
            if star.key == key:
                return star
        raise KeyError(key)

    @property
    def bound_variables(self) -> tuple[str, ...]:
        names: list[str] = []
        for star in self.stars:
            for name in star.variables:
                if name not in names:
                    names.append(name)
        return tuple(names)

    @property
    def pattern_count(self) -> int:
        return sum(len(star.predicate_objects) for star in self.stars)


def extract(query_text: str) -> ExtractedQuery:
    """
    Parse query text into stars, filters and solution modifiers.

    Raises:
        MalformedQuery: unparseable text, invalid patterns, non-numeric
            LIMIT/OFFSET, or modifiers referring to unbound variables
    """
    query, transforms = parse_text(query_text)
    return extract_stars(query, transforms)


def parse_text(query_text: str) -> tuple[SelectQuery, tuple[TransformClause, ...]]:
    """Strip and parse the TRANSFORM clause, then parse the remaining query."""
    text, transform_body = strip_transform(query_text)
    transforms = parse_transform(transform_body) if transform_body else ()
    return parse_query(text), transforms


def extract_stars(query: SelectQuery, transforms: tuple[TransformClause, ...] = ()) -> ExtractedQuery:
    """Group a parsed query into stars and validate its modifiers."""
    stars = group_stars(query.where.patterns, query.prefixes)
    bound = {name for star in stars for name in star.variables}

    _check_filters(query, bound)
    projection, group_by, output_columns = _resolve_projection(query, stars, bound)
    order_by = _resolve_order_by(query, bound, group_by)
    _check_transforms(transforms, stars)

    extracted = ExtractedQuery(
        stars=stars,
        filters=tuple(query.where.filters),
        projection=projection,
        distinct=query.distinct,
        order_by=order_by,
        group_by=group_by,
        limit=query.limit,
        offset=query.offset,
        transforms=transforms,
        prefixes=dict(query.prefixes),
        output_columns=output_columns,
    )
    logger.debug(
        f"Extracted {len(stars)} stars from {extracted.pattern_count} patterns: "
        f"{[star.key for star in stars]}"
    )
    return extracted


def group_stars(patterns: list[TriplePattern], prefixes: dict[str, str]) -> tuple[Star, ...]:
    """Group triple patterns into stars by subject, preserving query order."""
    if not patterns:
        raise MalformedQuery("Query has no triple patterns")

    grouped: dict[str, tuple[Term, list[tuple[str, Term]], list[TriplePattern]]] = {}
    for pattern in patterns:
        _check_pattern(pattern)
        if isinstance(pattern.subject, Variable):
            key = pattern.subject.name
        else:
            key = term_key(pattern.subject, prefixes)

        subject, pairs, members = grouped.setdefault(key, (pattern.subject, [], []))
        pair = (pattern.predicate.expand(prefixes), _expand_object(pattern.object, prefixes))
        if pair in pairs:
            continue  # an identical pattern adds nothing
        pairs.append(pair)
        members.append(pattern)

    return tuple(
        Star(key=key, subject=subject, predicate_objects=tuple(pairs), patterns=tuple(members))
        for key, (subject, pairs, members) in grouped.items()
    )


def _expand_object(term: Term, prefixes: dict[str, str]) -> Term:
    if isinstance(term, IRI):
        return IRI(term.expand(prefixes))
    if isinstance(term, Literal) and term.datatype:
        return Literal(term.value, language=term.language, datatype=IRI(term.datatype).expand(prefixes))
    return term


def _check_pattern(pattern: TriplePattern) -> None:
    if not pattern.get_variables():
        raise MalformedQuery(f"Triple pattern has no variable: {pattern}")
    if not isinstance(pattern.predicate, IRI):
        raise MalformedQuery(
            f"Predicate must be a constant IRI to be resolved against the catalog: {pattern}",
            subject=str(pattern.predicate),
        )
    if isinstance(pattern.subject, Literal):
        raise MalformedQuery(f"Literal in subject position: {pattern}")
    for term in (pattern.subject, pattern.object):
        if isinstance(term, BlankNode):
            raise MalformedQuery(f"Blank nodes are not supported in patterns, use a variable: {pattern}")


def _check_filters(query: SelectQuery, bound: set[str]) -> None:
    for filter in query.where.filters:
        unbound = sorted(filter.variables - bound)
        if unbound:
            raise MalformedQuery(
                f"FILTER references variables not bound by any triple pattern: {filter}",
                subject=f"?{unbound[0]}",
            )


def _resolve_projection(
    query: SelectQuery,
    stars: tuple[Star, ...],
    bound: set[str],
) -> tuple[tuple[str, ...], Optional[GroupSpec], tuple[str, ...]]:
    """Return (projected variables, group spec, output column order)."""
    if query.is_select_all():
        if query.group_by:
            raise MalformedQuery("SELECT * cannot be combined with GROUP BY")
        names: list[str] = []
        for star in stars:
            for name in star.variables:
                if name not in names:
                    names.append(name)
        return tuple(names), None, tuple(names)

    for var in query.variables:
        if var.name not in bound:
            raise MalformedQuery(f"Projected variable {var} is not bound", subject=str(var))
    for agg in query.aggregates:
        if agg.argument is not None and agg.argument.name not in bound:
            raise MalformedQuery(f"Aggregate over unbound variable {agg.argument}", subject=str(agg.argument))
        if agg.alias.name in bound:
            raise MalformedQuery(f"Aggregate alias {agg.alias} is already bound", subject=str(agg.alias))

    for var in query.group_by:
        if var.name not in bound:
            raise MalformedQuery(f"GROUP BY variable {var} is never bound", subject=str(var))

    projection = tuple(v.name for v in query.variables)
    output_columns = tuple(
        item.alias.name if isinstance(item, AggregateExpression) else item.name
        for item in query.projection
    )

    group_by = None
    if query.group_by or query.aggregates:
        keys = tuple(v.name for v in query.group_by)
        for name in projection:
            if name not in keys:
                raise MalformedQuery(
                    f"Variable ?{name} is projected but neither grouped nor aggregated",
                    subject=f"?{name}",
                )
        group_by = GroupSpec(keys=keys, aggregates=tuple(query.aggregates))

    return projection, group_by, output_columns


def _resolve_order_by(
    query: SelectQuery,
    bound: set[str],
    group_by: Optional[GroupSpec],
) -> tuple[OrderCondition, ...]:
    aliases = {a.alias.name for a in query.aggregates}
    for condition in query.order_by:
        name = condition.variable.name
        if name not in bound and name not in aliases:
            raise MalformedQuery(
                f"ORDER BY variable {condition.variable} is never bound",
                subject=str(condition.variable),
            )
        if group_by is not None and name not in group_by.output_columns:
            raise MalformedQuery(
                f"ORDER BY variable {condition.variable} is not available after grouping",
                subject=str(condition.variable),
            )
    return tuple(query.order_by)


def _check_transforms(transforms: tuple[TransformClause, ...], stars: tuple[Star, ...]) -> None:
    by_key = {star.key: star for star in stars}
    for clause in transforms:
        left = by_key.get(clause.left_star)
        right = by_key.get(clause.right_star)
        if left is None or right is None:
            raise MalformedQuery(
                f"TRANSFORM pair ?{clause.left_star}?{clause.right_star} does not name two stars",
                subject=f"?{clause.left_star}",
            )
        if clause.right_star not in left.object_variables:
            raise MalformedQuery(
                f"TRANSFORM pair ?{clause.left_star}?{clause.right_star} is not a join: "
                f"?{clause.right_star} is not an object of star {clause.left_star}",
                subject=f"?{clause.right_star}",
            )

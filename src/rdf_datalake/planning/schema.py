"""
Schema reconciliation across sources that disagree on datatypes.

For every variable a physical source binds, the observed datatypes are
promoted to one common datatype and a small definition expression says how
to compute the value from the source's native column:

    ColumnRef("age")                      read as is
    CastTo(ColumnRef("age"), xsd:double)  numeric widening, date -> dateTime
    LexicalForm(ColumnRef("homepage"))    IRIs, blank nodes, mixed kinds -> string
    LanguageTag("label")                  language tag of a langString value
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Union

from rdf_datalake.catalog.datatypes import (
    XSD_STRING, XSD_INTEGER, XSD_BOOLEAN, XSD_DATE, XSD_DATETIME, XSD_ANYURI,
    RDF_LANGSTRING, IRI_TYPE, BLANK_NODE_TYPE,
    INTEGER_SUBTYPES, NUMERIC_RANK, short_name,
)
from rdf_datalake.errors import TypeConflict

logger = logging.getLogger(__name__)

LANG_SUFFIX = "_lang"

# Kinds with no native representation in the execution substrate
_STRING_LIKE = frozenset({XSD_STRING, XSD_ANYURI, RDF_LANGSTRING, IRI_TYPE, BLANK_NODE_TYPE})
_TEMPORAL = frozenset({XSD_DATE, XSD_DATETIME})


# =============================================================================
# Value definitions
# =============================================================================

@dataclass(frozen=True)
class ColumnRef:
    column: str

    def __str__(self) -> str:
        return self.column


@dataclass(frozen=True)
class LexicalForm:
    """The string form of a value, as STR() would give it."""
    inner: "Definition"

    def __str__(self) -> str:
        return f"STR({self.inner})"


@dataclass(frozen=True)
class LanguageTag:
    """The language tag of a langString value, as LANG() would give it."""
    column: str

    def __str__(self) -> str:
        return f"LANG({self.column})"


@dataclass(frozen=True)
class CastTo:
    inner: "Definition"
    datatype: str

    def __str__(self) -> str:
        return f"CAST({self.inner} AS {short_name(self.datatype)})"


Definition = Union[ColumnRef, LexicalForm, LanguageTag, CastTo]


@dataclass(frozen=True)
class FieldMapping:
    """One output column of a source relation."""
    name: str
    datatype: str
    nullable: bool
    definition: Definition

    def __str__(self) -> str:
        null = "?" if self.nullable else ""
        return f"{self.name}: {short_name(self.datatype)}{null} = {self.definition}"


@dataclass(frozen=True)
class SchemaMapping:
    """Ordered field mappings for one source relation."""
    fields: tuple[FieldMapping, ...] = ()

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    def field(self, name: str) -> FieldMapping:
        for f in self.fields:
            if f.name == name:
                return f
        raise KeyError(name)

    def datatype_of(self, name: str) -> str:
        return self.field(name).datatype

    def __iter__(self):
        return iter(self.fields)

    def __len__(self) -> int:
        return len(self.fields)


# =============================================================================
# Promotion
# =============================================================================

def _normalize(datatype: str) -> str:
    if datatype in INTEGER_SUBTYPES:
        return XSD_INTEGER
    if datatype in _STRING_LIKE:
        return XSD_STRING
    return datatype


def _is_known(datatype: str) -> bool:
    return datatype in NUMERIC_RANK or datatype in _TEMPORAL or datatype in (XSD_STRING, XSD_BOOLEAN)


def promote(variable: str, datatypes: Iterable[str]) -> str:
    """
    Least upper bound of the datatypes observed for a variable.

    Raises:
        TypeConflict: the datatypes have no common representation
    """
    observed = {_normalize(d) for d in datatypes if d is not None}
    if not observed:
        return XSD_STRING
    if len(observed) == 1:
        return next(iter(observed))

    if all(d in NUMERIC_RANK for d in observed):
        return max(observed, key=NUMERIC_RANK.__getitem__)
    if observed <= _TEMPORAL:
        return XSD_DATETIME
    if XSD_STRING in observed and not any(_is_known(d) for d in observed - {XSD_STRING}):
        return XSD_STRING

    kinds = ", ".join(sorted(short_name(d) for d in observed))
    raise TypeConflict(
        f"Variable ?{variable} is bound to incompatible datatypes: {kinds}",
        subject=f"?{variable}",
    )


def definition_for(variable: str, observed: set[str], promoted: str) -> Definition:
    column = ColumnRef(variable)
    if observed == {promoted}:
        return column
    if promoted == XSD_STRING:
        return LexicalForm(column)
    return CastTo(column, promoted)


def reconcile(
    variables: Iterable[str],
    datatypes: Mapping[str, Iterable[str]],
    null_counts: Optional[Mapping[str, int]] = None,
) -> SchemaMapping:
    """
    Derive the target schema of one source relation.

    Args:
        variables: variables the relation binds, in output order
        datatypes: observed datatype IRIs per variable
        null_counts: observed unbound count per variable

    Raises:
        TypeConflict: a variable's datatypes cannot be promoted
    """
    null_counts = null_counts or {}
    fields = []
    for variable in variables:
        observed = {d for d in datatypes.get(variable, ()) if d is not None}
        promoted = promote(variable, observed)
        nulls = null_counts.get(variable, 0)
        fields.append(FieldMapping(
            name=variable,
            datatype=promoted,
            nullable=nulls > 0,
            definition=definition_for(variable, observed, promoted),
        ))
        if RDF_LANGSTRING in observed:
            fields.append(FieldMapping(
                name=variable + LANG_SUFFIX,
                datatype=XSD_STRING,
                nullable=nulls > 0 or len(observed) > 1,
                definition=LanguageTag(variable),
            ))

    mapping = SchemaMapping(fields=tuple(fields))
    logger.debug(f"Reconciled schema: {[str(f) for f in mapping]}")
    return mapping


def check_declared(stars, needed, resolution) -> Dict[str, SchemaMapping]:
    """
    Reconcile the datatypes the catalog declares, before any data is read.

    Runs per star over the object variables of its needed predicates, so
    conflicting declarations surface as TypeConflict at planning time.
    Returns the declared schema of every star.
    """
    schemas: Dict[str, SchemaMapping] = {}
    for star in stars:
        sources = resolution[star.key]
        needed_predicates = set(needed.for_star(star))
        declared: Dict[str, set[str]] = {}
        for predicate, obj in star.predicate_objects:
            name = getattr(obj, "name", None)
            if name is None or predicate not in needed_predicates:
                continue
            bucket = declared.setdefault(name, set())
            bucket.update(c.datatype for c in sources.for_predicate(predicate) if c.datatype)
        schemas[star.key] = reconcile(declared.keys(), declared)
    return schemas

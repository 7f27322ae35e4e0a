"""
Abstract Syntax Tree (AST) nodes for the supported SPARQL subset.

These classes represent the parsed structure of a SELECT query before it is
split into star patterns.
"""

from dataclasses import dataclass, field
from typing import Union, Optional, Any
from enum import Enum, auto


XSD = "http://www.w3.org/2001/XMLSchema#"
RDF_TYPE = "http://www.w3.org/1999/02/22-rdf-syntax-ns#type"

# Resolved even when a query does not declare them
WELL_KNOWN_PREFIXES = {
    "rdf": "http://www.w3.org/1999/02/22-rdf-syntax-ns#",
    "rdfs": "http://www.w3.org/2000/01/rdf-schema#",
    "xsd": XSD,
}


class ComparisonOp(Enum):
    """Comparison operators for FILTER expressions."""
    EQ = auto()      # =
    NE = auto()      # !=
    LT = auto()      # <
    LE = auto()      # <=
    GT = auto()      # >
    GE = auto()      # >=

    @classmethod
    def from_str(cls, op: str) -> "ComparisonOp":
        mapping = {
            "=": cls.EQ, "==": cls.EQ,
            "!=": cls.NE, "<>": cls.NE,
            "<": cls.LT, "<=": cls.LE,
            ">": cls.GT, ">=": cls.GE,
        }
        return mapping[op]

    @property
    def symbol(self) -> str:
        return {
            ComparisonOp.EQ: "=", ComparisonOp.NE: "!=",
            ComparisonOp.LT: "<", ComparisonOp.LE: "<=",
            ComparisonOp.GT: ">", ComparisonOp.GE: ">=",
        }[self]


class LogicalOp(Enum):
    """Logical operators for combining FILTER expressions."""
    AND = auto()
    OR = auto()
    NOT = auto()


class SortDirection(Enum):
    """ORDER BY direction."""
    ASC = auto()
    DESC = auto()


# =============================================================================
# Term Types (subjects, predicates, objects)
# =============================================================================

@dataclass(frozen=True)
class Variable:
    """
    A SPARQL variable (e.g., ?name, $person).

    Variables are bound during execution to columns of the star relations.
    """
    name: str

    def __str__(self) -> str:
        return f"?{self.name}"


@dataclass(frozen=True)
class IRI:
    """
    An Internationalized Resource Identifier.

    Can be a full IRI (<http://...>) or a prefixed name (foaf:name) until
    expanded against the query prefixes.
    """
    value: str

    def __str__(self) -> str:
        return f"<{self.value}>"

    def expand(self, prefixes: dict[str, str]) -> str:
        """Return the full IRI, resolving a prefixed name if needed."""
        if ":" in self.value and not self.value.startswith(("http://", "https://", "urn:")):
            prefix, local = self.value.split(":", 1)
            if prefix in prefixes:
                return prefixes[prefix] + local
            if prefix in WELL_KNOWN_PREFIXES:
                return WELL_KNOWN_PREFIXES[prefix] + local
        return self.value


@dataclass(frozen=True)
class Literal:
    """
    An RDF Literal value.

    Can have an optional language tag (@en) or datatype (^^xsd:integer).
    """
    value: Any
    language: Optional[str] = None
    datatype: Optional[str] = None

    def __str__(self) -> str:
        if isinstance(self.value, bool):
            return "true" if self.value else "false"
        if isinstance(self.value, (int, float)) and self.datatype and self.datatype.startswith(XSD):
            return str(self.value)
        base = f'"{self.value}"'
        if self.language:
            return f"{base}@{self.language}"
        if self.datatype:
            return f"{base}^^<{self.datatype}>"
        return base


@dataclass(frozen=True)
class BlankNode:
    """A blank node (anonymous resource)."""
    label: str

    def __str__(self) -> str:
        return f"_:{self.label}"


# Type alias for any term that can appear in a triple pattern
Term = Union[Variable, IRI, Literal, BlankNode]


# =============================================================================
# Triple Patterns
# =============================================================================

@dataclass(frozen=True)
class TriplePattern:
    """
    A basic graph pattern.

    Each position can be a variable (for matching) or a concrete term (for filtering).
    """
    subject: Term
    predicate: Term
    object: Term

    def __str__(self) -> str:
        return f"{self.subject} {self.predicate} {self.object} ."

    def get_variables(self) -> set[Variable]:
        """Return all variables in this pattern."""
        return {
            term for term in (self.subject, self.predicate, self.object)
            if isinstance(term, Variable)
        }


# =============================================================================
# Filter Expressions
# =============================================================================

@dataclass(frozen=True)
class Comparison:
    """A comparison expression (e.g., ?age > 30)."""
    left: Union[Variable, Literal, IRI, "FunctionCall"]
    operator: ComparisonOp
    right: Union[Variable, Literal, IRI, "FunctionCall"]

    def __str__(self) -> str:
        return f"{self.left} {self.operator.symbol} {self.right}"


@dataclass(frozen=True)
class LogicalExpression:
    """A logical combination of expressions (AND, OR, NOT)."""
    operator: LogicalOp
    operands: tuple

    def __str__(self) -> str:
        if self.operator == LogicalOp.NOT:
            return f"!({self.operands[0]})"
        op_str = " && " if self.operator == LogicalOp.AND else " || "
        return f"({op_str.join(str(o) for o in self.operands)})"


@dataclass(frozen=True)
class FunctionCall:
    """A SPARQL function call (e.g., BOUND(?x), LANG(?y))."""
    name: str
    arguments: tuple

    def __str__(self) -> str:
        args = ", ".join(str(a) for a in self.arguments)
        return f"{self.name}({args})"


Expression = Union[Comparison, LogicalExpression, FunctionCall, Variable, Literal, IRI]


def expression_variables(expr: Any) -> set[str]:
    """Collect the names of all variables referenced by an expression tree."""
    if isinstance(expr, Variable):
        return {expr.name}
    if isinstance(expr, Comparison):
        return expression_variables(expr.left) | expression_variables(expr.right)
    if isinstance(expr, (LogicalExpression,)):
        names: set[str] = set()
        for operand in expr.operands:
            names |= expression_variables(operand)
        return names
    if isinstance(expr, FunctionCall):
        names = set()
        for arg in expr.arguments:
            names |= expression_variables(arg)
        return names
    return set()


@dataclass(frozen=True)
class Filter:
    """A FILTER clause constraining query results."""
    expression: Expression

    def __str__(self) -> str:
        return f"FILTER({self.expression})"

    @property
    def variables(self) -> set[str]:
        return expression_variables(self.expression)


# =============================================================================
# Aggregation
# =============================================================================

AGGREGATE_FUNCTIONS = ("COUNT", "SUM", "AVG", "MIN", "MAX", "SAMPLE", "GROUP_CONCAT")


@dataclass(frozen=True)
class AggregateExpression:
    """
    An aggregate in the SELECT clause, e.g. (COUNT(DISTINCT ?p) AS ?n).

    argument is None for COUNT(*).
    """
    function: str
    argument: Optional[Variable]
    alias: Variable
    distinct: bool = False
    separator: Optional[str] = None

    def __str__(self) -> str:
        arg = "*" if self.argument is None else str(self.argument)
        if self.distinct:
            arg = f"DISTINCT {arg}"
        return f"({self.function}({arg}) AS {self.alias})"


@dataclass(frozen=True)
class OrderCondition:
    """One ORDER BY key."""
    variable: Variable
    direction: SortDirection = SortDirection.ASC

    def __str__(self) -> str:
        if self.direction == SortDirection.DESC:
            return f"DESC({self.variable})"
        return str(self.variable)


# =============================================================================
# Query Structure
# =============================================================================

@dataclass
class WhereClause:
    """The WHERE clause containing triple patterns and filters."""
    patterns: list[TriplePattern] = field(default_factory=list)
    filters: list[Filter] = field(default_factory=list)

    def get_all_variables(self) -> set[Variable]:
        """Return all variables used in triple patterns of this WHERE clause."""
        vars = set()
        for pattern in self.patterns:
            vars.update(pattern.get_variables())
        return vars


@dataclass
class SelectQuery:
    """
    A SELECT query returning variable bindings.

    SELECT ?s ?o
    WHERE { ?s <p> ?o }
    """
    prefixes: dict[str, str] = field(default_factory=dict)
    variables: list[Variable] = field(default_factory=list)  # Empty list means SELECT *
    aggregates: list[AggregateExpression] = field(default_factory=list)
    projection: list[Union[Variable, AggregateExpression]] = field(default_factory=list)  # SELECT order
    where: WhereClause = field(default_factory=WhereClause)
    distinct: bool = False
    group_by: list[Variable] = field(default_factory=list)
    order_by: list[OrderCondition] = field(default_factory=list)
    limit: Optional[int] = None
    offset: Optional[int] = None

    def is_select_all(self) -> bool:
        """Check if this is a SELECT * query."""
        return not self.variables and not self.aggregates

    def __str__(self) -> str:
        parts = []

        for prefix, uri in self.prefixes.items():
            parts.append(f"PREFIX {prefix}: <{uri}>")

        distinct_str = "DISTINCT " if self.distinct else ""
        if self.is_select_all():
            parts.append(f"SELECT {distinct_str}*")
        else:
            projection = " ".join(str(item) for item in self.projection)
            parts.append(f"SELECT {distinct_str}{projection}")

        parts.append("WHERE {")
        for pattern in self.where.patterns:
            parts.append(f"  {pattern}")
        for filter in self.where.filters:
            parts.append(f"  {filter}")
        parts.append("}")

        if self.group_by:
            parts.append(f"GROUP BY {' '.join(str(v) for v in self.group_by)}")
        if self.order_by:
            parts.append(f"ORDER BY {' '.join(str(o) for o in self.order_by)}")
        if self.limit is not None:
            parts.append(f"LIMIT {self.limit}")
        if self.offset:
            parts.append(f"OFFSET {self.offset}")

        return "\n".join(parts)

"""Join planning and schema reconciliation."""

from rdf_datalake.planning.planner import (
    JoinPlanner,
    JoinPlan,
    JoinStep,
    NeededPredicates,
    build_variable_map,
    build_join_graph,
    order_joins,
)
from rdf_datalake.planning.schema import (
    ColumnRef,
    LexicalForm,
    LanguageTag,
    CastTo,
    FieldMapping,
    SchemaMapping,
    promote,
    reconcile,
    check_declared,
)

__all__ = [
    "JoinPlanner",
    "JoinPlan",
    "JoinStep",
    "NeededPredicates",
    "build_variable_map",
    "build_join_graph",
    "order_joins",
    "ColumnRef",
    "LexicalForm",
    "LanguageTag",
    "CastTo",
    "FieldMapping",
    "SchemaMapping",
    "promote",
    "reconcile",
    "check_declared",
]

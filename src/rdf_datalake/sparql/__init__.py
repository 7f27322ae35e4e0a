"""SPARQL parsing and star-pattern extraction."""

from rdf_datalake.sparql.ast import (
    SelectQuery,
    TriplePattern,
    Variable,
    IRI,
    Literal,
    BlankNode,
    Filter,
    Comparison,
    LogicalExpression,
    FunctionCall,
    AggregateExpression,
    OrderCondition,
    ComparisonOp,
    LogicalOp,
    SortDirection,
)
from rdf_datalake.sparql.parser import SPARQLParser, parse_query
from rdf_datalake.sparql.extractor import SUBJECT, Star, GroupSpec, ExtractedQuery, extract
from rdf_datalake.sparql.transform import TransformClause, TransformOp, ColumnTransform

__all__ = [
    "SelectQuery",
    "TriplePattern",
    "Variable",
    "IRI",
    "Literal",
    "BlankNode",
    "Filter",
    "Comparison",
    "LogicalExpression",
    "FunctionCall",
    "AggregateExpression",
    "OrderCondition",
    "ComparisonOp",
    "LogicalOp",
    "SortDirection",
    "SPARQLParser",
    "parse_query",
    "SUBJECT",
    "Star",
    "GroupSpec",
    "ExtractedQuery",
    "extract",
    "TransformClause",
    "TransformOp",
    "ColumnTransform",
]

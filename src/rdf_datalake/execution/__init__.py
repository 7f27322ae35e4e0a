"""Execution contract and the Polars backend."""

from rdf_datalake.execution.contract import QueryExecutor, MaterializedResult
from rdf_datalake.execution.expressions import ExpressionBuilder
from rdf_datalake.execution.ntriples import NTriplesParser, read_ntriples
from rdf_datalake.execution.polars_executor import PolarsExecutor

__all__ = [
    "QueryExecutor",
    "MaterializedResult",
    "ExpressionBuilder",
    "NTriplesParser",
    "read_ntriples",
    "PolarsExecutor",
]

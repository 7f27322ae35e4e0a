"""
RDF-DataLake: SPARQL over heterogeneous files, planned as star joins and run with Polars.

Queries are split into star-shaped patterns, each star is resolved against a
catalog of CSV, Parquet, JSON and N-Triples sources, and the stars are joined
in a cost-ordered sequence.
"""

__version__ = "0.1.0"

from rdf_datalake.errors import (
    DataLakeError,
    MalformedQuery,
    UnresolvedStar,
    DisconnectedQuery,
    TypeConflict,
    BackendError,
    CatalogError,
)
from rdf_datalake.sparql import extract, parse_query, ExtractedQuery, Star
from rdf_datalake.catalog import SourceCatalog, DataSourceDescriptor, SourceMapper, load_catalog
from rdf_datalake.planning import JoinPlanner, JoinPlan, reconcile
from rdf_datalake.execution import QueryExecutor, MaterializedResult, PolarsExecutor
from rdf_datalake.config import DataLakeConfig
from rdf_datalake.runner import (
    QueryRunner,
    QueryState,
    QueryStats,
    QuerySuccess,
    QueryFailure,
    ExplainPlan,
)

__all__ = [
    "DataLakeError",
    "MalformedQuery",
    "UnresolvedStar",
    "DisconnectedQuery",
    "TypeConflict",
    "BackendError",
    "CatalogError",
    "extract",
    "parse_query",
    "ExtractedQuery",
    "Star",
    "SourceCatalog",
    "DataSourceDescriptor",
    "SourceMapper",
    "load_catalog",
    "JoinPlanner",
    "JoinPlan",
    "reconcile",
    "QueryExecutor",
    "MaterializedResult",
    "PolarsExecutor",
    "DataLakeConfig",
    "QueryRunner",
    "QueryState",
    "QueryStats",
    "QuerySuccess",
    "QueryFailure",
    "ExplainPlan",
]

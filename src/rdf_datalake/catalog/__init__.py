"""Source catalog, datatype vocabulary and source mapping."""

from rdf_datalake.catalog.catalog import (
    DataSourceDescriptor,
    PredicateMapping,
    SubjectMapping,
    SourceCatalog,
    load_catalog,
)
from rdf_datalake.catalog.mapper import SourceCandidate, StarSources, SourceResolution, SourceMapper

__all__ = [
    "DataSourceDescriptor",
    "PredicateMapping",
    "SubjectMapping",
    "SourceCatalog",
    "load_catalog",
    "SourceCandidate",
    "StarSources",
    "SourceResolution",
    "SourceMapper",
]

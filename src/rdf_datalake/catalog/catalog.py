"""
Source catalog: which physical sources can serve which predicates.

The catalog is loaded once from a YAML or JSON file and is read-only
afterwards. Each source declares its location, format, reader options, how
its subject is identified and, per predicate, the column and datatype that
serve it.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from rdf_datalake.catalog.datatypes import IRI_TYPE, normalize_datatype
from rdf_datalake.errors import CatalogError

logger = logging.getLogger(__name__)

RDF_TYPE = "http://www.w3.org/1999/02/22-rdf-syntax-ns#type"

TABULAR_FORMATS = ("csv", "parquet", "ndjson")
TRIPLE_FORMATS = ("ntriples",)
SUPPORTED_FORMATS = TABULAR_FORMATS + TRIPLE_FORMATS

_FORMAT_ALIASES = {
    "nt": "ntriples",
    "n-triples": "ntriples",
    "json": "ndjson",
    "jsonl": "ndjson",
    "pq": "parquet",
}


def _expand(name: str, prefixes: Dict[str, str]) -> str:
    if name.startswith("<") and name.endswith(">"):
        return name[1:-1]
    if ":" in name and not name.startswith(("http://", "https://", "urn:")):
        prefix, local = name.split(":", 1)
        if prefix in prefixes:
            return prefixes[prefix] + local
    return name


@dataclass(frozen=True)
class PredicateMapping:
    """How one source serves one predicate."""
    predicate: str
    column: Optional[str] = None
    datatype: Optional[str] = None  # None = inferred from the data at fetch time
    template: Optional[str] = None  # e.g. "http://ex.org/company/{company}"
    constant: Optional[str] = None  # value served for every row (entity rdf:type)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.column is not None:
            data["column"] = self.column
        if self.datatype is not None:
            data["datatype"] = self.datatype
        if self.template is not None:
            data["template"] = self.template
        return data


@dataclass(frozen=True)
class SubjectMapping:
    """How rows of a tabular source are identified."""
    column: Optional[str] = None
    template: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "column": self.column,
            "template": self.template,
        }


@dataclass(frozen=True)
class DataSourceDescriptor:
    """A physical source: location, format, options and served predicates."""
    id: str
    path: str
    format: str
    predicates: Dict[str, PredicateMapping] = field(default_factory=dict, hash=False)
    options: Dict[str, Any] = field(default_factory=dict, hash=False)
    subject: SubjectMapping = field(default_factory=SubjectMapping)
    entity: Optional[str] = None

    @property
    def is_triples(self) -> bool:
        return self.format in TRIPLE_FORMATS

    def serves(self, predicate: str) -> bool:
        return predicate in self.predicates

    def mapping(self, predicate: str) -> PredicateMapping:
        return self.predicates[predicate]

    def datatype_of(self, predicate: str) -> Optional[str]:
        return self.predicates[predicate].datatype

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "path": self.path,
            "format": self.format,
            "entity": self.entity,
            "options": dict(self.options),
            "subject": self.subject.to_dict(),
            "predicates": {
                p: m.to_dict() for p, m in self.predicates.items() if m.constant is None
            },
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        prefixes: Optional[Dict[str, str]] = None,
        base_path: Optional[Path] = None,
    ) -> "DataSourceDescriptor":
        prefixes = prefixes or {}
        source_id = data.get("id") or data.get("name")
        if not source_id:
            raise CatalogError("Every source needs an 'id'")
        if "path" not in data:
            raise CatalogError(f"Source {source_id} has no 'path'", subject=source_id)

        fmt = str(data.get("format") or Path(data["path"]).suffix.lstrip(".")).lower()
        fmt = _FORMAT_ALIASES.get(fmt, fmt)
        if fmt not in SUPPORTED_FORMATS:
            raise CatalogError(
                f"Source {source_id} has unsupported format {fmt!r} "
                f"(supported: {', '.join(SUPPORTED_FORMATS)})",
                subject=source_id,
            )

        path = Path(data["path"])
        if base_path is not None and not path.is_absolute():
            path = base_path / path

        subject_data = data.get("subject") or {}
        if isinstance(subject_data, str):
            subject_data = {"column": subject_data}
        subject = SubjectMapping(
            column=subject_data.get("column"),
            template=subject_data.get("template"),
        )
        if fmt in TABULAR_FORMATS and not subject.column:
            raise CatalogError(
                f"Tabular source {source_id} needs a subject column", subject=source_id
            )

        predicates: Dict[str, PredicateMapping] = {}
        raw_predicates = data.get("predicates") or {}
        if isinstance(raw_predicates, list):
            raw_predicates = {name: {} for name in raw_predicates}
        for name, raw in raw_predicates.items():
            raw = raw or {}
            if isinstance(raw, str):
                raw = {"column": raw}
            predicate = _expand(name, prefixes)
            if fmt in TABULAR_FORMATS and not raw.get("column"):
                raise CatalogError(
                    f"Predicate {name} of source {source_id} has no column", subject=source_id
                )
            datatype = normalize_datatype(raw.get("datatype"), prefixes)
            if raw.get("template") and datatype is None:
                datatype = IRI_TYPE
            predicates[predicate] = PredicateMapping(
                predicate=predicate,
                column=raw.get("column"),
                datatype=datatype,
                template=raw.get("template"),
            )

        entity = _expand(data["entity"], prefixes) if data.get("entity") else None
        if entity and fmt in TABULAR_FORMATS and RDF_TYPE not in predicates:
            predicates[RDF_TYPE] = PredicateMapping(
                predicate=RDF_TYPE, datatype=IRI_TYPE, constant=entity
            )

        if not predicates:
            raise CatalogError(f"Source {source_id} serves no predicates", subject=source_id)

        return cls(
            id=str(source_id),
            path=str(path),
            format=fmt,
            predicates=predicates,
            options=dict(data.get("options") or {}),
            subject=subject,
            entity=entity,
        )


@dataclass
class SourceCatalog:
    """
    All known sources plus planner weights.

    weights maps a source format to a relative cost factor used by the join
    planner; formats without an entry weigh 1.0.
    """
    sources: tuple = ()
    prefixes: Dict[str, str] = field(default_factory=dict)
    weights: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        seen = set()
        for source in self.sources:
            if source.id in seen:
                raise CatalogError(f"Duplicate source id {source.id}", subject=source.id)
            seen.add(source.id)

    def sources_for(self, predicate: str) -> List[DataSourceDescriptor]:
        """All sources able to serve a predicate, in catalog order."""
        return [s for s in self.sources if s.serves(predicate)]

    def get(self, source_id: str) -> Optional[DataSourceDescriptor]:
        for source in self.sources:
            if source.id == source_id:
                return source
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prefixes": dict(self.prefixes),
            "weights": dict(self.weights),
            "sources": [s.to_dict() for s in self.sources],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_path: Optional[Path] = None) -> "SourceCatalog":
        if not isinstance(data, dict):
            raise CatalogError("Catalog must be a mapping with a 'sources' list")
        prefixes = dict(data.get("prefixes") or {})
        raw_sources = data.get("sources")
        if not isinstance(raw_sources, list) or not raw_sources:
            raise CatalogError("Catalog must declare a non-empty 'sources' list")

        weights = {}
        for fmt, weight in (data.get("weights") or {}).items():
            try:
                weights[_FORMAT_ALIASES.get(fmt, fmt)] = float(weight)
            except (TypeError, ValueError) as e:
                raise CatalogError(f"Weight for {fmt} is not a number: {weight!r}") from e

        sources = tuple(
            DataSourceDescriptor.from_dict(item, prefixes=prefixes, base_path=base_path)
            for item in raw_sources
        )
        return cls(sources=sources, prefixes=prefixes, weights=weights)


def load_catalog(path: Union[str, Path]) -> SourceCatalog:
    """
    Load a catalog from a YAML (.yaml/.yml) or JSON file.

    Relative source paths are resolved against the catalog's directory.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise CatalogError(f"Cannot read catalog {path}: {e}", subject=str(path)) from e

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise CatalogError(f"Invalid catalog syntax in {path}: {e}", subject=str(path)) from e

    catalog = SourceCatalog.from_dict(data, base_path=path.parent)
    logger.info(f"Loaded catalog {path} with {len(catalog.sources)} sources")
    return catalog

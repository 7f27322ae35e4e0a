"""
Source mapping: resolve each star's predicates against the catalog.

Every source able to serve a predicate is kept as a candidate; picking among
candidates is left to the backend's fetch.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from rdf_datalake.catalog.catalog import DataSourceDescriptor, SourceCatalog, RDF_TYPE
from rdf_datalake.errors import UnresolvedStar
from rdf_datalake.sparql.ast import IRI
from rdf_datalake.sparql.extractor import Star

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceCandidate:
    """One source able to serve one predicate of a star."""
    descriptor: DataSourceDescriptor
    predicate: str
    datatype: Optional[str]

    @property
    def source_id(self) -> str:
        return self.descriptor.id


@dataclass(frozen=True)
class StarSources:
    """Resolution result for one star."""
    star: Star
    candidates: tuple[SourceCandidate, ...]
    options: Dict[str, dict] = field(default_factory=dict, hash=False)

    def for_predicate(self, predicate: str) -> tuple[SourceCandidate, ...]:
        return tuple(c for c in self.candidates if c.predicate == predicate)

    @property
    def descriptors(self) -> tuple[DataSourceDescriptor, ...]:
        seen: Dict[str, DataSourceDescriptor] = {}
        for candidate in self.candidates:
            seen.setdefault(candidate.source_id, candidate.descriptor)
        return tuple(seen.values())

    @property
    def datatypes(self) -> frozenset:
        """Distinct declared datatypes across the star's candidates."""
        return frozenset(c.datatype for c in self.candidates if c.datatype is not None)


@dataclass(frozen=True)
class SourceResolution:
    """Per-star resolution for a whole query, in star order."""
    stars: tuple[StarSources, ...]

    def __getitem__(self, star_key: str) -> StarSources:
        for entry in self.stars:
            if entry.star.key == star_key:
                return entry
        raise KeyError(star_key)

    def __iter__(self):
        return iter(self.stars)

    def __len__(self) -> int:
        return len(self.stars)


class SourceMapper:
    """Resolves stars against a source catalog."""

    def __init__(self, catalog: SourceCatalog):
        self.catalog = catalog

    def resolve(self, stars: tuple[Star, ...]) -> SourceResolution:
        """
        Find candidate sources for every predicate of every star.

        Raises:
            UnresolvedStar: a star has a predicate no source serves
        """
        return SourceResolution(stars=tuple(self._resolve_star(star) for star in stars))

    def _resolve_star(self, star: Star) -> StarSources:
        entity = self._star_entity(star)
        candidates = []
        options: Dict[str, dict] = {}

        for predicate in star.predicates:
            found = [
                s for s in self.catalog.sources_for(predicate)
                if entity is None or s.entity is None or s.entity == entity
            ]
            if predicate == RDF_TYPE and entity is not None:
                found = [s for s in found if s.is_triples or s.entity == entity]
            if not found:
                raise UnresolvedStar(
                    f"No source serves predicate <{predicate}> of star {star.key}",
                    subject=star.key,
                )
            for source in found:
                candidates.append(SourceCandidate(source, predicate, source.datatype_of(predicate)))
                options.setdefault(source.id, dict(source.options))

        resolved = StarSources(star=star, candidates=tuple(candidates), options=options)
        logger.debug(
            f"Star {star.key} resolved to sources {[d.id for d in resolved.descriptors]}"
        )
        return resolved

    @staticmethod
    def _star_entity(star: Star) -> Optional[str]:
        """The class of a star with a single constant rdf:type pattern."""
        classes = [o.value for p, o in star.predicate_objects if p == RDF_TYPE and isinstance(o, IRI)]
        return classes[0] if len(classes) == 1 else None

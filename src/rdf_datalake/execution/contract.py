"""
The execution contract a backend implements.

A backend works over its own relation handle type R (a Polars LazyFrame, a
database relation, ...). The runner only ever passes handles back to the
backend that produced them. No operation may modify its input relation; each
returns a new handle.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Mapping, Optional, TypeVar

import polars as pl

from rdf_datalake.catalog.datatypes import short_name
from rdf_datalake.catalog.mapper import StarSources
from rdf_datalake.planning.planner import JoinStep, NeededPredicates
from rdf_datalake.sparql.ast import Filter, OrderCondition
from rdf_datalake.sparql.extractor import GroupSpec, Star
from rdf_datalake.sparql.transform import ColumnTransform

R = TypeVar("R")


@dataclass
class MaterializedResult:
    """Rows of a finished query, with named and typed columns."""
    columns: List[str]
    datatypes: List[str]
    rows: List[List[Any]]
    row_count: int
    execution_time_ms: float = 0.0
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "columns": self.columns,
            "datatypes": [short_name(d) for d in self.datatypes],
            "rows": self.rows,
            "row_count": self.row_count,
            "execution_time_ms": self.execution_time_ms,
            "warnings": self.warnings,
        }

    def to_polars(self) -> pl.DataFrame:
        """Convert result to a Polars DataFrame."""
        if not self.rows:
            return pl.DataFrame({col: [] for col in self.columns})
        return pl.DataFrame(self.rows, schema=self.columns, orient="row")

    @property
    def schema(self) -> List[tuple[str, str]]:
        return list(zip(self.columns, self.datatypes))

    def __len__(self) -> int:
        return self.row_count


class QueryExecutor(ABC, Generic[R]):
    """Operations a backend must provide to run a planned query."""

    @abstractmethod
    def fetch(
        self,
        sources: StarSources,
        is_joined: bool,
        star: Star,
        prefixes: Mapping[str, str],
        projection: tuple[str, ...],
        variable_map: Mapping[str, tuple[str, str]],
        needed: NeededPredicates,
        filters: tuple[Filter, ...],
        transforms: tuple[ColumnTransform, ...] = (),
    ) -> tuple[R, int]:
        """
        Build one star's relation from its candidate sources.

        The relation has one column per variable the star binds through its
        needed predicates, plus the subject column. Local filters,
        constant-object constraints and TRANSFORM operations are applied; when
        is_joined is set, rows without a subject are dropped.

        Returns:
            (relation, number of filter predicates applied)

        Raises:
            TypeConflict: observed datatypes cannot be reconciled
            BackendError: a source cannot be read
        """

    @abstractmethod
    def join(
        self,
        sequence: tuple[JoinStep, ...],
        prefixes: Mapping[str, str],
        relations: Mapping[str, R],
    ) -> R:
        """Combine the star relations following the join sequence."""

    @abstractmethod
    def filter(self, relation: R, filters: tuple[Filter, ...], prefixes: Mapping[str, str]) -> R:
        """Apply filters spanning several stars to the joined relation."""

    @abstractmethod
    def group_by(self, relation: R, spec: GroupSpec) -> R:
        """Group on spec.keys and compute spec.aggregates."""

    @abstractmethod
    def order_by(self, relation: R, conditions: tuple[OrderCondition, ...]) -> R:
        """Sort by the conditions, first condition most significant."""

    @abstractmethod
    def project(self, relation: R, columns: tuple[str, ...], distinct: bool = False) -> R:
        """Keep the given columns in order, optionally removing duplicate rows."""

    @abstractmethod
    def limit(self, relation: R, n: Optional[int], offset: Optional[int] = None) -> R:
        """Skip offset rows and keep at most n."""

    @abstractmethod
    def run(self, relation: R) -> MaterializedResult:
        """Evaluate the relation. The only operation that forces work."""

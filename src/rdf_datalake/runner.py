"""
Query orchestration.

QueryRunner drives one query through the pipeline

    PARSED -> STARS_EXTRACTED -> SOURCES_RESOLVED -> PLANNED
           -> STARS_FETCHED -> JOINED -> POST_PROCESSED -> MATERIALIZED

and ends in SUCCEEDED or FAILED. Any error ends the query at once; the
caller gets a QueryFailure naming the error kind, never a partial result.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import IntEnum, auto
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from rdf_datalake.catalog.catalog import SourceCatalog
from rdf_datalake.catalog.datatypes import short_name
from rdf_datalake.catalog.mapper import SourceMapper, SourceResolution
from rdf_datalake.errors import BackendError, DataLakeError, MalformedQuery
from rdf_datalake.execution.contract import MaterializedResult, QueryExecutor
from rdf_datalake.planning.planner import JoinPlan, JoinPlanner
from rdf_datalake.planning.schema import check_declared
from rdf_datalake.sparql.extractor import ExtractedQuery, extract_stars, parse_text
from rdf_datalake.sparql.transform import transforms_for_star

logger = logging.getLogger(__name__)


class QueryState(IntEnum):
    """Query lifecycle states."""
    PENDING = auto()
    PARSED = auto()
    STARS_EXTRACTED = auto()
    SOURCES_RESOLVED = auto()
    PLANNED = auto()
    STARS_FETCHED = auto()
    JOINED = auto()
    POST_PROCESSED = auto()
    MATERIALIZED = auto()
    SUCCEEDED = auto()
    FAILED = auto()


@dataclass
class QueryStats:
    """Statistics for one query execution."""
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    state: QueryState = QueryState.PENDING
    transitions: List[QueryState] = field(default_factory=list)
    stage_ms: Dict[str, float] = field(default_factory=dict)
    star_count: int = 0
    pattern_count: int = 0
    join_count: int = 0
    filter_counts: Dict[str, int] = field(default_factory=dict)
    rows_returned: int = 0
    error: Optional[str] = None

    @property
    def duration_ms(self) -> float:
        """Query duration in milliseconds."""
        if self.start_time is None:
            return 0.0
        end = self.end_time or time.time()
        return (end - self.start_time) * 1000

    def to_dict(self) -> dict:
        return {
            "duration_ms": self.duration_ms,
            "state": self.state.name,
            "transitions": [s.name for s in self.transitions],
            "stage_ms": dict(self.stage_ms),
            "star_count": self.star_count,
            "pattern_count": self.pattern_count,
            "join_count": self.join_count,
            "filter_counts": dict(self.filter_counts),
            "rows_returned": self.rows_returned,
            "error": self.error,
        }


@dataclass
class QuerySuccess:
    result: MaterializedResult
    stats: QueryStats

    ok = True

    def to_dict(self) -> dict:
        return {"status": "success", "result": self.result.to_dict(), "stats": self.stats.to_dict()}


@dataclass
class QueryFailure:
    """A failed query: the error kind, its message and the offending star or variable."""
    error: DataLakeError
    stats: QueryStats

    ok = False

    @property
    def kind(self) -> str:
        return self.error.kind

    @property
    def message(self) -> str:
        return self.error.message

    @property
    def subject(self) -> Optional[str]:
        return self.error.subject

    def to_dict(self) -> dict:
        return {"status": "failure", "error": self.error.to_dict(), "stats": self.stats.to_dict()}


QueryOutcome = Union[QuerySuccess, QueryFailure]


@dataclass
class ExplainPlan:
    """Query execution plan for EXPLAIN."""
    stars: List[dict]
    joins: List[dict] = field(default_factory=list)
    selected: List[str] = field(default_factory=list)
    global_filters: List[str] = field(default_factory=list)
    group_by: List[str] = field(default_factory=list)
    order_by: List[str] = field(default_factory=list)
    output_columns: List[str] = field(default_factory=list)
    limit: Optional[int] = None
    offset: Optional[int] = None
    distinct: bool = False
    estimated_cost: float = 0.0

    def to_dict(self) -> dict:
        return {
            "stars": self.stars,
            "joins": self.joins,
            "selected": self.selected,
            "global_filters": self.global_filters,
            "group_by": self.group_by,
            "order_by": self.order_by,
            "output_columns": self.output_columns,
            "limit": self.limit,
            "offset": self.offset,
            "distinct": self.distinct,
            "estimated_cost": self.estimated_cost,
        }

    def __str__(self) -> str:
        """Pretty-print the execution plan."""
        lines = [f"Estimated Cost: {self.estimated_cost:.6f}", "", "Stars:"]
        for i, star in enumerate(self.stars, 1):
            lines.append(f"  {i}. {star['key']} (weight {star['weight']}, filters {star['filters']})")
            for predicate in star["predicates"]:
                lines.append(f"     {predicate['predicate']} <- {', '.join(predicate['sources'])}")
            for name, datatype in star["schema"].items():
                lines.append(f"     ?{name}: {datatype}")

        if self.joins:
            lines.extend(["", "Joins:"])
            for i, j in enumerate(self.joins, 1):
                on = ", ".join(f"?{v}" for v in j["variables"])
                lines.append(f"  {i}. {j['left']} JOIN {j['right']} ON {on} (weight {j['weight']})")

        if self.global_filters:
            lines.extend(["", "Filters after join:"])
            lines.extend(f"  - {f}" for f in self.global_filters)

        if self.group_by:
            lines.append(f"\nGroup By: {', '.join(self.group_by)}")
        if self.order_by:
            lines.append(f"\nOrder By: {', '.join(self.order_by)}")
        if self.limit is not None:
            lines.append(f"Limit: {self.limit}")
        if self.offset:
            lines.append(f"Offset: {self.offset}")
        if self.distinct:
            lines.append("Distinct: Yes")
        lines.append(f"Output: {', '.join(self.output_columns)}")

        return "\n".join(lines)


class QueryRunner:
    """
    Runs SPARQL queries against a source catalog through a backend.

    Example:
        runner = QueryRunner(load_catalog("catalog.yaml"), PolarsExecutor())
        outcome = runner.run("SELECT ?name WHERE { ?p ex:name ?name }")
        if outcome.ok:
            print(outcome.result.to_polars())
    """

    def __init__(
        self,
        catalog: SourceCatalog,
        executor: Optional[QueryExecutor] = None,
        weights: Optional[Dict[str, float]] = None,
        default_limit: Optional[int] = None,
    ):
        if executor is None:
            from rdf_datalake.execution.polars_executor import PolarsExecutor
            executor = PolarsExecutor()
        self.catalog = catalog
        self.executor = executor
        self.weights = {**catalog.weights, **(weights or {})}
        self.default_limit = default_limit

    def run_file(self, path: Union[str, Path]) -> QueryOutcome:
        """Read a UTF-8 query file and run it."""
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            stats = QueryStats(start_time=time.time(), end_time=time.time(), state=QueryState.FAILED)
            error = MalformedQuery(f"Cannot read query file {path}: {e}", subject=str(path))
            stats.error = str(error)
            return QueryFailure(error, stats)
        return self.run(text)

    def run(self, query_text: str) -> QueryOutcome:
        """Run a query; errors come back as a QueryFailure."""
        stats = QueryStats(start_time=time.time())
        try:
            result = self._execute(query_text, stats)
        except DataLakeError as e:
            stats.state = QueryState.FAILED
            stats.transitions.append(QueryState.FAILED)
            stats.end_time = time.time()
            stats.error = str(e)
            logger.warning(f"Query failed with {e.kind}: {e.message}")
            return QueryFailure(e, stats)

        self._advance(stats, QueryState.SUCCEEDED)
        stats.end_time = time.time()
        stats.rows_returned = result.row_count
        logger.info(f"Query returned {result.row_count} rows in {stats.duration_ms:.1f}ms")
        return QuerySuccess(result, stats)

    def _execute(self, query_text: str, stats: QueryStats) -> MaterializedResult:
        stage = time.time()
        query, resolution, plan = self._compile(query_text, stats)
        stats.stage_ms["compile"] = (time.time() - stage) * 1000

        stage = time.time()
        relations = {}
        for star in query.stars:
            relation, filter_count = self._backend(
                f"fetch of star {star.key}",
                self.executor.fetch,
                resolution[star.key],
                plan.is_joined(star.key),
                star,
                query.prefixes,
                query.projection,
                plan.variable_map,
                plan.needed,
                plan.local_filters.get(star.key, ()),
                transforms_for_star(query.transforms, star.key),
            )
            relations[star.key] = relation
            stats.filter_counts[star.key] = filter_count
        stats.stage_ms["fetch"] = (time.time() - stage) * 1000
        self._advance(stats, QueryState.STARS_FETCHED)

        relation = self._backend("join", self.executor.join, plan.sequence, query.prefixes, relations)
        stats.join_count = len(plan.sequence)
        self._advance(stats, QueryState.JOINED)

        if plan.global_filters:
            relation = self._backend(
                "filter", self.executor.filter, relation, plan.global_filters, query.prefixes
            )
        if query.group_by is not None:
            relation = self._backend("group_by", self.executor.group_by, relation, query.group_by)
        if query.order_by:
            relation = self._backend("order_by", self.executor.order_by, relation, query.order_by)
        relation = self._backend(
            "project", self.executor.project, relation, query.output_columns, query.distinct
        )
        limit = query.limit if query.limit is not None else self.default_limit
        if limit is not None or query.offset:
            relation = self._backend("limit", self.executor.limit, relation, limit, query.offset)
        self._advance(stats, QueryState.POST_PROCESSED)

        stage = time.time()
        result = self._backend("run", self.executor.run, relation)
        stats.stage_ms["run"] = (time.time() - stage) * 1000
        self._advance(stats, QueryState.MATERIALIZED)
        return result

    def _compile(
        self,
        query_text: str,
        stats: QueryStats,
    ) -> tuple[ExtractedQuery, SourceResolution, JoinPlan]:
        parsed, transforms = parse_text(query_text)
        self._advance(stats, QueryState.PARSED)

        query = extract_stars(parsed, transforms)
        stats.star_count = len(query.stars)
        stats.pattern_count = query.pattern_count
        self._advance(stats, QueryState.STARS_EXTRACTED)

        resolution = SourceMapper(self.catalog).resolve(query.stars)
        self._advance(stats, QueryState.SOURCES_RESOLVED)

        plan = JoinPlanner(self.weights).plan(query, resolution)
        check_declared(query.stars, plan.needed, resolution)
        self._advance(stats, QueryState.PLANNED)
        return query, resolution, plan

    @staticmethod
    def _advance(stats: QueryStats, state: QueryState) -> None:
        stats.state = state
        stats.transitions.append(state)
        logger.info(f"Query state: {state.name}")

    @staticmethod
    def _backend(operation: str, func, *args) -> Any:
        """Call a backend operation, wrapping foreign exceptions as BackendError."""
        try:
            return func(*args)
        except DataLakeError:
            raise
        except Exception as e:
            raise BackendError(f"Backend {operation} failed: {e}") from e

    def explain(self, query_text: str) -> ExplainPlan:
        """
        Plan a query without reading any data.

        Raises:
            DataLakeError: the query cannot be planned
        """
        stats = QueryStats(start_time=time.time())
        query, resolution, plan = self._compile(query_text, stats)
        schemas = check_declared(query.stars, plan.needed, resolution)

        stars = []
        for star in query.stars:
            sources = resolution[star.key]
            stars.append({
                "key": star.key,
                "weight": plan.star_weights[star.key],
                "filters": plan.filter_count(star),
                "predicates": [
                    {
                        "predicate": predicate,
                        "sources": [c.source_id for c in sources.for_predicate(predicate)],
                        "needed": (star.key, predicate) in plan.needed.all,
                    }
                    for predicate in star.predicates
                ],
                "schema": {f.name: short_name(f.datatype) for f in schemas[star.key]},
            })

        return ExplainPlan(
            stars=stars,
            joins=[
                {"left": s.left, "right": s.right, "variables": list(s.variables), "weight": s.weight}
                for s in plan.sequence
            ],
            selected=[f"{star}:{predicate}" for star, predicate in plan.needed.selected],
            global_filters=[str(f) for f in plan.global_filters],
            group_by=list(query.group_by.keys) if query.group_by else [],
            order_by=[str(c) for c in query.order_by],
            output_columns=list(query.output_columns),
            limit=query.limit if query.limit is not None else self.default_limit,
            offset=query.offset,
            distinct=query.distinct,
            estimated_cost=round(sum(s.weight for s in plan.sequence) or sum(plan.star_weights.values()), 6),
        )

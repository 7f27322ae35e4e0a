"""
Polars implementation of the execution contract.

Relations are polars LazyFrames. Reading a star touches the data once to
observe datatypes and null counts for reconciliation; everything else stays
lazy until run().
"""

import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import polars as pl

from rdf_datalake.catalog.catalog import DataSourceDescriptor, PredicateMapping
from rdf_datalake.catalog.datatypes import RDF_LANGSTRING
from rdf_datalake.catalog.mapper import StarSources
from rdf_datalake.errors import BackendError
from rdf_datalake.execution.contract import MaterializedResult, QueryExecutor
from rdf_datalake.execution.expressions import ExpressionBuilder, cast_expr, datatype_for, dtype_for
from rdf_datalake.execution.ntriples import read_ntriples
from rdf_datalake.planning.planner import JoinStep, NeededPredicates
from rdf_datalake.planning.schema import LANG_SUFFIX, LanguageTag, SchemaMapping, reconcile
from rdf_datalake.sparql.ast import Filter, OrderCondition, SortDirection, Variable
from rdf_datalake.sparql.extractor import GroupSpec, Star
from rdf_datalake.sparql.transform import ColumnTransform

logger = logging.getLogger(__name__)

_TEMPLATE_FIELD = re.compile(r"\{(\w+)\}")


def subject_column(star: Star) -> str:
    """Name of the column holding a star's subject."""
    return star.subject_variable or star.key


@dataclass(frozen=True)
class PatternColumn:
    """Where one needed pattern of a star lands in the star relation."""
    predicate: str
    object: object
    column: str
    equals: Optional[str] = None  # repeated variable: must equal this column

    @property
    def is_constant(self) -> bool:
        return not isinstance(self.object, Variable)


@dataclass
class NativePiece:
    """One source's contribution before reconciliation."""
    source_id: str
    frame: pl.LazyFrame
    columns: Dict[str, pl.DataType]
    datatypes: Dict[str, set] = field(default_factory=dict)
    null_counts: Dict[str, int] = field(default_factory=dict)


class PolarsExecutor(QueryExecutor[pl.LazyFrame]):
    """
    Runs planned queries over local files with Polars.

    Supported formats: csv, parquet, ndjson (scanned lazily) and ntriples
    (parsed into an s/p/o/datatype/lang frame).
    """

    def __init__(self):
        self._triples: Dict[str, tuple[tuple[int, int], pl.DataFrame]] = {}

    # =========================================================================
    # Reading
    # =========================================================================

    def scan(self, descriptor: DataSourceDescriptor) -> pl.LazyFrame:
        """Open a source as a LazyFrame."""
        path = Path(descriptor.path)
        if not path.exists():
            raise BackendError(f"Source file not found: {path}", subject=descriptor.id)

        options = dict(descriptor.options)
        try:
            if descriptor.format == "csv":
                return pl.scan_csv(path, **options)
            if descriptor.format == "parquet":
                return pl.scan_parquet(path, **options)
            if descriptor.format == "ndjson":
                return pl.scan_ndjson(path, **options)
            if descriptor.format == "ntriples":
                return self._read_triples(path).lazy()
        except (OSError, ValueError, TypeError, pl.exceptions.PolarsError) as e:
            raise BackendError(f"Cannot read source {descriptor.id}: {e}", subject=descriptor.id) from e
        raise BackendError(f"No reader for format {descriptor.format}", subject=descriptor.id)

    def _read_triples(self, path: Path) -> pl.DataFrame:
        """Parsed triples of a file, re-read whenever the file changes on disk."""
        key = str(path.resolve())
        stat = path.stat()
        version = (stat.st_mtime_ns, stat.st_size)
        cached = self._triples.get(key)
        if cached is None or cached[0] != version:
            cached = (version, read_ntriples(path))
            self._triples[key] = cached
            logger.debug(f"Read {cached[1].height} triples from {path}")
        return cached[1]

    # =========================================================================
    # fetch
    # =========================================================================

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
    ) -> tuple[pl.LazyFrame, int]:
        subject = subject_column(star)
        patterns = self._pattern_columns(star, needed)

        source_sets = {
            p.predicate: tuple(c.source_id for c in sources.for_predicate(p.predicate))
            for p in patterns
        }
        if len(set(source_sets.values())) == 1:
            # Every needed predicate comes from the same sources: one frame per source
            descriptors = {d.id: d for d in sources.descriptors}
            groups = [[
                self._native_piece(descriptors[source_id], patterns, subject)
                for source_id in next(iter(source_sets.values()))
            ]]
        else:
            groups = [
                [self._native_piece(c.descriptor, [p], subject) for c in sources.for_predicate(p.predicate)]
                for p in patterns
            ]

        value_columns = list(dict.fromkeys(p.column for p in patterns))
        schema = self._reconcile(value_columns, [piece for group in groups for piece in group])

        relation: Optional[pl.LazyFrame] = None
        for group in groups:
            typed = pl.concat([self._apply_schema(piece, schema, subject) for piece in group], how="diagonal")
            relation = typed if relation is None else relation.join(typed, on=subject, how="inner")

        relation, skipped = self._apply_transforms(relation, transforms)

        builder = ExpressionBuilder(prefixes, relation.collect_schema())
        constraints = []
        if star.constant_subject is not None:
            constraints.append(pl.col(subject) == star.constant_subject)
        for p in patterns:
            if p.is_constant:
                constraints.append(builder.constant_constraint(p.column, p.object))
            elif p.equals is not None:
                constraints.append(pl.col(p.column) == pl.col(p.equals))
        for filter in filters:
            constraints.append(builder.build_filter(filter.expression))
        for constraint in constraints:
            relation = relation.filter(constraint)

        if is_joined:
            relation = relation.drop_nulls(subject)

        keep = [subject] + [
            name for name in schema.names
            if not self._is_internal(name, patterns)
        ]
        relation = relation.select(list(dict.fromkeys(keep)))

        filter_count = (
            len([p for p in patterns if p.is_constant])
            + (star.constant_subject is not None)
            + len(filters)
            + skipped
        )
        logger.debug(f"Fetched star {star.key}: columns {keep}, {filter_count} filters")
        return relation, filter_count

    def _pattern_columns(self, star: Star, needed: NeededPredicates) -> List[PatternColumn]:
        wanted = set(needed.for_star(star))
        columns = []
        seen = {star.subject_variable} if star.subject_variable else set()
        for i, (predicate, obj) in enumerate(star.predicate_objects):
            if predicate not in wanted:
                continue
            if not isinstance(obj, Variable):
                columns.append(PatternColumn(predicate, obj, f"__const_{i}"))
            elif obj.name in seen:
                columns.append(PatternColumn(predicate, obj, f"__{obj.name}_{i}", equals=obj.name))
            else:
                seen.add(obj.name)
                columns.append(PatternColumn(predicate, obj, obj.name))
        return columns

    @staticmethod
    def _is_internal(name: str, patterns: List[PatternColumn]) -> bool:
        internal = {p.column for p in patterns if p.is_constant or p.equals is not None}
        return name in internal or (name.endswith(LANG_SUFFIX) and name[:-len(LANG_SUFFIX)] in internal)

    def _native_piece(
        self,
        descriptor: DataSourceDescriptor,
        patterns: List[PatternColumn],
        subject: str,
    ) -> NativePiece:
        if descriptor.is_triples:
            return self._triples_piece(descriptor, patterns, subject)
        return self._tabular_piece(descriptor, patterns, subject)

    def _tabular_piece(
        self,
        descriptor: DataSourceDescriptor,
        patterns: List[PatternColumn],
        subject: str,
    ) -> NativePiece:
        frame = self.scan(descriptor)
        subject_expr = self._mapped_value(descriptor.subject.column, descriptor.subject.template)
        exprs = [subject_expr.cast(pl.Utf8).alias(subject)]
        datatypes: Dict[str, set] = {}

        for p in patterns:
            mapping = descriptor.mapping(p.predicate)
            exprs.append(self._pattern_value(mapping).alias(p.column))
            if mapping.datatype is not None:
                datatypes[p.column] = {mapping.datatype}

        try:
            frame = frame.select(exprs)
            columns = dict(frame.collect_schema())
            null_counts = frame.select(
                [pl.col(p.column).null_count() for p in patterns]
            ).collect().row(0, named=True)
        except pl.exceptions.PolarsError as e:
            raise BackendError(f"Cannot read source {descriptor.id}: {e}", subject=descriptor.id) from e

        for p in patterns:
            datatypes.setdefault(p.column, {datatype_for(columns[p.column])})
        return NativePiece(descriptor.id, frame, columns, datatypes, dict(null_counts))

    def _pattern_value(self, mapping: PredicateMapping) -> pl.Expr:
        if mapping.constant is not None:
            return pl.lit(mapping.constant, dtype=pl.Utf8)
        return self._mapped_value(mapping.column, mapping.template)

    @staticmethod
    def _mapped_value(column: Optional[str], template: Optional[str]) -> pl.Expr:
        """Column value, or the IRI built from a template like http://ex.org/{id}."""
        if template is None:
            return pl.col(column)
        fields = _TEMPLATE_FIELD.findall(template)
        if not fields:
            return pl.lit(template, dtype=pl.Utf8)
        fmt = _TEMPLATE_FIELD.sub("{}", template)
        return pl.format(fmt, *[pl.col(name) for name in fields])

    def _triples_piece(
        self,
        descriptor: DataSourceDescriptor,
        patterns: List[PatternColumn],
        subject: str,
    ) -> NativePiece:
        path = Path(descriptor.path)
        if not path.exists():
            raise BackendError(f"Source file not found: {path}", subject=descriptor.id)
        try:
            triples = self._read_triples(path)
        except (OSError, ValueError) as e:
            raise BackendError(f"Cannot read source {descriptor.id}: {e}", subject=descriptor.id) from e

        frame: Optional[pl.DataFrame] = None
        datatypes: Dict[str, set] = {}
        for p in patterns:
            matched = triples.filter(pl.col("p") == p.predicate)
            observed = set(matched.get_column("datatype").unique().to_list())
            datatypes[p.column] = observed
            selected = [pl.col("s").alias(subject), pl.col("o").alias(p.column)]
            if RDF_LANGSTRING in observed:
                selected.append(pl.col("lang").alias(p.column + LANG_SUFFIX))
            part = matched.select(selected)
            frame = part if frame is None else frame.join(part, on=subject, how="inner")

        columns = dict(frame.schema)
        null_counts = {p.column: 0 for p in patterns}
        return NativePiece(descriptor.id, frame.lazy(), columns, datatypes, null_counts)

    def _reconcile(self, value_columns: List[str], pieces: List[NativePiece]) -> SchemaMapping:
        datatypes: Dict[str, set] = {}
        null_counts: Dict[str, int] = {}
        for piece in pieces:
            for name in value_columns:
                if name not in piece.columns:
                    continue
                datatypes.setdefault(name, set()).update(piece.datatypes.get(name, ()))
                null_counts[name] = null_counts.get(name, 0) + piece.null_counts.get(name, 0)
        return reconcile(value_columns, datatypes, null_counts)

    def _apply_schema(self, piece: NativePiece, schema: SchemaMapping, subject: str) -> pl.LazyFrame:
        builder = ExpressionBuilder(columns=piece.columns)
        exprs = [pl.col(subject)]
        for mapping in schema:
            base = mapping.definition.column if isinstance(mapping.definition, LanguageTag) else mapping.name
            if base not in piece.columns:
                continue
            expr, produced = builder.compile_definition(mapping.definition)
            target = dtype_for(mapping.datatype)
            exprs.append(cast_expr(expr, produced, target).cast(target).alias(mapping.name))
        return piece.frame.select(exprs)

    # =========================================================================
    # TRANSFORM
    # =========================================================================

    def _apply_transforms(
        self,
        relation: pl.LazyFrame,
        transforms: tuple[ColumnTransform, ...],
    ) -> tuple[pl.LazyFrame, int]:
        """Apply TRANSFORM operations; returns the relation and rows-dropping op count."""
        skipped = 0
        for transform in transforms:
            column = transform.column
            for op in transform.ops:
                dtype = relation.collect_schema().get(column)
                if dtype is None:
                    raise BackendError(f"TRANSFORM column ?{column} is not in the relation", subject=f"?{column}")
                col = pl.col(column)

                if op.name == "skp":
                    relation = relation.filter(col.cast(pl.Utf8).ne_missing(op.args[0]))
                    skipped += 1
                    continue

                if op.name == "toInt":
                    expr = col.cast(pl.Utf8).str.strip_chars().cast(pl.Int64, strict=False) \
                        if dtype == pl.Utf8 else col.cast(pl.Int64, strict=False)
                elif op.name == "toFloat":
                    expr = col.cast(pl.Float64, strict=False)
                elif op.name == "toStr":
                    expr = col.cast(pl.Utf8)
                elif op.name == "scl":
                    expr = self._scale(col, dtype, *op.args)
                elif op.name == "replc":
                    expr = col.cast(pl.Utf8).str.replace_all(op.args[0], op.args[1], literal=True)
                elif op.name == "prefix":
                    expr = pl.concat_str([pl.lit(op.args[0]), col.cast(pl.Utf8)])
                elif op.name == "postfix":
                    expr = pl.concat_str([col.cast(pl.Utf8), pl.lit(op.args[0])])
                else:
                    raise BackendError(f"Unsupported TRANSFORM operation {op.name}", subject=op.name)
                relation = relation.with_columns(expr.alias(column))
        return relation, skipped

    @staticmethod
    def _scale(col: pl.Expr, dtype: pl.DataType, operator: str, amount: float) -> pl.Expr:
        numeric = col if dtype.is_numeric() else col.cast(pl.Float64, strict=False)
        if operator == "+":
            result = numeric + amount
        elif operator == "-":
            result = numeric - amount
        elif operator == "*":
            result = numeric * amount
        else:
            result = numeric / amount
        if dtype.is_integer() and float(amount).is_integer() and operator != "/":
            result = result.cast(pl.Int64)
        return result

    # =========================================================================
    # Combining and post-processing
    # =========================================================================

    def join(
        self,
        sequence: tuple[JoinStep, ...],
        prefixes: Mapping[str, str],
        relations: Mapping[str, pl.LazyFrame],
    ) -> pl.LazyFrame:
        if not sequence:
            if len(relations) != 1:
                raise BackendError(f"Cannot combine {len(relations)} relations without a join sequence")
            return next(iter(relations.values()))

        result = relations[sequence[0].left]
        for step in sequence:
            right = relations[step.right]
            left_schema = result.collect_schema()
            right_schema = right.collect_schema()
            shared = [name for name in left_schema.names() if name in right_schema]
            for name in shared:
                if left_schema[name] != right_schema[name]:
                    result = result.with_columns(pl.col(name).cast(pl.Utf8))
                    right = right.with_columns(pl.col(name).cast(pl.Utf8))
            logger.debug(f"Joining {step.left} with {step.right} on {shared}")
            result = result.join(right, on=shared, how="inner")
        return result

    def filter(self, relation: pl.LazyFrame, filters: tuple[Filter, ...], prefixes: Mapping[str, str]) -> pl.LazyFrame:
        builder = ExpressionBuilder(prefixes, relation.collect_schema())
        for filter in filters:
            relation = relation.filter(builder.build_filter(filter.expression))
        return relation

    def group_by(self, relation: pl.LazyFrame, spec: GroupSpec) -> pl.LazyFrame:
        builder = ExpressionBuilder()
        aggs = [builder.build_aggregate(agg) for agg in spec.aggregates]
        if not spec.keys:
            return relation.select(aggs)
        if not aggs:
            return relation.select(list(spec.keys)).unique(maintain_order=True)
        return relation.group_by(list(spec.keys), maintain_order=True).agg(aggs)

    def order_by(self, relation: pl.LazyFrame, conditions: tuple[OrderCondition, ...]) -> pl.LazyFrame:
        # Stable sorts applied from the least significant key
        for condition in reversed(conditions):
            relation = relation.sort(
                condition.variable.name,
                descending=condition.direction == SortDirection.DESC,
                nulls_last=True,
                maintain_order=True,
            )
        return relation

    def project(self, relation: pl.LazyFrame, columns: tuple[str, ...], distinct: bool = False) -> pl.LazyFrame:
        available = relation.collect_schema()
        selected = []
        for name in columns:
            if name not in available:
                raise BackendError(f"Projected column {name} is not in the relation", subject=f"?{name}")
            selected.append(name)
        relation = relation.select(selected)
        if distinct:
            relation = relation.unique(maintain_order=True)
        return relation

    def limit(self, relation: pl.LazyFrame, n: Optional[int], offset: Optional[int] = None) -> pl.LazyFrame:
        if n is None and not offset:
            return relation
        return relation.slice(offset or 0, n)

    def run(self, relation: pl.LazyFrame) -> MaterializedResult:
        start = time.time()
        try:
            df = relation.collect()
        except pl.exceptions.PolarsError as e:
            raise BackendError(f"Query evaluation failed: {e}") from e
        elapsed = (time.time() - start) * 1000

        return MaterializedResult(
            columns=df.columns,
            datatypes=[datatype_for(dtype) for dtype in df.dtypes],
            rows=[list(row) for row in df.iter_rows()],
            row_count=df.height,
            execution_time_ms=elapsed,
        )

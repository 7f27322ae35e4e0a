"""
SPARQL expressions and value definitions compiled to Polars expressions.

Columns carry plain values: IRIs without angle brackets, literals as their
typed value, and the language tag of a langString variable ?v in a
companion column v_lang.
"""

import logging
from typing import Any, Mapping, Optional, Union

import polars as pl

from rdf_datalake.catalog.datatypes import (
    XSD_STRING, XSD_INTEGER, XSD_DECIMAL, XSD_FLOAT, XSD_DOUBLE,
    XSD_BOOLEAN, XSD_DATE, XSD_DATETIME, INTEGER_SUBTYPES, is_numeric,
)
from rdf_datalake.errors import BackendError
from rdf_datalake.planning.schema import (
    LANG_SUFFIX, ColumnRef, LexicalForm, LanguageTag, CastTo, Definition,
)
from rdf_datalake.sparql.ast import (
    Variable, IRI, Literal,
    Comparison, ComparisonOp, LogicalExpression, LogicalOp, FunctionCall,
    AggregateExpression,
)

logger = logging.getLogger(__name__)

_DTYPES = {
    XSD_STRING: pl.Utf8,
    XSD_INTEGER: pl.Int64,
    XSD_DECIMAL: pl.Float64,
    XSD_FLOAT: pl.Float64,
    XSD_DOUBLE: pl.Float64,
    XSD_BOOLEAN: pl.Boolean,
    XSD_DATE: pl.Date,
    XSD_DATETIME: pl.Datetime,
}


def dtype_for(datatype: str) -> pl.DataType:
    """Polars dtype holding values of a datatype IRI."""
    if datatype in INTEGER_SUBTYPES:
        return pl.Int64
    return _DTYPES.get(datatype, pl.Utf8)


def datatype_for(dtype: pl.DataType) -> str:
    """Datatype IRI for a native Polars column dtype."""
    if dtype.is_integer():
        return XSD_INTEGER
    if dtype.is_float():
        return XSD_DOUBLE
    if dtype == pl.Boolean:
        return XSD_BOOLEAN
    if dtype == pl.Date:
        return XSD_DATE
    if isinstance(dtype, pl.Datetime):
        return XSD_DATETIME
    return XSD_STRING


def convert_typed_value(value: Any, datatype: Optional[str]) -> Any:
    """Convert a literal value based on its XSD datatype."""
    if datatype is None or isinstance(value, (int, float, bool)):
        return value

    if datatype in INTEGER_SUBTYPES:
        try:
            return int(value)
        except (ValueError, TypeError):
            return value
    elif datatype in (XSD_DECIMAL, XSD_FLOAT, XSD_DOUBLE):
        try:
            return float(value)
        except (ValueError, TypeError):
            return value
    elif datatype == XSD_BOOLEAN:
        if isinstance(value, str):
            return value.lower() == "true"
        return bool(value)

    return value


def cast_expr(expr: pl.Expr, source: pl.DataType, target: pl.DataType) -> pl.Expr:
    """Cast between native dtypes, parsing strings where a plain cast would not."""
    if source == target:
        return expr
    if source == pl.Utf8:
        if target == pl.Boolean:
            return expr.str.to_lowercase().is_in(["true", "1"])
        if target == pl.Date:
            return expr.str.to_date(strict=False)
        if target == pl.Datetime:
            return expr.str.to_datetime(strict=False)
    if source == pl.Date and target == pl.Datetime:
        return expr.cast(pl.Datetime)
    return expr.cast(target, strict=False)


class ExpressionBuilder:
    """
    Builds Polars expressions for filters, aggregates and value definitions.

    columns is the schema of the relation the expressions will run against;
    it decides numeric coercion in comparisons and whether LANG() has a
    language column to read.
    """

    def __init__(self, prefixes: Optional[Mapping[str, str]] = None, columns: Optional[Mapping[str, pl.DataType]] = None):
        self.prefixes = dict(prefixes or {})
        self.columns = dict(columns or {})

    # =========================================================================
    # Filters
    # =========================================================================

    def build_filter(self, expr: Union[Comparison, LogicalExpression, FunctionCall]) -> pl.Expr:
        """Build a boolean Polars expression from a FILTER expression."""
        if isinstance(expr, Comparison):
            left, right = self._build_comparison_operands(expr.left, expr.right)

            op_map = {
                ComparisonOp.EQ: lambda l, r: l == r,
                ComparisonOp.NE: lambda l, r: l != r,
                ComparisonOp.LT: lambda l, r: l < r,
                ComparisonOp.LE: lambda l, r: l <= r,
                ComparisonOp.GT: lambda l, r: l > r,
                ComparisonOp.GE: lambda l, r: l >= r,
            }
            return op_map[expr.operator](left, right)

        if isinstance(expr, LogicalExpression):
            operand_exprs = [self.build_filter(op) for op in expr.operands]

            if expr.operator == LogicalOp.NOT:
                return ~operand_exprs[0]
            result = operand_exprs[0]
            for e in operand_exprs[1:]:
                result = result & e if expr.operator == LogicalOp.AND else result | e
            return result

        if isinstance(expr, FunctionCall):
            return self.build_function_call(expr)

        if isinstance(expr, Variable):
            return pl.col(expr.name).cast(pl.Boolean, strict=False)

        if isinstance(expr, Literal) and isinstance(expr.value, bool):
            return pl.lit(expr.value)

        raise BackendError(f"Unsupported FILTER expression: {expr}", subject=str(expr))

    def constant_constraint(self, column: str, term: Union[IRI, Literal]) -> pl.Expr:
        """Equality constraint for a constant object in a triple pattern."""
        return self.build_filter(Comparison(Variable(column), ComparisonOp.EQ, term))

    def _build_comparison_operands(self, left_term, right_term) -> tuple[pl.Expr, pl.Expr]:
        """
        Build comparison operands with type coercion.

        A string column compared with a numeric literal is compared
        numerically; values that do not parse become null and never match.
        """
        left = self.term_to_expr(left_term)
        right = self.term_to_expr(right_term)

        if isinstance(left_term, Variable) and isinstance(right_term, Literal):
            left = self._coerce_column(left_term.name, left, right_term)
        elif isinstance(right_term, Variable) and isinstance(left_term, Literal):
            right = self._coerce_column(right_term.name, right, left_term)

        return left, right

    def _coerce_column(self, name: str, expr: pl.Expr, literal: Literal) -> pl.Expr:
        dtype = self.columns.get(name)
        if dtype is None or literal.datatype is None:
            return expr
        target = dtype_for(literal.datatype)
        if is_numeric(literal.datatype) and not dtype.is_numeric():
            return expr.cast(pl.Float64, strict=False)
        if target in (pl.Date, pl.Datetime) and dtype == pl.Utf8:
            return cast_expr(expr, dtype, target)
        return expr

    def term_to_expr(self, term) -> pl.Expr:
        """Convert a term to a Polars expression."""
        if isinstance(term, Variable):
            return pl.col(term.name)
        if isinstance(term, Literal):
            value = convert_typed_value(term.value, term.datatype)
            if term.datatype in (XSD_DATE, XSD_DATETIME) and isinstance(value, str):
                target = dtype_for(term.datatype)
                return cast_expr(pl.lit(value), pl.Utf8, target)
            return pl.lit(value)
        if isinstance(term, IRI):
            return pl.lit(term.expand(self.prefixes))
        if isinstance(term, FunctionCall):
            return self.build_function_call(term)
        if isinstance(term, (Comparison, LogicalExpression)):
            return self.build_filter(term)
        raise BackendError(f"Unsupported term in expression: {term}", subject=str(term))

    # =========================================================================
    # Functions
    # =========================================================================

    def build_function_call(self, func: FunctionCall) -> pl.Expr:
        """Build a Polars expression for a SPARQL function."""
        name = func.name.upper()
        args = func.arguments

        if name == "BOUND":
            return self._column_arg(func).is_not_null()

        elif name in ("ISIRI", "ISURI"):
            col = self._column_arg(func).cast(pl.Utf8)
            return col.str.contains(r"^[A-Za-z][A-Za-z0-9+.\-]*:") & ~col.str.starts_with("_:")

        elif name == "ISBLANK":
            return self._column_arg(func).cast(pl.Utf8).str.starts_with("_:")

        elif name == "ISLITERAL":
            col = self._column_arg(func).cast(pl.Utf8)
            return ~col.str.contains(r"^[A-Za-z][A-Za-z0-9+.\-]*:") & ~col.str.starts_with("_:")

        elif name == "STR":
            return self.term_to_expr(args[0]).cast(pl.Utf8)

        elif name == "LANG":
            var = self._variable_arg(func)
            lang_column = var.name + LANG_SUFFIX
            if lang_column in self.columns:
                return pl.col(lang_column).fill_null("")
            return pl.lit("")

        elif name == "LANGMATCHES":
            tag = self.term_to_expr(args[0]).str.to_lowercase()
            wanted = self._literal_arg(func, 1).lower()
            if wanted == "*":
                return tag != ""
            return (tag == wanted) | tag.str.starts_with(wanted + "-")

        elif name == "REGEX":
            pattern = self._literal_arg(func, 1)
            if len(args) > 2 and "i" in self._literal_arg(func, 2):
                pattern = "(?i)" + pattern
            return self.term_to_expr(args[0]).cast(pl.Utf8).str.contains(pattern)

        elif name == "STRLEN":
            return self.term_to_expr(args[0]).cast(pl.Utf8).str.len_chars()

        elif name == "CONTAINS":
            return self.term_to_expr(args[0]).cast(pl.Utf8).str.contains(
                self._literal_arg(func, 1), literal=True
            )

        elif name == "STRSTARTS":
            return self.term_to_expr(args[0]).cast(pl.Utf8).str.starts_with(self._literal_arg(func, 1))

        elif name == "STRENDS":
            return self.term_to_expr(args[0]).cast(pl.Utf8).str.ends_with(self._literal_arg(func, 1))

        elif name == "LCASE":
            return self.term_to_expr(args[0]).str.to_lowercase()

        elif name == "UCASE":
            return self.term_to_expr(args[0]).str.to_uppercase()

        elif name == "CONCAT":
            return pl.concat_str([self.term_to_expr(arg).cast(pl.Utf8) for arg in args])

        elif name == "COALESCE":
            return pl.coalesce([self.term_to_expr(arg) for arg in args])

        elif name == "IF" and len(args) == 3:
            return pl.when(self.build_filter(args[0])).then(
                self.term_to_expr(args[1])
            ).otherwise(self.term_to_expr(args[2]))

        elif name == "ABS":
            return self.term_to_expr(args[0]).abs()

        elif name == "ROUND":
            return self.term_to_expr(args[0]).round(0)

        elif name == "CEIL":
            return self.term_to_expr(args[0]).ceil()

        elif name == "FLOOR":
            return self.term_to_expr(args[0]).floor()

        raise BackendError(f"Unsupported function {name}/{len(args)}", subject=name)

    def _variable_arg(self, func: FunctionCall, index: int = 0) -> Variable:
        if len(func.arguments) <= index or not isinstance(func.arguments[index], Variable):
            raise BackendError(f"{func.name} expects a variable argument", subject=func.name)
        return func.arguments[index]

    def _column_arg(self, func: FunctionCall) -> pl.Expr:
        return pl.col(self._variable_arg(func).name)

    def _literal_arg(self, func: FunctionCall, index: int) -> str:
        if len(func.arguments) <= index or not isinstance(func.arguments[index], Literal):
            raise BackendError(f"{func.name} expects a literal argument {index + 1}", subject=func.name)
        return str(func.arguments[index].value)

    # =========================================================================
    # Aggregates
    # =========================================================================

    def build_aggregate(self, agg: AggregateExpression) -> pl.Expr:
        """Build a Polars aggregation expression from an aggregate in SELECT."""
        col_name = agg.argument.name if agg.argument is not None else None
        alias = agg.alias.name

        if agg.function == "COUNT":
            if col_name is None:
                return pl.len().alias(alias)
            if agg.distinct:
                return pl.col(col_name).drop_nulls().n_unique().alias(alias)
            return pl.col(col_name).count().alias(alias)

        if col_name is None:
            raise BackendError(f"{agg.function}(*) is not supported", subject=alias)
        col = pl.col(col_name)
        if agg.distinct:
            col = col.unique()

        if agg.function == "SUM":
            return col.cast(pl.Float64, strict=False).sum().alias(alias)
        elif agg.function == "AVG":
            return col.cast(pl.Float64, strict=False).mean().alias(alias)
        elif agg.function == "MIN":
            return col.min().alias(alias)
        elif agg.function == "MAX":
            return col.max().alias(alias)
        elif agg.function == "SAMPLE":
            return col.drop_nulls().first().alias(alias)
        elif agg.function == "GROUP_CONCAT":
            sep = agg.separator if agg.separator is not None else " "
            return col.cast(pl.Utf8).drop_nulls().str.join(sep).alias(alias)

        raise BackendError(f"Unsupported aggregate {agg.function}", subject=alias)

    # =========================================================================
    # Value definitions
    # =========================================================================

    def compile_definition(self, definition: Definition) -> tuple[pl.Expr, pl.DataType]:
        """
        Compile a schema definition against the native columns.

        Returns the expression and the dtype it produces.
        """
        if isinstance(definition, ColumnRef):
            if definition.column not in self.columns:
                raise BackendError(f"Source relation has no column {definition.column}", subject=definition.column)
            return pl.col(definition.column), self.columns[definition.column]

        if isinstance(definition, LexicalForm):
            inner, dtype = self.compile_definition(definition.inner)
            if dtype == pl.Boolean:
                return pl.when(inner).then(pl.lit("true")).otherwise(pl.lit("false")), pl.Utf8
            return inner.cast(pl.Utf8), pl.Utf8

        if isinstance(definition, LanguageTag):
            lang_column = definition.column + LANG_SUFFIX
            if lang_column in self.columns:
                return pl.col(lang_column), pl.Utf8
            return pl.lit(None, dtype=pl.Utf8), pl.Utf8

        if isinstance(definition, CastTo):
            inner, dtype = self.compile_definition(definition.inner)
            target = dtype_for(definition.datatype)
            return cast_expr(inner, dtype, target), target

        raise BackendError(f"Unknown value definition {definition!r}")

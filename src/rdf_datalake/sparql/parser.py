"""
SPARQL Parser using pyparsing.

Parses the SELECT subset understood by the data-lake planner: basic graph
patterns (with predicate/object lists), FILTER expressions, aggregates,
GROUP BY, ORDER BY, LIMIT and OFFSET.
"""

from typing import Optional
import pyparsing as pp
from pyparsing import (
    Literal as Lit, Word, Regex, QuotedString,
    Suppress, Group, Optional as Opt, ZeroOrMore, OneOrMore,
    Forward, alphas, alphanums, pyparsing_common,
    CaselessKeyword, Keyword, Combine,
    DelimitedList,
)

from rdf_datalake.errors import MalformedQuery
from rdf_datalake.sparql.ast import (
    SelectQuery, TriplePattern,
    Variable, IRI, Literal, BlankNode,
    Filter, Comparison, LogicalExpression, FunctionCall,
    AggregateExpression, OrderCondition,
    ComparisonOp, LogicalOp, SortDirection,
    WhereClause, XSD, RDF_TYPE,
)


class SPARQLParser:
    """
    Parser for data-lake SPARQL queries.

    Supports:
    - PREFIX declarations and prefixed names
    - SELECT [DISTINCT] with variables, * or aggregates ((COUNT(?x) AS ?n))
    - Triple patterns, including ';' and ',' lists and the 'a' shorthand
    - FILTER expressions with comparisons, && || ! and function calls
    - GROUP BY, ORDER BY, LIMIT, OFFSET
    """

    def __init__(self):
        self._build_grammar()

    def _build_grammar(self):
        """Build the pyparsing grammar."""

        # Enable packrat parsing for performance
        pp.ParserElement.enable_packrat()

        # =================================================================
        # Lexical tokens
        # =================================================================

        SELECT = CaselessKeyword("SELECT")
        WHERE = CaselessKeyword("WHERE")
        FILTER = CaselessKeyword("FILTER")
        PREFIX = CaselessKeyword("PREFIX")
        DISTINCT = CaselessKeyword("DISTINCT")
        LIMIT = CaselessKeyword("LIMIT")
        OFFSET = CaselessKeyword("OFFSET")
        ORDER = CaselessKeyword("ORDER")
        GROUP = CaselessKeyword("GROUP")
        BY = CaselessKeyword("BY")
        AS = CaselessKeyword("AS")
        ASC = CaselessKeyword("ASC")
        DESC = CaselessKeyword("DESC")
        SEPARATOR = CaselessKeyword("SEPARATOR")
        AND = Lit("&&")
        OR = Lit("||")
        NOT = Lit("!")
        A = Keyword("a")

        LBRACE = Suppress(Lit("{"))
        RBRACE = Suppress(Lit("}"))
        LPAREN = Suppress(Lit("("))
        RPAREN = Suppress(Lit(")"))
        DOT = Suppress(Lit("."))
        STAR = Lit("*")

        comp_op = (
            Lit("<=") | Lit(">=") | Lit("!=") | Lit("<>") |
            Lit("=") | Lit("<") | Lit(">")
        )

        # =================================================================
        # Terms
        # =================================================================

        def make_variable(tokens):
            return Variable(tokens[0][1:])

        variable = Combine(
            (Lit("?") | Lit("$")) + Word(alphas + "_", alphanums + "_")
        ).set_parse_action(make_variable)

        def make_full_iri(tokens):
            return IRI(tokens[0][1:-1])

        full_iri = Combine(
            Lit("<") + Regex(r'[^<>\s]+') + Lit(">")
        ).set_parse_action(make_full_iri)

        # Prefixed name: prefix:local (local part never ends with '.')
        pname_ns = Combine(Opt(Word(alphas, alphanums + "_-")) + Lit(":"))
        pname_local = Regex(r"[A-Za-z0-9_]([A-Za-z0-9_.\-]*[A-Za-z0-9_\-])?")

        def make_prefixed_name(tokens):
            return IRI(tokens[0])

        prefixed_name = Combine(pname_ns + Opt(pname_local)).set_parse_action(make_prefixed_name)

        iri = full_iri | prefixed_name

        string_literal = (
            QuotedString('"', esc_char='\\', multiline=True) |
            QuotedString("'", esc_char='\\', multiline=True)
        )

        lang_tag = Combine(Lit("@") + Word(alphas + "-"))
        datatype = Suppress(Lit("^^")) + iri

        def make_literal(tokens):
            value = tokens[0]
            lang = None
            dtype = None
            if len(tokens) > 1:
                if isinstance(tokens[1], str) and tokens[1].startswith("@"):
                    lang = tokens[1][1:]
                elif isinstance(tokens[1], IRI):
                    dtype = tokens[1].value
            return Literal(value, language=lang, datatype=dtype)

        literal = (string_literal + Opt(lang_tag | datatype)).set_parse_action(make_literal)

        def make_int_literal(tokens):
            return Literal(int(tokens[0]), datatype=XSD + "integer")

        def make_float_literal(tokens):
            return Literal(float(tokens[0]), datatype=XSD + "decimal")

        integer_literal = pyparsing_common.signed_integer.copy().set_parse_action(make_int_literal)
        float_literal = pyparsing_common.real.copy().set_parse_action(make_float_literal)

        def make_true(tokens):
            return Literal(True, datatype=XSD + "boolean")

        def make_false(tokens):
            return Literal(False, datatype=XSD + "boolean")

        boolean_literal = (
            CaselessKeyword("true").set_parse_action(make_true) |
            CaselessKeyword("false").set_parse_action(make_false)
        )

        def make_blank_node(tokens):
            return BlankNode(tokens[0][2:])

        blank_node = Combine(
            Lit("_:") + Word(alphanums + "_")
        ).set_parse_action(make_blank_node)

        term = variable | iri | literal | float_literal | integer_literal | boolean_literal | blank_node

        # =================================================================
        # Triple Patterns
        # =================================================================

        def make_rdf_type(tokens):
            return IRI(RDF_TYPE)

        verb = variable | iri | A.copy().set_parse_action(make_rdf_type)

        predicate_object = Group(verb + Group(DelimitedList(term, delim=",")))
        predicate_object_list = (
            predicate_object + ZeroOrMore(Suppress(Lit(";")) + Opt(predicate_object))
        )

        def make_triple_patterns(tokens):
            subject = tokens[0]
            patterns = []
            for group in tokens[1:]:
                predicate = group[0]
                for obj in group[1]:
                    patterns.append(TriplePattern(subject=subject, predicate=predicate, object=obj))
            return patterns

        triples_block = (
            term + predicate_object_list + Opt(DOT)
        ).set_parse_action(make_triple_patterns)

        # =================================================================
        # FILTER Expressions
        # =================================================================

        expression = Forward()

        func_name = Word(alphas, alphanums + "_")

        def make_function_call(tokens):
            return FunctionCall(name=str(tokens[0]).upper(), arguments=tuple(tokens[1:]))

        function_call = (
            func_name + LPAREN + Opt(DelimitedList(expression)) + RPAREN
        ).set_parse_action(make_function_call)

        primary_expr = (
            function_call |
            variable |
            literal |
            float_literal |
            integer_literal |
            boolean_literal |
            iri |
            (LPAREN + expression + RPAREN)
        )

        def make_comparison(tokens):
            if len(tokens) == 3:
                return Comparison(
                    left=tokens[0],
                    operator=ComparisonOp.from_str(tokens[1]),
                    right=tokens[2]
                )
            return tokens[0]

        comparison_expr = (
            primary_expr + Opt(comp_op + primary_expr)
        ).set_parse_action(make_comparison)

        def make_not(tokens):
            if len(tokens) == 2:
                return LogicalExpression(LogicalOp.NOT, (tokens[1],))
            return tokens[0]

        not_expr = (
            Opt(NOT) + comparison_expr
        ).set_parse_action(make_not)

        def make_and(tokens):
            tokens = list(tokens)
            if len(tokens) == 1:
                return tokens[0]
            return LogicalExpression(LogicalOp.AND, tuple(tokens))

        and_expr = (
            not_expr + ZeroOrMore(Suppress(AND) + not_expr)
        ).set_parse_action(make_and)

        def make_or(tokens):
            tokens = list(tokens)
            if len(tokens) == 1:
                return tokens[0]
            return LogicalExpression(LogicalOp.OR, tuple(tokens))

        expression <<= (
            and_expr + ZeroOrMore(Suppress(OR) + and_expr)
        ).set_parse_action(make_or)

        def make_filter(tokens):
            return Filter(expression=tokens[0])

        filter_clause = (
            Suppress(FILTER) + LPAREN + expression + RPAREN
        ).set_parse_action(make_filter)

        # =================================================================
        # WHERE Clause
        # =================================================================

        where_pattern = filter_clause | triples_block

        def make_where_clause(tokens):
            patterns = []
            filters = []
            for token in tokens:
                if isinstance(token, TriplePattern):
                    patterns.append(token)
                elif isinstance(token, Filter):
                    filters.append(token)
            return WhereClause(patterns=patterns, filters=filters)

        where_clause = (
            Opt(Suppress(WHERE)) + LBRACE + ZeroOrMore(where_pattern) + RBRACE
        ).set_parse_action(make_where_clause)

        # =================================================================
        # PREFIX Declarations
        # =================================================================

        def make_prefix(tokens):
            prefix = tokens[0][:-1]  # Remove trailing colon
            return ("PREFIX", prefix, tokens[1].value)

        prefix_decl = (
            Suppress(PREFIX) + pname_ns + full_iri
        ).set_parse_action(make_prefix)

        # =================================================================
        # SELECT clause
        # =================================================================

        select_variable = variable.copy()

        def make_aggregate(tokens):
            tokens = list(tokens)
            function = str(tokens[0]).upper()
            distinct = False
            argument = None
            separator = None
            alias = tokens[-1]
            for token in tokens[1:-1]:
                if token == "DISTINCT":
                    distinct = True
                elif isinstance(token, Variable):
                    argument = token
                elif isinstance(token, tuple) and token[0] == "SEPARATOR":
                    separator = token[1]
            return AggregateExpression(
                function=function,
                argument=argument,
                alias=alias,
                distinct=distinct,
                separator=separator,
            )

        aggregate_name = (
            CaselessKeyword("COUNT") | CaselessKeyword("SUM") | CaselessKeyword("AVG") |
            CaselessKeyword("MIN") | CaselessKeyword("MAX") | CaselessKeyword("SAMPLE") |
            CaselessKeyword("GROUP_CONCAT")
        )
        separator = (
            Suppress(Lit(";")) + Suppress(SEPARATOR) + Suppress(Lit("=")) + string_literal
        ).set_parse_action(lambda tokens: ("SEPARATOR", tokens[0]))
        aggregate = (
            LPAREN + aggregate_name + LPAREN +
            Opt(DISTINCT.copy().set_parse_action(lambda: "DISTINCT")) +
            (Suppress(STAR) | variable.copy()) +
            Opt(separator) + RPAREN +
            Suppress(AS) + variable.copy() + RPAREN
        ).set_parse_action(make_aggregate)

        def make_star(tokens):
            return []

        select_vars = (
            STAR.set_parse_action(make_star) |
            OneOrMore(aggregate | select_variable)
        )

        # =================================================================
        # Solution modifiers
        # =================================================================

        group_clause = (
            Suppress(GROUP) + Suppress(BY) + Group(OneOrMore(variable.copy()))
        ).set_parse_action(lambda tokens: ("GROUP", list(tokens[0])))

        def make_order_desc(tokens):
            return OrderCondition(tokens[0], SortDirection.DESC)

        def make_order_asc(tokens):
            return OrderCondition(tokens[0], SortDirection.ASC)

        order_condition = (
            (Suppress(DESC) + LPAREN + variable.copy() + RPAREN).set_parse_action(make_order_desc) |
            (Suppress(ASC) + LPAREN + variable.copy() + RPAREN).set_parse_action(make_order_asc) |
            variable.copy().set_parse_action(lambda tokens: OrderCondition(Variable(tokens[0][1:])))
        )

        order_clause = (
            Suppress(ORDER) + Suppress(BY) + Group(OneOrMore(order_condition))
        ).set_parse_action(lambda tokens: ("ORDER", list(tokens[0])))

        # The value is validated after parsing so that "LIMIT ten" gets a precise error
        modifier_value = Word(alphanums + "-+.")
        limit_clause = (
            Suppress(LIMIT) + modifier_value
        ).set_parse_action(lambda tokens: ("LIMIT", tokens[0]))
        offset_clause = (
            Suppress(OFFSET) + modifier_value
        ).set_parse_action(lambda tokens: ("OFFSET", tokens[0]))

        def make_select_query(tokens):
            query = SelectQuery()

            for token in tokens:
                if isinstance(token, tuple):
                    tag = token[0]
                    if tag == "PREFIX":
                        query.prefixes[token[1]] = token[2]
                    elif tag == "GROUP":
                        query.group_by = token[1]
                    elif tag == "ORDER":
                        query.order_by = token[1]
                    elif tag == "LIMIT":
                        query.limit = token[1]
                    elif tag == "OFFSET":
                        query.offset = token[1]
                elif token == "DISTINCT":
                    query.distinct = True
                elif isinstance(token, WhereClause):
                    query.where = token
                elif isinstance(token, (pp.ParseResults, list)):
                    for item in token:
                        if isinstance(item, AggregateExpression):
                            query.aggregates.append(item)
                            query.projection.append(item)
                        elif isinstance(item, Variable):
                            query.variables.append(item)
                            query.projection.append(item)

            return query

        def make_distinct(tokens):
            return "DISTINCT"

        select_query = (
            ZeroOrMore(prefix_decl) +
            Suppress(SELECT) +
            Opt(DISTINCT.copy().set_parse_action(make_distinct)) +
            Group(select_vars) +
            where_clause +
            Opt(group_clause) +
            Opt(order_clause) +
            Opt(limit_clause) +
            Opt(offset_clause)
        ).set_parse_action(make_select_query)

        self.query = select_query
        self.query.ignore(pp.python_style_comment)

    def parse(self, query_string: str) -> SelectQuery:
        """
        Parse a query string into an AST.

        Args:
            query_string: The SPARQL query to parse

        Returns:
            Parsed SelectQuery AST

        Raises:
            MalformedQuery: If the query cannot be parsed or a solution
                modifier is not a number
        """
        try:
            result = self.query.parse_string(query_string, parse_all=True)
        except pp.ParseBaseException as e:
            raise MalformedQuery(
                f"Invalid query at line {e.lineno}, column {e.col}: {e.msg}"
            ) from e

        query: SelectQuery = result[0]
        query.limit = _modifier_to_int("LIMIT", query.limit)
        query.offset = _modifier_to_int("OFFSET", query.offset)
        return query


def _modifier_to_int(keyword: str, value) -> Optional[int]:
    if value is None or isinstance(value, int):
        return value
    if not str(value).isdigit():
        raise MalformedQuery(f"{keyword} must be a non-negative integer, got {value!r}")
    return int(value)


# Module-level parser instance for convenience
_parser: Optional[SPARQLParser] = None


def parse_query(query_string: str) -> SelectQuery:
    """
    Parse a SPARQL query string.

    This is a convenience function that uses a cached parser instance.
    """
    global _parser
    if _parser is None:
        _parser = SPARQLParser()
    return _parser.parse(query_string)

"""
TRANSFORM clause support.

TRANSFORM is a non-standard clause that rewrites join values before two stars
are joined, for sources that disagree on how an identifier is spelled:

    TRANSFORM(?k?a.l.replc("http://ex.org/","").toInt && ?a?l.r.toInt.scl(_+61))

``?k?a`` names a join pair: the object variable ``?a`` of star ``k`` that is
the subject of star ``a``. ``.l`` (the default) applies the operations to the
join column of the left star, ``.r`` to the subject column of the right star.
The clause is stripped from the query text before standard parsing.
"""

import re
from dataclasses import dataclass
from typing import Optional

from rdf_datalake.errors import MalformedQuery


TRANSFORM_OPERATIONS = ("toInt", "toFloat", "toStr", "scl", "replc", "prefix", "postfix", "skp")

_TRANSFORM_START = re.compile(r"\bTRANSFORM\s*\(", re.IGNORECASE)
_PAIR_PATTERN = re.compile(r"^\?(\w+)\?(\w+)(.*)$", re.DOTALL)
_SCALE_PATTERN = re.compile(r"^_\s*([+\-*/])\s*(-?\d+(?:\.\d+)?)$")


@dataclass(frozen=True)
class TransformOp:
    """One value operation, e.g. scl(_+61) -> TransformOp("scl", ("+", 61.0))."""
    name: str
    args: tuple = ()

    def __str__(self) -> str:
        if not self.args:
            return self.name
        return f"{self.name}({','.join(str(a) for a in self.args)})"


@dataclass(frozen=True)
class TransformClause:
    """A transformation attached to one side of a join pair."""
    left_star: str
    right_star: str
    side: str  # "l" or "r"
    ops: tuple[TransformOp, ...]

    @property
    def target_star(self) -> str:
        return self.left_star if self.side == "l" else self.right_star

    @property
    def target_column(self) -> str:
        # Left side: the object column bound to ?right; right side: the subject ?right
        return self.right_star

    def __str__(self) -> str:
        ops = ".".join(str(op) for op in self.ops)
        return f"?{self.left_star}?{self.right_star}.{self.side}.{ops}"


@dataclass(frozen=True)
class ColumnTransform:
    """The operations to apply to one column of a star relation."""
    column: str
    ops: tuple[TransformOp, ...]


def strip_transform(query_text: str) -> tuple[str, Optional[str]]:
    """
    Remove the TRANSFORM(...) clause from the query text.

    Returns the cleaned text and the clause body (None when absent).
    """
    match = _TRANSFORM_START.search(query_text)
    if match is None:
        return query_text, None

    depth = 1
    pos = match.end()
    in_quote: Optional[str] = None
    while pos < len(query_text) and depth:
        char = query_text[pos]
        if in_quote:
            if char == in_quote:
                in_quote = None
        elif char in "\"'":
            in_quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        pos += 1

    if depth:
        raise MalformedQuery("Unbalanced parentheses in TRANSFORM clause")

    body = query_text[match.end():pos - 1].strip()
    cleaned = query_text[:match.start()] + query_text[pos:]
    if _TRANSFORM_START.search(cleaned):
        raise MalformedQuery("Only one TRANSFORM clause is allowed")
    return cleaned, body


def parse_transform(body: str) -> tuple[TransformClause, ...]:
    """Parse the body of a TRANSFORM clause into clauses."""
    clauses = []
    for part in body.split("&&"):
        part = part.strip()
        if not part:
            raise MalformedQuery("Empty transformation in TRANSFORM clause")

        match = _PAIR_PATTERN.match(part)
        if match is None:
            raise MalformedQuery(f"Transformation must start with a ?star?star pair: {part!r}")
        left, right, rest = match.groups()

        steps = _split_steps(rest)
        side = "l"
        if steps and steps[0] in ("l", "r"):
            side = steps.pop(0)
        if not steps:
            raise MalformedQuery(f"Transformation has no operations: {part!r}", subject=f"?{left}")

        ops = tuple(_parse_op(step, part) for step in steps)
        clauses.append(TransformClause(left, right, side, ops))
    return tuple(clauses)


def transforms_for_star(clauses: tuple[TransformClause, ...], star: str) -> tuple[ColumnTransform, ...]:
    """Return the column transformations that apply to one star relation."""
    return tuple(
        ColumnTransform(column=clause.target_column, ops=clause.ops)
        for clause in clauses
        if clause.target_star == star
    )


def _split_steps(rest: str) -> list[str]:
    """Split '.l.replc("a.b","").toInt' on dots outside parentheses and quotes."""
    steps = []
    current = []
    depth = 0
    in_quote: Optional[str] = None
    for char in rest:
        if in_quote:
            current.append(char)
            if char == in_quote:
                in_quote = None
            continue
        if char in "\"'":
            in_quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        elif char == "." and depth == 0:
            if current:
                steps.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    if current:
        steps.append("".join(current).strip())
    return [s for s in steps if s]


def _parse_op(step: str, part: str) -> TransformOp:
    name, _, arg_text = step.partition("(")
    name = name.strip()
    if name not in TRANSFORM_OPERATIONS:
        raise MalformedQuery(f"Unknown TRANSFORM operation {name!r} in {part!r}")

    if not arg_text:
        if name in ("scl", "replc", "prefix", "postfix", "skp"):
            raise MalformedQuery(f"TRANSFORM operation {name} requires arguments")
        return TransformOp(name)

    if not arg_text.endswith(")"):
        raise MalformedQuery(f"Unterminated arguments for {name} in {part!r}")
    raw_args = [_unquote(a) for a in _split_args(arg_text[:-1])]

    if name == "scl":
        scale = _SCALE_PATTERN.match(raw_args[0]) if len(raw_args) == 1 else None
        if scale is None:
            raise MalformedQuery(f"scl expects an argument like _+10, got {arg_text[:-1]!r}")
        return TransformOp(name, (scale.group(1), float(scale.group(2))))
    if name == "replc" and len(raw_args) != 2:
        raise MalformedQuery("replc expects two arguments: replc(old,new)")
    if name in ("prefix", "postfix", "skp") and len(raw_args) != 1:
        raise MalformedQuery(f"{name} expects one argument")
    return TransformOp(name, tuple(raw_args))


def _split_args(text: str) -> list[str]:
    args = []
    current = []
    in_quote: Optional[str] = None
    for char in text:
        if in_quote:
            current.append(char)
            if char == in_quote:
                in_quote = None
        elif char in "\"'":
            in_quote = char
            current.append(char)
        elif char == ",":
            args.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    args.append("".join(current).strip())
    return args


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value

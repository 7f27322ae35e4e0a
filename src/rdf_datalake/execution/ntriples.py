"""
N-Triples reader.

Each line holds one triple: subject predicate object '.'

    <http://ex.org/a> <http://ex.org/p> "42"^^<http://www.w3.org/2001/XMLSchema#integer> .
    _:b0 <http://ex.org/p> "chat"@fr .

Triples are returned as rows (s, p, o, datatype, lang) where o is the lexical
form of the object and datatype is its datatype IRI; IRI and blank node
objects carry the R2RML term-type IRIs.

Reference: https://www.w3.org/TR/n-triples/
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Optional, Tuple, Union

import polars as pl

from rdf_datalake.catalog.datatypes import XSD_STRING, RDF_LANGSTRING, IRI_TYPE, BLANK_NODE_TYPE

TRIPLE_COLUMNS = ("s", "p", "o", "datatype", "lang")

_ESCAPES = {
    "t": "\t", "b": "\b", "n": "\n", "r": "\r", "f": "\f",
    '"': '"', "'": "'", "\\": "\\",
}


@dataclass(frozen=True)
class NTriple:
    subject: str
    predicate: str
    object: str
    datatype: str
    language: Optional[str] = None


class NTriplesParser:
    """Line-oriented N-Triples parser."""

    def __init__(self):
        self.line_number = 0

    def parse_lines(self, lines: Iterable[str]) -> Iterator[NTriple]:
        for i, line in enumerate(lines):
            self.line_number = i + 1

            line = line.strip()
            if not line or line.startswith('#'):
                continue

            try:
                yield self._parse_line(line)
            except (ValueError, IndexError) as e:
                raise ValueError(f"Error parsing line {self.line_number}: {e}\nLine: {line}") from e

    def _parse_line(self, line: str) -> NTriple:
        pos = 0

        subject, pos = self._parse_subject(line, pos)
        pos = self._skip_ws(line, pos)

        predicate, pos = self._parse_iri(line, pos)
        pos = self._skip_ws(line, pos)

        obj, datatype, language, pos = self._parse_object(line, pos)
        pos = self._skip_ws(line, pos)

        if pos >= len(line) or line[pos] != '.':
            raise ValueError("expected '.' at end of triple")
        return NTriple(subject, predicate, obj, datatype, language)

    @staticmethod
    def _skip_ws(line: str, pos: int) -> int:
        while pos < len(line) and line[pos] in " \t":
            pos += 1
        return pos

    def _parse_subject(self, line: str, pos: int) -> Tuple[str, int]:
        if line.startswith("_:", pos):
            return self._parse_blank_node(line, pos)
        return self._parse_iri(line, pos)

    @staticmethod
    def _parse_iri(line: str, pos: int) -> Tuple[str, int]:
        if line[pos] != '<':
            raise ValueError(f"expected IRI at column {pos + 1}")
        end = line.index('>', pos)
        return line[pos + 1:end], end + 1

    @staticmethod
    def _parse_blank_node(line: str, pos: int) -> Tuple[str, int]:
        end = pos + 2
        while end < len(line) and line[end] not in " \t.":
            end += 1
        if end == pos + 2:
            raise ValueError(f"empty blank node label at column {pos + 1}")
        return line[pos:end], end

    def _parse_object(self, line: str, pos: int) -> Tuple[str, str, Optional[str], int]:
        if line[pos] == '<':
            value, pos = self._parse_iri(line, pos)
            return value, IRI_TYPE, None, pos
        if line.startswith("_:", pos):
            value, pos = self._parse_blank_node(line, pos)
            return value, BLANK_NODE_TYPE, None, pos
        if line[pos] != '"':
            raise ValueError(f"unexpected object at column {pos + 1}")

        value, pos = self._parse_string(line, pos)
        if line.startswith("^^", pos):
            datatype, pos = self._parse_iri(line, pos + 2)
            return value, datatype, None, pos
        if pos < len(line) and line[pos] == '@':
            end = pos + 1
            while end < len(line) and (line[end].isalnum() or line[end] == '-'):
                end += 1
            return value, RDF_LANGSTRING, line[pos + 1:end].lower(), end
        return value, XSD_STRING, None, pos

    @staticmethod
    def _parse_string(line: str, pos: int) -> Tuple[str, int]:
        chars = []
        pos += 1
        while True:
            char = line[pos]
            if char == '"':
                return "".join(chars), pos + 1
            if char == '\\':
                code = line[pos + 1]
                if code == 'u':
                    chars.append(chr(int(line[pos + 2:pos + 6], 16)))
                    pos += 6
                    continue
                if code == 'U':
                    chars.append(chr(int(line[pos + 2:pos + 10], 16)))
                    pos += 10
                    continue
                if code not in _ESCAPES:
                    raise ValueError(f"invalid escape \\{code}")
                chars.append(_ESCAPES[code])
                pos += 2
                continue
            chars.append(char)
            pos += 1


def read_ntriples(source: Union[str, Path]) -> pl.DataFrame:
    """Read an N-Triples file into a (s, p, o, datatype, lang) frame."""
    parser = NTriplesParser()
    with open(source, encoding="utf-8") as handle:
        rows = [
            (t.subject, t.predicate, t.object, t.datatype, t.language)
            for t in parser.parse_lines(handle)
        ]
    return pl.DataFrame(
        rows,
        schema={name: pl.Utf8 for name in TRIPLE_COLUMNS},
        orient="row",
    )

"""
Datatype vocabulary shared by the catalog, the schema reconciler and backends.

Datatypes are identified by IRI. Two structural node kinds that have no XSD
datatype, IRIs and blank nodes, use the R2RML term-type IRIs.
"""

from typing import Optional

XSD = "http://www.w3.org/2001/XMLSchema#"
RDF = "http://www.w3.org/1999/02/22-rdf-syntax-ns#"

XSD_STRING = XSD + "string"
XSD_INTEGER = XSD + "integer"
XSD_DECIMAL = XSD + "decimal"
XSD_FLOAT = XSD + "float"
XSD_DOUBLE = XSD + "double"
XSD_BOOLEAN = XSD + "boolean"
XSD_DATE = XSD + "date"
XSD_DATETIME = XSD + "dateTime"
XSD_ANYURI = XSD + "anyURI"
RDF_LANGSTRING = RDF + "langString"

IRI_TYPE = "http://www.w3.org/ns/r2rml#IRI"
BLANK_NODE_TYPE = "http://www.w3.org/ns/r2rml#BlankNode"

# All collapse to xsd:integer
INTEGER_SUBTYPES = frozenset(XSD + name for name in (
    "integer", "int", "long", "short", "byte",
    "nonNegativeInteger", "positiveInteger", "negativeInteger", "nonPositiveInteger",
    "unsignedLong", "unsignedInt", "unsignedShort", "unsignedByte",
))

NUMERIC_RANK = {
    XSD_INTEGER: 0,
    XSD_DECIMAL: 1,
    XSD_FLOAT: 2,
    XSD_DOUBLE: 3,
}

# Short names accepted in catalog files
_ALIASES = {
    "string": XSD_STRING,
    "str": XSD_STRING,
    "iri": IRI_TYPE,
    "uri": IRI_TYPE,
    "bnode": BLANK_NODE_TYPE,
    "blanknode": BLANK_NODE_TYPE,
    "integer": XSD_INTEGER,
    "int": XSD_INTEGER,
    "long": XSD_INTEGER,
    "decimal": XSD_DECIMAL,
    "float": XSD_FLOAT,
    "double": XSD_DOUBLE,
    "boolean": XSD_BOOLEAN,
    "bool": XSD_BOOLEAN,
    "date": XSD_DATE,
    "datetime": XSD_DATETIME,
    "langstring": RDF_LANGSTRING,
}


def normalize_datatype(name: Optional[str], prefixes: Optional[dict[str, str]] = None) -> Optional[str]:
    """
    Turn a catalog datatype spelling into a datatype IRI.

    Accepts short names ("integer", "iri"), prefixed names ("xsd:int") and
    full IRIs. XSD integer subtypes are kept as written; promotion collapses them.
    """
    if name is None:
        return None
    name = name.strip()
    if name.startswith("<") and name.endswith(">"):
        return name[1:-1]
    lowered = name.lower()
    if lowered in _ALIASES:
        return _ALIASES[lowered]
    if ":" in name and not name.startswith(("http://", "https://", "urn:")):
        prefix, local = name.split(":", 1)
        namespaces = {"xsd": XSD, "rdf": RDF, "rr": "http://www.w3.org/ns/r2rml#"}
        namespaces.update(prefixes or {})
        if prefix in namespaces:
            return namespaces[prefix] + local
    return name


def is_numeric(datatype: str) -> bool:
    return datatype in NUMERIC_RANK or datatype in INTEGER_SUBTYPES


def short_name(datatype: Optional[str]) -> str:
    """Compact display form (xsd:integer, rr:IRI)."""
    if datatype is None:
        return "unknown"
    if datatype.startswith(XSD):
        return "xsd:" + datatype[len(XSD):]
    if datatype.startswith(RDF):
        return "rdf:" + datatype[len(RDF):]
    if datatype in (IRI_TYPE, BLANK_NODE_TYPE):
        return "rr:" + datatype.rsplit("#", 1)[1]
    return datatype

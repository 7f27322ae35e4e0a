"""
Error taxonomy for RDF-DataLake.

Every component raises one of these; only the query runner turns them into
a failed query outcome.
"""

from typing import Optional


class DataLakeError(Exception):
    """Base class for all query compilation and execution errors."""

    kind = "DataLakeError"

    def __init__(self, message: str, subject: Optional[str] = None):
        self.message = message
        self.subject = subject  # offending star or variable
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "subject": self.subject,
        }


class MalformedQuery(DataLakeError):
    """Raised when query text is unparseable or structurally invalid."""
    kind = "MalformedQuery"


class UnresolvedStar(DataLakeError):
    """Raised when no catalog source can serve a star's predicates."""
    kind = "UnresolvedStar"


class DisconnectedQuery(DataLakeError):
    """Raised when the join graph cannot be walked from the seed edge to every star."""
    kind = "DisconnectedQuery"


class TypeConflict(DataLakeError):
    """Raised when the datatypes observed for a variable have no common promotion."""
    kind = "TypeConflict"


class BackendError(DataLakeError):
    """Opaque failure surfaced by an execution backend (missing file, reader error, ...)."""
    kind = "BackendError"


class CatalogError(DataLakeError):
    """Raised when a source catalog or configuration file is invalid."""
    kind = "CatalogError"

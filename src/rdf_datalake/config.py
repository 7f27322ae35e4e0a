"""
Runtime configuration for RDF-DataLake.

Provides:
- DataLakeConfig with dict round-tripping
- Loading from YAML or JSON files
- Validation
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from rdf_datalake.catalog.catalog import SourceCatalog, load_catalog
from rdf_datalake.errors import CatalogError

logger = logging.getLogger(__name__)

EXECUTORS = ("polars",)
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class DataLakeConfig:
    """Settings shared by the command line and embedding applications."""
    catalog_path: Optional[str] = None
    executor: str = "polars"
    log_level: str = "WARNING"
    default_limit: Optional[int] = None
    weights: Dict[str, float] = field(default_factory=dict)  # override catalog weights

    def to_dict(self) -> Dict[str, Any]:
        return {
            "catalog_path": self.catalog_path,
            "executor": self.executor,
            "log_level": self.log_level,
            "default_limit": self.default_limit,
            "weights": dict(self.weights),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataLakeConfig":
        return cls(
            catalog_path=data.get("catalog_path"),
            executor=data.get("executor", "polars"),
            log_level=str(data.get("log_level", "WARNING")).upper(),
            default_limit=data.get("default_limit"),
            weights={k: float(v) for k, v in (data.get("weights") or {}).items()},
        )

    @classmethod
    def load(cls, path: Union[str, Path]) -> "DataLakeConfig":
        """Load configuration from a YAML or JSON file."""
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                if path.suffix.lower() == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f) or {}
        except OSError as e:
            raise CatalogError(f"Cannot read configuration {path}: {e}", subject=str(path)) from e
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise CatalogError(f"Invalid configuration syntax in {path}: {e}", subject=str(path)) from e

        config = cls.from_dict(data)
        if config.catalog_path and not Path(config.catalog_path).is_absolute():
            config.catalog_path = str(path.parent / config.catalog_path)
        config.validate_or_raise()
        return config

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns list of error messages (empty if valid).
        """
        errors = []
        if self.executor not in EXECUTORS:
            errors.append(f"Unknown executor {self.executor!r} (available: {', '.join(EXECUTORS)})")
        if self.log_level not in LOG_LEVELS:
            errors.append(f"Unknown log level {self.log_level!r}")
        if self.default_limit is not None and (
            not isinstance(self.default_limit, int) or self.default_limit < 0
        ):
            errors.append("default_limit must be a non-negative integer")
        for fmt, weight in self.weights.items():
            if weight <= 0:
                errors.append(f"Weight for {fmt} must be positive")
        return errors

    def validate_or_raise(self) -> None:
        """Validate configuration, raising on errors."""
        errors = self.validate()
        if errors:
            raise CatalogError("; ".join(errors))

    def load_catalog(self) -> SourceCatalog:
        if not self.catalog_path:
            raise CatalogError("No catalog_path configured")
        return load_catalog(self.catalog_path)

    def create_executor(self):
        """Instantiate the configured backend."""
        self.validate_or_raise()
        from rdf_datalake.execution.polars_executor import PolarsExecutor
        return PolarsExecutor()

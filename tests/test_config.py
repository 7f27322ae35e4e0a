"""
Tests for runtime configuration.
"""

import pytest

from rdf_datalake.config import DataLakeConfig
from rdf_datalake.errors import CatalogError
from rdf_datalake.execution import PolarsExecutor


class TestDataLakeConfig:
    """Tests for DataLakeConfig."""

    def test_defaults(self):
        config = DataLakeConfig()
        assert config.executor == "polars"
        assert config.log_level == "WARNING"
        assert config.validate() == []

    def test_dict_round_trip(self):
        config = DataLakeConfig(catalog_path="c.yaml", default_limit=5, weights={"csv": 2.0})
        assert DataLakeConfig.from_dict(config.to_dict()) == config

    def test_load_yaml_resolves_catalog(self, lake_dir, write_file):
        path = write_file("config.yaml", """
            catalog_path: catalog.yaml
            log_level: info
            default_limit: 10
            weights:
              ntriples: 3
        """)
        config = DataLakeConfig.load(path)

        assert config.catalog_path == str(lake_dir / "catalog.yaml")
        assert config.log_level == "INFO"
        assert config.weights == {"ntriples": 3.0}
        assert len(config.load_catalog().sources) == 2

    def test_load_json(self, write_file):
        path = write_file("config.json", '{"default_limit": 3}')
        assert DataLakeConfig.load(path).default_limit == 3

    def test_validation_errors(self):
        config = DataLakeConfig(executor="duckdb", log_level="LOUD", default_limit=-1, weights={"csv": 0})
        errors = config.validate()

        assert len(errors) == 4
        with pytest.raises(CatalogError, match="Unknown executor"):
            config.validate_or_raise()

    def test_invalid_file_rejected(self, write_file):
        path = write_file("config.yaml", "executor: spark\n")
        with pytest.raises(CatalogError, match="spark"):
            DataLakeConfig.load(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(CatalogError, match="Cannot read"):
            DataLakeConfig.load(tmp_path / "none.yaml")

    def test_no_catalog_path(self):
        with pytest.raises(CatalogError, match="catalog_path"):
            DataLakeConfig().load_catalog()

    def test_create_executor(self):
        assert isinstance(DataLakeConfig().create_executor(), PolarsExecutor)

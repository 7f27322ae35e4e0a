"""Shared fixtures: a small data lake of CSV and N-Triples files."""

import textwrap

import pytest

from rdf_datalake.catalog import load_catalog

EX = "http://example.org/"

PEOPLE_CSV = """\
id,name,age,company
1,Alice,30,acme
2,Bob,25,globex
3,Carol,,acme
"""

COMPANIES_NT = """\
# companies
<http://example.org/company/acme> <http://example.org/locatedIn> <http://example.org/city/berlin> .
<http://example.org/company/globex> <http://example.org/locatedIn> <http://example.org/city/paris> .
<http://example.org/company/acme> <http://example.org/label> "Acme"@en .
<http://example.org/company/acme> <http://example.org/label> "Akme"@de .
<http://example.org/company/globex> <http://example.org/label> "Globex"@en .
"""

CATALOG_YAML = """\
prefixes:
  ex: "http://example.org/"
weights:
  csv: 1.0
  ntriples: 1.0
sources:
  - id: people
    path: people.csv
    format: csv
    entity: ex:Person
    subject: {column: id, template: "http://example.org/person/{id}"}
    predicates:
      ex:name: {column: name, datatype: xsd:string}
      ex:age: {column: age, datatype: xsd:integer}
      ex:worksAt: {column: company, template: "http://example.org/company/{company}"}
  - id: kg
    path: companies.nt
    format: ntriples
    predicates:
      ex:locatedIn: {datatype: iri}
      ex:label: {}
"""


@pytest.fixture
def lake_dir(tmp_path):
    """Directory holding people.csv, companies.nt and catalog.yaml."""
    (tmp_path / "people.csv").write_text(PEOPLE_CSV, encoding="utf-8")
    (tmp_path / "companies.nt").write_text(COMPANIES_NT, encoding="utf-8")
    (tmp_path / "catalog.yaml").write_text(CATALOG_YAML, encoding="utf-8")
    return tmp_path


@pytest.fixture
def catalog(lake_dir):
    return load_catalog(lake_dir / "catalog.yaml")


@pytest.fixture
def write_file(tmp_path):
    """Write a dedented text file under tmp_path and return its path."""
    def _write(name, content):
        path = tmp_path / name
        path.write_text(textwrap.dedent(content), encoding="utf-8")
        return path
    return _write

"""
Command line entry point.

    rdf-datalake query.sparql catalog.yaml
    rdf-datalake query.sparql catalog.yaml --explain
    rdf-datalake query.sparql catalog.yaml --format csv --limit 10
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from rdf_datalake import __version__
from rdf_datalake.config import DataLakeConfig, LOG_LEVELS
from rdf_datalake.errors import DataLakeError
from rdf_datalake.runner import QueryRunner

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rdf-datalake",
        description="Run SPARQL queries over CSV, Parquet, JSON and N-Triples files",
    )
    parser.add_argument("query", help="Path to a file holding the SPARQL query")
    parser.add_argument("catalog", nargs="?", help="Source catalog (YAML or JSON)")
    parser.add_argument("--config", "-c", help="Configuration file (YAML or JSON)")
    parser.add_argument("--explain", action="store_true",
                        help="Print the query plan instead of running the query")
    parser.add_argument("--format", "-f", choices=["table", "csv", "json"], default="table",
                        help="Output format (default: table)")
    parser.add_argument("--limit", type=int,
                        help="Row limit applied when the query has no LIMIT")
    parser.add_argument("--log-level", choices=LOG_LEVELS, type=str.upper,
                        help="Logging level (default: WARNING)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = DataLakeConfig.load(args.config) if args.config else DataLakeConfig()
        if args.catalog:
            config.catalog_path = args.catalog
        if args.limit is not None:
            config.default_limit = args.limit
        if args.log_level:
            config.log_level = args.log_level
        config.validate_or_raise()

        logging.basicConfig(
            level=getattr(logging, config.log_level),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        runner = QueryRunner(
            config.load_catalog(),
            config.create_executor(),
            weights=config.weights,
            default_limit=config.default_limit,
        )

        if args.explain:
            with open(args.query, encoding="utf-8") as f:
                plan = runner.explain(f.read())
            if args.format == "json":
                print(json.dumps(plan.to_dict(), indent=2))
            else:
                print(plan)
            return 0
    except DataLakeError as e:
        print(f"{e.kind}: {e.message}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    outcome = runner.run_file(args.query)
    if not outcome.ok:
        subject = f" ({outcome.subject})" if outcome.subject else ""
        print(f"{outcome.kind}: {outcome.message}{subject}", file=sys.stderr)
        return 1

    result = outcome.result
    if args.format == "json":
        print(json.dumps(result.to_dict(), indent=2, default=str))
    elif args.format == "csv":
        sys.stdout.write(result.to_polars().write_csv())
    else:
        print(result.to_polars())
        print(f"{result.row_count} rows in {outcome.stats.duration_ms:.1f}ms")
    return 0


if __name__ == "__main__":
    sys.exit(main())

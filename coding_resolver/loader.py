from __future__ import annotations

import argparse
import logging
import sys

from .logging_config import setup_logging
from .store import ConceptStore, IngestError

logger = logging.getLogger(__name__)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Build the SQLite terminology store from CodeSystem exports")
    parser.add_argument("--db", required=True, help="SQLite database path")
    parser.add_argument("--fresh", action="store_true", help="Delete an existing database first")
    parser.add_argument("--ndjson", nargs="*", default=[], help="NDJSON(.gz) exports: CodeSystem header, then concepts")
    parser.add_argument("--code-system-json", nargs="*", default=[], help="Whole CodeSystem JSON resources")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-json", action="store_true")
    args = parser.parse_args(argv)

    setup_logging(args.log_level, json_output=args.log_json)
    if not args.ndjson and not args.code_system_json:
        parser.error("nothing to load: pass --ndjson and/or --code-system-json")

    store = ConceptStore.create(args.db, fresh=args.fresh)
    try:
        for path in args.ndjson:
            n = store.ingest_ndjson(path)
            logger.info("Loaded %d concepts from %s", n, path)
        for path in args.code_system_json:
            n = store.ingest_code_system_json(path)
            logger.info("Loaded %d concepts from %s", n, path)
        logger.info("Building full-text index...")
        store.finalize()

        totals = store.totals()
        logger.info(
            "Store ready: %d code systems, %d concepts, %d designations",
            totals["code_systems"],
            totals["concepts"],
            totals["designations"],
        )
        for meta in store.list_code_systems()[:10]:
            logger.info("  %s (%s): %d concepts", meta.system, meta.version or "no version", meta.concept_count)
    except IngestError as e:
        logger.error("Load failed: %s", e)
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()

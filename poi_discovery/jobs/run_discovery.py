"""CLI job running one discovery pass and printing its summary."""

import argparse
import json
import logging
import sys
from typing import List, Optional

from poi_discovery.core.config import ConfigError, get_settings
from poi_discovery.core.errors import PersistenceUnavailable
from poi_discovery.core.models import Scope, ScopeKind
from poi_discovery.jobs.bootstrap import build_services

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2
EXIT_PERSISTENCE_UNAVAILABLE = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a POI discovery pass")
    parser.add_argument(
        "--scope",
        dest="scope",
        choices=[kind.value for kind in ScopeKind],
        default=ScopeKind.GLOBAL.value,
        help="Geographic granularity of the run",
    )
    parser.add_argument("--name", dest="name", help="Continent, country or region name")
    parser.add_argument("--country", dest="country", help="Country the region belongs to")
    parser.add_argument(
        "--source",
        dest="sources",
        action="append",
        help="Restrict the run to a source (repeatable)",
    )
    parser.add_argument(
        "--drain",
        dest="drain",
        action="store_true",
        help="Process queued enrichment work before exiting",
    )
    parser.add_argument(
        "--drain-timeout",
        dest="drain_timeout",
        type=float,
        default=300.0,
        help="Seconds to wait for enrichment to settle when --drain is set",
    )
    return parser


def run_discovery_job(
    *,
    scope: Scope,
    sources: Optional[List[str]] = None,
    drain: bool = False,
    drain_timeout: float = 300.0,
) -> dict:
    services = build_services(get_settings())
    summary = services.orchestrator.run_discovery(scope, sources=sources)
    result = summary.to_dict()

    if drain:
        services.workers.start()
        try:
            if not services.workers.wait_idle(drain_timeout):
                logger.warning("Enrichment did not settle within %.0fs", drain_timeout)
        finally:
            services.workers.stop()
        result["queue"] = services.queue.stats()

    return result


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        scope = Scope(kind=args.scope, name=args.name, country=args.country)
    except ValueError as exc:
        parser.error(str(exc))

    try:
        result = run_discovery_job(scope=scope, sources=args.sources, drain=args.drain, drain_timeout=args.drain_timeout)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR
    except PersistenceUnavailable as exc:
        logger.error("Location store unavailable: %s", exc)
        return EXIT_PERSISTENCE_UNAVAILABLE

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())

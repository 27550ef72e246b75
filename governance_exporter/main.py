#!/usr/bin/env python3
"""Main entrypoint for the tenant governance exporter."""

import argparse
import json
import logging
import sys
from os import environ
from pathlib import Path
from typing import Any, cast

from rich.console import Console
from rich.logging import RichHandler

from governance_exporter import constants
from governance_exporter.config_store import ConfigStore, get_config_store
from governance_exporter.directory_client import (
    SCOPE_ADMINISTRATIVE_UNIT,
    SCOPE_GROUP,
    DirectoryClient,
)
from governance_exporter.exceptions import CollectionError, ConfigurationError, ExportError
from governance_exporter.mapping_cache import MappingCache, enrich_with_friendly_names
from governance_exporter.orchestrator import Collector, ExportOrchestrator
from governance_exporter.run_context import RunContextFilter

# Report collectors selectable through the `collector` setting
COLLECTOR_USERS = "users"
COLLECTOR_LICENSES = "licenses"

# Row identity column every user report starts with
USER_REQUIRED_PROPERTIES = ("userId",)

LOG_FORMAT = "%(asctime)s [%(name)s:%(filename)s:%(lineno)d] %(levelname)s run=%(run_id)s: %(message)s"


class Args(argparse.Namespace):
    config: Path | None
    report: list[str] | None
    report_prefix: str | None
    input: Path | None
    log_level: str
    rich_logs: bool
    print_config_and_exit: bool


logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> Args:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Tenant governance report exporter",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        type=Path,
        help=f"Path to the report configuration file (defaults to ${constants.CONFIG_PATH_ENV_VAR} or {constants.DEFAULT_CONFIG_PATH})",
    )

    parser.add_argument(
        "--report",
        action="append",
        help="Report key to run, may be repeated",
    )

    parser.add_argument(
        "--report-prefix",
        help="Run every configured report whose key starts with this prefix",
    )

    parser.add_argument(
        "--input",
        type=Path,
        help="Read report rows from a JSON file instead of the directory API",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Set the logging level",
    )

    parser.add_argument(
        "--rich-logs",
        action="store_true",
        help="Enable rich colored logging output",
    )

    parser.add_argument(
        "--print-config-and-exit",
        action="store_true",
        help="Print the resolved settings of the selected reports as JSON and exit",
    )

    return cast(Args, parser.parse_args(argv))


def configure_logging(log_level: str, use_rich: bool = False) -> None:
    """Configure logging with optional rich formatting.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_rich: Whether to use rich colored logging
    """
    if use_rich:
        handler: logging.Handler = RichHandler(
            console=Console(),
            show_path=True,
            show_time=True,
            show_level=True,
            markup=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("run=%(run_id)s %(message)s", datefmt="[%X]"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RunContextFilter())

    logging.basicConfig(level=getattr(logging, log_level), handlers=[handler])

    # silence libs logging
    # - azure - logs every HTTP request and response header at INFO
    # - urllib3 - we don't care about those debug posts
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def file_collector(path: Path) -> Collector:
    """Collector returning rows stored as a JSON array."""

    def collect() -> list[dict[str, Any]]:
        logger.info("Reading rows from %s", path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                rows = json.load(f)
        except (OSError, ValueError) as e:
            raise CollectionError(f"Cannot read rows from '{path}': {e}") from e
        if not isinstance(rows, list):
            raise CollectionError(f"'{path}' must contain a JSON array of rows")
        return rows

    return collect


def directory_client_for(store: ConfigStore, report_key: str) -> DirectoryClient:
    token = environ.get(constants.GRAPH_TOKEN_ENV_VAR)
    if not token:
        raise ConfigurationError(
            f"{constants.GRAPH_TOKEN_ENV_VAR} must be set to query the directory"
        )
    return DirectoryClient(
        access_token=token,
        base_url=store.resolve(report_key, "graphBaseUrl", default=constants.GRAPH_BASE_URL),
    )


def license_collector(store: ConfigStore, report_key: str) -> Collector:
    """Collector listing subscribed SKUs with their friendly product names."""

    def collect() -> list[dict[str, Any]]:
        client = directory_client_for(store, report_key)
        rows = [
            {
                "SkuId": sku.get("skuId"),
                "SkuPartNumber": sku.get("skuPartNumber"),
                "CapabilityStatus": sku.get("capabilityStatus"),
                "ConsumedUnits": sku.get("consumedUnits"),
                "EnabledUnits": (sku.get("prepaidUnits") or {}).get("enabled"),
            }
            for sku in client.fetch_subscribed_skus()
        ]
        mapping = MappingCache.from_config(store, report_key).get()
        return enrich_with_friendly_names(rows, mapping)

    return collect


def scope_setting_for(store: ConfigStore, report_key: str) -> str | None:
    if store.resolve_list(report_key, "groupIds"):
        return "groupIds"
    if store.resolve_list(report_key, "administrativeUnitIds"):
        return "administrativeUnitIds"
    return None


def build_collector(
    orchestrator: ExportOrchestrator, report_key: str, input_path: Path | None
) -> tuple[Collector, str | None]:
    """Pick the collector and partitioning for a report from its settings."""
    store = orchestrator.store
    scope_setting = scope_setting_for(store, report_key)
    if input_path is not None:
        return file_collector(input_path), scope_setting

    kind = str(store.resolve(report_key, "collector", default=COLLECTOR_USERS)).lower()
    if kind == COLLECTOR_LICENSES:
        return license_collector(store, report_key), None
    if kind != COLLECTOR_USERS:
        raise ConfigurationError(f"Report '{report_key}' has unknown collector '{kind}'")

    scope_kind = SCOPE_ADMINISTRATIVE_UNIT if scope_setting == "administrativeUnitIds" else SCOPE_GROUP

    def fetch(select_fields, scope_id):
        client = directory_client_for(store, report_key)
        return client.fetch_users(list(select_fields), scope_id, scope_kind=scope_kind)

    def scope_name(scope_id):
        client = directory_client_for(store, report_key)
        return client.fetch_scope_display_name(scope_id, scope_kind=scope_kind)

    collector = orchestrator.planned_collector(
        report_key,
        fetch,
        required_properties=USER_REQUIRED_PROPERTIES,
        scope_setting=scope_setting,
        scope_name=scope_name,
    )
    return collector, scope_setting


def selected_reports(store: ConfigStore, args: Args) -> list[str]:
    keys = [key.strip().upper() for key in args.report or []]
    if args.report_prefix:
        matched = store.list_report_keys_by_prefix(args.report_prefix)
        if not matched:
            raise ConfigurationError(
                f"No reports configured with prefix '{args.report_prefix.upper()}'"
            )
        keys.extend(key for key in matched if key not in keys)
    return keys or store.report_keys()


def describe_report(store: ConfigStore, report_key: str) -> dict[str, Any]:
    target = store.resolve_storage_target(report_key)
    return {
        "enabled": store.is_enabled(report_key),
        "formats": store.resolve_formats(report_key),
        "storage_account": target.storage_account,
        "container": target.container,
        "blob_prefix": target.blob_prefix,
        "uses_connection_string": target.connection_string is not None,
        "properties": store.resolve_list(report_key, "properties"),
    }


def main(argv: list[str] | None = None) -> int:
    """Main function."""
    args = parse_args(argv)

    configure_logging(args.log_level, args.rich_logs)

    try:
        store = ConfigStore(path=args.config) if args.config else get_config_store()
        report_keys = selected_reports(store, args)

        if args.print_config_and_exit:
            logger.info("Printing resolved configuration")
            resolved = {key: describe_report(store, key) for key in report_keys}
            print(json.dumps(resolved, indent=2, sort_keys=True))
            return 0

        orchestrator = ExportOrchestrator(store)
        logger.info("Running %d report(s): %s", len(report_keys), ", ".join(report_keys))
        for report_key in report_keys:
            collector, scope_setting = build_collector(orchestrator, report_key, args.input)
            orchestrator.run(report_key, collector, scope_setting=scope_setting)

    except ConfigurationError as e:
        logger.error("Invalid config: %s", e)
        return 1
    except ExportError as e:
        logger.error("Export failed: %s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Exporter stopped by user")
        return 0
    except Exception as e:
        logger.error("Error running exporter: %s", e, exc_info=True)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())

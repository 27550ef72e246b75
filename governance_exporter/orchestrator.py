"""Run one report export end to end.

A run checks that the report is enabled, invokes its collector, splits the
rows into partitions when the report is scoped (one partition per group or
administrative unit) and hands each rowset to the storage writer.

Reports that select directory fields through ``properties`` get their
collector from :meth:`ExportOrchestrator.planned_collector`, which owns the
adaptive field-selection loop: when the directory rejects one selected
field, the property that produced it is dropped and the request retried.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, NamedTuple, Sequence

import requests

from governance_exporter import constants
from governance_exporter.config_store import ConfigStore, is_usable
from governance_exporter.exceptions import CollectionError, ConfigurationError, PlanExhaustedError
from governance_exporter.property_planner import (
    PropertyPlan,
    build_plan,
    extract_unsupported_field,
    project_record,
    with_required,
)
from governance_exporter.run_context import (
    bind_run_id,
    clear_run_id,
    log_stage,
    new_run_id,
)
from governance_exporter.storage_writer import StorageWriter, utc_now

logger = logging.getLogger(__name__)

Row = dict[str, Any]
# scope_name(scope_id) -> display name of the group or administrative unit
ScopeName = Callable[[str], str | None]
Collector = Callable[[], Sequence[Mapping[str, Any]]]
# fetch(select_fields) -> raw records
Fetch = Callable[[tuple[str, ...]], Sequence[Mapping[str, Any]]]
# scoped fetch(select_fields, scope_id) -> raw records; scope_id is None when unpartitioned
ScopedFetch = Callable[[tuple[str, ...], str | None], Sequence[Mapping[str, Any]]]

# Context column filled from the scope id, keyed by the setting listing the scopes
SCOPE_CONTEXT_FIELDS = {
    "groupids": "groupId",
    "administrativeunitids": "administrativeUnitId",
}
# Context column holding the scope's display name, looked up only when requested
SCOPE_DISPLAY_FIELDS = {
    "groupids": "groupDisplayName",
    "administrativeunitids": "administrativeUnitDisplayName",
}
REPORT_TIMESTAMP_FIELD = "reportTimestamp"


class PlannedFetch(NamedTuple):
    plan: PropertyPlan
    records: list[Mapping[str, Any]]
    dropped: list[str]


@dataclass
class RunSummary:
    run_id: str
    report_key: str
    rows: int = 0
    partitions: int = 0
    empty_partitions: int = 0
    files_written: int = 0
    skipped: bool = False


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _error_text(error: Exception) -> str:
    message = str(error)
    response = getattr(error, "response", None)
    if response is not None and getattr(response, "text", None):
        message = f"{message} {response.text}"
    return message


def fetch_with_plan(
    requested_properties: Iterable[str],
    fetch: Fetch,
    context_field_names: Iterable[str] = (),
    required_properties: Iterable[str] = (),
    label: str = "",
) -> PlannedFetch:
    """Fetch records, dropping properties the upstream API rejects.

    Each iteration removes the requested properties behind the one field the
    upstream error names, so the candidate set only shrinks. A rejection
    that removes nothing re-raises the original error.

    Raises:
        PlanExhaustedError: If no property is left to select.
        CollectionError: If the failure is not about a field, or the rejected
            field cannot be removed.
    """
    requested = [p for p in requested_properties if is_usable(p)]
    context_field_names = list(context_field_names)
    required = {p.strip().lower() for p in required_properties}
    dropped: list[str] = []

    plan = build_plan(requested, context_field_names)
    while True:
        if not plan.mappings:
            raise PlanExhaustedError(dropped)
        try:
            records = list(fetch(plan.select_fields))
            return PlannedFetch(plan, records, dropped)
        except (CollectionError, requests.RequestException) as e:
            field_name = extract_unsupported_field(_error_text(e))
            if field_name is None:
                raise

            culprits = plan.mappings_for_field(field_name) or [
                m for m in plan.mappings if m.requested_name.lower() == field_name.lower()
            ]
            removable = [
                m.requested_name
                for m in culprits
                if m.requested_name.lower() not in required
            ]
            if not removable:
                logger.error(
                    "%sUpstream rejected field '%s' and no removable property selects it",
                    f"{label}: " if label else "",
                    field_name,
                )
                raise

            for name in removable:
                logger.warning(
                    "%sDropping property '%s': field '%s' is not supported upstream",
                    f"{label}: " if label else "",
                    name,
                    field_name,
                )
            removed = {name.lower() for name in removable}
            requested = [p for p in requested if p.strip().lower() not in removed]
            dropped.extend(removable)

            rebuilt = build_plan(requested, context_field_names)
            if rebuilt == plan:
                raise
            plan = rebuilt


def strip_bookkeeping(row: Mapping[str, Any]) -> Row:
    return {k: v for k, v in row.items() if not k.startswith("__")}


class ExportOrchestrator:
    """Runs report exports against a configuration store and a storage writer."""

    def __init__(
        self,
        store: ConfigStore,
        writer: StorageWriter | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Resolves report settings
            writer: Publishes rowsets, a default StorageWriter when omitted
            clock: Source of the report timestamp context value
        """
        self.store = store
        self.writer = writer or StorageWriter()
        self.clock = clock

    def planned_collector(
        self,
        report_key: str,
        fetch: ScopedFetch,
        required_properties: Sequence[str] = (),
        scope_setting: str | None = None,
        scope_name: ScopeName | None = None,
    ) -> Collector:
        """Build a collector that selects the report's configured ``properties``.

        Args:
            report_key: Report whose settings provide ``properties``,
                ``propertyExclusions`` and the scope ids
            fetch: Upstream call taking the select fields and a scope id
            required_properties: Columns always emitted first and never dropped
            scope_setting: Setting listing scope ids (e.g. ``groupIds``); the
                collector fetches once per scope and tags rows with it
            scope_name: Looks up a scope's display name for the
                ``groupDisplayName`` / ``administrativeUnitDisplayName`` columns

        Returns:
            Zero-argument collector returning projected rows.
            Scope ids skipped because no usable property was left are
            recorded in the collector's ``skipped_scopes`` set.
        """
        report_key = report_key.strip().upper()

        skipped_scopes: set[str] = set()

        def collect() -> list[Row]:
            skipped_scopes.clear()
            configured = self.store.resolve_list(report_key, "properties")
            if not configured and not required_properties:
                self.store.resolve(report_key, "properties", required=True)
            requested = with_required(required_properties, configured)
            timestamp = self.clock().isoformat()

            if scope_setting is None:
                context = {REPORT_TIMESTAMP_FIELD: timestamp}
                try:
                    planned = fetch_with_plan(
                        requested,
                        lambda select: fetch(select, None),
                        context_field_names=context.keys(),
                        required_properties=required_properties,
                        label=report_key,
                    )
                except PlanExhaustedError as e:
                    logger.warning("Skipping %s: %s", report_key, e)
                    return []
                except CollectionError as e:
                    raise CollectionError(f"{report_key}: {e}", status_code=e.status_code) from e
                return [project_record(r, planned.plan, context) for r in planned.records]

            scope_ids = self.store.resolve_list(report_key, scope_setting)
            if not scope_ids:
                self.store.resolve(report_key, scope_setting, required=True)
            exclusions = self.store.resolve_mapping(report_key, "propertyExclusions")
            scope_field = SCOPE_CONTEXT_FIELDS.get(scope_setting.lower(), "scopeId")
            display_field = SCOPE_DISPLAY_FIELDS.get(scope_setting.lower())
            required_lower = {p.lower() for p in required_properties}

            rows: list[Row] = []
            for scope_id in scope_ids:
                excluded = {p.lower() for p in exclusions.get(scope_id.lower(), [])}
                scope_requested = [
                    p
                    for p in requested
                    if p.lower() not in excluded or p.lower() in required_lower
                ]
                context = {scope_field: scope_id, REPORT_TIMESTAMP_FIELD: timestamp}
                label = f"{report_key}/{scope_id}"
                try:
                    if display_field:
                        wanted = any(p.lower() == display_field.lower() for p in scope_requested)
                        context[display_field] = (
                            scope_name(scope_id) if wanted and scope_name is not None else None
                        )
                    planned = fetch_with_plan(
                        scope_requested,
                        lambda select, sid=scope_id: fetch(select, sid),
                        context_field_names=context.keys(),
                        required_properties=required_properties,
                        label=label,
                    )
                except PlanExhaustedError as e:
                    logger.warning("Skipping partition %s: %s", label, e)
                    skipped_scopes.add(scope_id)
                    continue
                except CollectionError as e:
                    raise CollectionError(f"{label}: {e}", status_code=e.status_code) from e

                # properties rejected for one scope are rejected for all
                if planned.dropped:
                    gone = {p.lower() for p in planned.dropped}
                    requested = [p for p in requested if p.lower() not in gone]

                for record in planned.records:
                    row = project_record(record, planned.plan, context)
                    row[constants.PARTITION_KEY_FIELD] = scope_id
                    rows.append(row)
            return rows

        collect.skipped_scopes = skipped_scopes  # type: ignore[attr-defined]
        return collect

    def _html_group_by(self, report_key: str) -> str | None:
        default = (
            constants.LEGACY_ROLE_GROUP_COLUMN
            if report_key == constants.LEGACY_ROLE_REPORT_KEY
            else None
        )
        return self.store.resolve(report_key, "htmlGroupBy", default=default)

    def _partition(
        self, rows: Sequence[Mapping[str, Any]], scope_ids: list[str]
    ) -> dict[str | None, list[Row]]:
        groups: dict[str | None, list[Row]] = {scope_id: [] for scope_id in scope_ids}
        for row in rows:
            key = row.get(constants.PARTITION_KEY_FIELD)
            key = str(key) if is_usable(key) else None
            if key not in groups:
                if key is not None and scope_ids:
                    logger.warning("Rows carry unconfigured partition key '%s'", key)
                groups[key] = []
            groups[key].append(strip_bookkeeping(row))
        return groups

    def _write_partitions(
        self,
        report_key: str,
        rows: Sequence[Mapping[str, Any]],
        scope_ids: list[str],
        summary: RunSummary,
    ) -> None:
        formats = self.store.resolve_formats(report_key)
        target = self.store.resolve_storage_target(report_key)
        group_by = self._html_group_by(report_key)
        write_empty = self.store.resolve_bool(report_key, "writeEmptyPartitions", False)

        groups = self._partition(rows, scope_ids)
        summary.partitions = len(groups)
        if not groups:
            log_stage("write", "warn", report=report_key, reason="no data", partitions=0)
            return

        started = time.monotonic()
        for key, partition_rows in groups.items():
            if not partition_rows:
                summary.empty_partitions += 1
                if not write_empty:
                    logger.info("Partition %s/%s has no rows, nothing written", report_key, key)
                    continue
            blob_prefix = f"{target.blob_prefix}/{key}" if key else target.blob_prefix
            file_name_base = f"{report_key}_{key}" if key else report_key
            logger.info(
                "Writing partition %s (%d rows) to %s", file_name_base, len(partition_rows), blob_prefix
            )
            summary.files_written += self.writer.write(
                partition_rows, formats, target, blob_prefix, file_name_base, group_by=group_by
            )

        status = "ok" if summary.files_written else "warn"
        fields: dict[str, Any] = {
            "report": report_key,
            "partitions": summary.partitions,
            "empty": summary.empty_partitions,
            "files": summary.files_written,
            "elapsed_ms": _elapsed_ms(started),
        }
        if not summary.files_written:
            fields["reason"] = "no data"
        log_stage("write", status, **fields)

    def _write_flat(
        self, report_key: str, rows: Sequence[Mapping[str, Any]], summary: RunSummary
    ) -> None:
        if not rows:
            log_stage("write", "warn", report=report_key, reason="no data", rows=0)
            return
        started = time.monotonic()
        target = self.store.resolve_storage_target(report_key)
        summary.files_written = self.writer.write(
            [strip_bookkeeping(row) for row in rows],
            self.store.resolve_formats(report_key),
            target,
            target.blob_prefix,
            report_key,
            group_by=self._html_group_by(report_key),
        )
        log_stage(
            "write",
            "ok",
            report=report_key,
            rows=len(rows),
            files=summary.files_written,
            elapsed_ms=_elapsed_ms(started),
        )

    def run(
        self,
        report_key: str,
        collector: Collector,
        scope_setting: str | None = None,
    ) -> RunSummary:
        """Export one report.

        Args:
            report_key: Report to run (case-insensitive)
            collector: Zero-argument callable returning the report rows
            scope_setting: Setting listing the report's scope ids; when given
                the report is partitioned and every configured id is
                accounted for, even with no rows

        Returns:
            RunSummary describing what was collected and written.

        Raises:
            ExportError: Configuration, collection or write failures. They are
                logged with the elapsed time and re-raised.
        """
        report_key = report_key.strip().upper()
        run_id = new_run_id()
        bind_run_id(run_id)
        started = time.monotonic()
        summary = RunSummary(run_id=run_id, report_key=report_key)
        try:
            if not self.store.is_enabled(report_key):
                logger.info("Report %s is disabled, skipping", report_key)
                summary.skipped = True
                log_stage("invoke", "ok", report=report_key, skipped="disabled")
                return summary

            # configuration problems abort before anything is collected
            self.store.resolve_storage_target(report_key)
            scope_ids = self.store.resolve_list(report_key, scope_setting) if scope_setting else []

            collect_started = time.monotonic()
            try:
                rows = list(collector())
            except Exception:
                log_stage(
                    "collect", "error", report=report_key, elapsed_ms=_elapsed_ms(collect_started)
                )
                raise
            summary.rows = len(rows)
            log_stage(
                "collect",
                "ok" if rows else "warn",
                report=report_key,
                rows=len(rows),
                elapsed_ms=_elapsed_ms(collect_started),
            )

            # scopes the collector skipped are neither written nor counted as empty
            skipped = getattr(collector, "skipped_scopes", None) or set()
            scope_ids = [scope_id for scope_id in scope_ids if scope_id not in skipped]

            partitioned = scope_setting is not None or any(
                constants.PARTITION_KEY_FIELD in row for row in rows
            )
            if partitioned:
                self._write_partitions(report_key, rows, scope_ids, summary)
            else:
                self._write_flat(report_key, rows, summary)

            if not summary.files_written:
                logger.warning("No data for report %s, nothing written", report_key)
            log_stage(
                "invoke",
                "ok" if summary.files_written else "warn",
                report=report_key,
                rows=summary.rows,
                partitions=summary.partitions,
                files=summary.files_written,
                elapsed_ms=_elapsed_ms(started),
            )
            return summary
        except Exception as e:
            elapsed = _elapsed_ms(started)
            logger.error("Export of %s failed after %d ms: %s", report_key, elapsed, e)
            log_stage(
                "invoke", "error", report=report_key, error=type(e).__name__, elapsed_ms=elapsed
            )
            raise
        finally:
            clear_run_id()

    def run_prefix(
        self,
        prefix: str,
        collector_factory: Callable[[str], Collector],
        scope_setting: str | None = None,
    ) -> list[RunSummary]:
        """Run every report whose key starts with ``prefix``, sharing one collector kind.

        Raises:
            ConfigurationError: If no report matches the prefix.
        """
        report_keys = self.store.list_report_keys_by_prefix(prefix)
        if not report_keys:
            raise ConfigurationError(f"No reports configured with prefix '{prefix.upper()}'")
        return [
            self.run(key, collector_factory(key), scope_setting=scope_setting)
            for key in report_keys
        ]

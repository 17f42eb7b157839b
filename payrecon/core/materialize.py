# payrecon/core/materialize.py

"""
Payment materialization engine.

Takes payment rows from one source (statement files, provider sync, or the
legacy staging queue) and upserts them into the canonical ledger, keyed by
(provider, uid).

Every run scans first: normalize, deduplicate, classify each row against the
ledger as create / update / skip. A dry run stops there and reports what
execute would do. Execute passes the STOP-guard and then commits row by row;
one row failing never stops the others.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

from payrecon.config import Settings, get_settings
from payrecon.core.dedup import (
    MergeResult,
    combine_totals,
    is_totals_file,
    merge_rows,
    parse_totals_batch,
)
from payrecon.core.discrepancy import compare_totals, ledger_discrepancy
from payrecon.core.normalizers import (
    PROVIDER_SYNC_COLUMN_MAP,
    QUEUE_COLUMN_MAP,
    STATEMENT_COLUMN_MAP,
    normalize_row,
)
from payrecon.core.store import (
    DuplicatePaymentError,
    PaymentStore,
    ReadScope,
    StoreError,
    StoreWriteError,
    day_bounds,
)
from payrecon.models import (
    CanonicalPayment,
    FileStats,
    ImportRow,
    LegacyQueueRequest,
    MaterializeResponse,
    PaymentOrigin,
    ProviderSyncRequest,
    QueueCursor,
    RowError,
    RowOutcome,
    RowSample,
    RowWriteError,
    RunStats,
    SampleError,
    StatementImportRequest,
    TotalsExpectation,
)

logger = logging.getLogger(__name__)

AnyMaterializeRequest = Union[StatementImportRequest, ProviderSyncRequest, LegacyQueueRequest]

ORIGINS: dict[str, PaymentOrigin] = {
    "statement_import": "statement_import",
    "provider_sync": "provider_sync",
    "legacy_queue": "legacy_migration",
}

COLUMN_MAPS = {
    "statement_import": STATEMENT_COLUMN_MAP,
    "provider_sync": PROVIDER_SYNC_COLUMN_MAP,
}

# Fields materialization may write. Linkage fields are never among them.
LEDGER_FIELDS = ("amount", "currency", "status_normalized", "transaction_type", "paid_at")

_ROW_TO_LEDGER = {
    "amount": "amount",
    "currency": "currency",
    "status": "status_normalized",
    "transaction_type": "transaction_type",
    "paid_at": "paid_at",
}

QUEUE_MATERIALIZABLE_STATUSES = ["completed"]


class RunState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DRY_RUN_COMPLETE = "dry_run_complete"
    BLOCKED = "blocked"
    EXECUTING = "executing"
    DONE = "done"
    FAILED = "failed"


PlanAction = str  # "create" | "update" | "skip"


@dataclass
class ScanResult:
    """Everything the scanning phase learned, before any write."""

    merged: MergeResult = field(default_factory=MergeResult)
    total_files: int = 0
    per_file: list[FileStats] = field(default_factory=list)
    scanned: int = 0
    row_errors: list[RowError] = field(default_factory=list)
    out_of_scope: int = 0
    beyond_limit: int = 0
    eligible: list[ImportRow] = field(default_factory=list)
    ineligible: int = 0
    existing: dict[str, CanonicalPayment] = field(default_factory=dict)
    plan: dict[str, PlanAction] = field(default_factory=dict)
    totals: Optional[TotalsExpectation] = None
    needs_uid_ids: list[str] = field(default_factory=list)
    next_cursor: Optional[QueueCursor] = None
    filtered_batches: int = 0

    @property
    def invalid_rows(self) -> int:
        return len(self.row_errors)

    @property
    def invalid_rate(self) -> float:
        return self.invalid_rows / self.scanned if self.scanned else 0.0


@dataclass
class RowResult:
    uid: str
    result: RowOutcome
    payment_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ReconciliationRun:
    """One invocation. Only ever visible to callers once finished."""

    source: str
    mode: str
    provider: str
    state: RunState = RunState.IDLE
    history: list[RunState] = field(default_factory=lambda: [RunState.IDLE])
    warnings: list[str] = field(default_factory=list)
    started: float = field(default_factory=time.monotonic)

    def transition(self, state: RunState) -> None:
        logger.debug(f"[{self.source}/{self.mode}] {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class MaterializationEngine:
    """Dry-run / execute materialization against a PaymentStore."""

    def __init__(self, store: PaymentStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    # ============================================
    # Entry point
    # ============================================

    async def run(self, request: AnyMaterializeRequest) -> MaterializeResponse:
        """
        Run one materialization.

        Raises StoreError or ScopeError only when the run cannot start at all;
        everything after scanning is reported in the response.
        """
        run = ReconciliationRun(
            source=request.source,
            mode=request.mode,
            provider=request.provider or self.settings.default_provider,
        )
        logger.info(f"Materialize start: source={run.source}, mode={run.mode}, provider={run.provider}")

        run.transition(RunState.SCANNING)
        try:
            scan = await self._scan(request, run)
        except Exception:
            run.transition(RunState.FAILED)
            raise

        stats = self._base_stats(scan)
        self._scan_warnings(scan, run)

        if request.mode == "dry_run":
            run.transition(RunState.DRY_RUN_COMPLETE)
            return self._dry_run_response(request, run, scan, stats)

        if scan.invalid_rate > self.settings.stop_guard_invalid_rate:
            run.transition(RunState.BLOCKED)
            return self._blocked_response(request, run, scan, stats)

        run.transition(RunState.EXECUTING)
        response = await self._execute(request, run, scan, stats)
        run.transition(RunState.DONE)
        return response

    # ============================================
    # Scanning
    # ============================================

    async def _scan(self, request: AnyMaterializeRequest, run: ReconciliationRun) -> ScanResult:
        scan = ScanResult()
        paid_from, paid_to = day_bounds(
            request.scope.from_date, request.scope.to_date, self.settings.provider_tz
        )

        if isinstance(request, LegacyQueueRequest):
            rows = await self._scan_queue(request, run, scan, paid_from, paid_to)
        else:
            rows = self._scan_batches(request, scan)

        in_scope: list[ImportRow] = []
        for row in rows:
            if row.paid_at is not None and (
                (paid_from and row.paid_at < paid_from) or (paid_to and row.paid_at > paid_to)
            ):
                scan.out_of_scope += 1
                continue
            in_scope.append(row)

        scan.merged = merge_rows(in_scope)

        for row in scan.merged.rows.values():
            if row.status == "unknown":
                scan.ineligible += 1
            else:
                scan.eligible.append(row)

        scan.existing = await self._load_existing(run.provider, [r.uid for r in scan.eligible])
        for row in scan.eligible:
            existing = scan.existing.get(row.uid)
            if existing is None:
                scan.plan[row.uid] = "create"
            elif ledger_changes(row, existing):
                scan.plan[row.uid] = "update"
            else:
                scan.plan[row.uid] = "skip"

        return scan

    def _scan_batches(
        self,
        request: Union[StatementImportRequest, ProviderSyncRequest],
        scan: ScanResult,
    ) -> list[ImportRow]:
        column_map = COLUMN_MAPS[request.source]
        limit = min(request.scope.limit or self.settings.max_statement_rows, self.settings.max_statement_rows)
        source_filter = set(request.scope.source_filter or [])
        rows: list[ImportRow] = []

        for batch in request.input:
            if source_filter and batch.name not in source_filter:
                scan.filtered_batches += 1
                continue

            scan.total_files += 1
            if is_totals_file(batch.name):
                scan.totals = combine_totals(scan.totals, parse_totals_batch(batch))
                continue

            file_stats = FileStats(name=batch.name)
            for index, raw in enumerate(batch.rows):
                if scan.scanned >= limit:
                    scan.beyond_limit += 1
                    continue

                scan.scanned += 1
                file_stats.total_rows += 1
                normalized = normalize_row(
                    raw,
                    column_map,
                    row_number=index + 2,  # header line + 1-based
                    source_file=batch.name,
                    default_tz=self.settings.provider_tz,
                )
                if isinstance(normalized, RowError):
                    file_stats.invalid_rows += 1
                    scan.row_errors.append(normalized)
                else:
                    file_stats.valid_rows += 1
                    rows.append(normalized)

            scan.per_file.append(file_stats)

        return rows

    async def _scan_queue(
        self,
        request: LegacyQueueRequest,
        run: ReconciliationRun,
        scan: ScanResult,
        paid_from: Optional[datetime],
        paid_to: Optional[datetime],
    ) -> list[ImportRow]:
        limit = min(request.scope.limit or self.settings.default_queue_limit, self.settings.max_queue_batch)
        items = await self.store.list_staging(ReadScope(
            provider=run.provider,
            paid_from=paid_from,
            paid_to=paid_to,
            limit=limit,
            source_filter=request.scope.source_filter,
            statuses=QUEUE_MATERIALIZABLE_STATUSES,
            cursor=request.cursor,
        ))

        source_name = self.settings.queue_table
        scan.total_files = 1
        file_stats = FileStats(name=source_name)
        rows: list[ImportRow] = []

        for index, item in enumerate(items):
            scan.scanned += 1
            file_stats.total_rows += 1
            raw: dict[str, Any] = {
                "id": item.id,
                "bepaid_uid": item.uid,
                "amount": item.amount,
                "currency": item.currency,
                "status_normalized": item.status_normalized
                or ("successful" if item.status == "completed" else item.status),
                "transaction_type": item.transaction_type,
                "paid_at": item.paid_at,
                "created_at": item.created_at,
                "source": item.source,
            }
            normalized = normalize_row(
                raw,
                QUEUE_COLUMN_MAP,
                row_number=index + 1,
                source_file=source_name,
                default_tz=self.settings.provider_tz,
            )
            if isinstance(normalized, RowError):
                file_stats.invalid_rows += 1
                scan.row_errors.append(normalized)
                if normalized.reason == "missing_uid":
                    scan.needs_uid_ids.append(item.id)
                continue

            file_stats.valid_rows += 1
            rows.append(normalized.model_copy(update={
                "linked_profile_id": item.matched_profile_id,
                "linked_order_id": item.matched_order_id,
            }))

        scan.per_file.append(file_stats)
        if items and len(items) >= limit:
            last = items[-1]
            scan.next_cursor = QueueCursor(paid_at=last.paid_at, id=last.id)
        return rows

    async def _load_existing(self, provider: str, uids: list[str]) -> dict[str, CanonicalPayment]:
        """Existing ledger rows, fetched in small chunks to keep queries bounded."""
        existing: dict[str, CanonicalPayment] = {}
        chunk = self.settings.existing_lookup_chunk
        for i in range(0, len(uids), chunk):
            existing.update(await self.store.get_payments_by_uids(provider, uids[i:i + chunk]))
        return existing

    # ============================================
    # Responses without writes
    # ============================================

    def _base_stats(self, scan: ScanResult) -> RunStats:
        return RunStats(
            total_files=scan.total_files,
            per_file=scan.per_file,
            total_rows=scan.scanned,
            scanned=scan.scanned,
            valid_rows=scan.merged.valid_rows + scan.out_of_scope,
            invalid_rows=scan.invalid_rows,
            invalid_rate=round(scan.invalid_rate, 6),
            duplicates_merged=scan.merged.duplicates_merged,
            uids_unique=scan.merged.uids_unique,
            total_amount=scan.merged.total_amount,
            out_of_scope=scan.out_of_scope,
            eligible=len(scan.eligible),
            ineligible=scan.ineligible,
            to_create=sum(1 for a in scan.plan.values() if a == "create"),
            to_update=sum(1 for a in scan.plan.values() if a == "update"),
        )

    def _scan_warnings(self, scan: ScanResult, run: ReconciliationRun) -> None:
        merged = scan.merged
        if merged.cross_source_uids:
            run.warnings.append(
                f"{merged.cross_source_uids} uids appeared in more than one file and were merged"
            )
        if merged.duplicates_merged:
            run.warnings.append(f"{merged.duplicates_merged} duplicate rows were merged by uid")
        if scan.ineligible:
            run.warnings.append(f"{scan.ineligible} rows with an unrecognized status were not materialized")
        if scan.out_of_scope:
            run.warnings.append(f"{scan.out_of_scope} rows were outside the date range")
        if scan.beyond_limit:
            run.warnings.append(f"{scan.beyond_limit} rows beyond the row limit were not scanned")
        if scan.filtered_batches:
            run.warnings.append(f"{scan.filtered_batches} files were excluded by the source filter")

    def _common_fields(self, run: ReconciliationRun, scan: ScanResult) -> dict:
        totals_check = None
        if scan.totals is not None:
            totals_check = compare_totals(
                scan.merged.uids_unique,
                scan.merged.total_amount,
                scan.totals,
                self.settings.totals_tolerance,
            )
            if totals_check.flagged:
                run.warnings.append(
                    f"Totals mismatch against {scan.totals.source_file}: "
                    f"count delta {totals_check.count_delta}, amount delta {totals_check.amount_delta}"
                )

        discrepancies = []
        for uid, action in scan.plan.items():
            if action != "update" or len(discrepancies) >= self.settings.error_sample_limit:
                continue
            found = ledger_discrepancy(
                scan.merged.rows[uid], scan.existing[uid], self.settings.amount_tolerance
            )
            if found:
                discrepancies.append(found)

        return {
            "source": run.source,
            "totals_expected": scan.totals,
            "totals_check": totals_check,
            "sample_errors": [
                SampleError(row=e.row, file=e.file, reason=e.reason)
                for e in scan.row_errors[: self.settings.error_sample_limit]
            ],
            "discrepancies": discrepancies,
            "next_cursor": scan.next_cursor,
        }

    def _dry_run_response(
        self,
        request: AnyMaterializeRequest,
        run: ReconciliationRun,
        scan: ScanResult,
        stats: RunStats,
    ) -> MaterializeResponse:
        predicted = {"create": "created", "update": "updated", "skip": "skipped"}
        stats.skipped = sum(1 for a in scan.plan.values() if a == "skip")

        if scan.needs_uid_ids:
            run.warnings.append(
                f"{len(scan.needs_uid_ids)} queue items would be marked needs_uid (no uid)"
            )

        results = [RowResult(uid=uid, result=predicted[action]) for uid, action in scan.plan.items()]
        common = self._common_fields(run, scan)
        duration_ms = run.elapsed_ms
        logger.info(
            f"Materialize dry run: scanned={stats.scanned}, to_create={stats.to_create}, "
            f"to_update={stats.to_update}, skipped={stats.skipped}, invalid={stats.invalid_rows}"
        )
        return MaterializeResponse(
            success=True,
            mode="dry_run",
            stats=stats,
            samples=self._samples(results, scan),
            warnings=run.warnings,
            duration_ms=duration_ms,
            **common,
        )

    def _blocked_response(
        self,
        request: AnyMaterializeRequest,
        run: ReconciliationRun,
        scan: ScanResult,
        stats: RunStats,
    ) -> MaterializeResponse:
        threshold = self.settings.stop_guard_invalid_rate
        message = (
            f"STOP-guard: invalid_rate {scan.invalid_rate * 100:.1f}% > {threshold * 100:.0f}% "
            f"with {scan.scanned} rows. Fix data or reduce batch."
        )
        logger.warning(f"Materialize blocked: {message}")
        return MaterializeResponse(
            success=False,
            mode="execute_blocked",
            stats=stats,
            warnings=run.warnings,
            error=message,
            duration_ms=run.elapsed_ms,
            **self._common_fields(run, scan),
        )

    # ============================================
    # Execute
    # ============================================

    async def _execute(
        self,
        request: AnyMaterializeRequest,
        run: ReconciliationRun,
        scan: ScanResult,
        stats: RunStats,
    ) -> MaterializeResponse:
        origin = ORIGINS[request.source]
        deadline = None
        if request.time_budget_ms:
            deadline = run.started + request.time_budget_ms / 1000
        semaphore = asyncio.Semaphore(max(1, self.settings.materialize_concurrency))

        async def process(row: ImportRow) -> RowResult:
            async with semaphore:
                if deadline is not None and time.monotonic() > deadline:
                    return RowResult(uid=row.uid, result="not_attempted")
                try:
                    return await self._upsert(row, scan.existing.get(row.uid), run, origin)
                except StoreError as e:
                    logger.warning(f"Materialize write failed for uid {row.uid}: {e.message}")
                    return RowResult(uid=row.uid, result="error", error=e.message)

        results = await asyncio.gather(*(process(row) for row in scan.eligible))

        for r in results:
            if r.result == "created":
                stats.created += 1
            elif r.result == "updated":
                stats.updated += 1
            elif r.result == "skipped":
                stats.skipped += 1
            elif r.result == "error":
                stats.errors += 1
            else:
                stats.not_attempted += 1

        if scan.needs_uid_ids:
            try:
                await self.store.mark_staging_needs_uid(scan.needs_uid_ids)
                run.warnings.append(
                    f"{len(scan.needs_uid_ids)} queue items skipped: no uid (marked needs_uid)"
                )
            except StoreError as e:
                logger.warning(f"Could not mark queue items needs_uid: {e.message}")
                run.warnings.append(f"Could not mark {len(scan.needs_uid_ids)} queue items needs_uid: {e.message}")

        if stats.errors:
            run.warnings.append(f"{stats.errors} errors occurred during processing")
        if stats.not_attempted:
            run.warnings.append(f"Time budget exhausted: {stats.not_attempted} rows were not attempted")

        samples = self._samples(results, scan)
        common = self._common_fields(run, scan)

        if stats.created or stats.updated:
            await self._write_audit(run, stats, scan, samples)

        logger.info(
            f"Materialize execute: created={stats.created}, updated={stats.updated}, "
            f"skipped={stats.skipped}, errors={stats.errors}, not_attempted={stats.not_attempted}"
        )
        return MaterializeResponse(
            success=True,
            mode="execute",
            stats=stats,
            samples=samples,
            error_details=[RowWriteError(uid=r.uid, error=r.error or "") for r in results if r.result == "error"],
            warnings=run.warnings,
            partial=stats.not_attempted > 0,
            duration_ms=run.elapsed_ms,
            **common,
        )

    async def _upsert(
        self,
        row: ImportRow,
        existing: Optional[CanonicalPayment],
        run: ReconciliationRun,
        origin: PaymentOrigin,
    ) -> RowResult:
        now = datetime.now(timezone.utc).isoformat()

        if existing is None:
            payment = CanonicalPayment(
                provider=run.provider,
                provider_payment_id=row.uid,
                amount=row.amount,
                currency=row.currency or self.settings.default_currency,
                status_normalized=row.status,
                transaction_type=row.transaction_type,
                paid_at=row.paid_at,
                origin=origin,
                linked_profile_id=row.linked_profile_id,
                linked_order_id=row.linked_order_id,
                meta={
                    "materialized_at": now,
                    "materialized_from": run.source,
                    "source_file": row.source_file,
                },
            )
            try:
                created = await self.store.insert_payment(payment)
                return RowResult(uid=row.uid, result="created", payment_id=created.id)
            except DuplicatePaymentError:
                # Another writer got there first: fall back to update-or-skip
                current = await self.store.get_payments_by_uids(run.provider, [row.uid])
                existing = current.get(row.uid)
                if existing is None:
                    raise StoreWriteError(f"uid {row.uid} reported as duplicate but not found")

        changes = ledger_changes(row, existing)
        if not changes:
            return RowResult(uid=row.uid, result="skipped", payment_id=existing.id)

        changes["meta"] = {
            **existing.meta,
            "last_materialized_at": now,
            "last_materialized_from": run.source,
            "previous_values": {k: _jsonable(getattr(existing, k)) for k in changes},
        }
        updated = await self.store.update_payment(existing.id, changes)
        return RowResult(uid=row.uid, result="updated", payment_id=updated.id)

    async def _write_audit(
        self,
        run: ReconciliationRun,
        stats: RunStats,
        scan: ScanResult,
        samples: list[RowSample],
    ) -> None:
        meta = {
            "source": run.source,
            "provider": run.provider,
            "stats": stats.model_dump(mode="json", exclude={"per_file"}),
            "next_cursor": scan.next_cursor.model_dump(mode="json") if scan.next_cursor else None,
            "sample_uids": [s.uid for s in samples[:5]],
        }
        try:
            await self.store.write_audit("payments.materialize.execute", meta)
        except StoreError as e:
            logger.warning(f"Audit log write failed: {e.message}")
            run.warnings.append(f"Audit log write failed: {e.message}")

    def _samples(self, results: list[RowResult], scan: ScanResult) -> list[RowSample]:
        """First N rows of each outcome, in input order."""
        per_outcome: dict[str, int] = {}
        samples: list[RowSample] = []
        for r in results:
            if per_outcome.get(r.result, 0) >= self.settings.sample_limit:
                continue
            per_outcome[r.result] = per_outcome.get(r.result, 0) + 1
            row = scan.merged.rows.get(r.uid)
            samples.append(RowSample(
                uid=r.uid,
                result=r.result,
                payment_id=r.payment_id,
                amount=row.amount if row else None,
                status=row.status if row else None,
                paid_at=row.paid_at if row else None,
                source_file=row.source_file if row else None,
                error=r.error,
            ))
        return samples


# ============================================
# Helpers
# ============================================

def ledger_changes(row: ImportRow, existing: CanonicalPayment) -> dict[str, Any]:
    """
    Fields of the ledger row that this import row would change.

    Only values the row actually supplied are considered; linkage fields are
    never part of the result.
    """
    changes: dict[str, Any] = {}
    for row_field, ledger_field in _ROW_TO_LEDGER.items():
        if row_field not in row.model_fields_set:
            continue
        value = getattr(row, row_field)
        if value is None:
            continue
        if getattr(existing, ledger_field) != value:
            changes[ledger_field] = value
    return changes


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


async def materialize(
    store: PaymentStore,
    request: AnyMaterializeRequest,
    settings: Optional[Settings] = None,
) -> MaterializeResponse:
    """Run one materialization with a fresh engine."""
    return await MaterializationEngine(store, settings).run(request)

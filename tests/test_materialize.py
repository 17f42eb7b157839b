# tests/test_materialize.py

"""
Tests for the materialization engine.
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from payrecon.config import Settings
from payrecon.core.materialize import MaterializationEngine, RunState, ledger_changes
from payrecon.core.normalizers import STATEMENT_COLUMN_MAP, normalize_row
from payrecon.core.store import ScopeError, StoreUnavailableError
from payrecon.models import (
    LegacyQueueRequest,
    MaterializeScope,
    ProviderSyncRequest,
    QueueCursor,
    StatementImportRequest,
)

from factories import (
    batch,
    canonical,
    guard_batches,
    queue_item,
    scenario_batches,
    statement_row,
)

MINSK = timezone(timedelta(hours=3))


def statement(batches, mode="dry_run", **kwargs) -> StatementImportRequest:
    return StatementImportRequest(mode=mode, input=batches, **kwargs)


def engine_for(store, **overrides) -> MaterializationEngine:
    return MaterializationEngine(store, Settings(**overrides))


# ============================================
# 100-row scenario
# ============================================

class TestScenario:
    @pytest.mark.asyncio
    async def test_dry_run_stats(self, store):
        result = await engine_for(store).run(statement(scenario_batches()))

        s = result.stats
        assert result.success
        assert result.mode == "dry_run"
        assert s.total_files == 2
        assert s.total_rows == 100
        assert s.invalid_rows == 8
        assert s.valid_rows == 92
        assert s.invalid_rate == pytest.approx(0.08)
        assert s.duplicates_merged == 2
        assert s.uids_unique == 90
        assert s.to_create == 90
        assert s.total_amount == Decimal("9000.00")
        assert [f.total_rows for f in s.per_file] == [94, 6]
        assert [f.invalid_rows for f in s.per_file] == [4, 4]

    @pytest.mark.asyncio
    async def test_execute_then_rerun_is_idempotent(self, store):
        engine = engine_for(store)

        first = await engine.run(statement(scenario_batches(), mode="execute"))
        second = await engine.run(statement(scenario_batches(), mode="execute"))

        assert first.mode == "execute"
        assert first.stats.created == 90
        assert first.stats.errors == 0
        assert second.stats.created == 0
        assert second.stats.updated == 0
        assert second.stats.skipped == 90
        assert len(store.payments) == 90

    @pytest.mark.asyncio
    async def test_cross_file_merge_warned(self, store):
        result = await engine_for(store).run(statement(scenario_batches()))

        assert any("more than one file" in w for w in result.warnings)
        assert len(result.sample_errors) == 8
        assert {e.reason for e in result.sample_errors} == {"missing_uid"}


# ============================================
# Dry run
# ============================================

class TestDryRun:
    @pytest.mark.asyncio
    async def test_has_no_side_effects(self, store):
        store.add_payment(canonical("u001", "50.00"))

        result = await engine_for(store).run(statement(scenario_batches()))

        assert store.writes == 0
        assert store.audit == []
        assert len(store.payments) == 1
        assert result.stats.to_create == 89
        assert result.stats.to_update == 1

    @pytest.mark.asyncio
    async def test_previews_execute(self, store):
        engine = engine_for(store)

        preview = await engine.run(statement(scenario_batches()))
        executed = await engine.run(statement(scenario_batches(), mode="execute"))

        assert preview.stats.to_create == executed.stats.created
        assert preview.stats.to_update == executed.stats.updated

    @pytest.mark.asyncio
    async def test_samples_bounded_per_outcome(self, store):
        result = await engine_for(store).run(statement(scenario_batches()))

        assert len(result.samples) == 10
        assert {s.result for s in result.samples} == {"created"}

    @pytest.mark.asyncio
    async def test_amount_change_reported_as_discrepancy(self, store):
        store.add_payment(canonical("u1", "100.00"))

        result = await engine_for(store).run(statement([batch("s.csv", [statement_row("u1", amount="120.00")])]))

        assert result.stats.to_update == 1
        d = result.discrepancies[0]
        assert d.uid == "u1"
        assert d.our_amount == Decimal("100.00")
        assert d.external_amount == Decimal("120.00")


# ============================================
# STOP-guard
# ============================================

class TestStopGuard:
    @pytest.mark.asyncio
    async def test_blocks_above_threshold(self, store):
        result = await engine_for(store).run(statement(guard_batches(invalid=11), mode="execute"))

        assert result.mode == "execute_blocked"
        assert not result.success
        assert "STOP-guard" in result.error
        assert result.stats.invalid_rate == pytest.approx(0.11)
        assert result.stats.to_create == 89
        assert result.stats.created == 0
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_threshold_itself_proceeds(self, store):
        result = await engine_for(store).run(statement(guard_batches(invalid=10), mode="execute"))

        assert result.mode == "execute"
        assert result.success
        assert result.stats.created == 90

    @pytest.mark.asyncio
    async def test_blocks_small_batches_too(self, store):
        result = await engine_for(store).run(statement(guard_batches(invalid=1, total=3), mode="execute"))

        assert result.mode == "execute_blocked"
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_dry_run_never_blocked(self, store):
        result = await engine_for(store).run(statement(guard_batches(invalid=50)))

        assert result.mode == "dry_run"
        assert result.success


# ============================================
# Upsert semantics
# ============================================

class TestUpsert:
    @pytest.mark.asyncio
    async def test_update_preserves_linkage_and_origin(self, store):
        stored = store.add_payment(canonical(
            "u1", "100.00", origin="provider_sync", linked_profile_id="p1", linked_order_id="o1",
        ))

        result = await engine_for(store).run(
            statement([batch("s.csv", [statement_row("u1", amount="120.00")])], mode="execute")
        )

        after = store.payments[stored.id]
        assert result.stats.updated == 1
        assert after.amount == Decimal("120.00")
        assert after.linked_profile_id == "p1"
        assert after.linked_order_id == "o1"
        assert after.origin == "provider_sync"
        _, fields = store.updates[0]
        assert "linked_profile_id" not in fields
        assert "linked_order_id" not in fields
        assert "origin" not in fields

    @pytest.mark.asyncio
    async def test_created_rows_carry_origin(self, store):
        await engine_for(store).run(statement([batch("s.csv", [statement_row("u1")])], mode="execute"))

        (payment,) = store.find("bepaid", "u1")
        assert payment.origin == "statement_import"
        assert payment.linked_profile_id is None
        assert payment.meta["source_file"] == "s.csv"

    @pytest.mark.asyncio
    async def test_missing_currency_leaves_stored_currency(self, store):
        store.add_payment(canonical(
            "u1", "100.00", currency="USD", paid_at=datetime(2026, 1, 6, 9, 58, 6, tzinfo=MINSK),
        ))
        no_currency = {k: v for k, v in statement_row("u1").items() if k != "Валюта"}

        result = await engine_for(store).run(statement([batch("s.csv", [no_currency])], mode="execute"))

        (payment,) = store.find("bepaid", "u1")
        assert payment.currency == "USD"
        assert result.stats.updated == 0
        assert result.stats.skipped == 1
        assert store.updates == []

    @pytest.mark.asyncio
    async def test_missing_currency_gets_default_on_create(self, store):
        no_currency = {k: v for k, v in statement_row("u1").items() if k != "Валюта"}

        await engine_for(store, default_currency="USD").run(
            statement([batch("s.csv", [no_currency])], mode="execute")
        )

        (payment,) = store.find("bepaid", "u1")
        assert payment.currency == "USD"

    @pytest.mark.asyncio
    async def test_merged_refund_written_negative(self, store):
        batches = [
            batch("a.csv", [statement_row("u1", transaction_type="Возврат средств")]),
            batch("b.csv", [statement_row("u1", status="", transaction_type="")]),
        ]

        result = await engine_for(store).run(statement(batches, mode="execute"))

        (payment,) = store.find("bepaid", "u1")
        assert payment.status_normalized == "refunded"
        assert payment.amount == Decimal("-100.00")
        assert result.stats.total_amount == Decimal("-100.00")

    @pytest.mark.asyncio
    async def test_partial_failure_continues(self, store):
        store.fail_uids = {"u003"}

        result = await engine_for(store).run(statement(scenario_batches(), mode="execute"))

        assert result.success
        assert result.stats.errors == 1
        assert result.stats.created == 89
        assert result.error_details[0].uid == "u003"
        assert any("errors occurred" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_concurrent_insert_falls_back_to_update(self, store):
        store.preempt["u005"] = canonical("u005", "999.00", origin="provider_sync", linked_profile_id="p5")

        result = await engine_for(store).run(statement(scenario_batches(), mode="execute"))

        assert result.stats.created == 89
        assert result.stats.updated == 1
        (payment,) = store.find("bepaid", "u005")
        assert payment.amount == Decimal("100.00")
        assert payment.linked_profile_id == "p5"
        assert payment.origin == "provider_sync"

    @pytest.mark.asyncio
    async def test_concurrent_insert_identical_is_skipped(self, store):
        store.preempt["u1"] = canonical("u1", "100.00", paid_at=datetime(2026, 1, 6, 9, 58, 6, tzinfo=MINSK))

        result = await engine_for(store).run(
            statement([batch("s.csv", [statement_row("u1")])], mode="execute")
        )

        assert result.stats.created == 0
        assert result.stats.skipped == 1
        assert len(store.find("bepaid", "u1")) == 1

    @pytest.mark.asyncio
    async def test_audit_record_written_once(self, store):
        await engine_for(store).run(statement(scenario_batches(), mode="execute"))
        await engine_for(store).run(statement(scenario_batches(), mode="execute"))

        assert len(store.audit) == 1
        action, meta = store.audit[0]
        assert action == "payments.materialize.execute"
        assert meta["stats"]["created"] == 90

    @pytest.mark.asyncio
    async def test_audit_failure_is_a_warning(self, store):
        store.audit_fails = True

        result = await engine_for(store).run(statement(scenario_batches(), mode="execute"))

        assert result.success
        assert result.stats.created == 90
        assert any("Audit log write failed" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_time_budget_stops_scheduling(self, store):
        store.write_delay = 0.05
        rows = [statement_row(f"t{n}") for n in range(5)]

        result = await engine_for(store, materialize_concurrency=1).run(
            statement([batch("s.csv", rows)], mode="execute", time_budget_ms=30)
        )

        assert result.partial
        assert result.stats.not_attempted >= 4
        assert result.stats.created + result.stats.not_attempted == 5
        assert any("Time budget" in w for w in result.warnings)


def test_ledger_changes_ignores_unsupplied_fields():
    row = normalize_row({"UID": "u1", "Сумма": "100.00"}, STATEMENT_COLUMN_MAP, row_number=2)
    existing = canonical(
        "u1", "100.00", currency="USD", transaction_type="Возврат", paid_at=datetime(2026, 1, 1, tzinfo=MINSK),
    )

    assert ledger_changes(row, existing) == {}


# ============================================
# Scope, eligibility, totals
# ============================================

class TestScope:
    @pytest.mark.asyncio
    async def test_out_of_scope_rows_excluded(self, store):
        rows = [
            statement_row("in", paid_at="2026-01-06 10:00:00 +0300"),
            statement_row("out", paid_at="2026-01-08 10:00:00 +0300"),
        ]

        result = await engine_for(store).run(statement(
            [batch("s.csv", rows)],
            scope=MaterializeScope(from_date=date(2026, 1, 6), to_date=date(2026, 1, 6)),
        ))

        assert result.stats.out_of_scope == 1
        assert result.stats.uids_unique == 1
        assert result.stats.to_create == 1

    @pytest.mark.asyncio
    async def test_inverted_scope_fails_run(self, store):
        with pytest.raises(ScopeError):
            await engine_for(store).run(statement(
                [batch("s.csv", [statement_row("u1")])],
                scope=MaterializeScope(from_date=date(2026, 2, 1), to_date=date(2026, 1, 1)),
            ))

    @pytest.mark.asyncio
    async def test_store_unavailable_fails_run(self, store):
        store.unavailable = True

        with pytest.raises(StoreUnavailableError):
            await engine_for(store).run(statement([batch("s.csv", [statement_row("u1")])], mode="execute"))

    @pytest.mark.asyncio
    async def test_row_limit(self, store):
        rows = [statement_row(f"r{n}") for n in range(10)]

        result = await engine_for(store).run(statement([batch("s.csv", rows)], scope=MaterializeScope(limit=4)))

        assert result.stats.scanned == 4
        assert any("beyond the row limit" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_source_filter(self, store):
        result = await engine_for(store).run(statement(
            [batch("a.csv", [statement_row("a1")]), batch("b.csv", [statement_row("b1")])],
            scope=MaterializeScope(source_filter=["b.csv"]),
        ))

        assert result.stats.uids_unique == 1
        assert result.samples[0].uid == "b1"

    @pytest.mark.asyncio
    async def test_unknown_status_is_ineligible(self, store):
        rows = [statement_row("ok"), statement_row("odd", status="???", transaction_type="")]

        result = await engine_for(store).run(statement([batch("s.csv", rows)], mode="execute"))

        assert result.stats.eligible == 1
        assert result.stats.ineligible == 1
        assert store.find("bepaid", "odd") == []

    @pytest.mark.asyncio
    async def test_totals_file_compared(self, store):
        batches = [
            batch("s.csv", [statement_row("u1"), statement_row("u2")]),
            batch("totals.csv", [{"Количество": "3", "Сумма": "300.00"}]),
        ]

        result = await engine_for(store).run(statement(batches))

        assert result.totals_expected.expected_count == 3
        assert result.totals_check.count_delta == -1
        assert result.totals_check.amount_delta == Decimal("-100.00")
        assert result.totals_check.flagged
        assert result.stats.total_files == 2
        assert any("Totals mismatch" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_provider_sync_rows(self, store):
        request = ProviderSyncRequest(mode="execute", input=[batch("webhook", [
            {"uid": "w1", "amount": "25.00", "currency": "BYN", "status": "successful", "paid_at": "2026-01-06T07:00:00Z"},
        ])])

        result = await engine_for(store).run(request)

        assert result.stats.created == 1
        (payment,) = store.find("bepaid", "w1")
        assert payment.origin == "provider_sync"


# ============================================
# Legacy queue
# ============================================

def queue_items(count: int) -> list:
    start = datetime(2026, 1, 6, 8, tzinfo=MINSK)
    return [
        queue_item(f"q{n:02d}", f"lq{n:02d}", start + timedelta(minutes=n), matched_profile_id=f"p{n}")
        for n in range(count)
    ]


class TestLegacyQueue:
    @pytest.mark.asyncio
    async def test_promotes_completed_items_with_linkage(self, store):
        store.staging = queue_items(10) + [
            queue_item("q-pending", "lq-pending", datetime(2026, 1, 6, 9, tzinfo=MINSK), status="pending"),
        ]

        result = await engine_for(store).run(LegacyQueueRequest(mode="execute"))

        assert result.stats.created == 10
        assert store.find("bepaid", "lq-pending") == []
        (payment,) = store.find("bepaid", "lq03")
        assert payment.origin == "legacy_migration"
        assert payment.linked_profile_id == "p3"

    @pytest.mark.asyncio
    async def test_linkage_hints_not_applied_on_update(self, store):
        stored = store.add_payment(canonical("lq00", "10.00"))
        store.staging = queue_items(1)

        await engine_for(store).run(LegacyQueueRequest(mode="execute"))

        after = store.payments[stored.id]
        assert after.amount == Decimal("50.00")
        assert after.linked_profile_id is None

    @pytest.mark.asyncio
    async def test_missing_uid_marked_on_execute(self, store):
        store.staging = queue_items(10) + [
            queue_item("q-nouid", None, datetime(2026, 1, 6, 9, tzinfo=MINSK)),
        ]

        dry = await engine_for(store).run(LegacyQueueRequest())
        assert store.needs_uid == []
        assert dry.stats.invalid_rows == 1

        result = await engine_for(store).run(LegacyQueueRequest(mode="execute"))

        assert result.stats.created == 10
        assert store.needs_uid == ["q-nouid"]

    @pytest.mark.asyncio
    async def test_cursor_pagination(self, store):
        store.staging = queue_items(5)
        engine = engine_for(store)

        first = await engine.run(LegacyQueueRequest(scope=MaterializeScope(limit=3)))
        assert first.stats.scanned == 3
        assert first.next_cursor == QueueCursor(paid_at=store.staging[2].paid_at, id="q02")

        second = await engine.run(LegacyQueueRequest(scope=MaterializeScope(limit=3), cursor=first.next_cursor))
        assert second.stats.scanned == 2
        assert second.next_cursor is None
        assert [s.uid for s in second.samples] == ["lq03", "lq04"]


@pytest.mark.asyncio
async def test_state_history_recorded(store, caplog):
    caplog.set_level("DEBUG", logger="payrecon.core.materialize")

    await engine_for(store).run(statement([batch("s.csv", [statement_row("u1")])], mode="execute"))

    assert "scanning -> executing" in caplog.text
    assert "executing -> done" in caplog.text
    assert RunState.DONE.value == "done"

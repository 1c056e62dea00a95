"""Unit tests for the credit ledger service: balance invariants, failures, retries."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from app.components.credits import service as ledger_service
from app.components.credits.errors import (
    ConcurrencyConflict,
    InsufficientCredits,
    LedgerValidationError,
    OrganizationNotFound,
    PersistenceUnavailable,
)
from app.components.credits.locks import OrganizationLockRegistry, organization_locks
from app.components.credits.repository import CreditLedgerRepository
from app.components.credits.schemas import MAX_CREDIT_AMOUNT
from app.components.credits.service import CreditLedgerService, grant_signup_credits
from app.models.credit_ledger import CreditLedgerEntry, CreditTransactionType
from app.models.organization import Organization
from tests.conftest import create_org


def _entries(db, org_id):
    return (
        db.query(CreditLedgerEntry)
        .filter(CreditLedgerEntry.organization_id == org_id)
        .order_by(CreditLedgerEntry.id.asc())
        .all()
    )


def _cached_balance(db, org_id):
    db.expire_all()
    return db.query(Organization).filter(Organization.id == org_id).first().credit_balance


def _assert_balanced(db, org_id):
    entries = _entries(db, org_id)
    cached = _cached_balance(db, org_id)
    assert cached == sum(e.amount for e in entries)
    assert cached == (entries[-1].balance_after if entries else 0)
    running = 0
    for entry in entries:
        running += entry.amount
        assert entry.balance_after == running


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def test_get_balance_returns_balance_and_plan_tier(db):
    org = create_org(db, balance=250, plan_tier="pro")
    assert CreditLedgerService(db).get_balance(org.id) == {"balance": 250, "plan_tier": "pro"}


def test_get_balance_unknown_org_raises_not_found(db):
    with pytest.raises(OrganizationNotFound) as exc_info:
        CreditLedgerService(db).get_balance(9999)
    assert exc_info.value.organization_id == 9999
    assert exc_info.value.operation == "get_balance"


def test_can_afford_reports_shortfall(db, org):
    service = CreditLedgerService(db)
    assert service.can_afford(org.id, 400) == {
        "can_afford": True,
        "current_balance": 1000,
        "required": 400,
        "shortfall": 0,
    }
    assert service.can_afford(org.id, 1250)["shortfall"] == 250


# ---------------------------------------------------------------------------
# Consume / grant / refund
# ---------------------------------------------------------------------------


def test_scenario_consume_grant_and_rejected_overdraft(db, org):
    service = CreditLedgerService(db)

    first = service.consume(org.id, 30, "script_generation")
    assert first.new_balance == 970
    assert first.entry.amount == -30
    assert first.entry.balance_after == 970
    assert first.entry.transaction_type == CreditTransactionType.CONSUMPTION

    second = service.grant(org.id, 500, "promo")
    assert second.new_balance == 1470
    assert second.entry.transaction_type == CreditTransactionType.GRANT

    with pytest.raises(InsufficientCredits) as exc_info:
        service.consume(org.id, 2000, "image_batch")
    assert exc_info.value.balance == 1470
    assert exc_info.value.required == 2000
    assert exc_info.value.shortfall == 530

    assert service.get_balance(org.id)["balance"] == 1470
    assert len(_entries(db, org.id)) == 3  # opening grant + consume + grant
    _assert_balanced(db, org.id)


def test_insufficient_credits_writes_nothing(db):
    org = create_org(db, balance=10)
    with pytest.raises(InsufficientCredits):
        CreditLedgerService(db).consume(org.id, 11, "too_much")
    assert _cached_balance(db, org.id) == 10
    assert len(_entries(db, org.id)) == 1


def test_consume_exact_balance_reaches_zero(db):
    org = create_org(db, balance=75)
    result = CreditLedgerService(db).consume(org.id, 75, "caption_generation")
    assert result.new_balance == 0
    _assert_balanced(db, org.id)


def test_grant_then_consume_same_amount_nets_to_zero(db, org):
    service = CreditLedgerService(db)
    granted = service.grant(org.id, 123, "bonus")
    consumed = service.consume(org.id, 123, "transcription")
    assert consumed.new_balance == 1000
    assert granted.entry.amount + consumed.entry.amount == 0
    _assert_balanced(db, org.id)


def test_refund_adds_credits_with_refund_kind(db, org):
    service = CreditLedgerService(db)
    job_id = "0b5c3a52-7a4f-4f8e-9c55-2b2b7d1c1f10"
    service.consume(org.id, 40, "image_generation", job_id=job_id)
    refund = service.refund(org.id, 40, "image_generation failed", job_id=job_id)
    assert refund.new_balance == 1000
    assert refund.entry.transaction_type == CreditTransactionType.REFUND
    assert refund.entry.job_id == job_id
    _assert_balanced(db, org.id)


def test_long_mixed_sequence_keeps_running_sum(db):
    org = create_org(db)
    service = CreditLedgerService(db)
    operations = [("grant", 500), ("consume", 120), ("consume", 80), ("grant", 45), ("refund", 20), ("consume", 365)]
    for name, amount in operations:
        getattr(service, name)(org.id, amount, name)
    assert service.get_balance(org.id)["balance"] == 0
    _assert_balanced(db, org.id)


@pytest.mark.parametrize("amount", [0, -5, 2.5, True, "10"])
def test_non_positive_or_non_integer_amount_rejected_before_storage(db, amount, monkeypatch):
    calls = []
    monkeypatch.setattr(CreditLedgerRepository, "lock_organization", lambda self, org_id: calls.append(org_id))
    with pytest.raises(LedgerValidationError):
        CreditLedgerService(db).consume(1, amount, "bad")
    with pytest.raises(LedgerValidationError):
        CreditLedgerService(db).grant(1, amount, "bad")
    assert calls == []


def test_consume_unknown_org_raises_not_found(db):
    with pytest.raises(OrganizationNotFound) as exc_info:
        CreditLedgerService(db).consume(4242, 1, "nothing")
    assert exc_info.value.operation == "consume"


def test_metadata_known_keys_validated_and_extra_keys_kept(db, org):
    service = CreditLedgerService(db)
    result = service.consume(
        org.id,
        5,
        "script_generation",
        metadata={"workflow_type": "script_generation", "units": 2, "prompt_version": "v3"},
    )
    assert result.entry.entry_metadata == {
        "workflow_type": "script_generation",
        "units": 2,
        "prompt_version": "v3",
    }
    with pytest.raises(LedgerValidationError):
        service.consume(org.id, 5, "x", metadata={"workflow_type": "teleportation"})
    with pytest.raises(LedgerValidationError):
        service.consume(org.id, 5, "x", metadata={"model_usage": {"gpt-4": -1}})


def test_invalid_job_id_rejected(db, org):
    with pytest.raises(LedgerValidationError):
        CreditLedgerService(db).consume(org.id, 5, "x", job_id="not-a-uuid")


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------


def test_idempotency_key_replay_does_not_write_twice(db, org):
    service = CreditLedgerService(db)
    first = service.consume(org.id, 50, "content_analysis", idempotency_key="job-1-charge")
    replay = service.consume(org.id, 50, "content_analysis", idempotency_key="job-1-charge")

    assert replay.replayed is True
    assert replay.entry.id == first.entry.id
    assert replay.new_balance == 950
    assert len(_entries(db, org.id)) == 2
    _assert_balanced(db, org.id)


def test_idempotency_key_reuse_with_different_amount_rejected(db, org):
    service = CreditLedgerService(db)
    service.consume(org.id, 50, "content_analysis", idempotency_key="charge-7")
    with pytest.raises(LedgerValidationError):
        service.consume(org.id, 60, "content_analysis", idempotency_key="charge-7")
    with pytest.raises(LedgerValidationError):
        service.grant(org.id, 50, "content_analysis", idempotency_key="charge-7")


def test_same_idempotency_key_is_scoped_per_organization(db):
    org_a = create_org(db, balance=100)
    org_b = create_org(db, balance=100)
    service = CreditLedgerService(db)
    service.consume(org_a.id, 10, "sync", idempotency_key="shared")
    result = service.consume(org_b.id, 10, "sync", idempotency_key="shared")
    assert result.replayed is False
    assert result.new_balance == 90


def test_signup_grant_is_idempotent(db):
    org = create_org(db)
    first = grant_signup_credits(db, org.id)
    second = grant_signup_credits(db, org.id)
    assert first.new_balance == 1000
    assert second.replayed is True
    assert _cached_balance(db, org.id) == 1000


def test_signup_grant_disabled_when_zero(db, monkeypatch):
    monkeypatch.setattr(ledger_service.settings, "CREDITS_SIGNUP_GRANT", 0)
    org = create_org(db)
    assert grant_signup_credits(db, org.id) is None
    assert _entries(db, org.id) == []


# ---------------------------------------------------------------------------
# Storage failures and retries
# ---------------------------------------------------------------------------


class _FlakyAppendRepository(CreditLedgerRepository):
    def __init__(self, db, failures):
        super().__init__(db)
        self.failures = failures
        self.attempts = 0

    def append_entry_and_update_balance(self, organization_id, entry, *, expected_balance, new_balance):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConcurrencyConflict("simulated lost race", organization_id=organization_id)
        return super().append_entry_and_update_balance(
            organization_id, entry, expected_balance=expected_balance, new_balance=new_balance
        )


def test_conflict_is_retried_then_succeeds(db, org):
    repo = _FlakyAppendRepository(db, failures=2)
    result = CreditLedgerService(db, repository=repo).consume(org.id, 10, "retry_me")
    assert repo.attempts == 3
    assert result.new_balance == 990
    _assert_balanced(db, org.id)


def test_conflict_surfaces_after_max_attempts(db, org, monkeypatch):
    monkeypatch.setattr(ledger_service.settings, "CREDIT_LEDGER_MAX_ATTEMPTS", 3)
    repo = _FlakyAppendRepository(db, failures=10)
    with pytest.raises(ConcurrencyConflict) as exc_info:
        CreditLedgerService(db, repository=repo).consume(org.id, 10, "never")
    assert repo.attempts == 3
    assert exc_info.value.operation == "consume"
    assert _cached_balance(db, org.id) == 1000
    assert len(_entries(db, org.id)) == 1


def test_storage_outage_before_commit_wrapped_and_nothing_written(db, org):
    class _DownRepository(CreditLedgerRepository):
        calls = 0

        def lock_organization(self, organization_id):
            type(self).calls += 1
            raise OperationalError("SELECT", {}, Exception("could not connect to server"))

    repo = _DownRepository(db)
    with pytest.raises(PersistenceUnavailable) as exc_info:
        CreditLedgerService(db, repository=repo).grant(org.id, 10, "outage")
    assert exc_info.value.organization_id == org.id
    assert exc_info.value.operation == "grant"
    assert exc_info.value.retryable is True
    assert _DownRepository.calls == ledger_service.settings.CREDIT_LEDGER_MAX_ATTEMPTS
    assert _cached_balance(db, org.id) == 1000


def test_commit_failure_without_idempotency_key_is_not_retried(db, org, monkeypatch):
    calls = []

    def failing_commit():
        calls.append(1)
        raise OperationalError("COMMIT", {}, Exception("connection reset"))

    monkeypatch.setattr(db, "commit", failing_commit)
    with pytest.raises(PersistenceUnavailable) as exc_info:
        CreditLedgerService(db).consume(org.id, 10, "ambiguous")
    monkeypatch.undo()

    assert len(calls) == 1
    assert exc_info.value.retryable is False
    assert _cached_balance(db, org.id) == 1000
    assert len(_entries(db, org.id)) == 1


def test_commit_failure_with_idempotency_key_is_retried(db, org, monkeypatch):
    real_commit = db.commit
    calls = []

    def flaky_commit():
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("COMMIT", {}, Exception("connection reset"))
        real_commit()

    monkeypatch.setattr(db, "commit", flaky_commit)
    result = CreditLedgerService(db).consume(org.id, 10, "retry_safe", idempotency_key="charge-99")
    monkeypatch.undo()

    assert len(calls) == 2
    assert result.new_balance == 990
    _assert_balanced(db, org.id)


# ---------------------------------------------------------------------------
# History / usage summary / reconcile
# ---------------------------------------------------------------------------


def test_history_pages_newest_first_with_has_more(db, org):
    service = CreditLedgerService(db)
    for idx in range(5):
        service.consume(org.id, idx + 1, f"step-{idx}")

    page = service.history(org.id, limit=2, offset=0)
    assert page.total == 6
    assert page.has_more is True
    assert [e.amount for e in page.items] == [-5, -4]

    last = service.history(org.id, limit=2, offset=4)
    assert [e.amount for e in last.items] == [-1, 1000]
    assert last.has_more is False


def test_history_filters_by_kind(db, org):
    service = CreditLedgerService(db)
    service.consume(org.id, 10, "a")
    service.grant(org.id, 5, "b")
    page = service.history(org.id, transaction_type="consumption", limit=10)
    assert page.total == 1
    assert page.items[0].transaction_type == CreditTransactionType.CONSUMPTION
    with pytest.raises(LedgerValidationError):
        service.history(org.id, transaction_type="gift")


def test_history_rejects_out_of_range_paging(db, org):
    service = CreditLedgerService(db)
    with pytest.raises(LedgerValidationError):
        service.history(org.id, limit=0)
    with pytest.raises(LedgerValidationError):
        service.history(org.id, limit=101)
    with pytest.raises(LedgerValidationError):
        service.history(org.id, offset=-1)


def test_usage_summary_aggregates_window(db, org):
    service = CreditLedgerService(db)
    service.consume(org.id, 30, "script_generation")
    service.consume(org.id, 20, "script_generation")
    service.consume(org.id, 5, None)
    service.grant(org.id, 100, "promo")

    summary = service.usage_summary(org.id, 30)
    assert summary == {
        "period_days": 30,
        "consumed": 55,
        "granted": 1100,
        "net": 1045,
        "by_description": {"script_generation": 50, "Other": 5},
        "transaction_count": 5,
    }


def test_usage_summary_excludes_entries_outside_window(db, org):
    service = CreditLedgerService(db)
    service.consume(org.id, 30, "script_generation")
    later = datetime.now(timezone.utc) + timedelta(days=45)
    summary = service.usage_summary(org.id, 30, now=later)
    assert summary["transaction_count"] == 0
    assert summary["net"] == 0


def test_reconcile_consistent_ledger(db, org):
    service = CreditLedgerService(db)
    service.consume(org.id, 10, "a")
    report = service.reconcile(org.id)
    assert report["consistent"] is True
    assert report["cached_balance"] == report["ledger_sum"] == report["last_balance_after"] == 990
    assert report["entry_count"] == 2
    assert report["breaks"] == []


def test_reconcile_flags_out_of_band_balance_write(db, org):
    db.query(Organization).filter(Organization.id == org.id).update({"credit_balance": 5000})
    db.commit()
    report = CreditLedgerService(db).reconcile(org.id)
    assert report["consistent"] is False
    assert report["cached_balance"] == 5000
    assert report["ledger_sum"] == 1000


# ---------------------------------------------------------------------------
# Collaborator injection, input bounds, read-path failures, ordering
# ---------------------------------------------------------------------------


def test_injected_collaborators_are_used_even_when_empty(db):
    registry = OrganizationLockRegistry()
    repo = CreditLedgerRepository(db)
    assert len(registry) == 0

    service = CreditLedgerService(db, locks=registry, repository=repo)
    assert service.locks is registry
    assert service.repository is repo
    assert CreditLedgerService(db).locks is organization_locks


def test_metadata_values_are_stored_as_json(db, org):
    result = CreditLedgerService(db).consume(
        org.id,
        10,
        "scheduled_post",
        metadata={"scheduled_for": datetime(2026, 1, 1, 9, 30, tzinfo=timezone.utc)},
    )
    assert result.entry.entry_metadata == {"scheduled_for": "2026-01-01T09:30:00Z"}


def test_unserializable_metadata_rejected_before_storage(db, org):
    service = CreditLedgerService(db)
    with pytest.raises(LedgerValidationError) as exc_info:
        service.consume(org.id, 10, "x", metadata={"handle": object()})
    assert exc_info.value.operation == "consume"

    # The session is still usable and nothing was written.
    assert service.consume(org.id, 10, "after").new_balance == 990
    assert len(_entries(db, org.id)) == 2


@pytest.mark.parametrize("amount", [MAX_CREDIT_AMOUNT + 1, 2**70])
def test_amount_above_column_range_rejected(db, org, amount):
    service = CreditLedgerService(db)
    with pytest.raises(LedgerValidationError):
        service.grant(org.id, amount, "promo")
    with pytest.raises(LedgerValidationError):
        service.consume(org.id, amount, "huge")
    assert _cached_balance(db, org.id) == 1000


def test_grant_that_would_overflow_balance_rejected(db):
    org = create_org(db, balance=MAX_CREDIT_AMOUNT - 10)
    service = CreditLedgerService(db)
    with pytest.raises(LedgerValidationError):
        service.grant(org.id, 20, "promo")
    with pytest.raises(LedgerValidationError):
        service.refund(org.id, 11, "refund")
    assert service.grant(org.id, 10, "top_off").new_balance == MAX_CREDIT_AMOUNT
    _assert_balanced(db, org.id)


def test_read_storage_failure_rolls_back_session(db, org, monkeypatch):
    rollbacks = []
    real_rollback = db.rollback

    def counting_rollback():
        rollbacks.append(1)
        real_rollback()

    def down(organization_id):
        raise OperationalError("SELECT", {}, Exception("server closed the connection"))

    service = CreditLedgerService(db)
    monkeypatch.setattr(db, "rollback", counting_rollback)
    monkeypatch.setattr(service.repository, "get_organization", down)

    with pytest.raises(PersistenceUnavailable) as exc_info:
        service.get_balance(org.id)
    assert exc_info.value.operation == "get_balance"
    assert exc_info.value.retryable is False
    assert rollbacks == [1]


def test_history_follows_ledger_order_not_timestamps(db, org):
    service = CreditLedgerService(db)
    service.consume(org.id, 1, "first")
    newest = service.consume(org.id, 2, "second").entry.id
    # A writer with a slow clock stamps the newer entry in the past.
    db.query(CreditLedgerEntry).filter(CreditLedgerEntry.id == newest).update(
        {"created_at": datetime(2000, 1, 1, tzinfo=timezone.utc)}
    )
    db.commit()

    page = service.history(org.id, limit=3)
    assert [e.description for e in page.items] == ["second", "first", "opening_balance"]

"""
Check that every organization's cached credit balance matches its ledger.

Usage:
  python -m app.scripts.reconcile_credit_ledger            # all organizations
  python -m app.scripts.reconcile_credit_ledger 12 48      # selected organization ids

Prints one line per organization and exits with status 1 if any is out of balance.
Read-only: nothing is repaired.
"""
from __future__ import annotations

import sys

from app.components.credits.errors import CreditLedgerError
from app.components.credits.repository import CreditLedgerRepository
from app.components.credits.service import CreditLedgerService
from app.platform.database import SessionLocal


def _parse_ids(argv: list[str]) -> list[int]:
    ids: list[int] = []
    for raw in argv:
        try:
            ids.append(int(raw))
        except ValueError:
            print(f"Not an organization id: {raw}", file=sys.stderr)
            sys.exit(2)
    return ids


def main(argv: list[str] | None = None) -> int:
    requested = _parse_ids(sys.argv[1:] if argv is None else argv)
    db = SessionLocal()
    inconsistent = 0
    try:
        service = CreditLedgerService(db)
        org_ids = requested or CreditLedgerRepository(db).organization_ids()
        for org_id in org_ids:
            try:
                report = service.reconcile(org_id)
            except CreditLedgerError as exc:
                print(f"org={org_id} error={exc.code} message={exc.message}", file=sys.stderr)
                inconsistent += 1
                continue
            status = "ok" if report["consistent"] else "MISMATCH"
            print(
                f"org={org_id} status={status} cached={report['cached_balance']} "
                f"ledger_sum={report['ledger_sum']} last_balance_after={report['last_balance_after']} "
                f"entries={report['entry_count']}"
            )
            for brk in report["breaks"]:
                print(
                    f"  entry={brk['entry_id']} expected_balance_after={brk['expected_balance_after']} "
                    f"recorded_balance_after={brk['recorded_balance_after']}"
                )
            if not report["consistent"]:
                inconsistent += 1
    finally:
        db.close()
    print(f"checked={len(org_ids)} inconsistent={inconsistent}")
    return 1 if inconsistent else 0


if __name__ == "__main__":
    sys.exit(main())

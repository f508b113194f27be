#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from paydesk.store import PostgresBackedStore


def main() -> int:
    parser = argparse.ArgumentParser(description="Create paydesk tables and indexes in PostgreSQL")
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    args = parser.parse_args()

    dsn = str(args.dsn or "").strip()
    if not dsn:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    pg_store = PostgresBackedStore(dsn=dsn)
    pg_store.ensure_schema()
    tables = [
        pg_store.cases_repository._table_name,
        pg_store.payments_repository._table_name,
        pg_store.audit_repository._table_name,
        pg_store.outbox_repository._table_name,
    ]
    print(json.dumps({"applied_tables": tables, "count": len(tables)}, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

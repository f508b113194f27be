from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction with the acting user recorded on the session."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    @contextmanager
    def transaction(self, *, actor_id: str = "system") -> Iterator[Any]:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute("SELECT set_config('app.current_actor', %s, true)", (actor_id or "system",))
                yield conn

    def run_in_tx(
        self,
        *,
        fn: Callable[[Any], Any],
        actor_id: str = "system",
    ) -> Any:
        with self.transaction(actor_id=actor_id) as conn:
            return fn(conn)

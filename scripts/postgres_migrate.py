import argparse
import os
import sys
from importlib.util import find_spec
from pathlib import Path
from typing import Optional, Sequence

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

WORKFLOW_NAMESPACE = "workflow"


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Apply forward-only PostgreSQL migrations for the workflow store."
    )
    parser.add_argument(
        "--dsn",
        default=os.getenv("WORKFLOW_POSTGRES_DSN", "").strip(),
        help="PostgreSQL DSN for workflow migrations.",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only report pending migrations; exit non-zero when any are pending.",
    )
    args = parser.parse_args(argv)

    if not args.dsn:
        raise RuntimeError(f"POSTGRES_MIGRATION_DSN_REQUIRED:{WORKFLOW_NAMESPACE}")
    if find_spec("psycopg") is None:
        raise RuntimeError("POSTGRES_MIGRATION_DRIVER_MISSING")
    import psycopg
    from psycopg.rows import dict_row

    from src.infrastructure.postgres_migrations import (
        apply_postgres_migrations,
        list_pending_migrations,
    )

    with psycopg.connect(args.dsn, row_factory=dict_row) as connection:
        if args.check:
            pending = list_pending_migrations(
                connection=connection, namespace=WORKFLOW_NAMESPACE
            )
            if pending:
                print(f"Pending migrations for namespace={WORKFLOW_NAMESPACE}: {pending}")
                return 1
            print(f"No pending migrations for namespace={WORKFLOW_NAMESPACE}")
            return 0
        applied = apply_postgres_migrations(connection=connection, namespace=WORKFLOW_NAMESPACE)
    print(f"Applied migrations for namespace={WORKFLOW_NAMESPACE}: {applied or 'none'}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

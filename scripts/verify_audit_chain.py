import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from src.core.workflow.audit_chain import AuditChainRecorder  # noqa: E402
from src.core.workflow.audit_chain import DEFAULT_VERIFY_BATCH_SIZE  # noqa: E402
from src.core.workflow.errors import AuditChainMismatchError  # noqa: E402
from src.core.workflow.repository import WorkflowRepository  # noqa: E402


def run_verification(
    *, repository: WorkflowRepository, batch_size: int = DEFAULT_VERIFY_BATCH_SIZE
) -> dict:
    result = AuditChainRecorder(repository=repository).verify_chain(batch_size=batch_size)
    if not result.ok:
        mismatch = result.mismatch
        raise AuditChainMismatchError(
            f"AUDIT_CHAIN_MISMATCH: {mismatch.reason} at position {mismatch.chain_position} "
            f"(event {mismatch.event_id})"
        )
    return result.model_dump(mode="json")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Recompute the audit hash chain and fail on the first mismatch."
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_VERIFY_BATCH_SIZE,
        help="Events read per keyset batch.",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    from src.api.routers.workflow_config import build_repository

    try:
        summary = run_verification(repository=build_repository(), batch_size=args.batch_size)
    except AuditChainMismatchError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    print(json.dumps(summary, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

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
from src.core.workflow.errors import SlaBatchFailedError  # noqa: E402
from src.core.workflow.repository import WorkflowRepository  # noqa: E402
from src.core.workflow.sla import SlaBreachDetector  # noqa: E402


def run_sweep(*, repository: WorkflowRepository) -> dict:
    detector = SlaBreachDetector(
        repository=repository, audit=AuditChainRecorder(repository=repository)
    )
    result = detector.detect_breaches()
    if result.errors:
        raise SlaBatchFailedError("; ".join(result.errors))
    return result.model_dump(mode="json")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Record SLA_BREACHED events and notifications for overdue open tasks."
    )
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    from src.api.routers.workflow_config import build_repository

    try:
        summary = run_sweep(repository=build_repository())
    except SlaBatchFailedError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(json.dumps(summary, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from src.core.common.canonical import (
    canonical_json,
    iso_millis_utc,
    sha256_hex,
    truncate_to_millis,
)
from src.core.workflow.models import (
    ActorType,
    AuditEventRecord,
    ChainMismatch,
    ChainVerificationResult,
)
from src.core.workflow.repository import WorkflowRepository, WorkflowUnitOfWork

logger = logging.getLogger(__name__)

GENESIS_HASH = "GENESIS"
CURRENT_HASH_VERSION = "v1"
DEFAULT_VERIFY_BATCH_SIZE = 500


def compute_event_hash(event: AuditEventRecord, *, prev_event_hash: str) -> Optional[str]:
    if event.hash_version != "v1":
        return None
    canonical = "|".join(
        [
            event.event_id,
            event.application_id or "",
            event.event_type,
            event.actor_type,
            event.actor_id or "",
            canonical_json(event.payload),
            iso_millis_utc(event.created_at),
            prev_event_hash,
        ]
    )
    return sha256_hex(canonical)


class AuditChainRecorder:
    def __init__(self, *, repository: WorkflowRepository) -> None:
        self._repository = repository

    def append(
        self,
        uow: WorkflowUnitOfWork,
        *,
        event_type: str,
        application_id: Optional[str],
        actor_type: ActorType,
        actor_id: Optional[str],
        payload: dict[str, Any],
        created_at: Optional[datetime] = None,
    ) -> AuditEventRecord:
        tail = uow.lock_audit_tail()
        prev_event_hash = tail.event_hash if tail is not None and tail.event_hash else GENESIS_HASH
        event = AuditEventRecord(
            event_id=f"evt_{uuid.uuid4().hex[:16]}",
            chain_position=(tail.chain_position + 1) if tail is not None else 1,
            application_id=application_id,
            event_type=event_type,
            actor_type=actor_type,
            actor_id=actor_id,
            payload=payload,
            created_at=truncate_to_millis(created_at or datetime.now(timezone.utc)),
            hash_version=CURRENT_HASH_VERSION,
            prev_event_hash=prev_event_hash,
        )
        event.event_hash = compute_event_hash(event, prev_event_hash=prev_event_hash)
        uow.insert_audit_event(event)
        return event

    def verify_chain(
        self, *, batch_size: int = DEFAULT_VERIFY_BATCH_SIZE
    ) -> ChainVerificationResult:
        upper_position = self._repository.audit_tail_position()
        expected_prev = GENESIS_HASH
        after_position = 0
        checked = 0
        while after_position < upper_position:
            batch = self._repository.list_audit_chain(
                after_position=after_position,
                up_to_position=upper_position,
                limit=batch_size,
            )
            if not batch:
                break
            for event in batch:
                mismatch = _check_event(event, index=checked, expected_prev=expected_prev)
                if mismatch is not None:
                    logger.error(
                        "AUDIT_CHAIN_MISMATCH",
                        extra={"extra_fields": mismatch.model_dump(mode="json")},
                    )
                    return ChainVerificationResult(ok=False, checked=checked, mismatch=mismatch)
                expected_prev = event.event_hash
                checked += 1
            after_position = batch[-1].chain_position
        return ChainVerificationResult(ok=True, checked=checked)

    def list_events(self, *, application_id: str) -> list[AuditEventRecord]:
        return self._repository.list_audit_events(application_id=application_id)


def _check_event(
    event: AuditEventRecord, *, index: int, expected_prev: str
) -> Optional[ChainMismatch]:
    def mismatch(reason: str, **hashes: Optional[str]) -> ChainMismatch:
        return ChainMismatch(
            reason=reason,
            index=index,
            chain_position=event.chain_position,
            event_id=event.event_id,
            **hashes,
        )

    if not event.event_hash or not event.prev_event_hash:
        return mismatch("HASH_MISSING")
    if event.prev_event_hash != expected_prev:
        return mismatch(
            "PREV_HASH_MISMATCH",
            expected_prev_hash=expected_prev,
            actual_prev_hash=event.prev_event_hash,
        )
    recomputed = compute_event_hash(event, prev_event_hash=event.prev_event_hash)
    if recomputed is None:
        return mismatch("UNSUPPORTED_HASH_VERSION", actual_event_hash=event.event_hash)
    if recomputed != event.event_hash:
        return mismatch(
            "EVENT_HASH_MISMATCH",
            expected_event_hash=recomputed,
            actual_event_hash=event.event_hash,
        )
    return None

"""
AuditorService -- append-only, hash-chained audit trail.

Responsibility:
    Appends audit events with a SHA-256 hash chain and replays the chain
    from genesis to detect tampering.  This is the only code path that
    writes AuditEvent rows.

Architecture position:
    Kernel > Services.  Called by the transition executor (STATE_CHANGED)
    and the sweeper (SLA_BREACHED, QUERY_EXPIRED).

Invariants enforced:
    - seq comes from the locked ``audit_event`` counter row, never from
      max(seq)+1.
    - prev_hash is the hash of the event with the highest seq, read after
      the counter lock is held, so two appends can never share a parent.
    - The stored payload is the canonical JSON document that was hashed.
    - No update or delete method exists.

Failure modes:
    - verify_integrity() returns ok=False with the first broken link.
    - assert_chain_intact() raises AuditChainBrokenError.

Audit relevance:
    Tamper evidence for the whole application history.  Any edit of a
    stored row (payload, actor, timestamp, linkage) changes a recomputed
    hash and is reported at the first affected sequence number.
"""

from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from govflow_kernel.domain.clock import Clock, SystemClock
from govflow_kernel.domain.dtos import AuditTrailEntry, ChainMismatch, ChainVerification
from govflow_kernel.domain.workflow import ActorType
from govflow_kernel.exceptions import AuditChainBrokenError
from govflow_kernel.logging_config import get_logger
from govflow_kernel.models.audit_event import AuditEvent, AuditEventType
from govflow_kernel.services.sequence_service import SequenceService
from govflow_kernel.utils.hashing import GENESIS_HASH, hash_audit_event, to_json_document

logger = get_logger("services.auditor")

PREV_HASH_MISMATCH = "PREV_HASH_MISMATCH"
HASH_MISMATCH = "HASH_MISMATCH"
SEQUENCE_GAP = "SEQUENCE_GAP"

_VERIFY_BATCH_SIZE = 500


class AuditorService:
    """
    Append and verify audit events.

    Contract:
        Runs inside the caller's transaction.  ``append`` flushes but never
        commits; a rolled-back transaction leaves neither the event nor
        the consumed sequence number behind.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str:
        last = self._session.execute(
            select(AuditEvent.hash).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return last or GENESIS_HASH

    def append(
        self,
        arn: str,
        event_type: AuditEventType | str,
        actor_id: str,
        actor_type: ActorType | str,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Append one event to the chain.

        Postconditions:
            - event.seq is the next value of the audit counter.
            - event.prev_hash is the hash of the previous event, or
              GENESIS_HASH for the first event.
            - event.hash == hash_audit_event(prev_hash, event_id, arn,
              event_type, actor_id, payload, occurred_at).
        """
        event_type_value = (
            event_type.value if isinstance(event_type, AuditEventType) else event_type
        )
        actor_type_value = (
            actor_type.value if isinstance(actor_type, ActorType) else actor_type
        )

        # Pending rows must reach the database before the head is read.
        self._session.flush()

        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        event_id = uuid4()
        occurred_at = self._clock.now()
        document = to_json_document(payload or {})

        event_hash = hash_audit_event(
            prev_hash=prev_hash,
            event_id=str(event_id),
            arn=arn,
            event_type=event_type_value,
            actor_id=actor_id,
            payload=document,
            occurred_at=occurred_at,
        )

        event = AuditEvent(
            id=event_id,
            seq=seq,
            arn=arn,
            event_type=event_type_value,
            actor_id=actor_id,
            actor_type=actor_type_value,
            occurred_at=occurred_at,
            payload=document,
            prev_hash=prev_hash,
            hash=event_hash,
        )
        self._session.add(event)
        self._session.flush()

        logger.info(
            "audit_event_appended",
            extra={
                "seq": seq,
                "arn": arn,
                "event_type": event_type_value,
                "actor_id": actor_id,
                "hash_prefix": event_hash[:16],
            },
        )
        return event

    def _iter_events(self):
        offset = 0
        while True:
            batch = self._session.execute(
                select(AuditEvent)
                .order_by(AuditEvent.seq)
                .offset(offset)
                .limit(_VERIFY_BATCH_SIZE)
            ).scalars().all()
            if not batch:
                return
            yield from batch
            offset += len(batch)

    def verify_integrity(self) -> ChainVerification:
        """
        Replay the chain from genesis, recomputing every hash.

        Checks, per event in seq order: seq continuity (starting at 1),
        prev_hash linkage and the stored hash.  Stops at the first broken
        link; ``checked_count`` is the number of events verified before it.
        """
        expected_prev = GENESIS_HASH
        expected_seq = 1
        checked = 0

        for event in self._iter_events():
            mismatch = None
            if event.seq != expected_seq:
                mismatch = ChainMismatch(
                    event_id=str(event.id),
                    seq=event.seq,
                    reason=SEQUENCE_GAP,
                    expected=str(expected_seq),
                    actual=str(event.seq),
                )
            elif event.prev_hash != expected_prev:
                mismatch = ChainMismatch(
                    event_id=str(event.id),
                    seq=event.seq,
                    reason=PREV_HASH_MISMATCH,
                    expected=expected_prev,
                    actual=event.prev_hash,
                )
            else:
                recomputed = hash_audit_event(
                    prev_hash=event.prev_hash,
                    event_id=str(event.id),
                    arn=event.arn,
                    event_type=event.event_type,
                    actor_id=event.actor_id,
                    payload=event.payload,
                    occurred_at=event.occurred_at,
                )
                if recomputed != event.hash:
                    mismatch = ChainMismatch(
                        event_id=str(event.id),
                        seq=event.seq,
                        reason=HASH_MISMATCH,
                        expected=recomputed,
                        actual=event.hash,
                    )

            if mismatch is not None:
                logger.critical(
                    "audit_chain_broken",
                    extra={
                        "event_id": mismatch.event_id,
                        "seq": mismatch.seq,
                        "reason": mismatch.reason,
                        "checked_count": checked,
                    },
                )
                return ChainVerification(ok=False, checked_count=checked, mismatch=mismatch)

            expected_prev = event.hash
            expected_seq += 1
            checked += 1

        logger.info("audit_chain_verified", extra={"checked_count": checked})
        return ChainVerification(ok=True, checked_count=checked)

    def assert_chain_intact(self) -> int:
        """Return the number of verified events or raise AuditChainBrokenError."""
        result = self.verify_integrity()
        if not result.ok:
            m = result.mismatch
            raise AuditChainBrokenError(
                m.event_id, m.reason, result.checked_count, m.expected, m.actual
            )
        return result.checked_count

    def get_trail(self, arn: str) -> tuple[AuditTrailEntry, ...]:
        events = self._session.execute(
            select(AuditEvent).where(AuditEvent.arn == arn).order_by(AuditEvent.seq)
        ).scalars().all()
        return tuple(AuditTrailEntry.from_model(e) for e in events)

    def count_events(self, arn: str | None = None) -> int:
        stmt = select(func.count()).select_from(AuditEvent)
        if arn is not None:
            stmt = stmt.where(AuditEvent.arn == arn)
        return self._session.execute(stmt).scalar_one()

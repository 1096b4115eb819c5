"""
Delivery state tracker - the only writer of Message.state.

    queued(0) < dispatched(1) < sent(2) < delivered(3)
    failed    - terminal, reachable from queued, dispatched, sent
    received  - inbound messages, terminal

A transition is applied only if it moves the message forward in that order
(or into failed from a non-terminal state). Everything else - duplicates,
regressions such as "sent" after "delivered", anything out of a terminal
state - is discarded and recorded as a TransitionAnomaly. The stored state is
therefore the most advanced point reached, regardless of event arrival order.

Writes are compare-and-set: UPDATE ... WHERE state = <state just read>. If a
concurrent writer got there first the update matches no row and the
transition is re-evaluated against the new state.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from textgate.exceptions import MessageNotFound
from textgate.models.message import Message
from textgate.models.transition_anomaly import TransitionAnomaly
from textgate.utils.alerting import AlertType, send_alert

logger = logging.getLogger(__name__)

QUEUED = "queued"
DISPATCHED = "dispatched"
SENT = "sent"
DELIVERED = "delivered"
FAILED = "failed"
RECEIVED = "received"

STATE_ORDER = {QUEUED: 0, DISPATCHED: 1, SENT: 2, DELIVERED: 3}
TERMINAL_STATES = frozenset({DELIVERED, FAILED, RECEIVED})

_TIMESTAMP_COLUMNS = {
    DISPATCHED: "dispatched_at",
    SENT: "sent_at",
    DELIVERED: "delivered_at",
    FAILED: "failed_at",
}

# Bounded CAS retries; each lost race means the state moved forward
MAX_CAS_ATTEMPTS = 5


def can_transition(current: str, target: str) -> bool:
    """True if current → target is a forward move under the total order."""
    if current in TERMINAL_STATES:
        return False
    if target == FAILED:
        return current in STATE_ORDER
    if target not in STATE_ORDER or current not in STATE_ORDER:
        return False
    return STATE_ORDER[target] > STATE_ORDER[current]


def _anomaly_reason(current: str, target: str) -> str:
    if current == target:
        return "duplicate"
    if current in TERMINAL_STATES:
        return "from_terminal"
    return "regression"


class TransitionResult:

    def __init__(self, applied: bool, previous_state: str, current_state: str):
        self.applied = applied
        self.previous_state = previous_state
        self.current_state = current_state

    def __bool__(self) -> bool:
        return self.applied

    def __repr__(self) -> str:
        status = "APPLIED" if self.applied else "DISCARDED"
        return f"<TransitionResult {status} {self.previous_state}->{self.current_state}>"


class DeliveryStateTracker:

    def __init__(self, session_factory: Optional[async_sessionmaker] = None) -> None:
        if session_factory is None:
            from textgate.database import get_session_factory
            session_factory = get_session_factory()
        self._session_factory = session_factory

    async def get(self, message_id: uuid.UUID) -> Optional[Message]:
        async with self._session_factory() as session:
            return await session.get(Message, message_id)

    async def get_by_external_id(self, external_id: str) -> Optional[Message]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Message).where(Message.external_id == external_id)
            )
            return result.scalar_one_or_none()

    async def transition(
        self,
        message_id: uuid.UUID,
        target: str,
        source: str = "webhook",
        event_id: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        cost_usd: Optional[float] = None,
        segment_count: Optional[int] = None,
        external_id: Optional[str] = None,
        attempt_count: Optional[int] = None,
    ) -> TransitionResult:
        """
        Move message_id to target if the total order allows it.
        Discarded transitions are persisted as anomalies, never raised.
        Raises MessageNotFound only when message_id does not exist.
        """
        now = datetime.now(timezone.utc)
        values: dict = {"state": target, "updated_at": now}
        column = _TIMESTAMP_COLUMNS.get(target)
        if column:
            values[column] = now
        if error_code is not None:
            values["error_code"] = error_code
        if error_message is not None:
            values["error_message"] = error_message
        if cost_usd is not None:
            values["cost_usd"] = cost_usd
        if segment_count is not None:
            values["segment_count"] = segment_count
        if attempt_count is not None:
            values["attempt_count"] = attempt_count
        if external_id is not None:
            values["external_id"] = external_id

        conflict = None
        for _ in range(MAX_CAS_ATTEMPTS):
            async with self._session_factory() as session:
                message = await session.get(Message, message_id)
                if message is None:
                    raise MessageNotFound(str(message_id))
                current = message.state

                if external_id is not None and message.external_id not in (None, external_id):
                    conflict = message.external_id
                    break

                if not can_transition(current, target):
                    break

                stmt = (
                    update(Message)
                    .where(Message.id == message_id, Message.state == current)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if external_id is not None:
                    stmt = stmt.where(
                        (Message.external_id.is_(None)) | (Message.external_id == external_id)
                    )
                result = await session.execute(stmt)
                if result.rowcount == 1:
                    await session.commit()
                    logger.info(
                        "Message %s: %s -> %s (%s)", message_id, current, target, source,
                        extra={
                            "message_id": str(message_id),
                            "state": target,
                            "event_id": event_id,
                            "error_code": error_code,
                        },
                    )
                    return TransitionResult(True, current, target)
                await session.rollback()
        else:
            # Every attempt lost a race; report the state as it stands now
            message = await self.get(message_id)
            current = message.state if message else target
            await self._record_anomaly(
                message_id, current, target, source, event_id, "cas_contention",
            )
            return TransitionResult(False, current, current)

        if conflict is not None:
            reason = f"external_id already set to {conflict}"
        else:
            reason = _anomaly_reason(current, target)
        await self._record_anomaly(message_id, current, target, source, event_id, reason)
        return TransitionResult(False, current, current)

    async def transition_by_external_id(
        self,
        external_id: str,
        target: str,
        source: str = "webhook",
        event_id: Optional[str] = None,
        **fields,
    ) -> TransitionResult:
        message = await self.get_by_external_id(external_id)
        if message is None:
            raise MessageNotFound(external_id)
        return await self.transition(message.id, target, source, event_id, **fields)

    async def mark_dispatched(
        self,
        message_id: uuid.UUID,
        external_id: str,
        attempt_count: Optional[int] = None,
    ) -> TransitionResult:
        """queued → dispatched, setting the external id exactly once."""
        return await self.transition(
            message_id, DISPATCHED, source="dispatcher",
            external_id=external_id, attempt_count=attempt_count,
        )

    async def mark_failed(
        self,
        message_id: uuid.UUID,
        error_code: Optional[str],
        error_message: Optional[str],
        source: str = "dispatcher",
        attempt_count: Optional[int] = None,
        event_id: Optional[str] = None,
    ) -> TransitionResult:
        return await self.transition(
            message_id, FAILED, source=source, event_id=event_id,
            error_code=error_code, error_message=error_message,
            attempt_count=attempt_count,
        )

    async def _record_anomaly(
        self,
        message_id: uuid.UUID,
        current: str,
        target: str,
        source: str,
        event_id: Optional[str],
        reason: str,
    ) -> None:
        logger.warning(
            "Discarded transition for %s: %s -> %s (%s, %s)",
            message_id, current, target, reason, source,
            extra={"message_id": str(message_id), "state": current, "event_id": event_id},
        )
        async with self._session_factory() as session:
            session.add(TransitionAnomaly(
                message_id=message_id,
                current_state=current,
                attempted_state=target,
                source=source,
                event_id=event_id,
                reason=reason,
            ))
            await session.commit()

        # Duplicates and late "sent" events are routine; a terminal flip is not
        if reason == "from_terminal" and {current, target} == {DELIVERED, FAILED}:
            await send_alert(
                AlertType.TRANSITION_ANOMALY,
                f"Message {message_id} in {current} received {target}",
                severity="warning",
                extra={"event_id": event_id, "source": source},
                subject=str(message_id),
            )

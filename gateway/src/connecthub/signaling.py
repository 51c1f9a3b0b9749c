from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Set, Tuple

from .calls import ActiveCall, CallTracker
from .errors import BlockedError, PersistenceError, ValidationError
from .frames import event_frame
from .models import (
    CALL_COMPLETED,
    CALL_KINDS,
    CALL_MISSED,
    CALL_REJECTED,
    DEFAULT_CALL_KIND,
    Identity,
    _now_ms,
    elapsed_seconds,
)
from .presence import Connection, PresenceRegistry
from .store import ChatStore

logger = logging.getLogger(__name__)

NEGOTIATION_EVENTS = {
    "offer": ("webrtc_offer", "payload"),
    "answer": ("webrtc_answer", "payload"),
    "ice_candidate": ("webrtc_ice_candidate", "candidate"),
}


class CallBroker:
    """Drives the call lifecycle between two identities.

    Ringing: a request reached an online receiver; tracked as a pending call
    until accept, reject, end, timeout or disconnect. Accepted: tracked as an
    active call until either side ends it or disconnects. Media never passes
    through the broker; offers, answers and ICE candidates are forwarded
    verbatim.

    Call records are best-effort side-writes: they are scheduled after the
    notifications are queued and a failure is logged, never reported.
    """

    def __init__(
        self,
        presence: PresenceRegistry,
        tracker: CallTracker,
        store: ChatStore,
        *,
        ring_timeout_s: float = 45.0,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._presence = presence
        self._tracker = tracker
        self._store = store
        self._ring_timeout_s = ring_timeout_s
        self._now = now_func
        self._ring_timers: Dict[Tuple[Identity, Identity], asyncio.TimerHandle] = {}
        self._side_writes: Set[asyncio.Task] = set()

    @property
    def tracker(self) -> CallTracker:
        return self._tracker

    async def request_call(
        self,
        caller: Connection,
        caller_id: Identity,
        receiver_id: Identity,
        call_kind: str,
    ) -> bool:
        """Ring ``receiver_id``; return True when the call is ringing."""

        if call_kind not in CALL_KINDS:
            raise ValidationError(f"call_kind must be one of {', '.join(CALL_KINDS)}")
        if caller_id == receiver_id:
            raise ValidationError("cannot call yourself")

        try:
            if await self._store.is_blocked(caller_id, receiver_id):
                raise BlockedError("You cannot call this user")
        except BlockedError as exc:
            caller.deliver(event_frame("call_blocked", {"receiver_id": receiver_id, "message": str(exc)}))
            return False
        except PersistenceError:
            logger.exception("block lookup failed for call %r -> %r", caller_id, receiver_id)
            caller.deliver(
                event_frame(
                    "call_failed",
                    {"receiver_id": receiver_id, "reason": "error", "message": "Failed to place call"},
                )
            )
            return False

        # The caller may have disconnected, and been abandoned, during the lookup.
        if self._presence.resolve(caller_id) is not caller:
            logger.info("call %r -> %r dropped, caller went away", caller_id, receiver_id)
            return False

        receiver = self._presence.resolve(receiver_id)
        if receiver is None:
            self._record_call(caller_id, receiver_id, call_kind, CALL_MISSED)
            caller.deliver(
                event_frame(
                    "call_failed",
                    {"receiver_id": receiver_id, "reason": "offline", "message": "User is not online"},
                )
            )
            logger.info("call %r -> %r missed, receiver offline", caller_id, receiver_id)
            return False

        self._cancel_ring_timer(caller_id, receiver_id)
        receiver.deliver(event_frame("incoming_call", {"caller_id": caller_id, "call_kind": call_kind}))
        self._tracker.create_pending(caller_id, receiver_id, call_kind)
        self._start_ring_timer(caller_id, receiver_id)
        logger.info("call %r -> %r ringing (%s)", caller_id, receiver_id, call_kind)
        return True

    def accept_call(self, caller_id: Identity, receiver_id: Identity) -> ActiveCall:
        self._cancel_ring_timer(caller_id, receiver_id)
        caller = self._presence.resolve(caller_id)
        if caller is not None:
            caller.deliver(event_frame("call_accepted", {"receiver_id": receiver_id}))
        if self._tracker.get_pending(caller_id, receiver_id) is None:
            logger.warning(
                "accept for %r -> %r without a ringing call, assuming %s", caller_id, receiver_id, DEFAULT_CALL_KIND
            )
        active = self._tracker.promote_to_active(caller_id, receiver_id, self._now())
        logger.info("call %r -> %r accepted", caller_id, receiver_id)
        return active

    def reject_call(self, caller_id: Identity, receiver_id: Identity) -> None:
        self._cancel_ring_timer(caller_id, receiver_id)
        caller = self._presence.resolve(caller_id)
        if caller is not None:
            caller.deliver(event_frame("call_rejected", {"receiver_id": receiver_id}))
        pending = self._tracker.remove_pending(caller_id, receiver_id)
        call_kind = pending.call_kind if pending is not None else DEFAULT_CALL_KIND
        self._record_call(caller_id, receiver_id, call_kind, CALL_REJECTED)
        logger.info("call %r -> %r rejected", caller_id, receiver_id)

    def relay_negotiation(self, kind: str, sender_id: Identity, receiver_id: Identity, payload: Any) -> bool:
        """Forward an offer, answer or ICE candidate; offline receivers drop it."""

        try:
            event, field = NEGOTIATION_EVENTS[kind]
        except KeyError:
            raise ValidationError(f"unknown negotiation kind: {kind}") from None
        receiver = self._presence.resolve(receiver_id)
        if receiver is None:
            logger.debug("dropping %s from %r, %r offline", event, sender_id, receiver_id)
            return False
        receiver.deliver(event_frame(event, {"sender_id": sender_id, field: payload}))
        return True

    def end_call(self, sender_id: Identity, receiver_id: Identity) -> ActiveCall | None:
        other = self._presence.resolve(receiver_id)
        if other is not None:
            other.deliver(event_frame("call_ended", {"sender_id": sender_id}))

        active = self._tracker.remove_active(sender_id, receiver_id)
        if active is None:
            # Hung up while ringing: forget the ring without booking a record.
            for caller_id, callee_id in ((sender_id, receiver_id), (receiver_id, sender_id)):
                if self._tracker.remove_pending(caller_id, callee_id) is not None:
                    self._cancel_ring_timer(caller_id, callee_id)
            return None

        self._complete(active)
        return active

    def abandon(self, identity: Identity) -> None:
        """Settle every call involving ``identity`` after it disconnected."""

        for active in self._tracker.active_involving(identity):
            if self._tracker.remove_active(active.caller_id, active.receiver_id) is not None:
                self._complete(active)
        for pending in self._tracker.pending_involving(identity):
            self._tracker.remove_pending(pending.caller_id, pending.receiver_id)
            self._cancel_ring_timer(pending.caller_id, pending.receiver_id)
            self._record_call(pending.caller_id, pending.receiver_id, pending.call_kind, CALL_MISSED)
            logger.info("ringing call %r -> %r abandoned", pending.caller_id, pending.receiver_id)

    async def drain(self) -> None:
        """Wait for outstanding call-record writes."""

        while self._side_writes:
            await asyncio.gather(*list(self._side_writes), return_exceptions=True)

    async def close(self) -> None:
        for handle in self._ring_timers.values():
            handle.cancel()
        self._ring_timers.clear()
        await self.drain()

    def _complete(self, active: ActiveCall) -> None:
        ended_at_ms = self._now()
        duration_s = elapsed_seconds(active.started_at_ms, ended_at_ms)
        self._record_call(
            active.caller_id,
            active.receiver_id,
            active.call_kind,
            CALL_COMPLETED,
            duration_s=duration_s,
            started_at_ms=active.started_at_ms,
            ended_at_ms=ended_at_ms,
        )
        logger.info("call %r -> %r completed after %ss", active.caller_id, active.receiver_id, duration_s)

    def _start_ring_timer(self, caller_id: Identity, receiver_id: Identity) -> None:
        if self._ring_timeout_s <= 0:
            return
        loop = asyncio.get_running_loop()
        self._ring_timers[(caller_id, receiver_id)] = loop.call_later(
            self._ring_timeout_s, self._ring_timed_out, caller_id, receiver_id
        )

    def _cancel_ring_timer(self, caller_id: Identity, receiver_id: Identity) -> None:
        handle = self._ring_timers.pop((caller_id, receiver_id), None)
        if handle is not None:
            handle.cancel()

    def _ring_timed_out(self, caller_id: Identity, receiver_id: Identity) -> None:
        self._ring_timers.pop((caller_id, receiver_id), None)
        pending = self._tracker.remove_pending(caller_id, receiver_id)
        if pending is None:
            return
        caller = self._presence.resolve(caller_id)
        if caller is not None:
            caller.deliver(
                event_frame(
                    "call_failed",
                    {"receiver_id": receiver_id, "reason": "no_answer", "message": "No answer"},
                )
            )
        receiver = self._presence.resolve(receiver_id)
        if receiver is not None:
            receiver.deliver(event_frame("call_ended", {"sender_id": caller_id}))
        self._record_call(caller_id, receiver_id, pending.call_kind, CALL_MISSED)
        logger.info("call %r -> %r not answered within %ss", caller_id, receiver_id, self._ring_timeout_s)

    def _record_call(
        self,
        caller_id: Identity,
        receiver_id: Identity,
        call_kind: str,
        status: str,
        **extra: Any,
    ) -> None:
        task = asyncio.get_running_loop().create_task(
            self._write_call_record(caller_id, receiver_id, call_kind, status, **extra)
        )
        self._side_writes.add(task)
        task.add_done_callback(self._side_writes.discard)

    async def _write_call_record(
        self,
        caller_id: Identity,
        receiver_id: Identity,
        call_kind: str,
        status: str,
        **extra: Any,
    ) -> None:
        try:
            await self._store.insert_call_record(caller_id, receiver_id, call_kind, status, **extra)
        except Exception:
            logger.exception("failed to save %s call %r -> %r", status, caller_id, receiver_id)

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Tuple

from .models import DEFAULT_CALL_KIND, Identity


@dataclass(frozen=True)
class PendingCall:
    caller_id: Identity
    receiver_id: Identity
    call_kind: str


@dataclass(frozen=True)
class ActiveCall:
    caller_id: Identity
    receiver_id: Identity
    call_kind: str
    started_at_ms: int


def _pair(a: Identity, b: Identity) -> FrozenSet[Identity]:
    return frozenset((a, b))


class CallTracker:
    """In-flight call state.

    Ringing calls are keyed by the ordered ``(caller, receiver)`` pair since
    only the original roles apply while ringing. Accepted calls are keyed by
    the unordered pair so either participant can end them.
    """

    def __init__(self) -> None:
        self._pending: Dict[Tuple[Identity, Identity], PendingCall] = {}
        self._active: Dict[FrozenSet[Identity], ActiveCall] = {}

    def create_pending(self, caller_id: Identity, receiver_id: Identity, call_kind: str) -> PendingCall:
        pending = PendingCall(caller_id=caller_id, receiver_id=receiver_id, call_kind=call_kind)
        self._pending[(caller_id, receiver_id)] = pending
        return pending

    def get_pending(self, caller_id: Identity, receiver_id: Identity) -> PendingCall | None:
        return self._pending.get((caller_id, receiver_id))

    def remove_pending(self, caller_id: Identity, receiver_id: Identity) -> PendingCall | None:
        return self._pending.pop((caller_id, receiver_id), None)

    def promote_to_active(
        self,
        caller_id: Identity,
        receiver_id: Identity,
        started_at_ms: int,
        *,
        default_kind: str = DEFAULT_CALL_KIND,
    ) -> ActiveCall:
        """Replace the ringing entry with an accepted one.

        Accepts arriving without a ringing entry (out-of-order events) still
        start a call of ``default_kind``.
        """

        pending = self.remove_pending(caller_id, receiver_id)
        call_kind = pending.call_kind if pending is not None else default_kind
        active = ActiveCall(
            caller_id=caller_id,
            receiver_id=receiver_id,
            call_kind=call_kind,
            started_at_ms=started_at_ms,
        )
        self._active[_pair(caller_id, receiver_id)] = active
        return active

    def find_active(self, a: Identity, b: Identity) -> ActiveCall | None:
        return self._active.get(_pair(a, b))

    def remove_active(self, a: Identity, b: Identity) -> ActiveCall | None:
        return self._active.pop(_pair(a, b), None)

    def pending_involving(self, identity: Identity) -> List[PendingCall]:
        return [p for p in self._pending.values() if identity in (p.caller_id, p.receiver_id)]

    def active_involving(self, identity: Identity) -> List[ActiveCall]:
        return [a for a in self._active.values() if identity in (a.caller_id, a.receiver_id)]

    def __len__(self) -> int:
        return len(self._pending) + len(self._active)

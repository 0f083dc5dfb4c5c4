"""
Event sinks.

The ledger deposits one event per successful operation into an EventSink.
It never reads them back.

- CollectingEventSink keeps the raw events in a list (tests, tooling).
- EventLog hashes and chains every event so external observers can check
  that the history they were shown is the history that happened.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from threading import Lock
from typing import Optional

from ..schemas import ClaimEvent, RecordedEvent
from .clock import BlockClock
from .hasher import Hasher


class ChainError(Exception):
    """Raised when event chain integrity is compromised."""
    pass


class EventSink(ABC):
    """Receives the events emitted by successful ledger operations."""

    @abstractmethod
    def deposit_event(self, event: ClaimEvent) -> None:
        pass


class CollectingEventSink(EventSink):
    """Keeps every deposited event, in order."""

    def __init__(self):
        self.events: list[ClaimEvent] = []

    def deposit_event(self, event: ClaimEvent) -> None:
        self.events.append(event)

    def clear(self) -> None:
        self.events.clear()


class EventLog(EventSink):
    """
    Append-only, hash-chained record of claim events.

    CHAIN INTEGRITY GUARANTEES:
    - Sequence numbers are monotonically increasing (0, 1, 2, ...)
    - previous_event_hash is None ONLY for sequence 0
    - Each event hash covers its block number, its index within the block
      and the previous event hash
    """

    def __init__(self, clock: BlockClock):
        self._clock = clock
        self._events: list[RecordedEvent] = []
        self._block_counts: dict[int, int] = {}
        self._lock = Lock()

    @property
    def event_count(self) -> int:
        return len(self._events)

    @property
    def last_event_hash(self) -> Optional[str]:
        return self._events[-1].event_hash if self._events else None

    def deposit_event(self, event: ClaimEvent) -> None:
        with self._lock:
            block_number = self._clock.block_number()
            index = self._block_counts.get(block_number, 0)
            sequence_number = len(self._events)
            previous_hash = self.last_event_hash

            payload = event.to_payload()
            payload["block_number"] = block_number
            payload["index"] = index

            recorded = RecordedEvent(
                sequence_number=sequence_number,
                block_number=block_number,
                index=index,
                event_type=event.event_type,
                payload=payload,
                previous_event_hash=previous_hash,
                event_hash=Hasher.hash_event(payload, previous_hash),
                recorded_at=datetime.now(timezone.utc),
            )
            recorded.validate_chain_rules()

            self._events.append(recorded)
            self._block_counts[block_number] = index + 1

    def all_events(self) -> list[RecordedEvent]:
        return self._events.copy()

    def events_for_block(self, block_number: int) -> list[RecordedEvent]:
        return [e for e in self._events if e.block_number == block_number]

    def claim_events(self) -> list[ClaimEvent]:
        """The typed claim events, in deposit order."""
        return [e.to_claim_event() for e in self._events]

    def verify_chain_integrity(self) -> bool:
        """Health-check form of verify_event_chain."""
        try:
            self.verify_event_chain(self.all_events())
        except (ChainError, ValueError):
            return False
        return True

    @staticmethod
    def verify_event_chain(events: list[RecordedEvent]) -> None:
        """
        Verify a complete event chain.

        Raises ChainError on the first broken link.
        """
        prev_hash = None

        for expected_sequence, event in enumerate(events):
            if event.sequence_number != expected_sequence:
                raise ChainError(
                    f"Sequence number gap or out-of-order event. "
                    f"Expected {expected_sequence}, got {event.sequence_number}"
                )

            if event.previous_event_hash != prev_hash:
                raise ChainError(
                    f"Chain linkage broken at sequence {expected_sequence}. "
                    f"Expected previous hash '{prev_hash[:16] if prev_hash else 'None'}...', "
                    f"got '{event.previous_event_hash[:16] if event.previous_event_hash else 'None'}...'"
                )

            if (
                event.payload.get("block_number") != event.block_number
                or event.payload.get("index") != event.index
            ):
                raise ChainError(
                    f"Event at sequence {expected_sequence} has block position "
                    f"that does not match its payload"
                )

            if not Hasher.verify_chain(event.payload, event.event_hash, prev_hash):
                raise ChainError(
                    f"Hash verification failed at sequence {expected_sequence}."
                )

            event.validate_chain_rules()
            prev_hash = event.event_hash

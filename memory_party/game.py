"""Flip/match state machine for a single play session.

The session lives on the asyncio event loop. Match and mismatch resolution and
the elapsed-time ticker are ``call_later`` handles, so nothing here blocks and
every pending transition can be cancelled when the deck changes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Sequence

from .deck import Card

IDLE = "idle"
RUNNING = "running"
COMPLETE = "complete"

MATCH_DELAY_SEC = 0.4
MISMATCH_DELAY_SEC = 0.6
TICK_MS = 100

logger = logging.getLogger(__name__)


class GameSession:
    """Flip, match and timer state for one player working through one deck."""

    def __init__(
        self,
        deck: Sequence[Card] = (),
        *,
        on_finished: Callable[[int], None] | None = None,
        on_change: Callable[[], None] | None = None,
        match_delay: float = MATCH_DELAY_SEC,
        mismatch_delay: float = MISMATCH_DELAY_SEC,
        tick_ms: int = TICK_MS,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._on_finished = on_finished
        self._on_change = on_change
        self._match_delay = match_delay
        self._mismatch_delay = mismatch_delay
        self._tick_ms = tick_ms
        self._pending: set[asyncio.TimerHandle] = set()
        self._ticker: asyncio.TimerHandle | None = None
        self._generation = 0
        self._install(deck)

    def __enter__(self) -> "GameSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def deck(self) -> List[Card]:
        return list(self._deck)

    @property
    def status(self) -> str:
        return self._status

    @property
    def running(self) -> bool:
        return self._status == RUNNING

    @property
    def elapsed_ms(self) -> int:
        return self._elapsed_ms

    @property
    def flipped(self) -> tuple[str, ...]:
        return tuple(self._flipped)

    @property
    def matched(self) -> frozenset[str]:
        return frozenset(self._matched)

    @property
    def pair_count(self) -> int:
        return len(self._deck) // 2

    def flip(self, card_id: str) -> bool:
        """Turn a card face up. Invalid flips are ignored and return False."""
        card = self._cards.get(card_id)
        if card is None or self._status == COMPLETE:
            return False
        if card["key"] in self._matched:
            return False
        if card_id in self._flipped or len(self._flipped) >= 2:
            return False

        if self._status == IDLE:
            self._status = RUNNING
            self._schedule_tick()

        self._flipped.append(card_id)
        if len(self._flipped) == 2:
            first, second = (self._cards[flipped_id] for flipped_id in self._flipped)
            if first["key"] == second["key"]:
                self._schedule(self._match_delay, self._resolve_match, first["key"])
            else:
                self._schedule(self._mismatch_delay, self._resolve_mismatch)
        self._changed()
        return True

    def reset(self, deck: Sequence[Card] | None = None) -> None:
        """Discard all progress, optionally switching to a new deck."""
        try:
            self._cancel_timers()
        finally:
            self._install(self._deck if deck is None else deck)
        self._changed()

    def close(self) -> None:
        self._cancel_timers()
        self._on_change = None
        self._on_finished = None

    def snapshot(self) -> Dict[str, object]:
        flipped = set(self._flipped)
        return {
            "status": self._status,
            "elapsed_ms": self._elapsed_ms,
            "pairs": self.pair_count,
            "matched": sorted(self._matched),
            "cards": [
                {
                    "id": card["id"],
                    "url": card["url"],
                    "revealed": card["id"] in flipped or card["key"] in self._matched,
                    "matched": card["key"] in self._matched,
                }
                for card in self._deck
            ],
        }

    def _install(self, deck: Sequence[Card]) -> None:
        self._generation += 1
        self._deck: List[Card] = list(deck)
        self._cards: Dict[str, Card] = {card["id"]: card for card in self._deck}
        self._flipped: List[str] = []
        self._matched: set[str] = set()
        self._elapsed_ms = 0
        self._status = IDLE
        self._reported = False

    def _schedule(self, delay: float, callback: Callable[..., None], *args) -> None:
        generation = self._generation
        handle: asyncio.TimerHandle | None = None

        def fire() -> None:
            self._pending.discard(handle)
            if generation != self._generation:
                logger.debug("Dropping stale resolution from generation %s", generation)
                return
            callback(*args)

        handle = self._loop.call_later(delay, fire)
        self._pending.add(handle)

    def _cancel_timers(self) -> None:
        for handle in self._pending:
            handle.cancel()
        self._pending.clear()
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    def _schedule_tick(self) -> None:
        self._ticker = self._loop.call_later(self._tick_ms / 1000, self._tick)

    def _tick(self) -> None:
        self._ticker = None
        if self._status != RUNNING:
            return
        self._elapsed_ms += self._tick_ms
        self._schedule_tick()
        self._changed()

    def _resolve_match(self, key: str) -> None:
        self._matched.add(key)
        self._flipped.clear()
        if len(self._matched) == self.pair_count:
            self._complete()
        self._changed()

    def _resolve_mismatch(self) -> None:
        self._flipped.clear()
        self._changed()

    def _complete(self) -> None:
        self._status = COMPLETE
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        if self._reported:
            return
        self._reported = True
        if self._on_finished is not None:
            self._on_finished(self._elapsed_ms)

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

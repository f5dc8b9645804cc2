"""Live play session: one per connected guest.

A ``PlaySession`` subscribes to the event, its card images, its leaderboard
and its contributions, owns a ``GameSession`` and pushes the merged state to
the guest whenever anything changes. A change to the set of card images
rebuilds the deck and restarts the game.
"""

from __future__ import annotations

import asyncio
import logging
import random
from contextlib import AsyncExitStack, suppress
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple
from urllib.parse import parse_qs

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from .database import card_images_query, engine, event_query
from .deck import build_deck
from .errors import ValidationError
from .funding import ContributionAggregator, contributions_query, is_pro_active
from .game import GameSession
from .leaderboard import leaderboard_query, rank_scores, submit_score
from .realtime import LiveHub, Subscription, hub, topic

TOPIC_EVENT = "event"
TOPIC_CARD_IMAGES = "card_images"
TOPIC_PLAYERS = "players"
TOPIC_CONTRIBUTIONS = "contributions"

VIEW_LANDING = "landing"
VIEW_PLAY = "play"

logger = logging.getLogger(__name__)

Sender = Callable[[Dict[str, Any]], Awaitable[None]]


class View(NamedTuple):
    name: str
    event_id: str | None


def resolve_view(fragment: str | None) -> View:
    """Map a ``e=<id>`` fragment (or query string) to the view it selects."""
    values = parse_qs((fragment or "").lstrip("#?"))
    event_id = (values.get("e") or [""])[0].strip()
    if not event_id:
        return View(VIEW_LANDING, None)
    return View(VIEW_PLAY, event_id)


class PlaySession:
    def __init__(
        self,
        event_id: str,
        send: Sender,
        *,
        live: LiveHub | None = None,
        rng: random.Random | None = None,
        game_options: Dict[str, Any] | None = None,
    ) -> None:
        self.event_id = event_id
        self._send = send
        self._live = live or hub
        self._rng = rng
        self._game_options = game_options or {}
        self._stack = AsyncExitStack()
        self._tasks: List[asyncio.Task] = []
        self._dirty = asyncio.Event()

        self.event: Dict[str, Any] | None = None
        self.images: List[Dict[str, Any]] = []
        self.leaderboard: List[Dict[str, Any]] = []
        self.funding = ContributionAggregator()
        self.finished_ms: int | None = None
        self.game: GameSession | None = None
        self._image_identity: tuple[str, ...] | None = None

    async def __aenter__(self) -> "PlaySession":
        try:
            self.game = self._stack.enter_context(
                GameSession(on_finished=self._finished, on_change=self._mark_dirty, **self._game_options)
            )
            self._stack.push_async_callback(self._cancel_tasks)
            handlers = [
                (TOPIC_EVENT, event_query(self.event_id), self.apply_event),
                (TOPIC_CARD_IMAGES, card_images_query(self.event_id), self.apply_images),
                (TOPIC_PLAYERS, leaderboard_query(self.event_id), self.apply_leaderboard),
                (TOPIC_CONTRIBUTIONS, contributions_query(self.event_id), self.apply_contributions),
            ]
            for kind, query, handler in handlers:
                subscription = await self._stack.enter_async_context(
                    self._live.subscribe(topic(kind, self.event_id), query)
                )
                handler(await subscription.__anext__())
                self._tasks.append(asyncio.create_task(self._follow(subscription, handler)))
            self._tasks.append(asyncio.create_task(self._push_changes()))
            self._mark_dirty()
        except BaseException:
            await self._stack.aclose()
            raise
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self._stack.aclose()

    def apply_event(self, snapshot: List[Dict[str, Any]]) -> None:
        if not snapshot:
            return
        self.event = snapshot[0]
        self.funding.set_target(self.event.get("crowdfunding_target_cents"))
        self._mark_dirty()

    def apply_images(self, snapshot: List[Dict[str, Any]]) -> None:
        identity = tuple(image["image_url"] for image in snapshot)
        if identity == self._image_identity:
            return
        self._image_identity = identity
        self.images = list(snapshot)
        self.game.reset(build_deck(self.images, rng=self._rng))
        logger.info("Event %s: image set changed, dealt %s cards", self.event_id, len(self.game.deck))

    def apply_leaderboard(self, snapshot: List[Dict[str, Any]]) -> None:
        self.leaderboard = rank_scores(snapshot)
        self._mark_dirty()

    def apply_contributions(self, snapshot: List[Dict[str, Any]]) -> None:
        self.funding.apply_snapshot(snapshot)
        self._mark_dirty()

    async def handle(self, message: Any) -> None:
        """Apply one client message; user errors are sent back, not raised."""
        try:
            self._dispatch(message)
        except ValidationError as exc:
            await self._send({"type": "error", "message": str(exc)})
        except SQLAlchemyError:
            logger.exception("Event %s: could not save score", self.event_id)
            await self._send({"type": "error", "message": "Saving failed. Please try again."})

    def _dispatch(self, message: Any) -> None:
        if not isinstance(message, dict):
            raise ValidationError("Messages must be JSON objects.")
        action = message.get("type")
        if action == "flip":
            self.game.flip(str(message.get("card_id") or ""))
        elif action == "restart":
            self.game.reset(build_deck(self.images, rng=self._rng))
        elif action == "submit":
            self.submit(message.get("name"))
        else:
            raise ValidationError(f"Unknown action: {action!r}")

    def submit(self, name: str | None) -> None:
        if self.finished_ms is None:
            raise ValidationError("Finish a game before submitting a score.")
        with Session(engine) as session:
            submit_score(session, self.event_id, name, self.finished_ms)
        self.finished_ms = None
        self._live.publish(topic(TOPIC_PLAYERS, self.event_id))
        self._mark_dirty()

    def state(self) -> Dict[str, Any]:
        summary = self.funding.summary
        event = dict(self.event or {})
        if event:
            event["pro_active"] = is_pro_active(event, summary.sum_cents)
        return {
            "type": "state",
            "event": event,
            "game": self.game.snapshot(),
            "finished_ms": self.finished_ms,
            "leaderboard": self.leaderboard,
            "funding": summary.as_dict(),
        }

    def _finished(self, elapsed_ms: int) -> None:
        self.finished_ms = elapsed_ms
        logger.info("Event %s: game finished in %s ms", self.event_id, elapsed_ms)

    def _mark_dirty(self) -> None:
        self._dirty.set()

    async def _follow(self, subscription: Subscription, handler: Callable[[List[Dict[str, Any]]], None]) -> None:
        async for snapshot in subscription:
            handler(snapshot)

    async def _push_changes(self) -> None:
        while True:
            await self._dirty.wait()
            self._dirty.clear()
            await self._send(self.state())

    async def _cancel_tasks(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with suppress(asyncio.CancelledError):
                try:
                    await task
                except Exception:
                    logger.debug("Play session task for %s ended with an error", self.event_id, exc_info=True)
        self._tasks.clear()

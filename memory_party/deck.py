"""Deck generation for the memory game."""

from __future__ import annotations

import random
import secrets
from typing import List, MutableSequence, Sequence, TypeVar, TypedDict

from .identifiers import random_id

PAIR_CAP = 8
CARD_ID_LENGTH = 8

T = TypeVar("T")

_system_random = secrets.SystemRandom()


class DeckImage(TypedDict):
    id: str
    image_url: str


class Card(TypedDict):
    id: str
    key: str
    url: str


def shuffle_in_place(items: MutableSequence[T], rng: random.Random | None = None) -> None:
    """Fisher-Yates shuffle, unbiased for any uniformly distributed source."""
    source = rng or _system_random
    for index in range(len(items) - 1, 0, -1):
        swap = source.randrange(index + 1)
        items[index], items[swap] = items[swap], items[index]


def build_deck(
    images: Sequence[DeckImage],
    pair_cap: int = PAIR_CAP,
    rng: random.Random | None = None,
) -> List[Card]:
    """Pick up to ``pair_cap`` images at random and return them as shuffled pairs.

    Every selected image yields two cards sharing the image id as ``key``; the
    card ``id`` values are unique within the deck. An empty image list gives an
    empty deck.
    """
    pool = list(images)
    shuffle_in_place(pool, rng)
    selected = pool[: min(len(pool), pair_cap)]

    used_ids: set[str] = set()
    cards: List[Card] = []
    for image in selected:
        for _ in range(2):
            cards.append(Card(id=_fresh_card_id(used_ids), key=str(image["id"]), url=image["image_url"]))

    shuffle_in_place(cards, rng)
    return cards


def _fresh_card_id(used: set[str]) -> str:
    while True:
        candidate = random_id(CARD_ID_LENGTH)
        if candidate not in used:
            used.add(candidate)
            return candidate

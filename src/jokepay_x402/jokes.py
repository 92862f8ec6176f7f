"""The paid resource: a small fixed catalog of jokes."""

from __future__ import annotations

import random
from typing import Sequence

JOKES: Sequence[str] = (
    "I told my wallet a joke about gas fees. It didn't find it cheap.",
    "Why did the invoice break up with the nonce? It felt used.",
    "A 402 walks into a bar. The bartender says: that'll be one cent.",
    "My facilitator and I have a settled relationship.",
    "Why don't micropayments ever argue? They never make a big deal of anything.",
    "I would tell you a joke about replay attacks, but you've already heard it.",
    "The blockchain and I are on good terms. Every term, actually, immutably.",
)


def select_joke(catalog: Sequence[str] = JOKES, rng: random.Random | None = None) -> str:
    chooser = rng or random
    return chooser.choice(catalog)

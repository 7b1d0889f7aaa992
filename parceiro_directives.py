"""
Parceiro Directives Module
==========================
Wesley can ask the client to do things by hiding markers at the end of a
reply:

    [[GENERATE_IMAGE: <english prompt>]]
    [[GAME_CARD: {"title": ..., "stats": {...}, ...}]]

The marker syntax is part of the prompt contract with the model, so it
must stay exactly like this.

parse_directives() takes the finished reply and returns what should be
shown plus whatever the markers asked for. Only the first marker of each
kind counts. A card whose JSON doesn't decode is dropped, but its marker is
still removed so the user never sees raw JSON.
"""

import json
import re
from dataclasses import dataclass
from typing import Optional

from parceiro_conversation import GameCard

CARD_PATTERN = re.compile(r"\[\[GAME_CARD:\s*(\{.*?\})\s*\]\]", re.DOTALL)
IMAGE_PATTERN = re.compile(r"\[\[GENERATE_IMAGE:\s*(.*?)\]\]", re.DOTALL)


@dataclass
class ParsedResponse:
    """
    Result of scanning a finished reply.

    Attributes:
        clean_text: Reply with the matched markers removed
        image_prompt: Prompt from [[GENERATE_IMAGE: ...]], if present
        game_card: Decoded card, if the card marker held valid JSON
        has_card_directive: A card marker was present (even if invalid)
    """

    clean_text: str
    image_prompt: Optional[str] = None
    game_card: Optional[GameCard] = None
    has_card_directive: bool = False

    @property
    def has_image_directive(self) -> bool:
        return self.image_prompt is not None


def parse_directives(text: str) -> ParsedResponse:
    """
    Pull the image and card directives out of a completed reply.

    Text without markers comes back untouched; once a marker has been
    removed the result is trimmed.
    """
    clean_text = text
    game_card = None

    card_match = CARD_PATTERN.search(text)
    if card_match:
        try:
            game_card = GameCard.from_dict(json.loads(card_match.group(1)))
        except ValueError:
            # json.JSONDecodeError is a ValueError too
            game_card = None
        clean_text = CARD_PATTERN.sub("", clean_text, count=1).strip()

    image_prompt = None
    image_match = IMAGE_PATTERN.search(text)
    if image_match:
        image_prompt = image_match.group(1).strip()
        clean_text = IMAGE_PATTERN.sub("", clean_text, count=1).strip()

    return ParsedResponse(
        clean_text=clean_text,
        image_prompt=image_prompt,
        game_card=game_card,
        has_card_directive=card_match is not None,
    )

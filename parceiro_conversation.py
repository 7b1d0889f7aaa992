"""
Parceiro Conversation Module
============================
The conversation as Wesley sees it:
- ChatMessage / GameCard - what a single bubble carries
- MessageIdAllocator - unique, creation-ordered message ids
- ConversationStore - the ordered message list, persisted after every change

The store is keyed by message id so a streaming reply can overwrite its own
bubble on every token without scanning the whole history. Every mutation is
followed by a full snapshot write through the persist callback, so whatever
reads the history from disk always sees the latest state.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterator, List, Optional

SENDER_USER = "user"
SENDER_AI = "ai"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class CardStats:
    graphics: int = 0
    gameplay: int = 0
    story: int = 0
    sound: int = 0


@dataclass
class GameCard:
    """
    Structured game review rendered next to a message.

    Only ever built from the AI's [[GAME_CARD: {...}]] directive - the user
    never edits one.
    """

    title: str
    genre: str = ""
    platform: str = ""
    score: int = 0
    difficulty: str = "Medium"
    playtime: str = ""
    stats: CardStats = field(default_factory=CardStats)
    summary: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "GameCard":
        """
        Build a card from decoded directive JSON.

        Raises:
            ValueError: payload is not an object, has no title, or stats
                is not an object
        """
        if not isinstance(data, dict):
            raise ValueError("game card payload must be a JSON object")
        if "title" not in data:
            raise ValueError("game card payload has no title")

        stats = data.get("stats", {})
        if not isinstance(stats, dict):
            raise ValueError("game card stats must be a JSON object")

        return cls(
            title=data["title"],
            genre=data.get("genre", ""),
            platform=data.get("platform", ""),
            score=data.get("score", 0),
            difficulty=data.get("difficulty", "Medium"),
            playtime=data.get("playtime", ""),
            stats=CardStats(
                graphics=stats.get("graphics", 0),
                gameplay=stats.get("gameplay", 0),
                story=stats.get("story", 0),
                sound=stats.get("sound", 0),
            ),
            summary=data.get("summary", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "genre": self.genre,
            "platform": self.platform,
            "score": self.score,
            "difficulty": self.difficulty,
            "playtime": self.playtime,
            "stats": {
                "graphics": self.stats.graphics,
                "gameplay": self.stats.gameplay,
                "story": self.stats.story,
                "sound": self.stats.sound,
            },
            "summary": self.summary,
        }


@dataclass
class ChatMessage:
    """
    One bubble in the chat.

    Attributes:
        id: Unique, creation-ordered id (epoch ms, see MessageIdAllocator)
        text: Display text - rewritten while streaming, fixed afterwards
        sender: "user" or "ai"
        image_url: Attached or generated image as a base64 data URI
        timestamp: Creation time in epoch ms
        game_card: Card parsed from the AI reply, if any
        expanded: "Read more" toggle (UI only, never persisted)
        copied: Copy feedback toggle (UI only, never persisted)
    """

    id: int
    text: str
    sender: str
    image_url: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)
    game_card: Optional[GameCard] = None
    expanded: bool = False
    copied: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "text": self.text,
            "sender": self.sender,
            "timestamp": self.timestamp,
        }
        if self.image_url:
            data["imageUrl"] = self.image_url
        if self.game_card is not None:
            data["gameCard"] = self.game_card.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        """
        Build a message from one stored history entry.

        Raises:
            ValueError: entry is not an object
            KeyError: entry has no id
        """
        if not isinstance(data, dict):
            raise ValueError("history entry must be a JSON object")
        card = None
        if data.get("gameCard"):
            try:
                card = GameCard.from_dict(data["gameCard"])
            except ValueError:
                card = None
        return cls(
            id=int(data["id"]),
            text=data.get("text", ""),
            sender=data.get("sender", SENDER_AI),
            image_url=data.get("imageUrl"),
            timestamp=int(data.get("timestamp", 0)),
            game_card=card,
        )


class MessageIdAllocator:
    """
    Hands out epoch-millisecond message ids that never repeat.

    Two sends in the same millisecond would collide on a plain timestamp, so
    every id is at least one more than the previous one.
    """

    def __init__(self, clock: Callable[[], int] = now_ms, last_id: int = 0):
        self._clock = clock
        self._last = last_id

    def seed(self, last_id: int):
        """Make sure future ids are larger than an id loaded from history."""
        self._last = max(self._last, last_id)

    def next_id(self) -> int:
        self._last = max(self._clock(), self._last + 1)
        return self._last


class ConversationStore:
    """
    Ordered, id-addressed message list.

    Append order is causal order. Existing messages are only ever changed
    through replace_by_id() (streaming / finalization) or dropped all at
    once by clear().
    """

    def __init__(self,
                 persist: Callable[[List[ChatMessage]], None] = None,
                 messages: List[ChatMessage] = None):
        """
        Args:
            persist: Called with the full message list after every mutation
            messages: Initial history (not persisted again on load)
        """
        self._persist = persist
        self._messages: "OrderedDict[int, ChatMessage]" = OrderedDict()
        self._subscribers: List[Callable[[List[ChatMessage]], Any]] = []
        self._fill(messages or [])

    def _fill(self, messages: List[ChatMessage]):
        self._messages.clear()
        for msg in messages:
            if msg.id in self._messages:
                raise ValueError(f"duplicate message id in history: {msg.id}")
            self._messages[msg.id] = msg

    def load(self, messages: List[ChatMessage]):
        """Replace the contents with history read from storage (not re-persisted)."""
        self._fill(messages)
        self._notify()

    # ----- reads -----

    def get(self, msg_id: int) -> Optional[ChatMessage]:
        return self._messages.get(msg_id)

    def snapshot(self) -> List[ChatMessage]:
        return list(self._messages.values())

    def last_id(self) -> int:
        return max(self._messages, default=0)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(self.snapshot())

    def __contains__(self, msg_id: int) -> bool:
        return msg_id in self._messages

    # ----- writes -----

    def append(self, message: ChatMessage):
        """Add a message at the end. The caller supplies a unique id."""
        if message.id in self._messages:
            raise ValueError(f"message id already in conversation: {message.id}")
        self._messages[message.id] = message
        self._changed()

    def replace_by_id(self, msg_id: int,
                      mutator: Callable[[ChatMessage], ChatMessage]) -> bool:
        """
        Swap a message for mutator(message), keeping its position.

        Returns:
            False (and does nothing) when the id is not in the conversation
        """
        current = self._messages.get(msg_id)
        if current is None:
            return False
        updated = mutator(current)
        if updated.id != msg_id:
            raise ValueError("replace_by_id must not change the message id")
        self._messages[msg_id] = updated
        self._changed()
        return True

    def update(self, msg_id: int, **changes) -> bool:
        """replace_by_id() with plain field changes."""
        return self.replace_by_id(msg_id, lambda m: replace(m, **changes))

    def clear(self):
        self._messages.clear()
        self._changed()

    # ----- notification -----

    def subscribe(self, callback: Callable[[List[ChatMessage]], Any]) -> Callable[[], None]:
        """Register a callback receiving the message list after each change."""
        self._subscribers.append(callback)

        def _unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _changed(self):
        if self._persist is not None:
            self._persist(self.snapshot())
        self._notify()

    def _notify(self):
        snapshot = self.snapshot()
        for callback in list(self._subscribers):
            callback(snapshot)

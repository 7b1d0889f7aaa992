"""
Parceiro Storage Module
=======================
Durable key/value storage for everything Wesley keeps between runs:
- User profile (name, avatar, guest flag)
- Chat history (ordered message list)
- Settings (media autosave, voice id, voice rate)
- Long-term memory (free text about the user)

Each key lives in its own file inside the data directory. Reads never
raise: a missing or unreadable file gives back the documented default.
Writes go straight to disk (flush + fsync) - the history is rewritten in
full after every change to the conversation.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

from parceiro_conversation import ChatMessage

USER_KEY = "parceiro_user_v1"
HISTORY_KEY = "parceiro_history_v1"
MEMORY_KEY = "parceiro_ai_memory_v1"
SETTINGS_KEY = "parceiro_settings_v1"

DEFAULT_AVATAR = "https://picsum.photos/seed/gamer/200/200"

DEFAULT_VOICE_RATE = 1.1
MIN_VOICE_RATE = 0.5
MAX_VOICE_RATE = 2.0


@dataclass
class UserProfile:
    name: str
    photo: str = DEFAULT_AVATAR
    is_guest: bool = False


@dataclass
class UserSettings:
    """
    Attributes:
        auto_save_media: Save every generated image to the art folder
        voice_id: Preferred TTS voice ("" = provider default)
        voice_rate: Speech speed multiplier (0.5 to 2.0)
    """

    auto_save_media: bool = False
    voice_id: str = ""
    voice_rate: float = DEFAULT_VOICE_RATE


class ParceiroStorage:
    """File-backed store for profile, history, settings and memory."""

    def __init__(self, data_dir: str = None):
        self.data_dir = Path(data_dir or os.getenv("PARCEIRO_DATA_DIR", "parceiro_data"))
        self.data_dir.mkdir(parents=True, exist_ok=True)

    # ----- low level -----

    def _path(self, key: str, suffix: str = ".json") -> Path:
        return self.data_dir / f"{key}{suffix}"

    def _write(self, path: Path, content: str):
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

    def _read_json(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            print(f"⚠️  Could not read {path.name}: {e}")
            return None

    def _write_json(self, key: str, data: Any):
        self._write(self._path(key), json.dumps(data, ensure_ascii=False))

    # ----- profile -----

    def get_user(self) -> Optional[UserProfile]:
        data = self._read_json(USER_KEY)
        if not isinstance(data, dict) or "name" not in data:
            return None
        return UserProfile(
            name=data["name"],
            photo=data.get("photo") or DEFAULT_AVATAR,
            is_guest=bool(data.get("isGuest", False)),
        )

    def save_user(self, user: UserProfile):
        self._write_json(USER_KEY, {
            "name": user.name,
            "photo": user.photo,
            "isGuest": user.is_guest,
        })

    # ----- history -----

    def get_history(self) -> List[ChatMessage]:
        data = self._read_json(HISTORY_KEY)
        if not isinstance(data, list):
            return []

        messages = []
        seen = set()
        for entry in data:
            try:
                msg = ChatMessage.from_dict(entry)
            except (KeyError, TypeError, ValueError) as e:
                print(f"⚠️  Skipping unreadable history entry: {e}")
                continue
            if msg.id in seen:
                continue
            seen.add(msg.id)
            messages.append(msg)
        return messages

    def save_history(self, messages: List[ChatMessage]):
        self._write_json(HISTORY_KEY, [m.to_dict() for m in messages])

    def clear_history(self):
        self._path(HISTORY_KEY).unlink(missing_ok=True)

    # ----- settings -----

    def get_settings(self) -> UserSettings:
        data = self._read_json(SETTINGS_KEY)
        if not isinstance(data, dict):
            data = {}

        try:
            voice_rate = float(data.get("voiceRate", DEFAULT_VOICE_RATE))
        except (TypeError, ValueError):
            voice_rate = DEFAULT_VOICE_RATE

        # Merge with defaults so older files pick up new fields
        return UserSettings(
            auto_save_media=bool(data.get("autoSaveMedia", False)),
            voice_id=str(data.get("voiceId") or ""),
            voice_rate=voice_rate,
        )

    def save_settings(self, settings: UserSettings):
        self._write_json(SETTINGS_KEY, {
            "autoSaveMedia": settings.auto_save_media,
            "voiceId": settings.voice_id,
            "voiceRate": settings.voice_rate,
        })

    # ----- long term memory -----

    def get_user_memory(self) -> str:
        path = self._path(MEMORY_KEY, ".md")
        if not path.exists():
            return ""
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            print(f"⚠️  Could not read memory: {e}")
            return ""

    def save_user_memory(self, memory: str):
        self._write(self._path(MEMORY_KEY, ".md"), memory)
        print(f"💾 Memory saved: {len(memory):,} characters")

    def clear_all(self):
        for key in (USER_KEY, HISTORY_KEY, SETTINGS_KEY):
            self._path(key).unlink(missing_ok=True)
        self._path(MEMORY_KEY, ".md").unlink(missing_ok=True)

"""
Parceiro Voice Module
=====================
Wesley's voice output using ElevenLabs TTS, played through pygame.

Long replies are split into sentence-sized chunks and played one after
the other, so playback starts quickly and a single bad chunk doesn't cut
the rest of the reply. Without ElevenLabs credentials it falls back to
the macOS 'say' command.

Configure with ELEVENLABS_API_KEY and ELEVENLABS_VOICE_ID in your .env.
The voice id / rate chosen in the user's settings override the defaults.
"""

import io
import os
import platform
import re
import subprocess
import threading
from typing import Dict, List, Optional

os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")

import pygame
from dotenv import load_dotenv
from elevenlabs import ElevenLabs, VoiceSettings

load_dotenv()

SENTENCE_PATTERN = re.compile(r"[^.!?]+[.!?]+|[^.!?]+$")

# ElevenLabs accepts speed multipliers in this range only
MIN_SPEED = 0.7
MAX_SPEED = 1.2

SYSTEM_WORDS_PER_MINUTE = 175

BRAZILIAN_LANGUAGE = "pt-BR"

# One line of `say -v ?`: "Luciana             pt_BR    # Olá, meu nome é Luciana."
SYSTEM_VOICE_PATTERN = re.compile(r"^(?P<name>.+?)\s+(?P<locale>[a-z]{2,3}_[A-Z0-9]{2,3})\s+#")


def split_sentences(text: str) -> List[str]:
    """Break text into sentence-like chunks for sequential playback."""
    return SENTENCE_PATTERN.findall(text) or [text]


def is_brazilian_voice(voice: Dict[str, str]) -> bool:
    language = voice.get("language", "").replace("_", "-").lower()
    accent = voice.get("accent", "").lower()
    return language == BRAZILIAN_LANGUAGE.lower() or "brazil" in accent


def sort_voices(voices: List[Dict[str, str]]) -> List[Dict[str, str]]:
    """pt-BR voices first, everything else after, otherwise in the given order."""
    return sorted(voices, key=lambda v: not is_brazilian_voice(v))


def parse_system_voices(output: str) -> List[Dict[str, str]]:
    voices = []
    for line in output.splitlines():
        match = SYSTEM_VOICE_PATTERN.match(line)
        if match:
            voices.append({
                "voice_id": match.group("name").strip(),
                "name": match.group("name").strip(),
                "language": match.group("locale").replace("_", "-"),
                "accent": "",
            })
    return voices


class ParceiroVoice:
    """
    Text-to-Speech for Wesley.

    speak() returns immediately - chunks play on a background thread.
    Starting a new speak() or calling stop_speaking() cancels whatever is
    playing.
    """

    def __init__(self,
                 api_key: str = None,
                 voice_id: str = None,
                 model_id: str = "eleven_turbo_v2_5"):
        """
        Args:
            api_key: ElevenLabs API key (defaults to env var)
            voice_id: Default ElevenLabs voice ID
            model_id: Which ElevenLabs model to use
        """
        self.api_key = api_key or os.getenv("ELEVENLABS_API_KEY")
        self.voice_id = voice_id or os.getenv("ELEVENLABS_VOICE_ID")
        self.model_id = model_id

        self._client: Optional[ElevenLabs] = None
        self._pygame_initialized = False
        self._cancel: Optional[threading.Event] = None
        self._process: Optional[subprocess.Popen] = None
        self._is_speaking = False

        if not self.api_key:
            print("⚠️  ELEVENLABS_API_KEY not set. Using system voice.")

    def is_speaking(self) -> bool:
        return self._is_speaking

    def _init_elevenlabs(self):
        if self._client is None and self.api_key:
            self._client = ElevenLabs(api_key=self.api_key)
            print("🎤 ElevenLabs initialized.")

    def _init_pygame(self):
        if not self._pygame_initialized:
            pygame.mixer.init()
            self._pygame_initialized = True

    def list_voices(self) -> List[Dict[str, str]]:
        """
        Voices the user can pick in the settings, pt-BR first.

        ElevenLabs voices when a key is configured, otherwise the macOS
        system voices. Failures give an empty list.

        Returns:
            Dicts with voice_id, name, language and accent
        """
        if self.api_key:
            voices = self._list_elevenlabs_voices()
        else:
            voices = self._list_system_voices()
        return sort_voices(voices)

    def _list_elevenlabs_voices(self) -> List[Dict[str, str]]:
        self._init_elevenlabs()
        try:
            response = self._client.voices.get_all()
        except Exception as e:
            print(f"⚠️  Error listing voices: {e}")
            return []

        voices = []
        for v in response.voices:
            labels = getattr(v, "labels", None) or {}
            voices.append({
                "voice_id": v.voice_id,
                "name": v.name or v.voice_id,
                "language": labels.get("language") or "",
                "accent": labels.get("accent") or "",
            })
        return voices

    def _list_system_voices(self) -> List[Dict[str, str]]:
        if platform.system() != "Darwin":
            return []
        try:
            result = subprocess.run(["say", "-v", "?"], capture_output=True, text=True, check=True)
        except (OSError, subprocess.CalledProcessError) as e:
            print(f"⚠️  Error listing system voices: {e}")
            return []
        return parse_system_voices(result.stdout)

    def speak(self, text: str, voice_id: str = None, rate: float = 1.0) -> Optional[threading.Thread]:
        """
        Say text out loud without blocking.

        Args:
            text: What Wesley should say
            voice_id: Voice to use ("" / None = configured default)
            rate: Speed multiplier
        """
        if not text or not text.strip():
            return None

        self.stop_speaking()

        cancel = threading.Event()
        self._cancel = cancel
        thread = threading.Thread(
            target=self._speak_chunks,
            args=(split_sentences(text), voice_id or self.voice_id, rate, cancel),
            daemon=True,
        )
        thread.start()
        return thread

    def _speak_chunks(self, chunks: List[str], voice_id: Optional[str],
                      rate: float, cancel: threading.Event):
        self._is_speaking = True
        try:
            for chunk in chunks:
                if cancel.is_set():
                    break
                if not chunk.strip():
                    continue
                try:
                    self._speak_chunk(chunk.strip(), voice_id, rate, cancel)
                except Exception as e:
                    # Skip to the next sentence
                    print(f"⚠️  Voice error: {e}")
        finally:
            if self._cancel is cancel:
                self._is_speaking = False

    def _speak_chunk(self, text: str, voice_id: Optional[str], rate: float,
                     cancel: threading.Event):
        if self.api_key and voice_id:
            self._speak_elevenlabs(text, voice_id, rate, cancel)
        else:
            self._speak_system(text, voice_id, rate, cancel)

    def _speak_elevenlabs(self, text: str, voice_id: str, rate: float,
                          cancel: threading.Event):
        self._init_elevenlabs()
        self._init_pygame()

        print(f"🗣️  Wesley: \"{text[:50]}{'...' if len(text) > 50 else ''}\"")

        audio_generator = self._client.text_to_speech.convert(
            voice_id=voice_id,
            text=text,
            model_id=self.model_id,
            output_format="mp3_22050_32",
            voice_settings=VoiceSettings(speed=min(MAX_SPEED, max(MIN_SPEED, rate))),
        )
        audio_bytes = b"".join(audio_generator)
        if cancel.is_set():
            return

        pygame.mixer.music.load(io.BytesIO(audio_bytes))
        pygame.mixer.music.play()

        clock = pygame.time.Clock()
        while pygame.mixer.music.get_busy():
            if cancel.is_set():
                pygame.mixer.music.stop()
                break
            clock.tick(30)

    def _speak_system(self, text: str, voice_id: Optional[str], rate: float,
                      cancel: threading.Event):
        """Fallback to system TTS (macOS 'say' command)."""
        print(f"🗣️  [System TTS] Wesley: \"{text[:50]}{'...' if len(text) > 50 else ''}\"")

        if platform.system() != "Darwin":
            print("   (System TTS not available on this platform)")
            return

        command = ["say", "-r", str(int(SYSTEM_WORDS_PER_MINUTE * rate))]
        if voice_id:
            command += ["-v", voice_id]
        command.append(text)

        self._process = subprocess.Popen(command)
        try:
            while self._process.poll() is None:
                if cancel.wait(0.05):
                    self._process.terminate()
                    break
        finally:
            self._process = None

    def stop_speaking(self):
        """Stop playback right now and drop the remaining chunks."""
        if self._cancel is not None:
            self._cancel.set()
        if self._pygame_initialized:
            pygame.mixer.music.stop()
        process = self._process
        if process is not None and process.poll() is None:
            process.terminate()
        self._is_speaking = False

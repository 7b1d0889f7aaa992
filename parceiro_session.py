"""
Parceiro Session Module
=======================
One chat session with Wesley - everything between "user hits send" and
"the conversation is settled":

1. The user message goes into the conversation right away
2. Local commands ("limpar chat") short-circuit before any remote call
3. The reply streams in; the AI bubble is created on the first token and
   rewritten with the full accumulated text on every token after that
4. When the stream ends, post-processing runs in the background:
   directives are stripped, the game card is attached, images are
   generated, the reply may be spoken, and the memory counter ticks

Remote failures never reach the user. A stream that dies just leaves
whatever already arrived; a failed image just means no image bubble.
The loading indicator is cleared on every path.

UI-facing state lives in Observable cells so any front-end (the terminal
REPL in main.py, or something richer) can subscribe to what it renders.
"""

import asyncio
import random
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from parceiro_artist import file_to_data_url
from parceiro_brain import fallback_greeting
from parceiro_commands import CLEAR_ACK_DELAY, LocalCommandInterpreter
from parceiro_conversation import (
    SENDER_AI,
    SENDER_USER,
    ChatMessage,
    ConversationStore,
    MessageIdAllocator,
    now_ms,
)
from parceiro_directives import parse_directives
from parceiro_memory import MemoryConsolidator
from parceiro_state import Observable
from parceiro_storage import DEFAULT_AVATAR, MAX_VOICE_RATE, MIN_VOICE_RATE, UserProfile, UserSettings

# Shown while the image is being generated if Wesley said nothing else
IMAGE_FILLER = "Pode deixar, gerando sua imagem..."
IMAGE_CAPTION = "Tá na mão!"
CARD_IMAGE_CAPTION = "Se liga no card."

GUEST_NAME = "Visitante"
GUEST_GREETING = "Olá! Sou o Wesley. Como posso ajudar você hoje?"
MOCK_NAMES = ["Gabriel", "Leo", "Bruno", "Lucas", "Ana", "Bia"]

VOICE_MODE_ON_MESSAGE = "Modo voz on. Pode falar."
HISTORY_CLEARED_MESSAGE = "Histórico apagado."

COPY_FEEDBACK_SECONDS = 2.0


class TkClipboard:
    """
    Writes text to the system clipboard through a hidden Tk window.

    On X11 the clipboard belongs to the window that set it, so the window
    stays open until close(). Text copied right before the app exits is
    only kept if a clipboard manager took it over.

    Calling it returns False when there is no clipboard (no Tk, no display).
    """

    def __init__(self, tk_factory: Callable[[], Any] = None):
        self._tk_factory = tk_factory
        self._root = None
        self._unavailable = False

    def _get_root(self):
        if self._root is None and not self._unavailable:
            try:
                factory = self._tk_factory
                if factory is None:
                    import tkinter as tk
                    factory = tk.Tk
                root = factory()
                root.withdraw()
            except Exception as e:
                print(f"⚠️  Clipboard unavailable: {e}")
                self._unavailable = True
                return None
            self._root = root
        return self._root

    def __call__(self, text: str) -> bool:
        root = self._get_root()
        if root is None:
            return False
        try:
            root.clipboard_clear()
            root.clipboard_append(text)
            root.update()
        except Exception as e:
            print(f"⚠️  Could not copy: {e}")
            return False
        return True

    def close(self):
        if self._root is not None:
            self._root.destroy()
            self._root = None


class ChatSession:
    """
    Wesley's conversation engine.

    Args:
        brain: ParceiroBrain (stream / memory / greeting)
        artist: ParceiroArtist (image generation + saving)
        storage: ParceiroStorage
        voice: ParceiroVoice, optional
        ears: ParceiroEars, optional
        clock: Epoch-ms clock for message ids
        clear_ack_delay: Pause before confirming a cleared chat
        clipboard: Function writing text to the clipboard (default TkClipboard)
    """

    def __init__(self, brain, artist, storage,
                 voice=None,
                 ears=None,
                 clock=now_ms,
                 clear_ack_delay: float = CLEAR_ACK_DELAY,
                 clipboard: Callable[[str], bool] = None):
        self.brain = brain
        self.artist = artist
        self.storage = storage
        self.voice = voice
        self.ears = ears
        self._clipboard = clipboard if clipboard is not None else TkClipboard()

        # UI state
        self.user: Observable[Optional[UserProfile]] = Observable(None)
        self.settings: Observable[UserSettings] = Observable(UserSettings())
        self.input_text: Observable[str] = Observable("")
        self.attached_image: Observable[Optional[str]] = Observable(None)
        self.is_loading: Observable[bool] = Observable(False)
        self.is_listening: Observable[bool] = Observable(False)
        self.is_settings_open: Observable[bool] = Observable(False)
        self.voice_mode: Observable[bool] = Observable(False)

        self.ids = MessageIdAllocator(clock=clock)
        self.store = ConversationStore(persist=storage.save_history)
        self.memory = MemoryConsolidator(brain, storage)
        self.commands = LocalCommandInterpreter(
            self.store,
            storage,
            add_system_message=self.add_system_message,
            schedule=self._run_in_background,
            ack_delay=clear_ack_delay,
        )

        self._background: Set[asyncio.Task] = set()

    # ========== LIFECYCLE ==========

    def load(self):
        """Restore profile, settings and history, and start the chat session."""
        user_memory = self.storage.get_user_memory()
        self.brain.init_chat(user_memory)

        user = self.storage.get_user()
        if user is not None:
            self.user.set(user)

        history = self.storage.get_history()
        self.store.load(history)
        self.ids.seed(self.store.last_id())
        self.settings.set(self.storage.get_settings())

        print(f"💾 Loaded {len(history)} message(s) from history")

    async def drain(self):
        """Wait for every background task (post-processing, acks...) to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def close(self):
        """Stop speech and release the clipboard window."""
        if self.voice is not None:
            self.voice.stop_speaking()
        close_clipboard = getattr(self._clipboard, "close", None)
        if close_clipboard is not None:
            close_clipboard()

    def _run_in_background(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task):
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            print(f"⚠️  Background task failed: {task.exception()}")

    # ========== SENDING ==========

    async def send(self, text: str = None, image: str = None):
        """
        Send a message (defaults to the current input cells) and stream the reply.

        Returns once the stream is done; post-processing continues in the
        background (see drain()).
        """
        text = (self.input_text.get() if text is None else text).strip()
        image = self.attached_image.get() if image is None else image

        if not text and not image:
            return

        self.store.append(ChatMessage(
            id=self.ids.next_id(),
            text=text,
            sender=SENDER_USER,
            image_url=image or None,
        ))

        self.input_text.set("")
        self.attached_image.set(None)

        if self.commands.try_handle(text):
            return

        self.is_loading.set(True)

        ai_msg_id = self.ids.next_id()
        full_response = ""
        message_created = False

        try:
            async for chunk in self.brain.send_message_stream(text, image or None):
                if not chunk:
                    continue
                full_response += chunk

                if not message_created:
                    self.is_loading.set(False)
                    self.store.append(ChatMessage(id=ai_msg_id, text=full_response, sender=SENDER_AI))
                    message_created = True
                else:
                    self.store.update(ai_msg_id, text=full_response)
        except Exception as e:
            print(f"⚠️  Reply stream failed: {e}")
            self.is_loading.set(False)
            return

        if not message_created:
            self.is_loading.set(False)
            return

        self._run_in_background(self.process_post_response(full_response, ai_msg_id, text))

    async def process_post_response(self, full_response: str, ai_msg_id: int, user_text: str):
        """Finalize a streamed reply: directives, image, speech, memory."""
        parsed = parse_directives(full_response)

        if parsed.has_image_directive:
            # Remove only the command; Wesley's comment before it stays
            clean_text = parsed.clean_text or IMAGE_FILLER
            self._finalize_reply(ai_msg_id, clean_text, parsed.game_card)

            generated_image = await self._generate_image(parsed.image_prompt)
            if generated_image:
                self.store.append(ChatMessage(
                    id=self.ids.next_id(),
                    text=CARD_IMAGE_CAPTION if parsed.game_card else IMAGE_CAPTION,
                    sender=SENDER_AI,
                    image_url=generated_image,
                ))
                if self.settings.get().auto_save_media:
                    self.artist.save_image(generated_image, f"wesley_art_{now_ms()}.jpg")
        else:
            self._finalize_reply(ai_msg_id, parsed.clean_text, parsed.game_card)

        # Commentary ahead of an image is not read out
        if self.voice_mode.get() and not parsed.has_image_directive:
            self._speak(parsed.clean_text)

        await self.memory.on_exchange_complete(user_text, full_response)

    def _finalize_reply(self, ai_msg_id: int, text: str, game_card=None):
        changes = {"text": text}
        if game_card is not None:
            changes["game_card"] = game_card
        self.store.update(ai_msg_id, **changes)

    async def _generate_image(self, prompt: str) -> Optional[str]:
        try:
            return await self.artist.generate_image(prompt)
        except Exception as e:
            print(f"⚠️  Image generation failed: {e}")
            return None

    # ========== SYSTEM MESSAGES & VOICE ==========

    def add_system_message(self, text: str):
        """Post a message from Wesley that didn't come from the model stream."""
        self.store.append(ChatMessage(id=self.ids.next_id(), text=text, sender=SENDER_AI))
        if self.voice_mode.get():
            self._speak(text)

    def _speak(self, text: str):
        if self.voice is None:
            return
        settings = self.settings.get()
        try:
            self.voice.speak(text, settings.voice_id, settings.voice_rate)
        except Exception as e:
            print(f"⚠️  Could not speak: {e}")

    def toggle_voice_mode(self):
        self.voice_mode.update(lambda on: not on)
        if not self.voice_mode.get():
            if self.voice is not None:
                self.voice.stop_speaking()
        else:
            self.add_system_message(VOICE_MODE_ON_MESSAGE)

    async def start_listening(self):
        """Listen for one utterance and send it. Failures are ignored."""
        if self.ears is None:
            return
        self.is_listening.set(True)
        try:
            text = await self.ears.listen()
        except Exception as e:
            print(f"👂 Nothing to send ({e})")
            return
        finally:
            self.is_listening.set(False)

        self.input_text.set(text)
        await self.send()

    # ========== PROFILE & SETTINGS ==========

    async def login(self, guest: bool = False):
        name = GUEST_NAME if guest else random.choice(MOCK_NAMES)
        new_user = UserProfile(name=name, photo=DEFAULT_AVATAR, is_guest=guest)
        self.user.set(new_user)
        self.storage.save_user(new_user)
        print(f"👋 Logged in as {name}{' (guest)' if guest else ''}")

        if len(self.store) > 0:
            return

        self.is_loading.set(True)
        try:
            if guest:
                greeting = GUEST_GREETING
            else:
                greeting = await self._greeting_for(new_user.name)
            self.add_system_message(greeting)
        finally:
            self.is_loading.set(False)

    async def _greeting_for(self, name: str) -> str:
        memory = self.storage.get_user_memory()
        try:
            return await self.brain.generate_greeting(name, memory)
        except Exception as e:
            print(f"⚠️  Greeting failed: {e}")
            return fallback_greeting(name)

    def save_profile(self, name: str, photo: str = ""):
        current = self.user.get()
        if current is None:
            return
        updated = UserProfile(name=name, photo=photo or DEFAULT_AVATAR, is_guest=current.is_guest)
        self.user.set(updated)
        self.storage.save_user(updated)

    def update_setting(self, key: str, value):
        settings = self.settings.get()
        if not hasattr(settings, key):
            raise KeyError(f"unknown setting: {key}")
        new_settings = UserSettings(**{**vars(settings), key: value})
        self.storage.save_settings(new_settings)
        self.settings.set(new_settings)

    def toggle_auto_save(self):
        self.update_setting("auto_save_media", not self.settings.get().auto_save_media)

    def available_voices(self) -> List[Dict[str, str]]:
        """Voices for the settings picker, pt-BR first (empty without a voice)."""
        if self.voice is None:
            return []
        return self.voice.list_voices()

    def set_voice(self, voice_id: str):
        self.update_setting("voice_id", voice_id.strip())

    def set_voice_rate(self, rate: float):
        """
        Raises:
            ValueError: rate outside MIN_VOICE_RATE..MAX_VOICE_RATE
        """
        if not MIN_VOICE_RATE <= rate <= MAX_VOICE_RATE:
            raise ValueError(f"voice rate must be between {MIN_VOICE_RATE} and {MAX_VOICE_RATE}")
        self.update_setting("voice_rate", rate)

    # ========== MESSAGE ACTIONS ==========

    def toggle_message_expanded(self, msg_id: int):
        self.store.replace_by_id(msg_id, lambda m: replace(m, expanded=not m.expanded))

    def copy_to_clipboard(self, msg_id: int) -> bool:
        """Copy a message's text and flash the copied flag for a moment."""
        msg = self.store.get(msg_id)
        if msg is None or not self._clipboard(msg.text):
            return False

        self.store.update(msg_id, copied=True)
        self._run_in_background(self._reset_copied(msg_id))
        return True

    async def _reset_copied(self, msg_id: int):
        await asyncio.sleep(COPY_FEEDBACK_SECONDS)
        self.store.update(msg_id, copied=False)

    def attach_image_file(self, path: str):
        self.attached_image.set(file_to_data_url(path))

    def remove_attachment(self):
        self.attached_image.set(None)

    def clear_history(self):
        self.store.clear()
        self.storage.clear_history()
        self.is_settings_open.set(False)
        self.add_system_message(HISTORY_CLEARED_MESSAGE)

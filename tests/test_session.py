"""Tests for parceiro_session.py - streaming, post-processing and session actions."""

import asyncio
import json

import pytest

from fakes import FakeArtist, FakeBrain, FakeVoice
from parceiro_commands import CLEAR_ACKNOWLEDGEMENT
from parceiro_session import (
    CARD_IMAGE_CAPTION,
    GUEST_GREETING,
    HISTORY_CLEARED_MESSAGE,
    IMAGE_CAPTION,
    IMAGE_FILLER,
    VOICE_MODE_ON_MESSAGE,
    ChatSession,
    TkClipboard,
)
from parceiro_storage import DEFAULT_AVATAR, DEFAULT_VOICE_RATE, UserProfile

CARD = ('[[GAME_CARD: {"title": "Hollow Knight", "genre": "Metroidvania", "platform": "Switch", '
        '"score": 95, "difficulty": "Hard", "playtime": "40h", '
        '"stats": {"graphics": 90, "gameplay": 97, "story": 85, "sound": 96}, "summary": "Top."}]]')


def make_session(storage, tokens=None, error=None, image="data:image/jpeg;base64,AAAA", **kwargs):
    brain = FakeBrain(tokens=tokens, error=error)
    artist = FakeArtist(image=image)
    voice = FakeVoice()
    session = ChatSession(brain, artist, storage, voice=voice, clear_ack_delay=0, **kwargs)
    return session, brain, artist, voice


def ai_messages(session):
    return [m for m in session.store if m.sender == "ai"]


class TestSendStreaming:
    """Tests for ChatSession.send."""

    @pytest.mark.asyncio
    async def test_simple_reply(self, storage):
        """Should create one AI message holding the full reply."""
        session, brain, _, _ = make_session(storage, tokens=["Opa", ", tudo certo?"])

        await session.send("oi")
        await session.drain()

        messages = session.store.snapshot()
        assert [m.sender for m in messages] == ["user", "ai"]
        assert messages[0].text == "oi"
        assert messages[1].text == "Opa, tudo certo?"
        assert messages[1].game_card is None
        assert messages[1].image_url is None
        assert brain.stream_calls == [("oi", None)]
        assert session.is_loading.get() is False

    @pytest.mark.asyncio
    async def test_one_ai_message_many_tokens(self, storage):
        """Should rewrite the same message on every token."""
        tokens = ["a", "b", "c", "d", "e"]
        session, _, _, _ = make_session(storage, tokens=tokens)
        texts = []
        session.store.subscribe(lambda msgs: texts.append(msgs[-1].text))

        await session.send("oi")
        await session.drain()

        assert len(ai_messages(session)) == 1
        assert ai_messages(session)[0].text == "abcde"
        assert texts[1:6] == ["a", "ab", "abc", "abcd", "abcde"]

    @pytest.mark.asyncio
    async def test_empty_input_is_noop(self, storage):
        """Should do nothing when text and image are empty."""
        session, brain, _, _ = make_session(storage, tokens=["x"])
        await session.send("   ")
        assert len(session.store) == 0
        assert brain.stream_calls == []

    @pytest.mark.asyncio
    async def test_zero_tokens(self, storage):
        """Should leave no AI message and clear loading."""
        session, _, _, _ = make_session(storage, tokens=[])
        await session.send("oi")
        await session.drain()
        assert ai_messages(session) == []
        assert session.is_loading.get() is False

    @pytest.mark.asyncio
    async def test_loading_cleared_on_first_token(self, storage):
        """Should show loading until the first token arrives."""
        session, _, _, _ = make_session(storage, tokens=["oi"])
        states = []
        session.is_loading.subscribe(states.append)
        await session.send("oi")
        assert states == [True, False]

    @pytest.mark.asyncio
    async def test_stream_error_keeps_partial_text(self, storage):
        """Should keep what streamed and stay quiet about the failure."""
        session, _, _, _ = make_session(storage, tokens=["Meio"], error=RuntimeError("boom"))
        await session.send("oi")
        await session.drain()
        assert [m.text for m in ai_messages(session)] == ["Meio"]
        assert session.is_loading.get() is False

    @pytest.mark.asyncio
    async def test_stream_error_before_tokens(self, storage):
        """Should clear loading and add nothing."""
        session, _, _, _ = make_session(storage, error=ConnectionError("offline"))
        await session.send("oi")
        assert ai_messages(session) == []
        assert session.is_loading.get() is False

    @pytest.mark.asyncio
    async def test_input_cells_used_and_cleared(self, storage):
        """Should send the input cells and then reset them."""
        session, brain, _, _ = make_session(storage, tokens=["Que foto!"])
        session.input_text.set("  olha  ")
        session.attached_image.set("data:image/png;base64,iVBO")

        await session.send()
        await session.drain()

        assert brain.stream_calls == [("olha", "data:image/png;base64,iVBO")]
        assert session.store.snapshot()[0].image_url == "data:image/png;base64,iVBO"
        assert session.input_text.get() == ""
        assert session.attached_image.get() is None

    @pytest.mark.asyncio
    async def test_history_persisted(self, storage):
        """Should have the finished conversation on disk."""
        session, _, _, _ = make_session(storage, tokens=["Opa", "!"])
        await session.send("oi")
        await session.drain()
        assert [m.text for m in storage.get_history()] == ["oi", "Opa!"]

    @pytest.mark.asyncio
    async def test_rapid_sends_get_unique_ids(self, storage):
        """Should not collide when the clock stands still."""
        session, _, _, _ = make_session(storage, tokens=["ok"], clock=lambda: 42)
        await asyncio.gather(session.send("um"), session.send("dois"))
        await session.drain()
        ids = [m.id for m in session.store]
        assert len(ids) == 4
        assert len(set(ids)) == 4


class TestLocalCommands:
    """Reserved phrases never reach the model."""

    @pytest.mark.asyncio
    async def test_clear_command(self, storage):
        """Should wipe the chat and confirm without a remote call."""
        session, brain, _, _ = make_session(storage, tokens=["nope"])
        await session.send("oi")
        await session.drain()

        await session.send("LIMPAR CHAT")
        await session.drain()

        assert [m.text for m in session.store] == [CLEAR_ACKNOWLEDGEMENT]
        assert len(brain.stream_calls) == 1


class TestPostProcessing:
    """Tests for directive handling after the stream ends."""

    @pytest.mark.asyncio
    async def test_image_directive(self, storage):
        """Should keep the commentary and append the generated image."""
        session, _, artist, _ = make_session(storage, tokens=["Boa ideia! ", "[[GENERATE_IMAGE: a robot dragon]]"])

        await session.send("faz um dragão robô")
        await session.drain()

        replies = ai_messages(session)
        assert [m.text for m in replies] == ["Boa ideia!", IMAGE_CAPTION]
        assert replies[1].image_url == artist.image
        assert artist.prompts == ["a robot dragon"]
        assert replies[1].id != replies[0].id

    @pytest.mark.asyncio
    async def test_image_only_gets_filler(self, storage):
        """Should never leave the AI bubble blank."""
        session, _, _, _ = make_session(storage, tokens=["[[GENERATE_IMAGE: a cat]]"])
        await session.send("gato")
        await session.drain()
        assert ai_messages(session)[0].text == IMAGE_FILLER

    @pytest.mark.asyncio
    async def test_commentary_visible_before_image(self, storage):
        """Should finalize the text before the image call starts."""
        session, _, artist, _ = make_session(storage, tokens=["Vou criar! [[GENERATE_IMAGE: x]]"])
        seen = []

        async def generate(prompt):
            seen.append(ai_messages(session)[0].text)
            return None

        artist.generate_image = generate
        await session.send("cria")
        await session.drain()
        assert seen == ["Vou criar!"]

    @pytest.mark.asyncio
    async def test_image_failure(self, storage):
        """Should add nothing and save nothing when no image comes back."""
        session, _, artist, _ = make_session(storage, tokens=["Ok [[GENERATE_IMAGE: x]]"], image=None)
        session.update_setting("auto_save_media", True)

        await session.send("cria")
        await session.drain()

        assert [m.text for m in ai_messages(session)] == ["Ok"]
        assert artist.saved == []

    @pytest.mark.asyncio
    async def test_image_generator_raising(self, storage):
        """Should treat an exception from the artist as no image."""
        session, _, artist, _ = make_session(storage, tokens=["Ok [[GENERATE_IMAGE: x]]"])

        async def boom(prompt):
            raise RuntimeError("quota")

        artist.generate_image = boom
        await session.send("cria")
        await session.drain()
        assert [m.text for m in ai_messages(session)] == ["Ok"]

    @pytest.mark.asyncio
    async def test_autosave(self, storage):
        """Should save the generated image when autosave is on."""
        session, _, artist, _ = make_session(storage, tokens=["Toma [[GENERATE_IMAGE: x]]"])
        session.update_setting("auto_save_media", True)

        await session.send("cria")
        await session.drain()

        assert len(artist.saved) == 1
        data_url, filename = artist.saved[0]
        assert data_url == artist.image
        assert filename.startswith("wesley_art_") and filename.endswith(".jpg")

    @pytest.mark.asyncio
    async def test_card_attached(self, storage):
        """Should attach the card and strip its marker."""
        session, _, _, _ = make_session(storage, tokens=["Jogo top! ", CARD])
        await session.send("me fala de hollow knight")
        await session.drain()

        reply = ai_messages(session)[0]
        assert reply.text == "Jogo top!"
        assert reply.game_card.title == "Hollow Knight"
        assert reply.game_card.stats.sound == 96
        assert storage.get_history()[1].game_card.title == "Hollow Knight"

    @pytest.mark.asyncio
    async def test_card_and_image_caption(self, storage):
        """Should use the card caption when a card came with the image."""
        session, _, _, _ = make_session(storage, tokens=[f"Olha! {CARD} [[GENERATE_IMAGE: knight]]"])
        await session.send("card")
        await session.drain()
        replies = ai_messages(session)
        assert replies[0].game_card is not None
        assert replies[1].text == CARD_IMAGE_CAPTION

    @pytest.mark.asyncio
    async def test_broken_card_still_delivers_text(self, storage):
        """Should show the text even if the card JSON is bad."""
        session, _, _, _ = make_session(storage, tokens=["Eita [[GAME_CARD: {oops}]]"])
        await session.send("card")
        await session.drain()
        reply = ai_messages(session)[0]
        assert reply.text == "Eita"
        assert reply.game_card is None

    @pytest.mark.asyncio
    async def test_memory_consolidation_after_five_replies(self, storage):
        """Should consolidate once after five finished replies."""
        session, brain, _, _ = make_session(storage, tokens=["ok"])
        for i in range(5):
            await session.send(f"msg {i}")
            await session.drain()
        assert len(brain.memory_calls) == 1
        assert brain.memory_calls[0][1] == "User: msg 4\nAI: ok"


class TestVoice:
    """Speech output decisions."""

    @pytest.mark.asyncio
    async def test_reply_spoken_in_voice_mode(self, storage):
        """Should speak the cleaned reply with the chosen voice settings."""
        session, _, _, voice = make_session(storage, tokens=["Fala! ", CARD])
        session.update_setting("voice_id", "abc")
        session.voice_mode.set(True)

        await session.send("oi")
        await session.drain()

        assert voice.spoken == [("Fala!", "abc", 1.1)]

    @pytest.mark.asyncio
    async def test_image_reply_not_spoken(self, storage):
        """Should stay silent on replies carrying an image directive."""
        session, _, _, voice = make_session(storage, tokens=["Vou desenhar [[GENERATE_IMAGE: x]]"], image=None)
        session.voice_mode.set(True)
        await session.send("desenha")
        await session.drain()
        assert voice.spoken == []

    @pytest.mark.asyncio
    async def test_not_spoken_without_voice_mode(self, storage):
        session, _, _, voice = make_session(storage, tokens=["oi"])
        await session.send("oi")
        await session.drain()
        assert voice.spoken == []

    def test_toggle_voice_mode(self, session, voice):
        """Should announce on and stop speech on off."""
        session.toggle_voice_mode()
        assert session.voice_mode.get() is True
        assert session.store.snapshot()[-1].text == VOICE_MODE_ON_MESSAGE
        assert voice.spoken[-1][0] == VOICE_MODE_ON_MESSAGE

        session.toggle_voice_mode()
        assert session.voice_mode.get() is False
        assert voice.stopped == 1


class TestListening:
    """Speech input."""

    @pytest.mark.asyncio
    async def test_transcript_sent(self, storage):
        """Should send whatever was heard."""
        session, brain, _, _ = make_session(storage, tokens=["opa"])

        class Ears:
            async def listen(self):
                return "bom dia"

        session.ears = Ears()
        await session.start_listening()
        await session.drain()
        assert brain.stream_calls == [("bom dia", None)]
        assert session.is_listening.get() is False

    @pytest.mark.asyncio
    async def test_listen_failure_ignored(self, storage):
        """Should do nothing when recognition fails."""
        session, brain, _, _ = make_session(storage)

        class Ears:
            async def listen(self):
                raise OSError("no microphone")

        session.ears = Ears()
        await session.start_listening()
        assert len(session.store) == 0
        assert session.is_listening.get() is False


class TestSessionActions:
    """Login, profile, settings and message actions."""

    @pytest.mark.asyncio
    async def test_guest_login_greets_locally(self, session, brain, storage):
        """Should greet a guest without calling the model."""
        await session.login(guest=True)
        assert session.user.get().name == "Visitante"
        assert session.user.get().is_guest
        assert [m.text for m in session.store] == [GUEST_GREETING]
        assert brain.greeting_calls == []
        assert storage.get_user().name == "Visitante"
        assert session.is_loading.get() is False

    @pytest.mark.asyncio
    async def test_login_uses_remote_greeting(self, session, brain, storage):
        """Should ask the model for a greeting that uses the memory."""
        storage.save_user_memory("Joga Valorant.")
        await session.login()
        name = session.user.get().name
        assert brain.greeting_calls == [(name, "Joga Valorant.")]
        assert [m.text for m in session.store] == [brain.greeting]

    @pytest.mark.asyncio
    async def test_login_with_history_skips_greeting(self, session, brain):
        """Should not greet when there is already a conversation."""
        session.add_system_message("antiga")
        await session.login()
        assert brain.greeting_calls == []
        assert len(session.store) == 1

    def test_load_restores_state(self, storage, brain, artist):
        """Should restore history, settings, profile and memory."""
        first = ChatSession(brain, artist, storage, clock=lambda: 500)
        first.add_system_message("oi")
        storage.save_user_memory("Curte RPG.")
        first.update_setting("voice_rate", 1.5)

        second = ChatSession(brain, artist, storage, clock=lambda: 1)
        second.load()

        assert [m.text for m in second.store] == ["oi"]
        assert second.settings.get().voice_rate == 1.5
        assert brain.init_calls[-1] == "Curte RPG."
        assert second.ids.next_id() == 501

    def test_load_survives_corrupt_history_entries(self, session, storage):
        """Should start with the readable messages when the history file has junk in it."""
        history = [
            "garbage",
            {"id": 3, "text": "oi", "sender": "user", "timestamp": 3},
            17,
        ]
        (storage.data_dir / "parceiro_history_v1.json").write_text(json.dumps(history), encoding="utf-8")

        session.load()

        assert [(m.id, m.text) for m in session.store] == [(3, "oi")]

    def test_save_profile(self, session, storage):
        """Should fall back to the default avatar for an empty photo."""
        session.user.set(UserProfile(name="Leo"))
        session.save_profile("Leozinho", "")
        assert session.user.get().name == "Leozinho"
        assert storage.get_user().photo == DEFAULT_AVATAR

    def test_toggle_auto_save(self, session, storage):
        session.toggle_auto_save()
        assert session.settings.get().auto_save_media is True
        assert storage.get_settings().auto_save_media is True

    def test_unknown_setting(self, session):
        with pytest.raises(KeyError):
            session.update_setting("volume", 3)

    def test_toggle_expanded(self, session):
        session.add_system_message("texto longo")
        msg_id = session.store.snapshot()[0].id
        session.toggle_message_expanded(msg_id)
        assert session.store.get(msg_id).expanded is True

    @pytest.mark.asyncio
    async def test_copy_to_clipboard(self, storage, brain, artist, monkeypatch):
        """Should flag the message as copied, then reset the flag."""
        copied = []
        session = ChatSession(brain, artist, storage, clipboard=lambda t: copied.append(t) or True)
        monkeypatch.setattr("parceiro_session.COPY_FEEDBACK_SECONDS", 0)
        session.add_system_message("copia isso")
        msg_id = session.store.snapshot()[0].id

        assert session.copy_to_clipboard(msg_id) is True
        assert session.store.get(msg_id).copied is True
        await session.drain()
        assert session.store.get(msg_id).copied is False
        assert copied == ["copia isso"]

    def test_copy_without_clipboard(self, storage, brain, artist):
        """Should be a silent no-op when there is no clipboard."""
        session = ChatSession(brain, artist, storage, clipboard=lambda t: False)
        session.add_system_message("x")
        msg_id = session.store.snapshot()[0].id
        assert session.copy_to_clipboard(msg_id) is False
        assert session.store.get(msg_id).copied is False

    def test_attach_and_remove_image(self, session, tmp_path):
        path = tmp_path / "foto.png"
        path.write_bytes(b"\x89PNG\r\n\x1a\n")
        session.attach_image_file(str(path))
        assert session.attached_image.get().startswith("data:image/png;base64,")
        session.remove_attachment()
        assert session.attached_image.get() is None

    def test_clear_history(self, session, storage):
        """Should wipe everything and post the confirmation."""
        session.add_system_message("a")
        session.is_settings_open.set(True)
        session.clear_history()
        assert [m.text for m in session.store] == [HISTORY_CLEARED_MESSAGE]
        assert session.is_settings_open.get() is False
        assert [m.text for m in storage.get_history()] == [HISTORY_CLEARED_MESSAGE]


class FakeTkRoot:
    def __init__(self):
        self.clipboard = ""
        self.destroyed = False

    def withdraw(self):
        pass

    def clipboard_clear(self):
        self.clipboard = ""

    def clipboard_append(self, text):
        self.clipboard += text

    def update(self):
        pass

    def destroy(self):
        self.destroyed = True


class TestTkClipboard:
    """The clipboard window has to outlive the copy."""

    def test_window_kept_between_copies(self):
        roots = []

        def factory():
            roots.append(FakeTkRoot())
            return roots[-1]

        clipboard = TkClipboard(tk_factory=factory)
        assert clipboard("primeiro") is True
        assert clipboard("segundo") is True

        assert len(roots) == 1
        assert roots[0].clipboard == "segundo"
        assert roots[0].destroyed is False

        clipboard.close()
        assert roots[0].destroyed is True

    def test_no_display(self):
        """Should report no clipboard once and not retry."""
        calls = []

        def factory():
            calls.append(1)
            raise RuntimeError("no display name and no $DISPLAY")

        clipboard = TkClipboard(tk_factory=factory)
        assert clipboard("x") is False
        assert clipboard("y") is False
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_session_close_releases_window(self, storage, brain, artist, voice, monkeypatch):
        monkeypatch.setattr("parceiro_session.COPY_FEEDBACK_SECONDS", 0)
        root = FakeTkRoot()
        session = ChatSession(brain, artist, storage, voice=voice,
                              clipboard=TkClipboard(tk_factory=lambda: root))
        session.add_system_message("copia")
        session.copy_to_clipboard(session.store.snapshot()[0].id)
        await session.drain()

        session.close()

        assert root.clipboard == "copia"
        assert root.destroyed is True
        assert voice.stopped == 1


class TestVoiceSettings:
    """Voice picker and speech rate."""

    def test_available_voices(self, storage, brain, artist):
        voices = [{"voice_id": "Luciana", "name": "Luciana", "language": "pt-BR", "accent": ""}]
        session = ChatSession(brain, artist, storage, voice=FakeVoice(voices))
        assert session.available_voices() == voices

    def test_no_voice_no_voices(self, storage, brain, artist):
        assert ChatSession(brain, artist, storage).available_voices() == []

    def test_chosen_voice_used_for_speech(self, session, voice):
        session.set_voice(" Luciana ")
        session.set_voice_rate(0.8)
        session.voice_mode.set(True)
        session.add_system_message("Fala!")
        assert voice.spoken[-1] == ("Fala!", "Luciana", 0.8)

    @pytest.mark.parametrize("rate", [0.4, 2.5])
    def test_rate_out_of_range(self, session, storage, rate):
        with pytest.raises(ValueError):
            session.set_voice_rate(rate)
        assert storage.get_settings().voice_rate == DEFAULT_VOICE_RATE

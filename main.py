#!/usr/bin/env python3
"""
Parceiro - Wesley, your gamer buddy, in the terminal
====================================================
A chat front-end for the Parceiro session:
1. Streams Wesley's replies word by word
2. Hidden commands in replies become images and game cards
3. Optional voice output and microphone input
4. Remembers who you are between runs

Usage:
    python3 main.py            # Log in with a random name
    python3 main.py --guest    # Log in as a guest
    python3 main.py --voice    # Start with voice mode on

Commands inside the chat:
    /foto <path>        Attach an image to the next message
    /ouvir              Speak instead of typing
    /voz                Toggle voice mode
    /vozes              List voices (pt-BR first)
    /vozid <id>         Pick a voice (empty = default)
    /velocidade <rate>  Speech rate, 0.5 to 2.0
    /perfil <nome> [foto]  Change your name and avatar
    /autosave           Toggle saving generated images
    /apagar             Clear history
    /sair               Quit
"""

import argparse
import asyncio
from typing import Dict, List, Set

from dotenv import load_dotenv

load_dotenv()

from parceiro_artist import ParceiroArtist
from parceiro_brain import ParceiroBrain
from parceiro_conversation import SENDER_AI, ChatMessage, GameCard
from parceiro_senses import ParceiroEars
from parceiro_session import ChatSession
from parceiro_storage import ParceiroStorage
from parceiro_voice import ParceiroVoice


def parse_args(argv: List[str] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Parceiro - chat with Wesley, your gamer buddy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--guest", action="store_true", help="Log in as a guest")
    parser.add_argument("--voice", action="store_true", help="Start with voice mode on")
    parser.add_argument("--data-dir", default=None, help="Where profile, history and memory live")
    return parser.parse_args(argv)


class TerminalRenderer:
    """
    Prints the conversation as it changes.

    Streaming replies grow in place: only the new suffix is printed.
    When a finished reply is rewritten (directives stripped) the final
    text is printed again below it. A game card is printed once, as soon
    as a message carries one.
    """

    def __init__(self, user_name: str = "Você"):
        self.user_name = user_name
        self._shown: Dict[int, str] = {}
        self._cards_shown: Set[int] = set()

    def mark_seen(self, messages: List[ChatMessage]):
        self._shown = {m.id: m.text for m in messages}
        self._cards_shown = {m.id for m in messages if m.game_card is not None}

    def __call__(self, messages: List[ChatMessage]):
        if not messages:
            self._shown.clear()
            self._cards_shown.clear()
            return

        for msg in messages:
            previous = self._shown.get(msg.id)
            if previous is None:
                self.print_message(msg)
            else:
                if msg.text != previous:
                    if msg.text.startswith(previous):
                        print(msg.text[len(previous):], end="", flush=True)
                    else:
                        print(f"\n   ↳ {msg.text}", end="", flush=True)
                if msg.game_card is not None and msg.id not in self._cards_shown:
                    self.print_card(msg.game_card)
                    self._cards_shown.add(msg.id)
            self._shown[msg.id] = msg.text

    def print_message(self, msg: ChatMessage):
        speaker = "Wesley" if msg.sender == SENDER_AI else self.user_name
        print(f"\n{speaker}: {msg.text}", end="", flush=True)
        if msg.image_url:
            print(f"\n   [imagem: {len(msg.image_url):,} bytes]", end="", flush=True)
        if msg.game_card is not None:
            self.print_card(msg.game_card)
            self._cards_shown.add(msg.id)

    def print_card(self, card: GameCard):
        print(f"\n   🎮 {card.title} ({card.platform}) - {card.score}/100, {card.difficulty}", end="", flush=True)
        print(f"\n      {card.genre} · {card.playtime} · gráficos {card.stats.graphics}, "
              f"gameplay {card.stats.gameplay}, história {card.stats.story}, som {card.stats.sound}",
              end="", flush=True)
        if card.summary:
            print(f"\n      {card.summary}", end="", flush=True)


async def read_line(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, input, prompt)


def print_voices(voices: List[Dict[str, str]]):
    if not voices:
        print("   No voices available")
        return
    for voice in voices:
        language = voice.get("language") or voice.get("accent") or "?"
        print(f"   {voice['voice_id']:<24} {voice['name']} ({language})")


async def handle_line(session: ChatSession, renderer: TerminalRenderer, line: str) -> bool:
    """
    Run one line typed in the REPL.

    Returns:
        False when the user asked to quit
    """
    if line == "/sair":
        return False

    command, _, argument = line.partition(" ")
    argument = argument.strip()

    if command == "/voz" and not argument:
        session.toggle_voice_mode()
    elif command == "/vozes":
        print_voices(session.available_voices())
    elif command == "/vozid":
        session.set_voice(argument)
        print(f"   🗣️ Voice: {session.settings.get().voice_id or 'default'}")
    elif command == "/velocidade":
        try:
            session.set_voice_rate(float(argument.replace(",", ".")))
        except ValueError as e:
            print(f"⚠️  Invalid rate: {e}")
        else:
            print(f"   🗣️ Rate: {session.settings.get().voice_rate:.1f}x")
    elif command == "/perfil":
        name, _, photo = argument.partition(" ")
        if not name:
            print("⚠️  Usage: /perfil <nome> [foto]")
        elif session.user.get() is not None:
            session.save_profile(name, photo.strip())
            renderer.user_name = session.user.get().name
            print(f"   👤 Profile saved: {renderer.user_name}")
    elif line == "/autosave":
        session.toggle_auto_save()
        print(f"   Autosave: {'on' if session.settings.get().auto_save_media else 'off'}")
    elif line == "/apagar":
        session.clear_history()
    elif line == "/ouvir":
        await session.start_listening()
    elif command == "/foto" and argument:
        try:
            session.attach_image_file(argument)
            print("   📎 Image attached")
        except OSError as e:
            print(f"⚠️  Could not attach image: {e}")
    else:
        await session.send(line)
    return True


async def run_chat(args: argparse.Namespace):
    storage = ParceiroStorage(data_dir=args.data_dir)
    session = ChatSession(
        brain=ParceiroBrain(),
        artist=ParceiroArtist(),
        storage=storage,
        voice=ParceiroVoice(),
        ears=ParceiroEars(),
    )
    session.load()

    renderer = TerminalRenderer()
    renderer.mark_seen(session.store.snapshot())
    for msg in session.store.snapshot()[-10:]:
        renderer.print_message(msg)
    session.store.subscribe(renderer)

    if session.user.get() is None:
        await session.login(guest=args.guest)
    renderer.user_name = session.user.get().name

    if args.voice:
        session.toggle_voice_mode()

    while True:
        try:
            line = (await read_line("\n> ")).strip()
        except (EOFError, KeyboardInterrupt):
            break
        if not await handle_line(session, renderer, line):
            break

    print("\n👋 Até mais!")
    await session.drain()
    session.close()


def run():
    asyncio.run(run_chat(parse_args()))


if __name__ == "__main__":
    run()

"""
Parceiro Commands Module
========================
A few phrases are handled locally and never reach the model. Right now
that is only "clear the chat", in Portuguese or English.
"""

import asyncio
from typing import Awaitable, Callable

CLEAR_COMMANDS = ("limpar chat", "clear", "limpar")
CLEAR_ACKNOWLEDGEMENT = "Tudo limpo. Manda a boa."
CLEAR_ACK_DELAY = 0.5  # seconds between wiping the chat and confirming


def is_clear_command(text: str) -> bool:
    return text.strip().lower() in CLEAR_COMMANDS


class LocalCommandInterpreter:
    """
    Intercepts reserved phrases before the session calls the model.

    Args:
        store: ConversationStore to wipe
        storage: ParceiroStorage whose history file is removed
        add_system_message: Posts an AI-side message into the chat
        schedule: Runs a coroutine in the background (session-owned)
    """

    def __init__(self, store, storage,
                 add_system_message: Callable[[str], None],
                 schedule: Callable[[Awaitable], object],
                 ack_delay: float = CLEAR_ACK_DELAY):
        self.store = store
        self.storage = storage
        self.add_system_message = add_system_message
        self.schedule = schedule
        self.ack_delay = ack_delay

    def try_handle(self, text: str) -> bool:
        """
        Run the command if text is one.

        Returns:
            True when handled - the caller must not contact the model
        """
        if not is_clear_command(text):
            return False

        print("🧹 Clearing chat history")
        self.store.clear()
        self.storage.clear_history()
        self.schedule(self._acknowledge())
        return True

    async def _acknowledge(self):
        await asyncio.sleep(self.ack_delay)
        self.add_system_message(CLEAR_ACKNOWLEDGEMENT)

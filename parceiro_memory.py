"""
Parceiro Memory Module
======================
Wesley's long-term memory of the user: one free-text profile (likes,
favourite games, way of talking, hobbies) that gets rewritten as the
conversation goes on.

Consolidation is periodic, not per message. Every MEMORY_UPDATE_THRESHOLD
finished replies, the latest exchange is sent to the model together with
the current memory and the model returns the merged profile.

The exchange counter lives only in this process - it starts from zero on
every launch. That makes the policy "at least every N replies while the
app is open", which is all the memory needs.
"""

from typing import Optional

MEMORY_UPDATE_THRESHOLD = 5


def format_exchange(user_text: str, ai_text: str) -> str:
    """Two-line transcript of a single exchange."""
    return f"User: {user_text}\nAI: {ai_text}"


class MemoryConsolidator:
    """
    Folds recent exchanges into the persisted user memory.

    Needs a brain with update_user_memory(current, recent) and a storage
    with get_user_memory()/save_user_memory().
    """

    def __init__(self, brain, storage, threshold: int = MEMORY_UPDATE_THRESHOLD):
        self.brain = brain
        self.storage = storage
        self.threshold = threshold
        self.message_counter = 0

    async def on_exchange_complete(self, user_text: str, ai_text: str) -> bool:
        """
        Count a finished reply and consolidate when the threshold is hit.

        Never raises - a failed consolidation leaves the memory as it was.

        Returns:
            True if a consolidation request was sent this time
        """
        self.message_counter += 1
        if self.message_counter < self.threshold:
            return False

        self.message_counter = 0
        recent_context = format_exchange(user_text, ai_text)
        current_memory = self.storage.get_user_memory()

        new_memory = await self._consolidate(current_memory, recent_context)
        if new_memory is not None and new_memory != current_memory:
            try:
                self.storage.save_user_memory(new_memory)
            except OSError as e:
                print(f"⚠️  Could not save memory: {e}")
        return True

    async def _consolidate(self, current_memory: str, recent_context: str) -> Optional[str]:
        print("💭 Updating what I know about the user...")
        try:
            return await self.brain.update_user_memory(current_memory, recent_context)
        except Exception as e:
            print(f"⚠️  Memory consolidation failed: {e}")
            return None

"""
Parceiro Brain Module (google-genai SDK)
========================================
Wesley's side of the conversation, backed by Gemini through the async
google-genai client:
- A chat session carrying the persona, the hidden command contract and
  the long-term memory of the user
- Token streaming for replies (the UI renders words as they arrive)
- One-shot completions for memory consolidation and login greetings

Image generation lives in parceiro_artist.py.

Every call here is a single attempt. The stream raises on transport
errors so the session can drop the reply; the one-shot helpers swallow
failures and hand back a fallback value.
"""

import base64
import os
import re
from typing import AsyncIterator, Tuple

from dotenv import load_dotenv
from google import genai
from google.genai import types

load_dotenv()

DEFAULT_MODEL = "gemini-2.5-flash"

# Sent when the user shares a photo without saying anything
DEFAULT_IMAGE_QUESTION = "O que você acha dessa imagem? Comente como um amigo gamer."

NO_MEMORY_YET = "Ainda não nos conhecemos bem."

BASE_SYSTEM_INSTRUCTION = """
IDENTIDADE: Você é o "Wesley", um amigo virtual gamer, tech enthusiast e gente fina.

TOM DE VOZ:
- Conversa de chat (WhatsApp/Discord).
- Use gírias leves quando couber (tipo "da hora", "top", "tankar", "GG").
- Seja empático e engraçado, mas útil.
- Fale como uma pessoa real, não como um robô tentando ser humano.

REGRAS DE INTERAÇÃO:
1. VELOCIDADE: Responda de forma ágil e completa. Não enrole.
2. IMAGENS (VISÃO): Se o usuário mandar uma foto, REAJA a ela!
   - Se for um setup gamer: Elogie ou dê dicas de cable management.
   - Se for um erro de código: Tente ajudar na hora.
   - Se for aleatório: Faça uma piada ou comentário curioso.
3. GERAÇÃO DE IMAGEM:
   - Se o usuário pedir para criar uma imagem, PRIMEIRO fale sobre a ideia.
   - SÓ DEPOIS coloque o comando de geração no final da mensagem.

COMANDOS OCULTOS (Use no final da resposta se necessário):
- [[GENERATE_IMAGE: <prompt descritivo em inglês>]]
- [[GAME_CARD: {"title": "Nome", "genre": "Gênero", "platform": "Plataforma", "score": 95, "difficulty": "Hard", "playtime": "50h", "stats": {"graphics": 90, "gameplay": 100, "story": 85, "sound": 95}, "summary": "Resumo curto..."}]]
"""

_DATA_URL_PATTERN = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.*)$", re.DOTALL)


def split_data_url(data_url: str) -> Tuple[str, bytes]:
    """
    Decode a base64 data URL.

    A bare base64 string is accepted too and treated as JPEG.

    Returns:
        (mime_type, raw bytes)
    """
    match = _DATA_URL_PATTERN.match(data_url)
    if match:
        return match.group("mime"), base64.b64decode(match.group("data"))
    return "image/jpeg", base64.b64decode(data_url)


def build_system_instruction(user_memory: str = "") -> str:
    return f"""{BASE_SYSTEM_INSTRUCTION}

Memória do papo (Coisas que você já sabe sobre o usuário):
{user_memory or NO_MEMORY_YET}
"""


class ParceiroBrain:
    """
    Gemini-powered chat for Wesley.

    The chat session is created lazily from the current memory; call
    init_chat() again after the memory changes to start a fresh session.
    """

    def __init__(self,
                 api_key: str = None,
                 model_name: str = None,
                 client: genai.Client = None):
        """
        Args:
            api_key: Google API key (defaults to GOOGLE_API_KEY)
            model_name: Gemini model (defaults to PARCEIRO_MODEL or gemini-2.5-flash)
            client: Pre-built client (tests)
        """
        self.model_name = model_name or os.getenv("PARCEIRO_MODEL", DEFAULT_MODEL)

        if client is None:
            api_key = api_key or os.getenv("GOOGLE_API_KEY")
            if not api_key:
                raise ValueError(
                    "GOOGLE_API_KEY not set. "
                    "Get one from https://aistudio.google.com/apikey"
                )
            client = genai.Client(api_key=api_key)

        self.client = client
        self.chat = None
        self.current_memory = ""

    def init_chat(self, user_memory: str = ""):
        """Start a new chat session that knows the given memory."""
        self.current_memory = user_memory
        self.chat = self.client.aio.chats.create(
            model=self.model_name,
            config=types.GenerateContentConfig(
                system_instruction=build_system_instruction(user_memory),
                temperature=0.85,
                max_output_tokens=8192,
            ),
        )
        print(f"🧠 Wesley's brain ready ({self.model_name})")
        if user_memory:
            print(f"   Memory: {len(user_memory):,} characters")

    def _build_message(self, text: str, image_data_url: str = None) -> list:
        if not image_data_url:
            return [types.Part(text=text)]

        mime_type, image_bytes = split_data_url(image_data_url)
        return [
            types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
            types.Part(text=text or DEFAULT_IMAGE_QUESTION),
        ]

    async def send_message_stream(self, text: str,
                                  image_data_url: str = None) -> AsyncIterator[str]:
        """
        Send a user turn and yield the reply as it streams in.

        Empty chunks are skipped. Transport errors propagate to the caller.
        """
        if self.chat is None:
            self.init_chat(self.current_memory)

        message = self._build_message(text, image_data_url)
        stream = await self.chat.send_message_stream(message)
        async for chunk in stream:
            chunk_text = chunk.text
            if chunk_text:
                yield chunk_text

    async def _complete(self, prompt: str) -> str:
        response = await self.client.aio.models.generate_content(
            model=self.model_name,
            contents=prompt,
        )
        return (response.text or "").strip()

    async def update_user_memory(self, current_memory: str, last_messages: str) -> str:
        """
        Merge the latest exchange into the memory.

        Returns:
            The consolidated memory, or current_memory if anything fails
        """
        prompt = f"""
Aja como um "Profiler". Analise esse trecho de conversa e atualize o perfil do usuário.
Foque em: Gostos, Jogos favoritos, Estilo de fala, Hobbies.

Memória Atual: "{current_memory}"
Novo Trecho: "{last_messages}"

Retorne apenas a nova memória consolidada.
"""
        try:
            new_memory = await self._complete(prompt)
        except Exception as e:
            print(f"⚠️  Gemini error (memory): {e}")
            return current_memory
        return new_memory or current_memory

    async def generate_greeting(self, user_name: str, user_memory: str) -> str:
        """One short, friendly greeting for a user who just logged in."""
        prompt = f"""
O usuário "{user_name}" acabou de logar.
Memória que temos dele: "{user_memory}".

Gere uma saudação curta (1 frase) e muito natural, tipo amigo mandando mensagem.
Se souber algo dele (ex: joga lol), mencione sutilmente.
"""
        try:
            greeting = await self._complete(prompt)
        except Exception as e:
            print(f"⚠️  Gemini error (greeting): {e}")
            greeting = ""
        return greeting or fallback_greeting(user_name)


def fallback_greeting(user_name: str) -> str:
    return f"Fala {user_name}, beleza? Bora pro chat!"

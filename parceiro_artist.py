"""
Parceiro Artist Module
======================
Lets Wesley turn a [[GENERATE_IMAGE: ...]] request into an actual picture.

Uses Imagen through the google-genai SDK. Images travel through the app as
base64 data URLs (the same shape the chat history stores), and can be
saved to the art folder when the user has media autosave turned on.
"""

import base64
import mimetypes
import os
from io import BytesIO
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from google import genai
from google.genai import types
from PIL import Image

from parceiro_brain import split_data_url

load_dotenv()

DEFAULT_IMAGE_MODEL = "imagen-4.0-generate-001"


def bytes_to_data_url(image_bytes: bytes, mime_type: str = "image/jpeg") -> str:
    encoded = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def file_to_data_url(path: str) -> str:
    """Read an image file into a data URL (for attaching photos to a message)."""
    file_path = Path(path)
    mime_type = mimetypes.guess_type(file_path.name)[0] or "image/jpeg"
    return bytes_to_data_url(file_path.read_bytes(), mime_type)


class ParceiroArtist:
    """
    Image generation plus local saving of the results.
    """

    def __init__(self,
                 output_dir: str = None,
                 api_key: str = None,
                 model: str = None,
                 client: genai.Client = None):
        """
        Args:
            output_dir: Where autosaved images go (PARCEIRO_ART_DIR, default parceiro_art)
            api_key: Google API key (defaults to GOOGLE_API_KEY)
            model: Imagen model (PARCEIRO_IMAGE_MODEL)
            client: Pre-built client (tests)
        """
        if client is None:
            api_key = api_key or os.getenv("GOOGLE_API_KEY")
            if not api_key:
                raise ValueError("GOOGLE_API_KEY not set")
            client = genai.Client(api_key=api_key)

        self.client = client
        self.model = model or os.getenv("PARCEIRO_IMAGE_MODEL", DEFAULT_IMAGE_MODEL)
        self.output_dir = Path(output_dir or os.getenv("PARCEIRO_ART_DIR", "parceiro_art"))

    async def generate_image(self, prompt: str) -> Optional[str]:
        """
        Generate one square JPEG for the prompt.

        Returns:
            The image as a data URL, or None if generation failed
        """
        print("🎨 Generating image")
        print(f"   Prompt: \"{prompt[:60]}{'...' if len(prompt) > 60 else ''}\"")

        try:
            response = await self.client.aio.models.generate_images(
                model=self.model,
                prompt=prompt,
                config=types.GenerateImagesConfig(
                    number_of_images=1,
                    output_mime_type="image/jpeg",
                    aspect_ratio="1:1",
                ),
            )
        except Exception as e:
            print(f"   ❌ Image generation failed: {e}")
            return None

        generated = response.generated_images or []
        if not generated or generated[0].image is None or not generated[0].image.image_bytes:
            print("   ⚠️ No image data in response")
            return None

        print("   ✅ Image ready")
        return bytes_to_data_url(generated[0].image.image_bytes, "image/jpeg")

    def save_image(self, data_url: str, filename: str) -> Optional[Path]:
        """
        Write a data-URL image into the art folder.

        Returns:
            Path of the saved file, or None if it couldn't be written
        """
        try:
            _, image_bytes = split_data_url(data_url)
            image = Image.open(BytesIO(image_bytes))
            if image.mode not in ("RGB", "L"):
                image = image.convert("RGB")

            self.output_dir.mkdir(parents=True, exist_ok=True)
            filepath = self.output_dir / filename
            image.save(str(filepath), format="JPEG")
        except Exception as e:
            print(f"   ⚠️ Could not save image: {e}")
            return None

        print(f"   💾 Image saved: {filepath}")
        return filepath

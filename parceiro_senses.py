"""
Parceiro Senses Module
======================
Wesley's ears: record one utterance from the microphone and turn it into
text with Google Speech Recognition (Brazilian Portuguese).

Recording stops after a stretch of silence following speech, so the user
just talks and pauses - no push-to-talk.
"""

import asyncio
import time
from typing import Optional

import numpy as np
import speech_recognition as sr

LANGUAGE = "pt-BR"


class ListenError(Exception):
    """Nothing usable came out of the microphone."""


class SpeechUnavailableError(ListenError):
    """No microphone / audio backend on this machine."""


class ParceiroEars:
    """
    Single-utterance speech-to-text.

    listen() rejects (raises ListenError) instead of returning an empty
    string, so callers can simply ignore a failed attempt.
    """

    def __init__(self,
                 device_index: int = None,
                 sample_rate: int = 16000,
                 threshold: float = 0.015,
                 silence_duration: float = 1.5,
                 max_duration: float = 30.0,
                 no_speech_timeout: float = 8.0):
        """
        Args:
            device_index: Which microphone to use (None = default)
            sample_rate: Audio sample rate in Hz
            threshold: RMS level that counts as speech
            silence_duration: Silence after speech that ends the utterance
            max_duration: Hard cap on a recording
            no_speech_timeout: Give up if nobody starts talking by then
        """
        self.device_index = device_index
        self.sample_rate = sample_rate
        self.threshold = threshold
        self.silence_duration = silence_duration
        self.max_duration = max_duration
        self.no_speech_timeout = no_speech_timeout

        self.is_listening = False
        self._recognizer = sr.Recognizer()

    async def listen(self) -> str:
        """Record one utterance and return its transcript."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._listen_blocking)

    def _listen_blocking(self) -> str:
        self.is_listening = True
        try:
            audio = self._record_until_silence()
        finally:
            self.is_listening = False

        if audio is None:
            raise ListenError("no speech detected")
        return self._transcribe(audio)

    def _record_until_silence(self) -> Optional[np.ndarray]:
        try:
            import sounddevice as sd
        except OSError as e:
            # PortAudio missing
            raise SpeechUnavailableError(f"audio backend unavailable: {e}") from e

        print("🎙️  Listening...")
        block_size = int(self.sample_rate * 0.1)  # 100ms blocks
        frames = []
        speech_started = False
        silence_start = None
        start_time = time.time()

        try:
            with sd.InputStream(samplerate=self.sample_rate,
                                channels=1,
                                dtype="float32",
                                device=self.device_index) as stream:
                while (time.time() - start_time) < self.max_duration:
                    chunk, _ = stream.read(block_size)
                    chunk = chunk[:, 0].copy()
                    frames.append(chunk)

                    rms = float(np.sqrt(np.mean(chunk ** 2)))
                    now = time.time()
                    if rms > self.threshold:
                        speech_started = True
                        silence_start = None
                    elif speech_started:
                        if silence_start is None:
                            silence_start = now
                        if now - silence_start > self.silence_duration:
                            break
                    elif now - start_time > self.no_speech_timeout:
                        break
        except sd.PortAudioError as e:
            raise SpeechUnavailableError(f"could not open microphone: {e}") from e

        if not speech_started or not frames:
            return None

        audio = np.concatenate(frames)
        print(f"🎙️  Captured {len(audio) / self.sample_rate:.1f} seconds")
        return audio

    def _transcribe(self, audio: np.ndarray) -> str:
        audio_int16 = (np.clip(audio, -1.0, 1.0) * 32767).astype(np.int16)
        audio_data = sr.AudioData(audio_int16.tobytes(), self.sample_rate, 2)

        try:
            text = self._recognizer.recognize_google(audio_data, language=LANGUAGE)
        except sr.UnknownValueError as e:
            print("   (Speech not understood)")
            raise ListenError("speech not understood") from e
        except sr.RequestError as e:
            print(f"⚠️  Transcription error: {e}")
            raise ListenError(str(e)) from e

        print(f"👂 Heard: \"{text[:60]}{'...' if len(text) > 60 else ''}\"")
        return text

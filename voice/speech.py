"""
Speech Service — voice note transcription and text-to-speech.

Both directions go through the OpenAI audio API:
- transcribe: Whisper, fed the raw bytes WhatsApp hands us (usually OGG/Opus)
- synthesize: TTS rendered to a temporary file that the caller sends and
  then removes with `cleanup`
"""
from __future__ import annotations

import uuid
import structlog
from pathlib import Path
from typing import Optional

from config.settings import SpeechConfig, get_settings

logger = structlog.get_logger()


class SpeechError(Exception):
    """Transcription or synthesis failed or is unavailable."""


# WhatsApp voice notes arrive as e.g. "audio/ogg; codecs=opus"
MIME_EXTENSIONS: dict[str, str] = {
    "audio/ogg": "ogg",
    "audio/opus": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/mp4": "m4a",
    "audio/aac": "m4a",
    "audio/amr": "amr",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/webm": "webm",
}


def extension_for(mime_type: str) -> str:
    base = (mime_type or "").split(";")[0].strip().lower()
    return MIME_EXTENSIONS.get(base, "ogg")


class SpeechService:
    def __init__(self, config: SpeechConfig = None):
        self.config = config or get_settings().speech
        self._client = None

    @property
    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    @property
    def is_tts_available(self) -> bool:
        return self.config.tts_enabled and self.is_configured

    async def _get_client(self):
        if self._client is None:
            if not self.is_configured:
                raise SpeechError("Speech API key not configured")
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.config.api_key)
            logger.info("speech_client_initialized",
                        transcription_model=self.config.transcription_model,
                        tts_model=self.config.tts_model)
        return self._client

    async def transcribe(self, audio_bytes: bytes, mime_type: str) -> str:
        if not audio_bytes:
            raise SpeechError("Empty audio payload")
        client = await self._get_client()
        filename = f"voice.{extension_for(mime_type)}"
        try:
            result = await client.audio.transcriptions.create(
                model=self.config.transcription_model,
                file=(filename, audio_bytes, (mime_type or "audio/ogg").split(";")[0]),
                language=self.config.language or None,
            )
        except Exception as e:
            logger.error("transcription_failed", mime_type=mime_type, error=str(e))
            raise SpeechError(f"Transcription failed: {e}") from e

        text = (getattr(result, "text", "") or "").strip()
        logger.info("audio_transcribed", chars=len(text), mime_type=mime_type)
        return text

    async def synthesize(self, text: str, voice: Optional[str] = None) -> str:
        """Render `text` to an mp3 file and return its path."""
        if not self.is_tts_available:
            raise SpeechError("Text-to-speech is not available")
        client = await self._get_client()

        temp_dir = Path(self.config.temp_dir)
        temp_dir.mkdir(parents=True, exist_ok=True)
        path = temp_dir / f"tts_{uuid.uuid4().hex[:12]}.mp3"

        try:
            response = await client.audio.speech.create(
                model=self.config.tts_model,
                voice=voice or self.config.default_voice,
                input=text,
                response_format="mp3",
            )
            path.write_bytes(response.content)
        except Exception as e:
            logger.error("speech_synthesis_failed", error=str(e))
            self.cleanup(str(path))
            raise SpeechError(f"Synthesis failed: {e}") from e

        logger.info("speech_synthesized", path=str(path), chars=len(text))
        return str(path)

    def cleanup(self, audio_path: str):
        try:
            Path(audio_path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("audio_cleanup_failed", path=audio_path, error=str(e))

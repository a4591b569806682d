"""
Voice — speech services for WhatsApp voice notes.

Modules:
- speech: transcription of inbound voice notes and text-to-speech replies
"""
from voice.speech import SpeechError, SpeechService, extension_for

__all__ = ["SpeechError", "SpeechService", "extension_for"]

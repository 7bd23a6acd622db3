"""
Google Meet recording bot.

This package provides:
- Headless browser join flow with admission detection
- Presence and silence based auto-termination
- Session recording streamed to an uploader in chunks
- Optional voice participation (speech synthesis into the outbound
  microphone path, transcription of remote audio, LLM responses)
"""

__version__ = "0.1.0"

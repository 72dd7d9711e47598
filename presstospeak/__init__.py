"""PressToSpeak voice-to-text proxy API."""

__version__ = "0.1.0"

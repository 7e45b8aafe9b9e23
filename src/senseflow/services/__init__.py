"""Orchestration services."""
from .processor import MaterialProcessor, VoiceSettings

__all__ = ["MaterialProcessor", "VoiceSettings"]

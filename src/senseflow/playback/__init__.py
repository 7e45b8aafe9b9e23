"""
Playback.

    - engine.py: PlaybackEngine state machine, noise generation
    - scheduler.py: LoopScheduler / VirtualScheduler
    - mixdown.py: MixdownSink for offline rendering
"""
from .engine import PlaybackEngine, PlaybackState, Sink, Voice, noise_buffer
from .mixdown import MixdownSink, MixdownVoice, render_material
from .scheduler import LoopScheduler, Scheduler, TimerHandle, VirtualScheduler

__all__ = [
    "PlaybackEngine",
    "PlaybackState",
    "Sink",
    "Voice",
    "noise_buffer",
    "MixdownSink",
    "MixdownVoice",
    "render_material",
    "LoopScheduler",
    "Scheduler",
    "TimerHandle",
    "VirtualScheduler",
]

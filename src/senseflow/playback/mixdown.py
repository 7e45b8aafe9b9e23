"""
Offline Sink that records every voice on a timeline and mixes it down.

Paired with VirtualScheduler it turns a whole playback session (chunks,
gap beeps, looping noise) into one AudioBuffer, which ``senseflow render``
writes to disk.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from senseflow.core.config import Defaults
from senseflow.core.logging import get_logger, info, verbose
from senseflow.models import Material
from senseflow.playback.engine import PlaybackEngine
from senseflow.playback.scheduler import Scheduler, TimerHandle, VirtualScheduler
from senseflow.utils.audio import AudioBuffer

_LOG = get_logger("senseflow.mixdown")


def _conform(buffer: AudioBuffer, sample_rate: int, channels: int, rate: float) -> np.ndarray:
    """Resample ``buffer`` to the sink's rate and channel layout, applying a playback-rate change."""
    samples = buffer.samples
    if buffer.channels != channels:
        mono = samples.mean(axis=1, keepdims=True)
        samples = np.repeat(mono, channels, axis=1)

    step = (buffer.sample_rate * rate) / sample_rate
    if abs(step - 1.0) < 1e-9 or buffer.frames == 0:
        return samples
    out_frames = max(1, int(round(buffer.frames / step)))
    src = np.arange(out_frames, dtype=np.float64) * step
    idx = np.arange(buffer.frames, dtype=np.float64)
    return np.stack([np.interp(src, idx, samples[:, c]) for c in range(channels)], axis=1).astype(np.float32)


@dataclass
class MixdownVoice:
    channel: str
    samples: np.ndarray
    start_time: float
    loop: bool = False
    stop_time: Optional[float] = None
    on_ended: Optional[Callable[[], None]] = None
    _sink: Optional["MixdownSink"] = field(default=None, repr=False)
    _end_timer: Optional[TimerHandle] = field(default=None, repr=False)

    @property
    def ended(self) -> bool:
        return self.stop_time is not None

    def stop(self) -> None:
        if self.stop_time is not None:
            return
        self.stop_time = self._sink.scheduler.now() if self._sink else self.start_time
        if self._end_timer is not None:
            self._end_timer.cancel()
            self._end_timer = None

    def _natural_end(self) -> None:
        self._end_timer = None
        if self.stop_time is not None:
            return
        self.stop_time = self._sink.scheduler.now() if self._sink else self.start_time
        if self.on_ended is not None:
            self.on_ended()


class MixdownSink:
    """
    Sink rendering to memory.

    Gain changes are recorded with their time and applied piecewise per
    channel during ``render()``.
    """

    def __init__(self, scheduler: Scheduler, sample_rate: int = 22050, channels: int = 1):
        self.scheduler = scheduler
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.suspended = True
        self.voices: List[MixdownVoice] = []
        self._gains: Dict[str, List[Tuple[float, float]]] = {}

    async def resume(self) -> None:
        self.suspended = False

    def start(self, buffer: AudioBuffer, channel: str = "voice", rate: float = 1.0, loop: bool = False) -> MixdownVoice:
        samples = _conform(buffer, self.sample_rate, self.channels, rate)
        voice = MixdownVoice(channel=channel, samples=samples, start_time=self.scheduler.now(),
                             loop=loop, _sink=self)
        if not loop:
            voice._end_timer = self.scheduler.call_later(len(samples) / self.sample_rate, voice._natural_end)
        self.voices.append(voice)
        verbose(_LOG, "voice_start", channel=channel, at=round(voice.start_time, 3),
                frames=len(samples), loop=loop)
        return voice

    def set_gain(self, channel: str, value: float) -> None:
        self._gains.setdefault(channel, []).append((self.scheduler.now(), float(value)))

    def gain_at(self, channel: str, time: float) -> float:
        value = 1.0
        for at, gain in self._gains.get(channel, []):
            if at <= time:
                value = gain
        return value

    def _gain_curve(self, channel: str, first_frame: int, frames: int) -> np.ndarray:
        curve = np.ones(frames, dtype=np.float32)
        for at, gain in self._gains.get(channel, []):
            offset = int(round(at * self.sample_rate)) - first_frame
            curve[max(0, offset):] = gain
        return curve

    def render(self, end_time: Optional[float] = None) -> AudioBuffer:
        """
        Mix all recorded voices.

        Looping voices that were never stopped run until ``end_time``
        (default: the later of the scheduler clock and the last finite voice).
        """
        if end_time is None:
            finite = [v.start_time + len(v.samples) / self.sample_rate for v in self.voices if not v.loop]
            end_time = max([self.scheduler.now()] + finite)

        total = int(round(end_time * self.sample_rate))
        mix = np.zeros((total, self.channels), dtype=np.float32)

        for voice in self.voices:
            first = int(round(voice.start_time * self.sample_rate))
            stop = voice.stop_time if voice.stop_time is not None else end_time
            last = min(total, int(round(stop * self.sample_rate)))
            if not voice.loop:
                last = min(last, first + len(voice.samples))
            frames = last - first
            if frames <= 0 or len(voice.samples) == 0:
                continue
            if voice.loop:
                reps = -(-frames // len(voice.samples))
                clip = np.tile(voice.samples, (reps, 1))[:frames]
            else:
                clip = voice.samples[:frames]
            mix[first:last] += clip * self._gain_curve(voice.channel, first, frames)[:, None]

        np.clip(mix, -1.0, 1.0, out=mix)
        return AudioBuffer(mix, self.sample_rate)


async def render_material(
    material: Material,
    gap_seconds: float = Defaults.PLAYBACK_GAP_SECONDS,
    gap_sound: str = Defaults.PLAYBACK_GAP_SOUND,
    playback_rate: float = Defaults.PLAYBACK_RATE,
    noise_type: str = Defaults.PLAYBACK_NOISE_TYPE,
    noise_volume: float = Defaults.PLAYBACK_NOISE_VOLUME,
    custom_noise: Optional[str] = None,
    sample_rate: int = Defaults.PLAYBACK_SAMPLE_RATE,
    start_index: int = 0,
    **engine_kwargs,
) -> AudioBuffer:
    """
    Play ``material`` on virtual time and return the mixed session.

    Extra keyword arguments go to PlaybackEngine (synthesizer, hot_cache,
    speaker...), so chunks without pre-rendered audio can still be rendered.
    """
    scheduler = VirtualScheduler()
    sink = MixdownSink(scheduler, sample_rate)
    engine = PlaybackEngine(sink, scheduler, **engine_kwargs)
    if noise_volume > 0:
        engine.start_noise(noise_volume, noise_type, custom_noise)

    task = asyncio.ensure_future(engine.play_material(
        material,
        start_index=start_index,
        gap_seconds=gap_seconds,
        gap_sound=gap_sound,
        playback_rate=playback_rate,
    ))
    # Timers only exist while a chunk is playing or in its gap; with none
    # pending the task is loading audio and the clock must not move.
    while not task.done():
        if scheduler.pending:
            await asyncio.sleep(0)
            if not task.done():
                scheduler.step()
        else:
            await asyncio.sleep(0.001)
    await task

    engine.stop_noise()
    out = sink.render()
    info(_LOG, "rendered", material=material.id, seconds=round(out.duration, 3), voices=len(sink.voices))
    return out

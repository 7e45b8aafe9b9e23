"""
Chunk playback state machine.

    IDLE -> LOADING -> PLAYING -> GAP -> COMPLETE

One chunk plays at a time on the ``voice`` channel of a Sink; background
noise loops independently on the ``noise`` channel; the gap beep plays on
``cue``. All timing (progress polling, gap waits) runs through an injected
Scheduler, so the same engine drives live output and offline mixdown.
"""
from __future__ import annotations

import asyncio
import enum
from typing import Callable, Optional, Protocol

import numpy as np

from senseflow.core.config import Defaults
from senseflow.core.errors import AudioDecodeError, CacheIOError, PlaybackError
from senseflow.core.logging import debug, get_logger, info, verbose, warn
from senseflow.models import Chunk, Material
from senseflow.playback.scheduler import Scheduler, TimerHandle
from senseflow.storage.cache import CacheStore, HotAudioCache
from senseflow.utils.audio import AudioBuffer, b64decode_audio, decode_audio, tone

_LOG = get_logger("senseflow.playback")

PROGRESS_INTERVAL_S = 0.1
BEEP_FREQUENCY = 800.0
BEEP_SECONDS = 0.1
NOISE_SECONDS = 10.0
NOISE_INTENSITY = 0.3

VOICE = "voice"
NOISE = "noise"
CUE = "cue"

ProgressCallback = Callable[[float], None]
CompleteCallback = Callable[[], None]


class PlaybackState(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    GAP = "gap"
    COMPLETE = "complete"


class Voice(Protocol):
    on_ended: Optional[Callable[[], None]]

    def stop(self) -> None: ...


class Sink(Protocol):
    sample_rate: int
    suspended: bool

    async def resume(self) -> None: ...

    def start(self, buffer: AudioBuffer, channel: str = VOICE, rate: float = 1.0, loop: bool = False) -> Voice: ...

    def set_gain(self, channel: str, value: float) -> None: ...


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def noise_buffer(
    noise_type: str,
    sample_rate: int,
    seconds: float = NOISE_SECONDS,
    intensity: float = NOISE_INTENSITY,
    rng: Optional[np.random.Generator] = None,
) -> AudioBuffer:
    """
    Generate a mono noise bed.

    white:    uniform in [-intensity/2, intensity/2]
    gaussian: Box-Muller normal scaled by intensity
    """
    rng = rng or np.random.default_rng()
    frames = max(1, int(round(seconds * sample_rate)))
    if noise_type == "gaussian":
        u1 = 1.0 - rng.random(frames)  # (0, 1], keeps log finite
        u2 = rng.random(frames)
        samples = np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2) * intensity
    else:
        samples = (rng.random(frames) - 0.5) * intensity
    return AudioBuffer(samples.astype(np.float32), sample_rate)


class PlaybackEngine:
    """
    Plays chunks through a Sink with progress, gaps and background noise.

    Args:
        sink: Output device (or MixdownSink for offline rendering).
        scheduler: Clock and timers.
        synthesizer: Optional SpeechSynthesizer for chunks without audio.
        hot_cache: In-memory cache of decoded on-demand clips.
        cache: Optional persistent CacheStore consulted before synthesizing.
        speaker, speed, language, mode: Voice used for on-demand synthesis.
    """

    def __init__(
        self,
        sink: Sink,
        scheduler: Scheduler,
        synthesizer=None,
        hot_cache: Optional[HotAudioCache] = None,
        cache: Optional[CacheStore] = None,
        speaker: str = Defaults.SYNTH_SPEAKER,
        speed: float = Defaults.SYNTH_SPEED,
        language: str = Defaults.SYNTH_LANGUAGE,
        mode: str = Defaults.SYNTH_MODE,
        rng: Optional[np.random.Generator] = None,
    ):
        self.sink = sink
        self.scheduler = scheduler
        self.synthesizer = synthesizer
        self.hot_cache = hot_cache if hot_cache is not None else HotAudioCache()
        self.cache = cache
        self.speaker = speaker
        self.speed = speed
        self.language = language
        self.mode = mode
        self._rng = rng or np.random.default_rng()

        self.state = PlaybackState.IDLE
        self._token = 0
        self._voice: Optional[Voice] = None
        self._noise: Optional[Voice] = None
        self._poll: Optional[TimerHandle] = None
        self._gap: Optional[TimerHandle] = None
        self._pending: Optional[asyncio.Future] = None
        self._chunk_done: Optional[asyncio.Event] = None

    @property
    def noise_running(self) -> bool:
        return self._noise is not None

    # ─────────────────────────────────────────────────────────────────────────
    # Chunk playback
    # ─────────────────────────────────────────────────────────────────────────

    async def play_chunk(
        self,
        chunk: Chunk,
        on_progress: Optional[ProgressCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
        gap_seconds: float = 0.0,
        gap_sound: str = Defaults.PLAYBACK_GAP_SOUND,
        playback_rate: float = Defaults.PLAYBACK_RATE,
    ) -> None:
        """
        Start playing ``chunk``. Returns once audio has started;
        ``on_complete`` fires after the clip and its gap.

        Raises:
            PlaybackError: The chunk has no playable audio and no synthesizer is set.
            SynthesisError / AudioDecodeError: On-demand synthesis failed.
        """
        self._halt_voice()
        token = self._token
        self.state = PlaybackState.LOADING

        if self.sink.suspended:
            await self.sink.resume()
            if token != self._token:
                return

        buffer = self._decode_prerendered(chunk)
        if buffer is None:
            self._pending = asyncio.ensure_future(self._load_on_demand(chunk))
            try:
                buffer = await self._pending
            except asyncio.CancelledError:
                if token != self._token:
                    debug(_LOG, "synthesis_cancelled", chunk=chunk.id)
                    return
                raise
            except Exception:
                if token == self._token:
                    self.state = PlaybackState.IDLE
                raise
            finally:
                self._pending = None
            if token != self._token:
                return

        self._start_voice(chunk, buffer, on_progress, on_complete, gap_seconds, gap_sound, playback_rate)

    def _decode_prerendered(self, chunk: Chunk) -> Optional[AudioBuffer]:
        if not chunk.audio_data:
            return None
        try:
            return decode_audio(b64decode_audio(chunk.audio_data))
        except AudioDecodeError as e:
            warn(_LOG, "prerendered_decode_failed", chunk=chunk.id, error=e.message)
            return None

    async def _load_on_demand(self, chunk: Chunk) -> AudioBuffer:
        if self.synthesizer is None:
            raise PlaybackError("chunk has no audio and no synthesizer is configured", {"chunk": chunk.id})

        key = CacheStore.audio_key(chunk.text, self.speaker, self.mode, self.speed)
        buffer = self.hot_cache.get(key)
        if buffer is not None:
            verbose(_LOG, "hot_hit", chunk=chunk.id)
            return buffer

        data = None
        if self.cache is not None:
            try:
                data = await self.cache.get_chunk_audio(chunk.id, chunk.text)
                if data is None:
                    data = await self.cache.get_audio(key)
            except CacheIOError as e:
                warn(_LOG, "cache_read_failed", chunk=chunk.id, error=e.message)

        if data is None:
            result = await self.synthesizer.synthesize(chunk.text, self.speaker, self.speed, self.language)
            data = result.audio
            if self.cache is not None:
                try:
                    await self.cache.put_audio(chunk.text, data, self.speaker, self.mode, self.speed)
                except CacheIOError as e:
                    warn(_LOG, "cache_write_failed", chunk=chunk.id, error=e.message)

        buffer = decode_audio(data)
        self.hot_cache.set(key, buffer)
        return buffer

    def _start_voice(
        self,
        chunk: Chunk,
        buffer: AudioBuffer,
        on_progress: Optional[ProgressCallback],
        on_complete: Optional[CompleteCallback],
        gap_seconds: float,
        gap_sound: str,
        rate: float,
    ) -> None:
        started = self.scheduler.now()
        duration = buffer.duration

        def poll() -> None:
            position = min((self.scheduler.now() - started) * rate, duration)
            if on_progress is not None:
                on_progress(position)
            self._poll = self.scheduler.call_later(PROGRESS_INTERVAL_S, poll)

        def finish() -> None:
            self._gap = None
            self.state = PlaybackState.COMPLETE
            if on_complete is not None:
                on_complete()

        def ended() -> None:
            self._voice = None
            self._cancel_timers()
            if gap_seconds > 0:
                self.state = PlaybackState.GAP
                if gap_sound == "beep":
                    self.sink.start(tone(BEEP_FREQUENCY, BEEP_SECONDS, self.sink.sample_rate), channel=CUE)
                self._gap = self.scheduler.call_later(gap_seconds, finish)
            else:
                finish()

        voice = self.sink.start(buffer, channel=VOICE, rate=rate)
        voice.on_ended = ended
        self._voice = voice
        self.state = PlaybackState.PLAYING
        self._poll = self.scheduler.call_later(PROGRESS_INTERVAL_S, poll)
        verbose(_LOG, "play", chunk=chunk.id, duration=round(duration, 3), rate=rate, gap=gap_seconds)

    # ─────────────────────────────────────────────────────────────────────────
    # Sequential playback
    # ─────────────────────────────────────────────────────────────────────────

    async def play_material(
        self,
        material: Material,
        start_index: int = 0,
        gap_seconds: float = Defaults.PLAYBACK_GAP_SECONDS,
        gap_sound: str = Defaults.PLAYBACK_GAP_SOUND,
        playback_rate: float = Defaults.PLAYBACK_RATE,
        on_chunk_start: Optional[Callable[[int, Chunk], None]] = None,
        on_progress: Optional[Callable[[int, float], None]] = None,
    ) -> int:
        """
        Play chunks from ``start_index`` to the end, one after another.

        Returns the number of chunks that completed. ``stop()`` ends the run
        early.
        """
        token = self._token
        played = 0
        try:
            for index in range(max(0, start_index), len(material.chunks)):
                if token != self._token:
                    break
                chunk = material.chunks[index]
                done = asyncio.Event()
                self._chunk_done = done
                if on_chunk_start is not None:
                    on_chunk_start(index, chunk)
                    if token != self._token:
                        break

                progress = None
                if on_progress is not None:
                    progress = lambda t, i=index: on_progress(i, t)

                await self.play_chunk(chunk, on_progress=progress, on_complete=done.set,
                                      gap_seconds=gap_seconds, gap_sound=gap_sound,
                                      playback_rate=playback_rate)
                if token != self._token:
                    break
                await done.wait()
                if token != self._token:
                    break
                played += 1
        finally:
            self._chunk_done = None
        info(_LOG, "material_played", material=material.id, chunks=played, total=len(material.chunks))
        return played

    # ─────────────────────────────────────────────────────────────────────────
    # Noise and gains
    # ─────────────────────────────────────────────────────────────────────────

    def start_noise(
        self,
        volume: float = Defaults.PLAYBACK_NOISE_VOLUME,
        noise_type: str = Defaults.PLAYBACK_NOISE_TYPE,
        custom_data: Optional[str] = None,
    ) -> None:
        if self._noise is not None:
            return

        buffer = None
        if noise_type == "custom" and custom_data:
            try:
                buffer = decode_audio(b64decode_audio(custom_data))
            except AudioDecodeError as e:
                warn(_LOG, "custom_noise_failed", error=e.message)
        if buffer is None:
            kind = noise_type if noise_type in ("white", "gaussian") else "white"
            buffer = noise_buffer(kind, self.sink.sample_rate, rng=self._rng)

        self.sink.set_gain(NOISE, _clamp01(volume))
        self._noise = self.sink.start(buffer, channel=NOISE, loop=True)
        verbose(_LOG, "noise_started", type=noise_type, volume=_clamp01(volume))

    def stop_noise(self) -> None:
        if self._noise is None:
            return
        noise, self._noise = self._noise, None
        noise.stop()
        verbose(_LOG, "noise_stopped")

    def set_voice_volume(self, volume: float) -> None:
        self.sink.set_gain(VOICE, float(volume))

    def set_noise_volume(self, volume: float) -> None:
        self.sink.set_gain(NOISE, _clamp01(volume))

    # ─────────────────────────────────────────────────────────────────────────
    # Stop
    # ─────────────────────────────────────────────────────────────────────────

    def stop(self) -> None:
        """Halt everything: voice, timers, pending synthesis and noise."""
        idle = (self.state != PlaybackState.LOADING
                and self._voice is None and self._noise is None and self._poll is None
                and self._gap is None and self._pending is None and self._chunk_done is None)
        if idle:
            return

        self._token += 1
        self._halt_voice()
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        if self._chunk_done is not None:
            self._chunk_done.set()
        self.stop_noise()
        self.state = PlaybackState.IDLE
        debug(_LOG, "stopped")

    def _halt_voice(self) -> None:
        self._cancel_timers()
        if self._gap is not None:
            self._gap.cancel()
            self._gap = None
        if self._voice is not None:
            voice, self._voice = self._voice, None
            voice.on_ended = None
            voice.stop()

    def _cancel_timers(self) -> None:
        if self._poll is not None:
            self._poll.cancel()
            self._poll = None

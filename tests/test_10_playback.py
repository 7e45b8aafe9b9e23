"""
Tests for the playback engine, schedulers and offline mixdown.

Tests cover:
- VirtualScheduler ordering, cancellation and nested timers
- Chunk lifecycle: progress polling, gap (with/without beep), completion
- Progress clamped to the clip duration
- stop(): cancels timers and callbacks; no-op when idle
- On-demand audio: PlaybackError, decode fallback, hot and persistent caches
- Background noise: clamped gain, single instance, generators, custom fallback
- play_material sequencing and early stop
- render_material session length
"""
import asyncio

import numpy as np
import pytest

from senseflow.clients import SynthesisResult
from senseflow.core.errors import PlaybackError
from senseflow.models import Chunk, Material
from senseflow.playback import (
    LoopScheduler,
    MixdownSink,
    PlaybackEngine,
    PlaybackState,
    VirtualScheduler,
    noise_buffer,
    render_material,
)
from senseflow.storage import CacheStore, MemoryKVStore
from senseflow.utils.audio import AudioBuffer, b64encode_audio, encode_wav

SR = 1000


def _wav(seconds, value=0.5):
    return encode_wav(AudioBuffer(np.full(int(round(seconds * SR)), value, dtype=np.float32), SR))


def _chunk(cid="c0", seconds=0.35, audio=True, text="Hello."):
    return Chunk(cid, text, 0.0, seconds, audio_data=b64encode_audio(_wav(seconds)) if audio else None)


def _engine(**kwargs):
    scheduler = VirtualScheduler()
    sink = MixdownSink(scheduler, sample_rate=SR)
    return PlaybackEngine(sink, scheduler, **kwargs), sink, scheduler


async def _drive(scheduler, task):
    while not task.done():
        if scheduler.pending:
            await asyncio.sleep(0)
            if not task.done():
                scheduler.step()
        else:
            await asyncio.sleep(0.001)
    return await task


class FakeSynth:
    def __init__(self, seconds=0.2):
        self.seconds = seconds
        self.calls = []

    async def synthesize(self, text, speaker, speed=1.0, language="en"):
        self.calls.append(text)
        return SynthesisResult(audio=_wav(self.seconds))

    async def list_speakers(self):
        return ["en_f"]


class FakeVoice:
    def __init__(self):
        self.on_ended = None
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeSink:
    """Sink whose voices never end on their own."""

    def __init__(self):
        self.sample_rate = SR
        self.suspended = False
        self.started = []
        self.gains = []

    async def resume(self):
        self.suspended = False

    def start(self, buffer, channel="voice", rate=1.0, loop=False):
        voice = FakeVoice()
        self.started.append((channel, voice))
        return voice

    def set_gain(self, channel, value):
        self.gains.append((channel, value))


class TestVirtualScheduler:
    """Tests for VirtualScheduler."""

    def test_same_instant_fires_in_order(self):
        """Timers due together fire in scheduling order."""
        sched = VirtualScheduler()
        fired = []
        sched.call_later(1.0, lambda: fired.append("a"))
        sched.call_later(1.0, lambda: fired.append("b"))
        sched.call_later(0.5, lambda: fired.append("c"))
        sched.advance(1.0)
        assert fired == ["c", "a", "b"]
        assert sched.now() == 1.0

    def test_cancelled_timer_skipped(self):
        """Cancelled timers never fire and are not counted."""
        sched = VirtualScheduler()
        fired = []
        handle = sched.call_later(0.1, lambda: fired.append(1))
        handle.cancel()
        assert sched.pending == 0
        assert sched.step() is False
        assert fired == []

    def test_nested_timers_within_window(self):
        """A callback's own timer fires in the same advance() if due."""
        sched = VirtualScheduler()
        fired = []

        def first():
            fired.append(sched.now())
            sched.call_later(0.2, lambda: fired.append(sched.now()))

        sched.call_later(0.3, first)
        sched.advance(1.0)
        assert fired == [pytest.approx(0.3), pytest.approx(0.5)]

    def test_run_until_idle_respects_limit(self):
        """A self-rescheduling timer stops at the limit."""
        sched = VirtualScheduler()
        ticks = []

        def tick():
            ticks.append(1)
            sched.call_later(1.0, tick)

        sched.call_later(1.0, tick)
        sched.run_until_idle(limit=5.0)
        assert len(ticks) == 5


class TestPlayChunk:
    """Tests for PlaybackEngine.play_chunk()."""

    def test_progress_then_complete(self):
        """Progress ticks every 0.1s; completion fires when the clip ends."""
        engine, sink, sched = _engine()
        progress, completed = [], []

        async def run():
            await engine.play_chunk(_chunk(seconds=0.35), on_progress=progress.append,
                                    on_complete=lambda: completed.append(sched.now()))
            assert engine.state == PlaybackState.PLAYING
            sched.run_until_idle()

        asyncio.run(run())
        assert sink.suspended is False
        assert progress == [pytest.approx(0.1), pytest.approx(0.2), pytest.approx(0.3)]
        assert completed == [pytest.approx(0.35)]
        assert engine.state == PlaybackState.COMPLETE

    def test_progress_clamped_to_duration(self):
        """Progress never exceeds the clip duration."""
        sink = FakeSink()
        sched = VirtualScheduler()
        engine = PlaybackEngine(sink, sched)
        progress = []

        async def run():
            await engine.play_chunk(_chunk(seconds=0.35), on_progress=progress.append)
            sched.advance(0.75)

        asyncio.run(run())
        assert max(progress) == pytest.approx(0.35)
        assert progress[-1] == pytest.approx(0.35)

    def test_progress_scaled_by_rate(self):
        """At rate 2 the position advances twice as fast."""
        sink = FakeSink()
        sched = VirtualScheduler()
        engine = PlaybackEngine(sink, sched)
        progress = []

        async def run():
            await engine.play_chunk(_chunk(seconds=1.0), on_progress=progress.append, playback_rate=2.0)
            sched.advance(0.1)

        asyncio.run(run())
        assert progress == [pytest.approx(0.2)]

    def test_gap_with_beep(self):
        """After the clip a beep plays and completion waits for the gap."""
        engine, sink, sched = _engine()
        completed = []

        async def run():
            await engine.play_chunk(_chunk(seconds=0.2), on_complete=lambda: completed.append(sched.now()),
                                    gap_seconds=1.0, gap_sound="beep")
            sched.advance(0.5)
            assert engine.state == PlaybackState.GAP
            assert completed == []
            sched.run_until_idle()

        asyncio.run(run())
        assert [v.channel for v in sink.voices] == ["voice", "cue"]
        assert sink.voices[1].start_time == pytest.approx(0.2)
        assert completed == [pytest.approx(1.2)]

    def test_silent_gap(self):
        """gap_sound='none' waits without a cue."""
        engine, sink, sched = _engine()
        completed = []

        async def run():
            await engine.play_chunk(_chunk(seconds=0.2), on_complete=lambda: completed.append(sched.now()),
                                    gap_seconds=0.5, gap_sound="none")
            sched.run_until_idle()

        asyncio.run(run())
        assert [v.channel for v in sink.voices] == ["voice"]
        assert completed == [pytest.approx(0.7)]

    def test_new_chunk_replaces_current(self):
        """Starting a chunk stops the one already playing without completing it."""
        engine, sink, sched = _engine()
        completed = []

        async def run():
            await engine.play_chunk(_chunk("a", 1.0), on_complete=lambda: completed.append("a"))
            sched.advance(0.3)
            await engine.play_chunk(_chunk("b", 0.2), on_complete=lambda: completed.append("b"))
            sched.run_until_idle()

        asyncio.run(run())
        assert completed == ["b"]
        assert sink.voices[0].stop_time == pytest.approx(0.3)


class TestStop:
    """Tests for PlaybackEngine.stop()."""

    def test_stop_cancels_everything(self):
        """No callback fires after stop(); the voice and noise end."""
        engine, sink, sched = _engine()
        progress, completed = [], []

        async def run():
            engine.start_noise(0.2)
            await engine.play_chunk(_chunk(seconds=0.5), on_progress=progress.append,
                                    on_complete=lambda: completed.append(1), gap_seconds=1.0)
            sched.advance(0.15)
            engine.stop()
            sched.run_until_idle()

        asyncio.run(run())
        assert engine.state == PlaybackState.IDLE
        assert completed == []
        assert len(progress) == 1
        assert not engine.noise_running
        assert all(v.stop_time == pytest.approx(0.15) for v in sink.voices)

    def test_stop_when_idle_is_noop(self):
        """Stopping an idle engine touches nothing."""
        sink = FakeSink()
        engine = PlaybackEngine(sink, VirtualScheduler())
        engine.stop()
        engine.stop()
        assert engine.state == PlaybackState.IDLE
        assert sink.started == []

    def test_stop_during_synthesis(self):
        """Stopping while audio is being synthesized cancels it quietly."""
        gate = asyncio.Event()

        class SlowSynth(FakeSynth):
            async def synthesize(self, text, speaker, speed=1.0, language="en"):
                await gate.wait()
                return await super().synthesize(text, speaker, speed, language)

        engine, sink, sched = _engine(synthesizer=SlowSynth())

        async def run():
            task = asyncio.ensure_future(engine.play_chunk(_chunk(audio=False)))
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            assert engine.state == PlaybackState.LOADING
            engine.stop()
            await task

        asyncio.run(run())
        assert engine.state == PlaybackState.IDLE
        assert sink.voices == []

    def test_stop_while_resuming_output(self):
        """Stopping while the output device resumes keeps the clip from starting."""
        gate = asyncio.Event()

        class SlowResumeSink(FakeSink):
            async def resume(self):
                await gate.wait()
                self.suspended = False

        sink = SlowResumeSink()
        sink.suspended = True
        engine = PlaybackEngine(sink, VirtualScheduler())

        async def run():
            task = asyncio.ensure_future(engine.play_chunk(_chunk()))
            await asyncio.sleep(0)
            assert engine.state == PlaybackState.LOADING
            engine.stop()
            gate.set()
            await task

        asyncio.run(run())
        assert engine.state == PlaybackState.IDLE
        assert sink.started == []

    def test_failed_load_returns_to_idle(self):
        """A chunk that cannot be loaded leaves the engine idle."""
        engine, _, _ = _engine()
        with pytest.raises(PlaybackError):
            asyncio.run(engine.play_chunk(_chunk(audio=False)))
        assert engine.state == PlaybackState.IDLE


class TestOnDemandAudio:
    """Tests for chunks without usable pre-rendered audio."""

    def test_no_audio_no_synth_raises(self):
        """Nothing to play and no synthesizer is a PlaybackError."""
        engine, _, _ = _engine()
        with pytest.raises(PlaybackError) as exc_info:
            asyncio.run(engine.play_chunk(_chunk(audio=False)))
        assert exc_info.value.code == "PLAYBACK_ERROR"

    def test_decode_failure_falls_back_to_synth(self):
        """Corrupt chunk audio is re-synthesized, then served from the hot cache."""
        synth = FakeSynth(seconds=0.2)
        engine, sink, sched = _engine(synthesizer=synth)
        chunk = _chunk()
        chunk.audio_data = b64encode_audio(b"not a wav file at all")

        async def run():
            await engine.play_chunk(chunk)
            sched.run_until_idle()
            await engine.play_chunk(chunk)
            sched.run_until_idle()

        asyncio.run(run())
        assert synth.calls == ["Hello."]
        assert len(engine.hot_cache) == 1
        assert len(sink.voices[0].samples) == 200

    def test_persistent_cache_before_synth(self):
        """Audio already in the CacheStore is used without synthesizing."""
        synth = FakeSynth()
        cache = CacheStore(MemoryKVStore())
        engine, sink, sched = _engine(synthesizer=synth, cache=cache, speaker="en_f")

        async def run():
            await cache.put_audio("Hello.", _wav(0.3), "en_f", engine.mode, engine.speed)
            await engine.play_chunk(_chunk(audio=False))

        asyncio.run(run())
        assert synth.calls == []
        assert len(sink.voices[0].samples) == 300

    def test_cached_chunk_clip_used(self):
        """A clip cached under the chunk's key is played without synthesizing."""
        synth = FakeSynth()
        cache = CacheStore(MemoryKVStore())
        engine, sink, _ = _engine(synthesizer=synth, cache=cache)

        async def run():
            await cache.put_chunk_audio("c0", "Hello.", _wav(0.25))
            await engine.play_chunk(_chunk(audio=False))

        asyncio.run(run())
        assert synth.calls == []
        assert len(sink.voices[0].samples) == 250

    def test_synthesized_audio_written_to_cache(self):
        """Synthesized clips are stored for next time."""
        synth = FakeSynth()
        cache = CacheStore(MemoryKVStore())
        engine, _, _ = _engine(synthesizer=synth, cache=cache, speaker="en_f")

        async def run():
            await engine.play_chunk(_chunk(audio=False))
            return await cache.find_audio("Hello.", "en_f", engine.mode, engine.speed)

        assert asyncio.run(run()) is not None


class TestNoise:
    """Tests for background noise."""

    def test_volume_clamped_and_single_instance(self):
        """Noise gain is clamped to [0, 1]; starting twice is a no-op."""
        engine, sink, _ = _engine()
        engine.start_noise(1.7)
        engine.start_noise(0.3)
        assert engine.noise_running
        assert [v.channel for v in sink.voices] == ["noise"]
        assert sink.voices[0].loop is True
        assert sink.gain_at("noise", 0.0) == 1.0

        engine.set_noise_volume(-0.5)
        assert sink.gain_at("noise", 0.0) == 0.0
        engine.stop_noise()
        assert not engine.noise_running

    def test_voice_volume_not_clamped(self):
        """Voice gain is passed through as given."""
        engine, sink, _ = _engine()
        engine.set_voice_volume(1.5)
        assert sink.gain_at("voice", 0.0) == 1.5

    def test_white_noise_bounds(self):
        """White noise stays within +/- intensity/2."""
        buf = noise_buffer("white", SR, seconds=2.0, intensity=0.3, rng=np.random.default_rng(1))
        assert buf.frames == 2000
        assert np.abs(buf.samples).max() <= 0.15

    def test_gaussian_noise_spread(self):
        """Gaussian noise has a standard deviation close to the intensity."""
        buf = noise_buffer("gaussian", SR, seconds=10.0, intensity=0.3, rng=np.random.default_rng(2))
        assert np.isfinite(buf.samples).all()
        assert 0.27 < float(buf.samples.std()) < 0.33

    def test_custom_noise_falls_back_to_white(self):
        """Undecodable custom noise is replaced by white noise."""
        engine, sink, _ = _engine(rng=np.random.default_rng(3))
        engine.start_noise(0.5, "custom", custom_data="@@@not base64@@@")
        assert engine.noise_running
        assert np.abs(sink.voices[0].samples).max() <= 0.15

    def test_custom_noise_used(self):
        """Decodable custom noise is looped as given."""
        engine, sink, _ = _engine()
        engine.start_noise(0.5, "custom", custom_data=b64encode_audio(_wav(0.5, value=0.25)))
        assert np.allclose(sink.voices[0].samples, 0.25, atol=1e-3)


class TestPlayMaterial:
    """Tests for PlaybackEngine.play_material()."""

    def _material(self, n=3, seconds=0.3):
        return Material(id="m1", title="T", chunks=[_chunk(f"c{i}", seconds) for i in range(n)])

    def test_sequential_with_gaps(self):
        """Chunks play in order, each after the previous gap."""
        engine, sink, sched = _engine()
        starts = []

        async def run():
            task = asyncio.ensure_future(engine.play_material(
                self._material(), gap_seconds=0.5, gap_sound="none",
                on_chunk_start=lambda i, c: starts.append((i, sched.now())),
            ))
            return await _drive(sched, task)

        played = asyncio.run(run())
        assert played == 3
        assert [i for i, _ in starts] == [0, 1, 2]
        assert [t for _, t in starts] == [pytest.approx(0.0), pytest.approx(0.8), pytest.approx(1.6)]

    def test_start_index(self):
        """Playback can begin mid-material."""
        engine, _, sched = _engine()
        starts = []

        async def run():
            task = asyncio.ensure_future(engine.play_material(
                self._material(), start_index=2, gap_seconds=0.0,
                on_chunk_start=lambda i, c: starts.append(i),
            ))
            return await _drive(sched, task)

        assert asyncio.run(run()) == 1
        assert starts == [2]

    def test_stop_ends_run(self):
        """stop() from a chunk-start callback ends the run before that chunk plays."""
        engine, sink, sched = _engine()

        def on_start(index, chunk):
            if index == 1:
                engine.stop()

        async def run():
            task = asyncio.ensure_future(engine.play_material(
                self._material(), gap_seconds=0.0, on_chunk_start=on_start,
            ))
            return await _drive(sched, task)

        assert asyncio.run(run()) == 1
        assert [v.channel for v in sink.voices] == ["voice"]

    def test_failed_chunk_leaves_engine_idle(self):
        """A chunk that fails to load ends the run and a later stop() is a no-op."""
        sink = FakeSink()
        engine = PlaybackEngine(sink, VirtualScheduler())
        material = Material(id="m1", title="T", chunks=[_chunk(audio=False)])

        with pytest.raises(PlaybackError):
            asyncio.run(engine.play_material(material))
        token = engine._token
        engine.stop()
        assert engine._token == token
        assert engine.state == PlaybackState.IDLE


class TestRenderMaterial:
    """Tests for render_material()."""

    def _material(self):
        return Material(id="m1", title="T", chunks=[_chunk("c0", 0.3), _chunk("c1", 0.3)])

    def test_session_length(self):
        """Length is clips plus gaps."""
        out = asyncio.run(render_material(self._material(), gap_seconds=0.5, gap_sound="beep",
                                          noise_volume=0.0, sample_rate=SR))
        assert out.duration == pytest.approx(1.6, abs=0.01)
        assert out.samples[100, 0] == pytest.approx(0.5, abs=1e-3)
        assert out.samples[700, 0] == 0.0

    def test_rate_shortens_session(self):
        """Double rate halves each clip."""
        out = asyncio.run(render_material(self._material(), gap_seconds=0.0, playback_rate=2.0,
                                          noise_volume=0.0, sample_rate=SR))
        assert out.duration == pytest.approx(0.3, abs=0.01)

    def test_noise_fills_gaps(self):
        """Background noise is audible between chunks."""
        out = asyncio.run(render_material(self._material(), gap_seconds=0.5, gap_sound="none",
                                          noise_volume=0.5, sample_rate=SR))
        gap = out.samples[400:700, 0]
        assert np.abs(gap).max() > 0

    def test_renders_without_prerendered_audio(self):
        """Chunks without audio are synthesized during the render."""
        material = Material(id="m2", title="T", chunks=[_chunk("c0", audio=False)])
        synth = FakeSynth(seconds=0.4)
        out = asyncio.run(render_material(material, gap_seconds=0.0, noise_volume=0.0,
                                          sample_rate=SR, synthesizer=synth))
        assert synth.calls == ["Hello."]
        assert out.duration == pytest.approx(0.4, abs=0.01)


class TestLoopScheduler:
    """Tests for live playback on the asyncio clock."""

    def test_plays_to_completion(self):
        """A short clip completes on real time."""
        async def run():
            scheduler = LoopScheduler()
            sink = MixdownSink(scheduler, sample_rate=SR)
            engine = PlaybackEngine(sink, scheduler)
            done = asyncio.Event()
            await engine.play_chunk(_chunk(seconds=0.05), on_complete=done.set)
            await asyncio.wait_for(done.wait(), timeout=2.0)
            return engine.state

        assert asyncio.run(run()) == PlaybackState.COMPLETE

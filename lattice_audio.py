"""
Tone synthesis engine for the lattice.

Each sounding lattice node gets a ToneGenerator: a phase-continuous
oscillator whose frequency and gain are AudioParams, i.e. lists of
time-stamped automation events evaluated against the engine's own sample
clock. Callers schedule changes ("ramp gain to 0.0001 by t+0.25", "stop
at t+0.3") once and return immediately; nothing polls or sleeps.

Architecture:
  The UI thread creates generators and schedules automation. The PyAudio
  callback renders every live generator into one buffer, applies the
  shared master gain and a soft clip, and queues generators that have
  reached their stop time. poll(), called from the UI thread once per
  frame, delivers those "ended" notifications, so listeners never run on
  the audio thread.

  With realtime=False the engine never touches an audio device and its
  clock advances only through render(n); this drives tests and the
  offline diagnostics.

Audio: 44100 Hz, mono, float32, 1024 frames/buffer (~23ms latency).
"""

from __future__ import annotations

import itertools
import logging
import math
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable

import numpy as np
from numpy.typing import NDArray
from scipy.signal import lfilter

try:
    import pyaudio
    _HAS_PYAUDIO = True
except ImportError:
    pyaudio = None  # type: ignore[assignment]
    _HAS_PYAUDIO = False

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
#  Constants
# ═══════════════════════════════════════════════════════════════════════

SAMPLE_RATE: int = 44100
BUFFER_SIZE: int = 1024
TWO_PI: float = 2.0 * math.pi

# One master gain shared by every voice
MASTER_GAIN: float = 0.4

WAVEFORM_SINE: str = "sine"
WAVEFORM_SQUARE: str = "square"
WAVEFORM_SAWTOOTH: str = "sawtooth"
WAVEFORM_TRIANGLE: str = "triangle"
WAVEFORMS: tuple[str, ...] = (
    WAVEFORM_SINE, WAVEFORM_SQUARE, WAVEFORM_SAWTOOTH, WAVEFORM_TRIANGLE,
)
DEFAULT_WAVEFORM: str = WAVEFORM_SINE

# Waveforms with strong upper harmonics get a gentle low-pass
BRIGHT_WAVEFORMS: frozenset[str] = frozenset({WAVEFORM_SQUARE, WAVEFORM_SAWTOOTH})
TONE_LPF_HZ: float = 6000.0

RAMP_NONE: str = "set"
RAMP_EXPONENTIAL: str = "exponential"


# ═══════════════════════════════════════════════════════════════════════
#  Errors
# ═══════════════════════════════════════════════════════════════════════

class AudioError(Exception):
    """Base class for failures at the audio boundary."""


class AudioUnavailableError(AudioError):
    """No output device, PyAudio missing, or the engine was closed."""


class ToneStateError(AudioError):
    """A generator was scheduled in a way its lifecycle does not allow."""


def validate_waveform(name: str) -> str:
    if name not in WAVEFORMS:
        raise ValueError(f"unknown waveform {name!r}; choose from {', '.join(WAVEFORMS)}")
    return name


# ═══════════════════════════════════════════════════════════════════════
#  Utility functions
# ═══════════════════════════════════════════════════════════════════════

def soft_clip(x: NDArray[np.float32]) -> NDArray[np.float32]:
    """Soft clipping (tanh-based) to prevent harsh digital distortion.

    Operates in-place to avoid allocations on the audio callback thread.
    """
    np.tanh(x, out=x)
    return x


class CachedLPF:
    """One-pole low-pass filter with cached coefficients and persistent state.

    Carries filter state (zi) across audio buffers so a tone filtered in
    1024-frame blocks sounds the same as one filtered in a single pass.
    """

    def __init__(self, cutoff_hz: float, sample_rate: int = SAMPLE_RATE) -> None:
        self._cutoff = cutoff_hz
        rc = 1.0 / (TWO_PI * cutoff_hz)
        dt = 1.0 / sample_rate
        alpha = dt / (rc + dt)
        self._b = np.array([alpha], dtype=np.float64)
        self._a = np.array([1.0, -(1.0 - alpha)], dtype=np.float64)
        self._zi = np.zeros(1, dtype=np.float64)

    def apply(self, signal: NDArray[np.float32]) -> NDArray[np.float32]:
        """Filter signal, carrying state across calls."""
        out, self._zi = lfilter(self._b, self._a,
                                signal.astype(np.float64), zi=self._zi)
        return out.astype(np.float32)

    def reset(self) -> None:
        """Reset filter state (e.g., on waveform change)."""
        self._zi[:] = 0.0


# ═══════════════════════════════════════════════════════════════════════
#  Oscillator primitives (vectorized numpy)
# ═══════════════════════════════════════════════════════════════════════

def _sine_wave(phase: NDArray[np.float64], freq_hz: float = 0.0,
               sample_rate: int = SAMPLE_RATE) -> NDArray[np.float32]:
    """Pure sine wave from phase array (in radians)."""
    return np.sin(phase).astype(np.float32)


def _triangle_wave(phase: NDArray[np.float64], freq_hz: float = 0.0,
                   sample_rate: int = SAMPLE_RATE) -> NDArray[np.float32]:
    """Triangle wave from phase array (in radians), starting at zero."""
    # Quarter-cycle offset so the wave starts at 0 like the sine
    p = np.mod(phase + TWO_PI * 0.75, TWO_PI) / TWO_PI
    return (2.0 * np.abs(2.0 * p - 1.0) - 1.0).astype(np.float32)


def _square_wave(phase: NDArray[np.float64], freq_hz: float = 0.0,
                 sample_rate: int = SAMPLE_RATE) -> NDArray[np.float32]:
    """50% square wave with polyBLEP antialiasing."""
    p = np.mod(phase, TWO_PI) / TWO_PI
    raw = np.where(p < 0.5, 1.0, -1.0).astype(np.float64)

    dt = freq_hz / sample_rate
    if dt > 0:
        # Rising edge at p=0 (and its wrap just below 1)
        mask_rise = p < dt
        raw[mask_rise] += _polyblep(p[mask_rise] / dt)
        mask_rise_wrap = p > 1.0 - dt
        raw[mask_rise_wrap] += _polyblep((p[mask_rise_wrap] - 1.0) / dt)
        # Falling edge at p=0.5
        t2 = (p - 0.5) / dt
        mask_fall = np.abs(t2) < 1.0
        raw[mask_fall] -= _polyblep(t2[mask_fall])

    return raw.astype(np.float32)


def _sawtooth_wave(phase: NDArray[np.float64], freq_hz: float = 0.0,
                   sample_rate: int = SAMPLE_RATE) -> NDArray[np.float32]:
    """Rising sawtooth with polyBLEP correction at the reset."""
    # Half-cycle offset: starts at 0 and rises, like the Web Audio sawtooth
    p = np.mod(phase + math.pi, TWO_PI) / TWO_PI
    raw = 2.0 * p - 1.0

    dt = freq_hz / sample_rate
    if dt > 0:
        mask_lo = p < dt
        raw[mask_lo] -= _polyblep(p[mask_lo] / dt)
        mask_hi = p > 1.0 - dt
        raw[mask_hi] -= _polyblep((p[mask_hi] - 1.0) / dt)

    return raw.astype(np.float32)


def _polyblep(t: NDArray[np.float64] | float) -> NDArray[np.float64] | float:
    """PolyBLEP residual for antialiased waveform edges."""
    t = np.asarray(t, dtype=np.float64)
    result = np.zeros_like(t)
    mask1 = (t >= 0) & (t < 1)
    mask2 = (t >= -1) & (t < 0)
    result[mask1] = 2.0 * t[mask1] - t[mask1] * t[mask1] - 1.0
    result[mask2] = t[mask2] * t[mask2] + 2.0 * t[mask2] + 1.0
    return result


OSCILLATORS: dict[str, Callable[..., NDArray[np.float32]]] = {
    WAVEFORM_SINE: _sine_wave,
    WAVEFORM_SQUARE: _square_wave,
    WAVEFORM_SAWTOOTH: _sawtooth_wave,
    WAVEFORM_TRIANGLE: _triangle_wave,
}


# ═══════════════════════════════════════════════════════════════════════
#  Parameter automation
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AutomationEvent:
    time: float
    value: float
    kind: str = RAMP_NONE


class AudioParam:
    """
    A value that changes at scheduled points on the engine clock.

    set_value_at_time() jumps at a time; exponential_ramp_to_value_at_time()
    glides exponentially from the previous event's value, reaching the
    target at the given time. Between and after events the last value holds.
    """

    def __init__(self, default: float) -> None:
        self._default: float = float(default)
        self._events: list[AutomationEvent] = []
        # UI thread schedules, audio thread renders and prunes
        self._lock: threading.Lock = threading.Lock()

    @property
    def events(self) -> tuple[AutomationEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def _insert(self, event: AutomationEvent) -> None:
        with self._lock:
            idx = len(self._events)
            while idx > 0 and self._events[idx - 1].time > event.time:
                idx -= 1
            self._events.insert(idx, event)

    def set_value_at_time(self, value: float, when: float) -> None:
        self._insert(AutomationEvent(float(when), float(value), RAMP_NONE))

    def exponential_ramp_to_value_at_time(self, value: float, when: float) -> None:
        if value <= 0.0:
            raise ToneStateError(f"exponential ramp target must be positive, got {value}")
        self._insert(AutomationEvent(float(when), float(value), RAMP_EXPONENTIAL))

    def cancel_scheduled_values(self, when: float) -> None:
        """Drop every event at or after `when`."""
        with self._lock:
            self._events = [ev for ev in self._events if ev.time < when]

    def prune(self, before: float) -> None:
        """Forget events fully superseded by one at or before `before`."""
        with self._lock:
            last = -1
            for i, ev in enumerate(self._events):
                if ev.time <= before:
                    last = i
                else:
                    break
            if last > 0:
                del self._events[:last]

    def value_at(self, when: float) -> float:
        return float(self.render(when, 1, 1)[0])

    def render(self, t0: float, n_samples: int, sample_rate: int) -> NDArray[np.float64]:
        """Per-sample values for n_samples starting at time t0."""
        t = t0 + np.arange(n_samples, dtype=np.float64) / sample_rate
        out = np.full(n_samples, self._default, dtype=np.float64)
        prev_time: float | None = None
        prev_value = self._default
        with self._lock:
            events = tuple(self._events)
        for ev in events:
            if (ev.kind == RAMP_EXPONENTIAL and prev_time is not None
                    and ev.time > prev_time and prev_value > 0.0):
                mask = (t >= prev_time) & (t < ev.time)
                if mask.any():
                    frac = (t[mask] - prev_time) / (ev.time - prev_time)
                    out[mask] = prev_value * (ev.value / prev_value) ** frac
            out[t >= ev.time] = ev.value
            prev_time, prev_value = ev.time, ev.value
        return out


# ═══════════════════════════════════════════════════════════════════════
#  ToneGenerator: one oscillator with frequency and gain automation
# ═══════════════════════════════════════════════════════════════════════

_tone_ids = itertools.count(1)


class ToneGenerator:
    """A single oscillator with phase accumulator and gain automation."""

    def __init__(self, frequency: float, waveform: str = DEFAULT_WAVEFORM,
                 sample_rate: int = SAMPLE_RATE) -> None:
        self.tone_id: int = next(_tone_ids)
        self.sample_rate: int = sample_rate
        self.frequency: AudioParam = AudioParam(frequency)
        self.gain: AudioParam = AudioParam(1.0)
        self._waveform: str = validate_waveform(waveform)
        self._phase: float = 0.0
        self._start_time: float | None = None
        self._stop_time: float | None = None
        self._ended: bool = False
        self._listeners: list[Callable[[ToneGenerator], None]] = []
        self._lpf: CachedLPF = CachedLPF(TONE_LPF_HZ, sample_rate)

    # ── State ──────────────────────────────────────────────────────────

    @property
    def waveform(self) -> str:
        return self._waveform

    @waveform.setter
    def waveform(self, name: str) -> None:
        name = validate_waveform(name)
        if name != self._waveform:
            self._waveform = name
            self._lpf.reset()

    @property
    def started(self) -> bool:
        return self._start_time is not None

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def stop_time(self) -> float | None:
        return self._stop_time

    # ── Scheduling ─────────────────────────────────────────────────────

    def start(self, when: float) -> None:
        if self._start_time is not None:
            raise ToneStateError(f"tone {self.tone_id} already started")
        self._start_time = float(when)

    def stop(self, when: float) -> None:
        if self._start_time is None:
            raise ToneStateError(f"tone {self.tone_id} stopped before start")
        if self._ended:
            raise ToneStateError(f"tone {self.tone_id} already ended")
        self._stop_time = max(float(when), self._start_time)

    def add_ended_listener(self, callback: Callable[[ToneGenerator], None]) -> None:
        self._listeners.append(callback)

    def notify_ended(self) -> None:
        listeners, self._listeners = self._listeners, []
        for callback in listeners:
            callback(self)

    def force_end(self) -> None:
        self._ended = True

    # ── Rendering (audio thread) ───────────────────────────────────────

    def render(self, t0: float, n_samples: int) -> NDArray[np.float32]:
        """Render n_samples starting at engine time t0."""
        sr = self.sample_rate
        t_end = t0 + n_samples / sr
        if self._ended or self._start_time is None or self._start_time >= t_end:
            return np.zeros(n_samples, dtype=np.float32)

        # Phase accumulation from per-sample frequencies
        freqs = self.frequency.render(t0, n_samples, sr)
        phases = self._phase + np.cumsum(TWO_PI * freqs / sr)
        self._phase = float(np.mod(phases[-1], TWO_PI))

        osc = OSCILLATORS[self._waveform](phases, float(freqs[-1]), sr)
        if self._waveform in BRIGHT_WAVEFORMS:
            osc = self._lpf.apply(osc)

        env = self.gain.render(t0, n_samples, sr)
        t = t0 + np.arange(n_samples, dtype=np.float64) / sr
        gate = t >= self._start_time
        if self._stop_time is not None:
            gate &= t < self._stop_time
            if self._stop_time <= t_end:
                self._ended = True

        self.frequency.prune(t0)
        self.gain.prune(t0)
        return np.where(gate, osc * env, 0.0).astype(np.float32)


# ═══════════════════════════════════════════════════════════════════════
#  The engine
# ═══════════════════════════════════════════════════════════════════════

class ToneEngine:
    """
    Mixes every live ToneGenerator through one master gain.

    Realtime engines open a PyAudio stream lazily on the first
    ensure_running()/create_tone(); offline engines (realtime=False) are
    advanced manually with render().
    """

    def __init__(
        self,
        realtime: bool = True,
        sample_rate: int = SAMPLE_RATE,
        buffer_size: int = BUFFER_SIZE,
        master_gain: float = MASTER_GAIN,
    ) -> None:
        self.realtime: bool = realtime
        self.sample_rate: int = sample_rate
        self.buffer_size: int = buffer_size
        self.master_gain: float = master_gain

        self._lock = threading.Lock()
        self._tones: list[ToneGenerator] = []
        self._ended: deque[ToneGenerator] = deque()
        self._frames: int = 0

        # Audio device
        self._pa: pyaudio.PyAudio | None = None  # type: ignore[name-defined]
        self._stream: pyaudio.Stream | None = None  # type: ignore[name-defined]
        self._running: bool = False
        self._closed: bool = False
        self._underrun_count: int = 0

    # ── Public properties ──────────────────────────────────────────────

    @property
    def current_time(self) -> float:
        """Engine clock in seconds (frames rendered / sample rate)."""
        return self._frames / self.sample_rate

    @property
    def running(self) -> bool:
        if self._closed:
            return False
        return self._running if self.realtime else True

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def tone_count(self) -> int:
        with self._lock:
            return len(self._tones)

    # ── Lifecycle ──────────────────────────────────────────────────────

    def start(self) -> bool:
        """Open the audio output. Returns True on success, False on failure."""
        if self._closed:
            return False
        if not self.realtime or self._running:
            return True
        if not _HAS_PYAUDIO:
            logger.warning("pyaudio is not installed; audio output disabled")
            return False

        try:
            self._pa = pyaudio.PyAudio()
            self._stream = self._pa.open(
                format=pyaudio.paFloat32,
                channels=1,
                rate=self.sample_rate,
                output=True,
                frames_per_buffer=self.buffer_size,
                stream_callback=self._audio_callback,
            )
            self._stream.start_stream()
            self._running = True
            logger.info("audio output started (%d Hz, %d frames)",
                        self.sample_rate, self.buffer_size)
            return True
        except Exception:
            logger.warning("could not open audio output", exc_info=True)
            self._cleanup_audio()
            return False

    def ensure_running(self) -> None:
        """Make sure the clock is advancing, or raise AudioUnavailableError."""
        if self._closed:
            raise AudioUnavailableError("audio engine is closed")
        if not self.start():
            raise AudioUnavailableError("no audio output available")

    def stop(self) -> None:
        """Stop audio output and release the device."""
        self._running = False
        self._cleanup_audio()

    def close(self) -> None:
        """Stop output and refuse further tones."""
        self.stop()
        self._closed = True
        with self._lock:
            tones, self._tones = self._tones, []
        for tone in tones:
            tone.force_end()
        self._ended.extend(tones)

    def _cleanup_audio(self) -> None:
        """Tear down PyAudio resources, logging (not raising) failures."""
        try:
            if self._stream is not None:
                if self._stream.is_active():
                    self._stream.stop_stream()
                self._stream.close()
        except Exception:
            logger.debug("error closing audio stream", exc_info=True)
        self._stream = None
        try:
            if self._pa is not None:
                self._pa.terminate()
        except Exception:
            logger.debug("error terminating PyAudio", exc_info=True)
        self._pa = None

    # ── Tones (UI thread) ──────────────────────────────────────────────

    def create_tone(self, frequency: float,
                    waveform: str = DEFAULT_WAVEFORM) -> ToneGenerator:
        """Create and register a generator. Start it with tone.start()."""
        self.ensure_running()
        tone = ToneGenerator(frequency, waveform, self.sample_rate)
        with self._lock:
            self._tones.append(tone)
        return tone

    def poll(self) -> int:
        """Deliver queued ended notifications on the calling thread."""
        delivered = 0
        while self._ended:
            tone = self._ended.popleft()
            tone.notify_ended()
            delivered += 1
        return delivered

    # ── Rendering ──────────────────────────────────────────────────────

    def render(self, n_samples: int) -> NDArray[np.float32]:
        """Mix n_samples of every live tone and advance the clock."""
        with self._lock:
            tones = list(self._tones)

        t0 = self.current_time
        mix = np.zeros(n_samples, dtype=np.float32)
        finished: list[ToneGenerator] = []
        for tone in tones:
            try:
                mix += tone.render(t0, n_samples)
            except Exception:
                logger.exception("tone %d failed to render; dropping it", tone.tone_id)
                tone.force_end()
            if tone.ended:
                finished.append(tone)

        if finished:
            with self._lock:
                self._tones = [t for t in self._tones if not t.ended]
            self._ended.extend(finished)

        self._frames += n_samples
        mix *= self.master_gain
        return soft_clip(mix)

    def _audio_callback(
        self,
        in_data: bytes | None,
        frame_count: int,
        time_info: dict[str, float],
        status_flags: int,
    ) -> tuple[bytes, int]:
        """PyAudio stream callback. Generates audio samples."""
        if not self._running:
            silence = b'\x00' * (frame_count * 4)
            return (silence, pyaudio.paComplete)

        # Track buffer underruns (output underflow = PortAudio ran out of data)
        if status_flags & pyaudio.paOutputUnderflow:
            self._underrun_count += 1

        try:
            samples = self.render(frame_count)
        except Exception:
            logger.exception("audio render failed")
            samples = np.zeros(frame_count, dtype=np.float32)
            self._frames += frame_count

        return (samples.tobytes(), pyaudio.paContinue)

    # ── Status string for display ──────────────────────────────────────

    def status_string(self) -> str:
        """Return a short status string for the status bar."""
        if self._closed:
            return "[AUDIO OFF]"
        if not self.realtime:
            base = "OFFLINE"
        elif self._running:
            base = f"{self.sample_rate // 1000}k"
        else:
            base = "[NO AUDIO]"
        if self._underrun_count > 0:
            base += f" XR:{self._underrun_count}"
        return base

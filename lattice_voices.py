"""
Voice manager: keeps sounding tones in step with the node selection.

Per node id a voice moves silent -> sounding -> releasing -> silent.
sync_with_selection() only needs the desired id set; it diffs that against
the sounding voices, releases what is no longer wanted, starts what is
new, and re-asserts frequency on the rest. Retuning (base frequency,
octave override, waveform) happens in place on the live generator.

Audio failures are contained per voice: they are logged and the node
simply stays silent while everything else keeps playing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable

from lattice_audio import (
    DEFAULT_WAVEFORM,
    AudioError,
    ToneEngine,
    ToneGenerator,
    validate_waveform,
)
from lattice_model import LatticeNode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnvelopeConfig:
    """Attack/release shape shared by every voice (seconds)."""
    attack: float = 0.04
    release: float = 0.25
    sustain_level: float = 0.75
    floor: float = 0.0001       # "near zero" for exponential ramps
    stop_padding: float = 0.05  # generator stops this long after the ramp


DEFAULT_ENVELOPE: EnvelopeConfig = EnvelopeConfig()


class VoiceState(Enum):
    SOUNDING = "sounding"
    RELEASING = "releasing"


@dataclass
class Voice:
    """One tone bound to a node while it sounds."""
    node_id: str
    tone: ToneGenerator
    state: VoiceState = VoiceState.SOUNDING


NodeLookup = Callable[[str], "LatticeNode | None"]


class VoiceManager:
    """Owns the active voices; nothing else starts or stops tones."""

    def __init__(
        self,
        engine: ToneEngine,
        lookup: NodeLookup,
        envelope: EnvelopeConfig = DEFAULT_ENVELOPE,
        waveform: str = DEFAULT_WAVEFORM,
    ) -> None:
        self.engine: ToneEngine = engine
        self.envelope: EnvelopeConfig = envelope
        self._lookup: NodeLookup = lookup
        self._waveform: str = validate_waveform(waveform)
        self._playing: bool = False
        self._voices: dict[str, Voice] = {}
        # Keyed by tone id: a node may be re-selected while its old tone fades
        self._releasing: dict[int, Voice] = {}

    # ── Public properties ──────────────────────────────────────────────

    @property
    def playing(self) -> bool:
        return self._playing

    @property
    def waveform(self) -> str:
        return self._waveform

    @property
    def sounding_ids(self) -> frozenset[str]:
        return frozenset(self._voices)

    @property
    def releasing_count(self) -> int:
        return len(self._releasing)

    def is_sounding(self, node_id: str) -> bool:
        return node_id in self._voices

    def voice(self, node_id: str) -> Voice | None:
        return self._voices.get(node_id)

    # ── Play state ─────────────────────────────────────────────────────

    def play(self, selected: Iterable[str]) -> None:
        self._playing = True
        self.sync_with_selection(selected)

    def pause(self) -> None:
        """Force-release every sounding voice regardless of selection."""
        self._playing = False
        self.stop_all()

    # ── Reconciliation ─────────────────────────────────────────────────

    def sync_with_selection(self, selected: Iterable[str]) -> None:
        """Make the sounding set equal the selection (when playing)."""
        if not self._playing:
            self.stop_all()
            return

        desired = list(dict.fromkeys(selected))
        wanted = set(desired)
        for nid in [n for n in self._voices if n not in wanted]:
            self.stop_voice(nid)

        for nid in desired:
            if nid in self._voices:
                self.retune(nid)
                continue
            node = self._lookup(nid)
            if node is not None:
                self.start_voice(node)

    def start_voice(self, node: LatticeNode) -> Voice | None:
        """silent -> sounding. Returns None if the audio side refused."""
        existing = self._voices.get(node.id)
        if existing is not None:
            return existing

        env = self.envelope
        try:
            tone = self.engine.create_tone(node.frequency, self._waveform)
            now = self.engine.current_time
            tone.gain.set_value_at_time(env.floor, now)
            tone.gain.exponential_ramp_to_value_at_time(env.sustain_level, now + env.attack)
            tone.start(now)
        except AudioError as exc:
            logger.warning("could not start voice for %s: %s", node.id, exc)
            return None

        voice = Voice(node.id, tone)
        tone.add_ended_listener(self._on_tone_ended)
        self._voices[node.id] = voice
        return voice

    def stop_voice(self, node_id: str) -> None:
        """sounding -> releasing: fade out, then let the tone end."""
        voice = self._voices.pop(node_id, None)
        if voice is None:
            return

        env = self.envelope
        tone = voice.tone
        now = self.engine.current_time
        try:
            current = tone.gain.value_at(now)
            tone.gain.cancel_scheduled_values(now)
            tone.gain.set_value_at_time(max(current, env.floor), now)
            tone.gain.exponential_ramp_to_value_at_time(env.floor, now + env.release)
            tone.stop(now + env.release + env.stop_padding)
        except AudioError as exc:
            logger.warning("could not release voice for %s: %s", node_id, exc)
            tone.force_end()
            return

        voice.state = VoiceState.RELEASING
        self._releasing[tone.tone_id] = voice

    def stop_all(self) -> None:
        for nid in list(self._voices):
            self.stop_voice(nid)

    def _on_tone_ended(self, tone: ToneGenerator) -> None:
        """releasing -> silent."""
        self._releasing.pop(tone.tone_id, None)
        # A tone can also end without a release (engine closed)
        for nid, voice in list(self._voices.items()):
            if voice.tone is tone:
                del self._voices[nid]

    # ── In-place updates ───────────────────────────────────────────────

    def retune(self, node_id: str) -> None:
        """Set a sounding voice's pitch to its node's current frequency."""
        voice = self._voices.get(node_id)
        node = self._lookup(node_id)
        if voice is None or node is None:
            return
        try:
            voice.tone.frequency.set_value_at_time(node.frequency, self.engine.current_time)
        except AudioError as exc:
            logger.warning("could not retune voice for %s: %s", node_id, exc)

    def retune_all(self) -> None:
        for nid in list(self._voices):
            self.retune(nid)

    def set_waveform(self, name: str) -> bool:
        """Switch every sounding tone's waveform. False if unchanged."""
        name = validate_waveform(name)
        if name == self._waveform:
            return False
        self._waveform = name
        for voice in self._voices.values():
            voice.tone.waveform = name
        return True

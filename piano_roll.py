#!/usr/bin/env python3
"""
Rasterize parsed MIDI files into dense piano-roll grids.

What this file does:
1. Walks every track, turning delta times into absolute ticks, and indexes
   note-on/off events by (channel, note).
2. Derives a shared raster clock (TimeGrid) from the GCD of all note ticks.
3. Fills a float grid of shape (channels * 128, columns) with note velocities
   mapped through a configurable byte <-> real mapping.

Grid layout: row = block * 128 + note, where block is the position of the
channel in the sorted list of channels that carry notes. Columns are 0-based:
tick t lands in column (t - min_tick) // gcd.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from functools import reduce
from pathlib import Path
from typing import Callable, DefaultDict, Iterable

import numpy as np

from midi_errors import DegenerateGcdInput, MissingTimeSignature, TimeSignatureAtNonzeroDelta
from midi_events import (
    ChannelEvent,
    TimeSignatureEvent,
    is_note_event,
    is_note_start,
    is_note_stop,
)
from midi_file import MidiFile, read_midi_file

logger = logging.getLogger(__name__)

NOTE_DIMS = 128
MAX_VELOCITY_BYTE = 255


# ---------------------------------------------------------------------------
# Velocity <-> real mapping
# ---------------------------------------------------------------------------


def default_from_byte(value: int) -> float:
    """Map an integer velocity 0..255 linearly onto [-1, 1]."""
    return float(value) / (MAX_VELOCITY_BYTE / 2.0) - 1.0


def default_to_byte(value: float) -> int:
    """Inverse of `default_from_byte`; NaN maps to 0, result clamped to 0..255."""
    value = float(value)
    if math.isnan(value):
        return 0
    if math.isinf(value):
        return MAX_VELOCITY_BYTE if value > 0 else 0
    byte = int(round((value + 1.0) * (MAX_VELOCITY_BYTE / 2.0)))
    return max(0, min(MAX_VELOCITY_BYTE, byte))


@dataclass(frozen=True, slots=True)
class VelocityMapping:
    from_byte: Callable[[int], float] = default_from_byte
    to_byte: Callable[[float], int] = default_to_byte

    @property
    def silence(self) -> float:
        return float(self.from_byte(0))

    def quantize(self, value: float) -> int:
        """Apply `to_byte`, then enforce the NaN -> 0 and [0, 255] rules."""
        value = float(value)
        if math.isnan(value):
            return 0
        if math.isinf(value):
            return MAX_VELOCITY_BYTE if value > 0 else 0
        byte = float(self.to_byte(value))
        if math.isnan(byte):
            return 0
        return int(max(0.0, min(float(MAX_VELOCITY_BYTE), byte)))


DEFAULT_VELOCITY = VelocityMapping()


# ---------------------------------------------------------------------------
# Raster clock
# ---------------------------------------------------------------------------


def gcd_of(values: Iterable[int]) -> int:
    """GCD of a list of ticks, folded pairwise. Needs at least two values."""
    values = [int(v) for v in values]
    if len(values) < 2:
        raise DegenerateGcdInput(f"Must have at least 2 values for gcd, got {len(values)}")
    return reduce(math.gcd, values)


@dataclass(frozen=True, slots=True)
class TimeGrid:
    """Affine map between absolute ticks and raster columns."""

    min_tick: int
    max_tick: int
    gcd: int

    def __post_init__(self) -> None:
        if self.gcd <= 0:
            raise DegenerateGcdInput(f"Raster gcd must be positive, got {self.gcd}")
        if self.max_tick < self.min_tick:
            raise ValueError(f"max_tick {self.max_tick} < min_tick {self.min_tick}")
        if (self.max_tick - self.min_tick) % self.gcd:
            raise ValueError(
                f"Tick span {self.max_tick - self.min_tick} is not a multiple of gcd {self.gcd}"
            )

    @classmethod
    def for_columns(cls, min_tick: int, gcd: int, columns: int) -> "TimeGrid":
        """Grid anchored at `min_tick` covering exactly `columns` columns."""
        return cls(min_tick=int(min_tick), max_tick=int(min_tick) + int(columns) * int(gcd), gcd=int(gcd))

    @property
    def raster_range(self) -> int:
        return (self.max_tick - self.min_tick) // self.gcd

    def to_column(self, tick: int) -> int:
        return (int(tick) - self.min_tick) // self.gcd

    def to_tick(self, column: int) -> int:
        return self.min_tick + int(column) * self.gcd


# ---------------------------------------------------------------------------
# Note extraction
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ClockedNote:
    """A note-on/off event tagged with its absolute tick."""

    clock: int
    event: ChannelEvent


@dataclass(frozen=True, slots=True)
class NoteIndex:
    """
    Everything derived from one walk over a file's tracks.

    `notes` maps (channel, note) to chronologically ordered events;
    `channel_tracks` maps a channel to the first track carrying its notes.
    """

    notes: dict[tuple[int, int], tuple[ClockedNote, ...]]
    channel_order: tuple[int, ...]
    channel_tracks: dict[int, int]
    time_signature: TimeSignatureEvent
    grid: TimeGrid

    @property
    def num_rows(self) -> int:
        return len(self.channel_order) * NOTE_DIMS

    def block(self, channel: int) -> int:
        return self.channel_order.index(channel)

    def row(self, channel: int, note: int) -> int:
        return self.block(channel) * NOTE_DIMS + int(note)

    @property
    def key(self) -> str:
        return filter_key(self.time_signature, len(self.channel_order), self.grid.gcd)


def time_signature_key(event: TimeSignatureEvent) -> str:
    """Render `num/den-n32-clicks` from the raw time-signature bytes."""
    if event.delta_time != 0:
        raise TimeSignatureAtNonzeroDelta(
            f"Time signature set at delta {event.delta_time} != 0"
        )
    return (
        f"{event.numerator}/{event.denominator}"
        f"-{event.n32_per_quarter}-{event.clocks_per_click}"
    )


def filter_key(time_signature: TimeSignatureEvent, num_channels: int, gcd: int) -> str:
    return f"{time_signature_key(time_signature)}-{int(num_channels)}-{int(gcd)}"


def index_notes(midi: MidiFile) -> NoteIndex:
    """
    Walk all tracks and collect note events, channel layout, time signature
    and the raster clock.

    When several tracks declare a time signature, the last one in track order
    decides the filter key.

    Raises:
        MissingTimeSignature: no time-signature event in any track.
        TimeSignatureAtNonzeroDelta: a time signature with nonzero delta time.
        DegenerateGcdInput: fewer than two note events, or all on one tick.
    """
    by_key: DefaultDict[tuple[int, int], list[ClockedNote]] = defaultdict(list)
    channel_tracks: dict[int, int] = {}
    time_signature: TimeSignatureEvent | None = None
    clocks: list[int] = []

    for track_idx, track in enumerate(midi.tracks):
        clock = 0
        for event in track.events:
            clock += int(event.delta_time)

            if is_note_event(event):
                channel_tracks.setdefault(event.channel, track_idx)
                by_key[(event.channel, event.note)].append(ClockedNote(clock=clock, event=event))
                clocks.append(clock)
            elif isinstance(event, TimeSignatureEvent):
                # Validates the delta-zero rule for every declaration.
                time_signature_key(event)
                time_signature = event

    if time_signature is None:
        raise MissingTimeSignature("No time signature meta event found")

    clock_gcd = gcd_of(clocks)
    if clock_gcd == 0:
        raise DegenerateGcdInput("All note events fall on tick 0")

    notes = {
        key: tuple(sorted(events, key=lambda n: n.clock))
        for key, events in by_key.items()
    }
    return NoteIndex(
        notes=notes,
        channel_order=tuple(sorted(channel_tracks)),
        channel_tracks=channel_tracks,
        time_signature=time_signature,
        grid=TimeGrid(min_tick=min(clocks), max_tick=max(clocks), gcd=clock_gcd),
    )


# ---------------------------------------------------------------------------
# Rasterization
# ---------------------------------------------------------------------------


def rasterize(
    index: NoteIndex,
    *,
    velocity: VelocityMapping = DEFAULT_VELOCITY,
    grid: TimeGrid | None = None,
    dtype: np.dtype | type = np.float32,
) -> np.ndarray:
    """
    Project note on/off pairs onto a dense grid.

    A note-on opens a note (replacing any note still open on the same key);
    a note-off closes it and fills [on_column, off_column) with the note-on
    velocity. Unterminated notes are dropped.

    Args:
        index: Output of `index_notes`.
        velocity: Byte <-> real mapping; cells start at `from_byte(0)`.
        grid: Raster clock to use (defaults to the file's own).
    """
    grid = grid or index.grid
    roll = np.full((index.num_rows, grid.raster_range), velocity.silence, dtype=dtype)

    for (channel, note), clocked in index.notes.items():
        row = index.row(channel, note)
        open_column: int | None = None
        open_value = velocity.silence

        for item in clocked:
            if is_note_start(item.event):
                open_column = grid.to_column(item.clock)
                open_value = float(velocity.from_byte(item.event.velocity))
            elif is_note_stop(item.event) and open_column is not None:
                start = max(0, open_column)
                stop = max(0, grid.to_column(item.clock))
                roll[row, start:stop] = open_value
                open_column = None

    return roll


@dataclass(frozen=True)
class Source:
    """A parsed file together with its piano roll and raster layout."""

    name: str
    midi: MidiFile
    index: NoteIndex
    roll: np.ndarray = field(repr=False)

    @property
    def channel_order(self) -> tuple[int, ...]:
        return self.index.channel_order

    @property
    def channel_tracks(self) -> dict[int, int]:
        return self.index.channel_tracks

    @property
    def grid(self) -> TimeGrid:
        return self.index.grid

    @property
    def key(self) -> str:
        return self.index.key


def make_source(
    midi: MidiFile,
    *,
    name: str = "",
    velocity: VelocityMapping = DEFAULT_VELOCITY,
) -> Source:
    index = index_notes(midi)
    roll = rasterize(index, velocity=velocity)
    logger.debug("Rasterized %s: key=%s shape=%s", name or "<memory>", index.key, roll.shape)
    return Source(name=name, midi=midi, index=index, roll=roll)


def load_source(path: str | Path, *, velocity: VelocityMapping = DEFAULT_VELOCITY) -> Source:
    path = Path(path)
    return make_source(read_midi_file(path), name=path.name, velocity=velocity)

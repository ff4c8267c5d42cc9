#!/usr/bin/env python3
"""
Turn a dense piano-roll grid (e.g. model output) back into a MIDI file.

The grid is written into a copy of a template Source: tempo, names, program
changes and every other non-note event are kept, note events of the rolled
channels are replaced by ones replayed from the grid, and each rebuilt track
gets a corrected end-of-track delta and a recomputed size.

Per note, column by column:
- off -> on (quantized velocity > 0): note-on
- on -> off: note-off
- on -> on with |velocity - emitted velocity| > debounce: note-off + note-on
- still on after the last column: note-off at the end of the grid
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Iterator

import numpy as np

from midi_errors import ComposeError
from midi_events import (
    NOTE_OFF,
    NOTE_ON,
    EndOfTrackEvent,
    MidiEvent,
    NoteOffEvent,
    NoteOnEvent,
    channel_command,
    end_of_track,
    is_note_event,
)
from midi_file import MidiFile, Track, normalize_running_status, strip_note_events
from piano_roll import DEFAULT_VELOCITY, NOTE_DIMS, Source, TimeGrid, VelocityMapping

logger = logging.getLogger(__name__)

# Channel-voice data bytes are 7-bit; larger quantized velocities are clamped.
MAX_DATA_BYTE = 0x7F

# Sort priority of events sharing a tick.
_PRIORITY_KEPT = 0
_PRIORITY_NOTE_OFF = 1
_PRIORITY_NOTE_ON = 2


@dataclass(frozen=True, slots=True)
class _Scheduled:
    tick: int
    priority: int
    order: int
    event: MidiEvent


def _event_sort_key(item: _Scheduled) -> tuple[int, int, int]:
    return (item.tick, item.priority, item.order)


def replay_note(levels: np.ndarray, *, debounce: int = 0) -> Iterator[tuple[int, int]]:
    """
    Yield (column, velocity) transitions for one note row of quantized
    velocities. Velocity 0 means note-off. The final column index equals
    len(levels) when a note is still sounding at the end.
    """
    emitted = 0
    for column, level in enumerate(levels):
        level = int(level)
        if emitted > 0:
            if level == 0:
                yield column, 0
                emitted = 0
            elif abs(level - emitted) > debounce:
                yield column, 0
                yield column, level
                emitted = level
        elif level > 0:
            yield column, level
            emitted = level
    if emitted > 0:
        yield len(levels), 0


def quantize_roll(roll: np.ndarray, velocity: VelocityMapping = DEFAULT_VELOCITY) -> np.ndarray:
    """Map every cell to an integer velocity 0..255 (NaN -> 0)."""
    return np.vectorize(velocity.quantize, otypes=[np.int64])(roll)


def _absolute_ticks(events: tuple[MidiEvent, ...]) -> list[tuple[int, MidiEvent]]:
    out: list[tuple[int, MidiEvent]] = []
    clock = 0
    for event in events:
        clock += int(event.delta_time)
        out.append((clock, event))
    return out


def _rebuild_track(
    track: Track,
    notes: list[_Scheduled],
    end_tick: int,
) -> Track:
    """Merge replayed notes into a note-free track and recompute its framing."""
    timed = _absolute_ticks(track.events)
    terminal: EndOfTrackEvent = end_of_track()
    if timed and isinstance(timed[-1][1], EndOfTrackEvent):
        terminal = timed.pop()[1]

    scheduled = [
        _Scheduled(tick=tick, priority=_PRIORITY_KEPT, order=i, event=event)
        for i, (tick, event) in enumerate(timed)
    ]
    scheduled.extend(notes)
    scheduled.sort(key=_event_sort_key)

    events: list[MidiEvent] = []
    prev_tick = 0
    for item in scheduled:
        delta = int(item.tick - prev_tick)
        if delta < 0:
            raise ComposeError("Scheduled events must be non-decreasing in time.")
        events.append(replace(item.event, delta_time=delta))
        prev_tick = item.tick

    events = normalize_running_status(events)
    events.append(replace(terminal, delta_time=max(0, int(end_tick) - prev_tick)))
    return Track.from_events(events)


def compose(
    source: Source,
    roll: np.ndarray,
    *,
    debounce: int = 0,
    velocity: VelocityMapping = DEFAULT_VELOCITY,
) -> MidiFile:
    """
    Compose `roll` into a new MidiFile using `source` as the template.

    Args:
        source: Template providing channel layout, raster anchor (min tick and
            gcd) and all non-note events. It is not modified.
        roll: Array of shape (len(source.channel_order) * 128, columns).
        debounce: Velocity change (in bytes) an already sounding note must
            exceed to be re-triggered.
        velocity: Byte <-> real mapping used to quantize cells.
    """
    roll = np.asarray(roll)
    expected_rows = len(source.channel_order) * NOTE_DIMS
    if roll.ndim != 2 or roll.shape[0] != expected_rows:
        raise ComposeError(
            f"Grid shape {roll.shape} does not match template rows {expected_rows}"
        )
    if debounce < 0:
        raise ValueError("debounce must be >= 0")

    columns = int(roll.shape[1])
    grid = TimeGrid.for_columns(source.grid.min_tick, source.grid.gcd, columns)
    tracks = list(source.midi.tracks)

    notes_by_track: dict[int, list[_Scheduled]] = {}
    for channel in source.channel_order:
        track_idx = source.channel_tracks.get(channel)
        if track_idx is None or not 0 <= track_idx < len(tracks):
            raise ComposeError(f"Template has no track for channel {channel}")
        notes_by_track.setdefault(track_idx, [])

    levels = np.minimum(quantize_roll(roll, velocity), MAX_DATA_BYTE)
    order = 0
    for block, channel in enumerate(source.channel_order):
        scheduled = notes_by_track[source.channel_tracks[channel]]
        for note in range(NOTE_DIMS):
            row = levels[block * NOTE_DIMS + note]
            if not row.any():
                continue
            for column, level in replay_note(row, debounce=debounce):
                if level > 0:
                    event: MidiEvent = NoteOnEvent(
                        delta_time=0,
                        command=channel_command(NOTE_ON, channel),
                        note=note,
                        velocity=level,
                    )
                    priority = _PRIORITY_NOTE_ON
                else:
                    event = NoteOffEvent(
                        delta_time=0,
                        command=channel_command(NOTE_OFF, channel),
                        note=note,
                        velocity=0,
                    )
                    priority = _PRIORITY_NOTE_OFF
                scheduled.append(
                    _Scheduled(tick=grid.to_tick(column), priority=priority, order=order, event=event)
                )
                order += 1

    rolled = set(source.channel_order)
    for track_idx, track in enumerate(tracks):
        has_old_notes = any(
            is_note_event(event) and event.channel in rolled for event in track.events
        )
        if track_idx not in notes_by_track and not has_old_notes:
            continue
        stripped = strip_note_events(track, rolled)
        tracks[track_idx] = _rebuild_track(
            stripped, notes_by_track.get(track_idx, []), grid.max_tick
        )

    logger.info(
        "Composed %d column(s) into %d track(s) from template %s",
        columns,
        len(notes_by_track),
        source.name or "<memory>",
    )
    return MidiFile(
        track_mode=source.midi.track_mode,
        num_tracks=len(tracks),
        ticks_per_quarter=source.midi.ticks_per_quarter,
        tracks=tuple(tracks),
    )

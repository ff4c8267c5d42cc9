"""Small builders for in-memory MIDI files used across the tests."""

from __future__ import annotations

from midi_events import (
    META_PREFIX,
    META_SET_TEMPO,
    META_TIME_SIGNATURE,
    META_TRACK_NAME,
    NOTE_OFF,
    NOTE_ON,
    PROGRAM_CHANGE,
    NoteOffEvent,
    NoteOnEvent,
    ProgramChangeEvent,
    TempoEvent,
    TextMetaEvent,
    TimeSignatureEvent,
    channel_command,
    end_of_track,
)
from midi_file import MODE_MULTI_SYNCH, MidiFile, Track


def time_signature(delta_time: int = 0, numerator: int = 4) -> TimeSignatureEvent:
    """numerator/4 (raw denominator byte 2), 24 clocks per click, 8 32nds per quarter."""
    return TimeSignatureEvent(
        delta_time=delta_time,
        command=META_PREFIX,
        meta=META_TIME_SIGNATURE,
        numerator=numerator,
        denominator=2,
        clocks_per_click=24,
        n32_per_quarter=8,
    )


def tempo(us_per_quarter: int = 500_000) -> TempoEvent:
    return TempoEvent(delta_time=0, command=META_PREFIX, meta=META_SET_TEMPO, us_per_quarter=us_per_quarter)


def track_name(name: str) -> TextMetaEvent:
    return TextMetaEvent(
        delta_time=0, command=META_PREFIX, meta=META_TRACK_NAME, data=name.encode("latin-1")
    )


def on(delta: int, channel: int, note: int, velocity: int) -> NoteOnEvent:
    return NoteOnEvent(
        delta_time=delta, command=channel_command(NOTE_ON, channel), note=note, velocity=velocity
    )


def off(delta: int, channel: int, note: int, velocity: int = 0) -> NoteOffEvent:
    return NoteOffEvent(
        delta_time=delta, command=channel_command(NOTE_OFF, channel), note=note, velocity=velocity
    )


def program(delta: int, channel: int, value: int) -> ProgramChangeEvent:
    return ProgramChangeEvent(
        delta_time=delta, command=channel_command(PROGRAM_CHANGE, channel), program=value
    )


def song(*note_tracks, conductor: bool = True, ticks_per_quarter: int = 96) -> MidiFile:
    """
    Build a MidiFile: an optional conductor track (time signature + tempo)
    followed by one track per event list; end-of-track is appended.
    """
    tracks = []
    if conductor:
        tracks.append(Track.from_events([time_signature(), tempo(), end_of_track()]))
    for events in note_tracks:
        tracks.append(Track.from_events([*events, end_of_track()]))
    return MidiFile(
        track_mode=MODE_MULTI_SYNCH,
        num_tracks=len(tracks),
        ticks_per_quarter=ticks_per_quarter,
        tracks=tuple(tracks),
    )


def single_note_song() -> MidiFile:
    """One note: channel 0, note 60, velocity 100, on at tick 0, off at tick 24."""
    return song([time_signature(), on(0, 0, 60, 100), off(24, 0, 60)], conductor=False)

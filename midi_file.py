#!/usr/bin/env python3
"""
Track and file framing for Standard MIDI Files.

Layout (all fixed-width integers big-endian):
    "MThd" + u32 header length (always 6) + u16 mode + u16 tracks + u16 ticks/quarter
    then repeated: "MTrk" + u32 byte length + that many bytes of events

Reading stops at the first missing track marker (end of stream); it does not
trust the declared track count. Writing recomputes each track's size from its
events, so `read_midi(write_midi(f)) == f` for any file produced by `read_midi`.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import BinaryIO, Iterable, Sequence

from midi_errors import BadTrackHeader, HeaderMismatch, TrackSizeMismatch
from midi_events import (
    ChannelEvent,
    EndOfTrackEvent,
    Event,
    MetaEvent,
    MidiEvent,
    OpaqueEvent,
    SystemEvent,
    decode_event,
    encode_event,
    is_note_event,
    read_exact,
)

logger = logging.getLogger(__name__)

FILE_HEADER = b"MThd"
TRACK_HEADER = b"MTrk"
HEADER_LENGTH = 6

MODE_SINGLE_TRACK = 0
MODE_MULTI_SYNCH = 1
MODE_MULTI_ASYNCH = 2

MIDI_SUFFIXES = {".mid", ".midi"}


@dataclass(frozen=True, slots=True)
class Track:
    """Ordered events plus the byte length of their serialized stream."""

    events: tuple[MidiEvent, ...]
    size: int

    @classmethod
    def from_events(cls, events: Iterable[MidiEvent]) -> "Track":
        events = tuple(events)
        return cls(events=events, size=events_size(events))

    @property
    def is_consistent(self) -> bool:
        return self.size == events_size(self.events)

    @property
    def terminal_event(self) -> EndOfTrackEvent | None:
        if self.events and isinstance(self.events[-1], EndOfTrackEvent):
            return self.events[-1]
        return None


@dataclass(frozen=True, slots=True)
class MidiFile:
    track_mode: int
    num_tracks: int
    ticks_per_quarter: int
    tracks: tuple[Track, ...]


def events_size(events: Iterable[Event]) -> int:
    return sum(len(encode_event(event)) for event in events)


# ---------------------------------------------------------------------------
# Tracks
# ---------------------------------------------------------------------------


def read_track(stream: BinaryIO) -> Track | None:
    """
    Read one track chunk. Returns None when the stream is exhausted at a
    chunk boundary.
    """
    marker = stream.read(4)
    if not marker:
        return None
    if marker != TRACK_HEADER:
        raise BadTrackHeader(f"MIDI track header {marker!r} != expected {TRACK_HEADER!r}")

    size = int.from_bytes(read_exact(stream, 4), "big")
    events: list[MidiEvent] = []
    consumed = 0
    running_status: int | None = None

    while consumed < size:
        bytes_read, event = decode_event(stream, running_status)
        consumed += bytes_read
        if consumed > size:
            raise TrackSizeMismatch(size, consumed)
        events.append(event)

        if isinstance(event, ChannelEvent):
            running_status = event.command
        elif isinstance(event, (MetaEvent, OpaqueEvent)):
            running_status = None

    logger.debug("Read track: size=%d events=%d", size, len(events))
    return Track(events=tuple(events), size=size)


def write_track(track: Track, stream: BinaryIO) -> int:
    """Write a track chunk; the size field is recomputed from the events."""
    body = b"".join(encode_event(event) for event in track.events)
    stream.write(TRACK_HEADER + len(body).to_bytes(4, "big") + body)
    return 8 + len(body)


def filter_track(
    track: Track,
    *,
    system: Sequence[int] = (),
    channel_types: Sequence[int] = (),
    meta: Sequence[int] = (),
) -> Track:
    """
    Keep only events whose system byte, channel-voice type nibble or meta
    subtype is listed. Opaque events are dropped. Size is recomputed.
    """
    system_set, channel_set, meta_set = set(system), set(channel_types), set(meta)

    def _keep(event: Event) -> bool:
        if isinstance(event, ChannelEvent):
            return event.kind in channel_set
        if isinstance(event, MetaEvent):
            return event.meta in meta_set
        if isinstance(event, SystemEvent):
            return event.command in system_set
        return False

    return Track.from_events(_absolute_retime(track.events, _keep))


def strip_note_events(track: Track, channels: Iterable[int]) -> Track:
    """Remove note-on/off events of `channels`, keeping every other event in time."""
    channel_set = set(channels)

    def _keep(event: Event) -> bool:
        return not (is_note_event(event) and event.channel in channel_set)

    return Track.from_events(_absolute_retime(track.events, _keep))


def _absolute_retime(events: Sequence[MidiEvent], keep) -> list[MidiEvent]:
    """Drop events, folding their delta times into the next kept event."""
    kept: list[MidiEvent] = []
    carry = 0
    for event in events:
        if keep(event):
            if carry:
                event = replace(event, delta_time=int(event.delta_time) + carry)
                carry = 0
            kept.append(event)
        else:
            carry += int(event.delta_time)
    return normalize_running_status(kept)


def normalize_running_status(events: Iterable[MidiEvent]) -> list[MidiEvent]:
    """
    A running-status event must follow an event with the same command, with
    only system real-time bytes in between (the rule `read_track` applies).
    Where removing or inserting events broke that, write the command byte
    explicitly again.
    """
    out: list[MidiEvent] = []
    running: int | None = None
    for event in events:
        if isinstance(event, ChannelEvent):
            if event.running_status and event.command != running:
                event = replace(event, running_status=False)
            running = event.command
        elif isinstance(event, (MetaEvent, OpaqueEvent)):
            running = None
        out.append(event)
    return out


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


def read_midi(stream: BinaryIO) -> MidiFile:
    header = stream.read(4)
    if header != FILE_HEADER:
        raise HeaderMismatch(f"MIDI file header {header!r} != expected {FILE_HEADER!r}")
    header_length = int.from_bytes(read_exact(stream, 4), "big")
    if header_length != HEADER_LENGTH:
        raise HeaderMismatch(
            f"Header data field len {header_length} != expected len {HEADER_LENGTH}"
        )
    track_mode = int.from_bytes(read_exact(stream, 2), "big")
    num_tracks = int.from_bytes(read_exact(stream, 2), "big")
    ticks_per_quarter = int.from_bytes(read_exact(stream, 2), "big")

    tracks: list[Track] = []
    while True:
        track = read_track(stream)
        if track is None:
            break
        tracks.append(track)

    return MidiFile(
        track_mode=track_mode,
        num_tracks=num_tracks,
        ticks_per_quarter=ticks_per_quarter,
        tracks=tuple(tracks),
    )


def write_midi(midi: MidiFile, stream: BinaryIO) -> None:
    stream.write(
        FILE_HEADER
        + HEADER_LENGTH.to_bytes(4, "big")
        + int(midi.track_mode).to_bytes(2, "big")
        + int(midi.num_tracks).to_bytes(2, "big")
        + int(midi.ticks_per_quarter).to_bytes(2, "big")
    )
    for track in midi.tracks:
        write_track(track, stream)


def midi_from_bytes(data: bytes) -> MidiFile:
    return read_midi(io.BytesIO(data))


def midi_to_bytes(midi: MidiFile) -> bytes:
    buf = io.BytesIO()
    write_midi(midi, buf)
    return buf.getvalue()


def read_midi_file(path: str | Path) -> MidiFile:
    with Path(path).open("rb") as f:
        return read_midi(f)


def write_midi_file(midi: MidiFile, path: str | Path) -> None:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("wb") as f:
        write_midi(midi, f)


def iter_midi_files(root: str | Path) -> list[Path]:
    files: list[Path] = []
    for path in Path(root).rglob("*"):
        if path.is_file() and path.suffix.lower() in MIDI_SUFFIXES:
            files.append(path)
    files.sort()
    return files

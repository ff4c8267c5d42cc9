#!/usr/bin/env python3
"""
Byte-level MIDI event records and their codec.

What this file does:
1. Encodes/decodes 7-bit variable-length quantities (delta times, lengths).
2. Defines one frozen dataclass per event family (meta, system, channel voice).
3. Decodes a single event from a binary stream and encodes it back.

Contract: `decode_event(BytesIO(encode_event(e)))[1] == e` for every event the
decoder can produce, including commands/meta subtypes it does not interpret;
those are kept as opaque length-prefixed payloads so files re-encode
byte-identically.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import BinaryIO, TypeAlias

from midi_errors import MalformedVarInt, TruncatedData, UnexpectedMetaPayload

META_PREFIX = 0xFF

# Meta subtypes (second byte after 0xFF).
META_SEQUENCE_NUMBER = 0x00
META_TEXT = 0x01
META_COPYRIGHT = 0x02
META_TRACK_NAME = 0x03
META_INSTRUMENT_NAME = 0x04
META_LYRIC = 0x05
META_MARKER = 0x06
META_CUE_POINT = 0x07
META_END_OF_TRACK = 0x2F
META_SET_TEMPO = 0x51
META_TIME_SIGNATURE = 0x58
META_KEY_SIGNATURE = 0x59
META_SEQUENCER_SPECIFIC = 0x7F

# System real-time bytes without payload.
SYSTEM_TIMING_CLOCK = 0xF8
SYSTEM_START = 0xFA
SYSTEM_CONTINUE = 0xFB
SYSTEM_STOP = 0xFC

# Channel-voice types (high nibble of the command byte).
NOTE_OFF = 0x8
NOTE_ON = 0x9
KEY_AFTERTOUCH = 0xA
CONTROL_CHANGE = 0xB
PROGRAM_CHANGE = 0xC
CHANNEL_AFTERTOUCH = 0xD
PITCH_WHEEL = 0xE

MAX_VAR_LEN_GROUPS = 4
MAX_VAR_LEN_VALUE = (1 << (7 * MAX_VAR_LEN_GROUPS)) - 1

META_NAMES: dict[int, str] = {
    META_SEQUENCE_NUMBER: "sequence_number",
    META_TEXT: "text",
    META_COPYRIGHT: "copyright",
    META_TRACK_NAME: "track_name",
    META_INSTRUMENT_NAME: "instrument_name",
    META_LYRIC: "lyric",
    META_MARKER: "marker",
    META_CUE_POINT: "cue_point",
    META_END_OF_TRACK: "end_of_track",
    META_SET_TEMPO: "set_tempo",
    META_TIME_SIGNATURE: "time_signature",
    META_KEY_SIGNATURE: "key_signature",
    META_SEQUENCER_SPECIFIC: "sequencer_specific",
}

SYSTEM_COMMANDS = frozenset({SYSTEM_TIMING_CLOCK, SYSTEM_START, SYSTEM_CONTINUE, SYSTEM_STOP})


# ---------------------------------------------------------------------------
# Variable-length quantities
# ---------------------------------------------------------------------------


def encode_var_len(value: int) -> bytes:
    """Encode a non-negative int as 7-bit groups, most significant first."""
    value = int(value)
    if value < 0 or value > MAX_VAR_LEN_VALUE:
        raise MalformedVarInt(
            f"Variable-length value {value} outside [0, {MAX_VAR_LEN_VALUE}]"
        )
    out = bytearray([value & 0x7F])
    value >>= 7
    while value:
        out.append(0x80 | (value & 0x7F))
        value >>= 7
    out.reverse()
    return bytes(out)


def decode_var_len(stream: BinaryIO) -> tuple[int, int]:
    """
    Read a variable-length quantity.

    Returns: (bytes_consumed, value)
    """
    value = 0
    num_bytes = 0
    while True:
        raw = stream.read(1)
        if not raw:
            raise MalformedVarInt(
                f"Stream ended after {num_bytes} byte(s) of a variable-length value"
            )
        byte = raw[0]
        num_bytes += 1
        value = (value << 7) | (byte & 0x7F)
        if not byte & 0x80:
            return num_bytes, value
        if num_bytes >= MAX_VAR_LEN_GROUPS:
            raise MalformedVarInt(
                f"Variable-length value needs more than {MAX_VAR_LEN_GROUPS} bytes"
            )


def read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise TruncatedData(f"Expected {size} byte(s), stream had {len(data)}")
    return data


# ---------------------------------------------------------------------------
# Event records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Event:
    """Base event: ticks since the previous event in the track + command byte."""

    delta_time: int
    command: int


@dataclass(frozen=True, slots=True)
class MetaEvent(Event):
    """0xFF-prefixed meta event; `meta` is the subtype byte."""

    meta: int

    @property
    def name(self) -> str:
        return META_NAMES.get(self.meta, f"unknown_meta_0x{self.meta:02x}")


@dataclass(frozen=True, slots=True)
class TextMetaEvent(MetaEvent):
    """Length-prefixed meta payload (text-like subtypes and unknown subtypes)."""

    data: bytes

    @property
    def text(self) -> str:
        return self.data.decode("latin-1")


@dataclass(frozen=True, slots=True)
class SequenceNumberEvent(MetaEvent):
    sequence_number: int


@dataclass(frozen=True, slots=True)
class EndOfTrackEvent(MetaEvent):
    pass


@dataclass(frozen=True, slots=True)
class TempoEvent(MetaEvent):
    """Set tempo in microseconds per quarter note."""

    us_per_quarter: int


@dataclass(frozen=True, slots=True)
class TimeSignatureEvent(MetaEvent):
    """Time signature; `denominator` is the raw byte (a power-of-two exponent)."""

    numerator: int
    denominator: int
    clocks_per_click: int
    n32_per_quarter: int


@dataclass(frozen=True, slots=True)
class KeySignatureEvent(MetaEvent):
    """Key signature with each payload byte split into high/low nibbles."""

    sharps: int
    flats: int
    major: int
    minor: int


@dataclass(frozen=True, slots=True)
class SystemEvent(Event):
    """System real-time message (clock/start/continue/stop); no payload."""


@dataclass(frozen=True, slots=True)
class ChannelEvent(Event):
    """
    Channel-voice event. `running_status` marks events whose command byte was
    omitted in the source stream; encoding omits it again.
    """

    running_status: bool = field(default=False, kw_only=True)

    @property
    def kind(self) -> int:
        return self.command >> 4

    @property
    def channel(self) -> int:
        return self.command & 0x0F


@dataclass(frozen=True, slots=True)
class NoteOffEvent(ChannelEvent):
    note: int
    velocity: int


@dataclass(frozen=True, slots=True)
class NoteOnEvent(ChannelEvent):
    note: int
    velocity: int


@dataclass(frozen=True, slots=True)
class KeyAftertouchEvent(ChannelEvent):
    note: int
    pressure: int


@dataclass(frozen=True, slots=True)
class ControlChangeEvent(ChannelEvent):
    controller: int
    value: int


@dataclass(frozen=True, slots=True)
class ProgramChangeEvent(ChannelEvent):
    program: int


@dataclass(frozen=True, slots=True)
class ChannelAftertouchEvent(ChannelEvent):
    pressure: int


@dataclass(frozen=True, slots=True)
class PitchWheelEvent(ChannelEvent):
    lsb: int
    msb: int

    @property
    def pitch(self) -> int:
        """14-bit wheel position (0x2000 is centered)."""
        return ((self.msb & 0x7F) << 7) | (self.lsb & 0x7F)


@dataclass(frozen=True, slots=True)
class OpaqueEvent(Event):
    """Unrecognized top-level command (e.g. sysex) kept as a length-prefixed blob."""

    data: bytes


MidiEvent: TypeAlias = (
    TextMetaEvent
    | SequenceNumberEvent
    | EndOfTrackEvent
    | TempoEvent
    | TimeSignatureEvent
    | KeySignatureEvent
    | SystemEvent
    | NoteOffEvent
    | NoteOnEvent
    | KeyAftertouchEvent
    | ControlChangeEvent
    | ProgramChangeEvent
    | ChannelAftertouchEvent
    | PitchWheelEvent
    | OpaqueEvent
)


def is_note_event(event: Event) -> bool:
    return isinstance(event, (NoteOnEvent, NoteOffEvent))


def is_note_start(event: Event) -> bool:
    """True for a note-on with nonzero velocity."""
    return isinstance(event, NoteOnEvent) and event.velocity > 0


def is_note_stop(event: Event) -> bool:
    """True for a note-off, or a note-on with velocity 0."""
    return isinstance(event, NoteOffEvent) or (
        isinstance(event, NoteOnEvent) and event.velocity == 0
    )


def channel_command(kind: int, channel: int) -> int:
    return ((int(kind) & 0x0F) << 4) | (int(channel) & 0x0F)


def end_of_track(delta_time: int = 0) -> EndOfTrackEvent:
    return EndOfTrackEvent(delta_time=int(delta_time), command=META_PREFIX, meta=META_END_OF_TRACK)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _read_byte(stream: BinaryIO) -> int:
    return read_exact(stream, 1)[0]


def _read_fixed_len(stream: BinaryIO, expected: int, what: str) -> int:
    length = _read_byte(stream)
    if length != expected:
        raise UnexpectedMetaPayload(
            f"{what} data field len {length} != expected len {expected}"
        )
    return 1


def _read_blob(stream: BinaryIO) -> tuple[int, bytes]:
    len_bytes, length = decode_var_len(stream)
    return len_bytes + length, read_exact(stream, length)


def _decode_meta(stream: BinaryIO, delta_time: int) -> tuple[int, MetaEvent]:
    meta = _read_byte(stream)
    common = {"delta_time": delta_time, "command": META_PREFIX, "meta": meta}

    if meta == META_END_OF_TRACK:
        data = _read_byte(stream)
        if data != 0x00:
            raise UnexpectedMetaPayload(
                f"Track end meta command had nonzero data: 0x{data:x}"
            )
        return 2, EndOfTrackEvent(**common)

    if meta == META_SEQUENCE_NUMBER:
        _read_fixed_len(stream, 2, "sequence number")
        value = int.from_bytes(read_exact(stream, 2), "big")
        return 4, SequenceNumberEvent(**common, sequence_number=value)

    if meta == META_SET_TEMPO:
        _read_fixed_len(stream, 3, "set tempo")
        value = int.from_bytes(read_exact(stream, 3), "big")
        return 5, TempoEvent(**common, us_per_quarter=value)

    if meta == META_TIME_SIGNATURE:
        _read_fixed_len(stream, 4, "time signature")
        num, den, clocks, n32 = read_exact(stream, 4)
        return 6, TimeSignatureEvent(
            **common,
            numerator=num,
            denominator=den,
            clocks_per_click=clocks,
            n32_per_quarter=n32,
        )

    if meta == META_KEY_SIGNATURE:
        _read_fixed_len(stream, 2, "key signature")
        sharps_flats, major_minor = read_exact(stream, 2)
        return 4, KeySignatureEvent(
            **common,
            sharps=sharps_flats >> 4,
            flats=sharps_flats & 0x0F,
            major=major_minor >> 4,
            minor=major_minor & 0x0F,
        )

    # Text-like subtypes and anything unrecognized share the blob layout.
    consumed, data = _read_blob(stream)
    return 1 + consumed, TextMetaEvent(**common, data=data)


def _decode_channel(
    stream: BinaryIO,
    delta_time: int,
    command: int,
    first: int | None,
    running: bool,
) -> tuple[int, ChannelEvent]:
    """Decode a channel-voice payload; `first` is a data byte already consumed."""
    kind = command >> 4
    size = 1 if kind in (PROGRAM_CHANGE, CHANNEL_AFTERTOUCH) else 2
    if first is None:
        payload = read_exact(stream, size)
    else:
        payload = bytes([first]) + read_exact(stream, size - 1)
    common = {"delta_time": delta_time, "command": command, "running_status": running}

    if kind == NOTE_OFF:
        event: ChannelEvent = NoteOffEvent(**common, note=payload[0], velocity=payload[1])
    elif kind == NOTE_ON:
        event = NoteOnEvent(**common, note=payload[0], velocity=payload[1])
    elif kind == KEY_AFTERTOUCH:
        event = KeyAftertouchEvent(**common, note=payload[0], pressure=payload[1])
    elif kind == CONTROL_CHANGE:
        event = ControlChangeEvent(**common, controller=payload[0], value=payload[1])
    elif kind == PROGRAM_CHANGE:
        event = ProgramChangeEvent(**common, program=payload[0])
    elif kind == CHANNEL_AFTERTOUCH:
        event = ChannelAftertouchEvent(**common, pressure=payload[0])
    else:
        event = PitchWheelEvent(**common, lsb=payload[0], msb=payload[1])

    # A running-status event has no command byte of its own.
    consumed = size if first is None else size - 1
    return consumed, event


def decode_event(
    stream: BinaryIO, running_status: int | None = None
) -> tuple[int, MidiEvent]:
    """
    Decode one event from `stream`.

    Args:
        stream: Binary stream positioned at the event's delta time.
        running_status: Last channel-voice command byte seen in this track,
            used when the event omits its own command byte.

    Returns: (bytes_consumed, event)
    """
    delta_bytes, delta_time = decode_var_len(stream)
    command = _read_byte(stream)

    if command == META_PREFIX:
        consumed, event = _decode_meta(stream, delta_time)
        return delta_bytes + 1 + consumed, event

    if command in SYSTEM_COMMANDS:
        return delta_bytes + 1, SystemEvent(delta_time=delta_time, command=command)

    if PITCH_WHEEL >= (command >> 4) >= NOTE_OFF:
        consumed, event = _decode_channel(stream, delta_time, command, None, False)
        return delta_bytes + 1 + consumed, event

    if command < 0x80 and running_status is not None:
        consumed, event = _decode_channel(stream, delta_time, running_status, command, True)
        return delta_bytes + 1 + consumed, event

    consumed, data = _read_blob(stream)
    return delta_bytes + 1 + consumed, OpaqueEvent(
        delta_time=delta_time, command=command, data=data
    )


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _encode_meta_payload(event: MetaEvent) -> bytes:
    if isinstance(event, EndOfTrackEvent):
        return b"\x00"
    if isinstance(event, SequenceNumberEvent):
        return b"\x02" + int(event.sequence_number).to_bytes(2, "big")
    if isinstance(event, TempoEvent):
        return b"\x03" + int(event.us_per_quarter).to_bytes(3, "big")
    if isinstance(event, TimeSignatureEvent):
        return bytes(
            [
                4,
                event.numerator,
                event.denominator,
                event.clocks_per_click,
                event.n32_per_quarter,
            ]
        )
    if isinstance(event, KeySignatureEvent):
        return bytes(
            [
                2,
                ((event.sharps & 0x0F) << 4) | (event.flats & 0x0F),
                ((event.major & 0x0F) << 4) | (event.minor & 0x0F),
            ]
        )
    if isinstance(event, TextMetaEvent):
        return encode_var_len(len(event.data)) + bytes(event.data)
    raise TypeError(f"Cannot encode meta event {event!r}")


def _encode_channel_payload(event: ChannelEvent) -> bytes:
    if isinstance(event, (NoteOffEvent, NoteOnEvent)):
        return bytes([event.note, event.velocity])
    if isinstance(event, KeyAftertouchEvent):
        return bytes([event.note, event.pressure])
    if isinstance(event, ControlChangeEvent):
        return bytes([event.controller, event.value])
    if isinstance(event, ProgramChangeEvent):
        return bytes([event.program])
    if isinstance(event, ChannelAftertouchEvent):
        return bytes([event.pressure])
    if isinstance(event, PitchWheelEvent):
        return bytes([event.lsb, event.msb])
    raise TypeError(f"Cannot encode channel event {event!r}")


def encode_event(event: Event) -> bytes:
    """Serialize one event (delta time, command byte, payload)."""
    head = encode_var_len(event.delta_time)

    if isinstance(event, MetaEvent):
        return head + bytes([META_PREFIX, event.meta]) + _encode_meta_payload(event)
    if isinstance(event, SystemEvent):
        return head + bytes([event.command])
    if isinstance(event, ChannelEvent):
        payload = _encode_channel_payload(event)
        if event.running_status:
            return head + payload
        return head + bytes([event.command]) + payload
    if isinstance(event, OpaqueEvent):
        return head + bytes([event.command]) + encode_var_len(len(event.data)) + bytes(event.data)
    raise TypeError(f"Cannot encode event {event!r}")


def encoded_size(event: Event) -> int:
    return len(encode_event(event))



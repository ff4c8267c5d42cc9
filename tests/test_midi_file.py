from dataclasses import replace
from io import BytesIO

import mido
import pytest

from midi_errors import BadTrackHeader, HeaderMismatch, TrackSizeMismatch, TruncatedData
from midi_events import (
    META_TRACK_NAME,
    NOTE_ON,
    PROGRAM_CHANGE,
    SYSTEM_TIMING_CLOCK,
    ChannelEvent,
    SystemEvent,
    encode_event,
)
from midi_file import (
    MidiFile,
    Track,
    filter_track,
    iter_midi_files,
    midi_from_bytes,
    midi_to_bytes,
    normalize_running_status,
    read_midi,
    read_midi_file,
    strip_note_events,
    write_midi_file,
)
from midi_builders import off, on, program, single_note_song, song, track_name

HEADER = b"MThd\x00\x00\x00\x06\x00\x01\x00\x02\x00\x60"
TRACK_1 = b"MTrk\x00\x00\x00\x0c" + b"\x00\xff\x58\x04\x04\x02\x18\x08" + b"\x00\xff\x2f\x00"
TRACK_2 = (
    b"MTrk\x00\x00\x00\x0e"
    + b"\x00\x90\x3c\x64"
    + b"\x18\x3c\x00"  # running status note-on, velocity 0
    + b"\x00\xc0\x05"
    + b"\x00\xff\x2f\x00"
)


def test_read_handcrafted_file():
    midi = midi_from_bytes(HEADER + TRACK_1 + TRACK_2)
    assert (midi.track_mode, midi.num_tracks, midi.ticks_per_quarter) == (1, 2, 96)
    assert len(midi.tracks) == 2
    assert [t.size for t in midi.tracks] == [12, 14]
    assert len(midi.tracks[1].events) == 4
    assert midi.tracks[1].events[1].running_status


def test_write_reproduces_original_bytes():
    data = HEADER + TRACK_1 + TRACK_2
    midi = midi_from_bytes(data)
    assert midi_to_bytes(midi) == data
    assert midi_from_bytes(midi_to_bytes(midi)) == midi


def test_header_without_tracks():
    midi = midi_from_bytes(HEADER)
    assert midi.tracks == ()


def test_bad_file_magic():
    with pytest.raises(HeaderMismatch):
        midi_from_bytes(b"RIFF" + HEADER[4:])


def test_bad_header_length():
    with pytest.raises(HeaderMismatch):
        midi_from_bytes(b"MThd\x00\x00\x00\x07" + HEADER[8:] + b"\x00")


def test_bad_track_magic():
    with pytest.raises(BadTrackHeader):
        midi_from_bytes(HEADER + b"MTrx" + TRACK_1[4:])


def test_track_size_smaller_than_events():
    bad = b"MTrk\x00\x00\x00\x03" + b"\x00\xff\x2f\x00"
    with pytest.raises(TrackSizeMismatch) as info:
        midi_from_bytes(HEADER + bad)
    assert (info.value.expected, info.value.actual) == (3, 4)


def test_truncated_track_body():
    with pytest.raises(TruncatedData):
        midi_from_bytes(HEADER + TRACK_1[:-2])


def test_written_size_is_recomputed():
    track = Track(events=(on(0, 0, 60, 100), off(24, 0, 60)), size=999)
    midi = MidiFile(track_mode=0, num_tracks=1, ticks_per_quarter=96, tracks=(track,))
    reread = midi_from_bytes(midi_to_bytes(midi))
    assert reread.tracks[0].size == 8
    assert reread.tracks[0].is_consistent


def test_file_round_trip_on_disk(tmp_path):
    midi = single_note_song()
    path = tmp_path / "nested" / "one.mid"
    write_midi_file(midi, path)
    assert read_midi_file(path) == midi


def _mido_song(path):
    mid = mido.MidiFile(type=1, ticks_per_beat=96)
    conductor = mido.MidiTrack()
    conductor.append(mido.MetaMessage("track_name", name="conductor", time=0))
    conductor.append(
        mido.MetaMessage(
            "time_signature",
            numerator=3,
            denominator=4,
            clocks_per_click=24,
            notated_32nd_notes_per_beat=8,
            time=0,
        )
    )
    conductor.append(mido.MetaMessage("set_tempo", tempo=600000, time=0))
    conductor.append(mido.MetaMessage("key_signature", key="D", time=0))
    mid.tracks.append(conductor)

    piano = mido.MidiTrack()
    piano.append(mido.Message("program_change", channel=1, program=4, time=0))
    piano.append(mido.Message("control_change", channel=1, control=7, value=100, time=0))
    for i, pitch in enumerate((60, 64, 67)):
        piano.append(mido.Message("note_on", channel=1, note=pitch, velocity=80 + i, time=0 if i == 0 else 48))
        piano.append(mido.Message("note_on", channel=1, note=pitch, velocity=0, time=48))
    piano.append(mido.Message("pitchwheel", channel=1, pitch=100, time=0))
    mid.tracks.append(piano)
    mid.save(str(path))


def test_mido_authored_file_round_trips_byte_for_byte(tmp_path):
    path = tmp_path / "mido.mid"
    _mido_song(path)
    data = path.read_bytes()

    midi = read_midi_file(path)
    assert midi_to_bytes(midi) == data
    assert all(track.is_consistent for track in midi.tracks)

    names = [e for e in midi.tracks[0].events if getattr(e, "meta", None) == META_TRACK_NAME]
    assert names[0].text == "conductor"

    # Message counts agree with an independent parser.
    reference = mido.MidiFile(str(path))
    assert [len(t.events) for t in midi.tracks] == [len(t) for t in reference.tracks]


def test_strip_note_events_keeps_timing_and_size():
    track = Track.from_events([program(0, 0, 1), on(10, 0, 60, 90), off(20, 0, 60), track_name("x")])
    stripped = strip_note_events(track, [0])
    assert [type(e).__name__ for e in stripped.events] == ["ProgramChangeEvent", "TextMetaEvent"]
    assert stripped.events[1].delta_time == 30
    assert stripped.is_consistent


def test_strip_note_events_only_touches_listed_channels():
    track = Track.from_events([on(0, 0, 60, 90), on(0, 1, 62, 90)])
    stripped = strip_note_events(track, [1])
    assert stripped.events == (on(0, 0, 60, 90),)


def test_running_status_restored_when_predecessor_removed():
    track = midi_from_bytes(HEADER + TRACK_1 + TRACK_2).tracks[1]
    assert strip_note_events(track, []).events == track.events

    # Without the explicit note-on, the running-status one must carry 0x90 again.
    fixed = normalize_running_status(track.events[1:])
    assert isinstance(fixed[0], ChannelEvent)
    assert not fixed[0].running_status
    assert encode_event(fixed[0]) == b"\x18\x90\x3c\x00"


def test_filter_track_keeps_requested_types():
    track = Track.from_events([program(0, 0, 1), on(5, 0, 60, 90), off(5, 0, 60), track_name("x")])
    only_programs = filter_track(track, channel_types=[PROGRAM_CHANGE])
    assert only_programs.events == (program(0, 0, 1),)
    only_meta = filter_track(track, meta=[META_TRACK_NAME])
    assert only_meta.events[0].delta_time == 10
    assert only_meta.size == len(encode_event(only_meta.events[0]))


def test_iter_midi_files(tmp_path):
    (tmp_path / "a").mkdir()
    for name in ("a/x.MID", "b.mid", "c.midi", "d.txt"):
        (tmp_path / name).write_bytes(b"")
    names = [p.name for p in iter_midi_files(tmp_path)]
    assert sorted(names) == ["b.mid", "c.midi", "x.MID"]


def test_read_midi_accepts_any_binary_stream():
    midi = read_midi(BytesIO(midi_to_bytes(song([on(0, 0, 60, 1), off(24, 0, 60)]))))
    assert len(midi.tracks) == 2


def test_running_status_survives_real_time_bytes():
    clock = SystemEvent(delta_time=0, command=SYSTEM_TIMING_CLOCK)
    follower = replace(on(5, 0, 62, 80), running_status=True)

    kept = normalize_running_status([on(0, 0, 60, 100), clock, follower])
    assert kept[2].running_status

    reset = normalize_running_status([on(0, 0, 60, 100), track_name("x"), follower])
    assert not reset[2].running_status

    other_channel = normalize_running_status([on(0, 1, 60, 100), clock, follower])
    assert not other_channel[2].running_status


def test_filter_keeps_running_status_across_clock():
    clock = SystemEvent(delta_time=0, command=SYSTEM_TIMING_CLOCK)
    events = [
        on(0, 0, 60, 100),
        clock,
        replace(on(5, 0, 62, 80), running_status=True),
        program(0, 1, 3),
    ]
    stripped = filter_track(Track.from_events(events), system=[SYSTEM_TIMING_CLOCK], channel_types=[NOTE_ON])
    assert stripped.events[2].running_status
    assert stripped.size == 4 + 2 + 3

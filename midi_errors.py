#!/usr/bin/env python3
"""
Error types raised while reading, rasterizing and composing MIDI files.

Every failure is tied to a single file (or a single compose call) and is not
retryable. Bulk loaders catch `MidiError` per file and skip that file.
"""

from __future__ import annotations


class MidiError(Exception):
    """Base class for all MIDI codec / piano-roll failures."""


class HeaderMismatch(MidiError):
    """Wrong magic bytes or wrong declared header length."""


class BadTrackHeader(HeaderMismatch):
    """A track chunk did not start with `MTrk`."""


class TrackSizeMismatch(MidiError):
    """Events consumed more bytes than the track header declared."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Track size is {expected} but read {actual} bytes")
        self.expected = int(expected)
        self.actual = int(actual)


class MalformedVarInt(MidiError):
    """Truncated or oversized variable-length quantity."""


class TruncatedData(MidiError):
    """The stream ended inside a fixed-width field or payload."""


class UnexpectedMetaPayload(MidiError):
    """A meta event carried data that does not match its fixed layout."""


class MissingTimeSignature(MidiError):
    """No time-signature meta event was found in the file."""


class TimeSignatureAtNonzeroDelta(MidiError):
    """Only time signatures declared at delta-time 0 are supported."""


class DegenerateGcdInput(MidiError):
    """Not enough distinct note ticks to derive a raster clock."""


class ComposeError(MidiError):
    """The target grid does not fit the template source."""

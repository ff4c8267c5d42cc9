from __future__ import annotations

from pathlib import Path

import pytest

from midi_file import MidiFile, midi_to_bytes


@pytest.fixture
def write_song(tmp_path: Path):
    def _write(name: str, midi: MidiFile) -> Path:
        path = tmp_path / name
        path.write_bytes(midi_to_bytes(midi))
        return path

    return _write

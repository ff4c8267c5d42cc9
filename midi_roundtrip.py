#!/usr/bin/env python3
"""
Round-trip check: MIDI bytes -> parsed file -> MIDI bytes (must be identical).

Optionally also: parsed file -> piano roll -> composed file -> piano roll, which
is the "does my grid representation actually work?" sanity check. The grid is
lossy only in velocity quantization and overlapping notes, so the strict
notion there is:
  rasterize(compose(roll)) == roll

CLI:
    python midi_roundtrip.py song.mid [more.mid ...] [--rasterize] [--compose OUT_DIR]
        [--debounce N | --config config.json]
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

import mido
import numpy as np

from composer import compose
from midi_errors import MidiError
from midi_file import MidiFile, midi_from_bytes, midi_to_bytes, write_midi_file
from piano_roll import index_notes, make_source, rasterize
from window_dataset import DatasetConfig


def first_difference(a: bytes, b: bytes) -> int | None:
    """Offset of the first differing byte, or None when equal."""
    for i, (x, y) in enumerate(zip(a, b)):
        if x != y:
            return i
    if len(a) != len(b):
        return min(len(a), len(b))
    return None


def _count_events(midi: MidiFile) -> int:
    return sum(len(track.events) for track in midi.tracks)


def _mido_event_count(path: Path) -> int | str:
    try:
        return sum(len(track) for track in mido.MidiFile(str(path)).tracks)
    except (OSError, ValueError, EOFError) as exc:
        return f"{type(exc).__name__}"


def check_file(
    path: Path,
    *,
    do_rasterize: bool = False,
    compose_dir: Path | None = None,
    debounce: int = 0,
) -> bool:
    data = path.read_bytes()
    midi = midi_from_bytes(data)
    written = midi_to_bytes(midi)
    diff = first_difference(data, written)

    status = "OK" if diff is None else f"DIFF at byte {diff}"
    print(
        f"{path.name}: {status} (tracks={len(midi.tracks)} events={_count_events(midi)} "
        f"mido_events={_mido_event_count(path)})"
    )
    ok = diff is None

    if not (do_rasterize or compose_dir is not None):
        return ok

    source = make_source(midi, name=path.name)
    print(f"  key={source.key} grid={source.roll.shape} min_tick={source.grid.min_tick}")

    if compose_dir is not None:
        composed = compose(source, source.roll, debounce=int(debounce))
        out_path = compose_dir / path.name
        write_midi_file(composed, out_path)
        again = rasterize(index_notes(composed), grid=source.grid)
        same = again.shape == source.roll.shape and bool(np.allclose(again, source.roll))
        print(f"  composed -> {out_path} ({'grid matches' if same else 'grid differs'})")

    return ok


def main() -> None:
    parser = argparse.ArgumentParser(description="Byte-exact MIDI round-trip check.")
    parser.add_argument("midi_paths", nargs="+", help="MIDI files to check.")
    parser.add_argument(
        "--rasterize",
        action="store_true",
        help="Also derive the raster clock and print the filter key and grid shape.",
    )
    parser.add_argument(
        "--compose",
        metavar="OUT_DIR",
        help="Rasterize, compose the grid back onto its own file and write it here.",
    )
    parser.add_argument(
        "--debounce",
        type=int,
        default=None,
        help="Velocity debounce threshold used with --compose (default: from --config, else 0).",
    )
    parser.add_argument(
        "--config",
        metavar="CONFIG_JSON",
        help="Dataset config.json; its debounce_threshold applies when --debounce is not given.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    compose_dir = Path(args.compose) if args.compose else None
    debounce = args.debounce
    if debounce is None:
        debounce = DatasetConfig.load(args.config).debounce_threshold if args.config else 0
    failed = 0
    for name in args.midi_paths:
        path = Path(name)
        try:
            ok = check_file(
                path,
                do_rasterize=bool(args.rasterize),
                compose_dir=compose_dir,
                debounce=int(debounce),
            )
        except (MidiError, OSError) as exc:
            print(f"{path.name}: ERROR {type(exc).__name__}: {exc}")
            ok = False
        failed += 0 if ok else 1

    print(f"Done. files={len(args.midi_paths)} failed={failed}")
    if failed:
        raise SystemExit(1)


if __name__ == "__main__":
    main()

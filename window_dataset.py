#!/usr/bin/env python3
"""
Training windows over rasterized MIDI files.

Pipeline:
  folder of .mid files
    -> parse + index notes (files that fail are skipped)
    -> keep files whose filter key "num/den-n32-clicks-channels-gcd" matches
    -> rasterize
    -> one Point per valid window start, across all sources
    -> shuffle, split at ceil(total * train_fraction)

Points are column ranges into the source grids, not copies; the train/test
splits are views (offset + length) over the shared shuffled point list.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Iterator, Sequence

import numpy as np
import torch
from torch.utils.data import Dataset

from composer import compose
from midi_errors import MidiError
from midi_file import MidiFile, iter_midi_files, read_midi_file
from piano_roll import DEFAULT_VELOCITY, Source, VelocityMapping, index_notes, rasterize

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DatasetConfig:
    """Frozen dataset settings; stored next to trained models as config.json."""

    time_sig: str
    input_len: int
    target_len: int
    train_fraction: float = 0.9
    rnn: bool = False
    seed: int | None = None
    debounce_threshold: int = 0

    def __post_init__(self) -> None:
        if int(self.input_len) <= 0:
            raise ValueError("input_len must be > 0")
        if int(self.target_len) <= 0:
            raise ValueError("target_len must be > 0")
        if not 0.0 <= float(self.train_fraction) <= 1.0:
            raise ValueError("train_fraction must be within [0, 1]")
        if int(self.debounce_threshold) < 0:
            raise ValueError("debounce_threshold must be >= 0")

    def save(self, path: str | Path) -> None:
        Path(path).write_text(json.dumps(asdict(self), indent=2), encoding="utf-8")

    @classmethod
    def load(cls, path: str | Path) -> "DatasetConfig":
        obj = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls(**obj)


@dataclass(frozen=True, slots=True)
class Point:
    """Input (X) and target (Y) column ranges of one source grid."""

    source_index: int
    x_start: int
    x_stop: int
    y_start: int
    y_stop: int


def make_points(
    width: int,
    input_len: int,
    target_len: int,
    *,
    source_index: int = 0,
    rnn: bool = False,
) -> list[Point]:
    """
    One Point per start offset s with s + input_len + target_len <= width.

    Standard: X = [s, s+I), Y = [s+I, s+I+T).
    RNN:      X = [s, s+I+T-1), Y = [s+I, s+I+T); the input overlaps the target
              so a recurrent model can be unrolled over it.
    """
    span = int(input_len) + int(target_len)
    points: list[Point] = []
    for start in range(0, int(width) - span + 1):
        x_stop = start + span - 1 if rnn else start + int(input_len)
        points.append(
            Point(
                source_index=source_index,
                x_start=start,
                x_stop=x_stop,
                y_start=start + int(input_len),
                y_stop=start + span,
            )
        )
    return points


class WindowSplit(Dataset[tuple[torch.Tensor, torch.Tensor]]):
    """A contiguous slice [offset, offset + length) of the shared point list."""

    def __init__(
        self,
        sources: Sequence[Source],
        points: Sequence[Point],
        offset: int,
        length: int,
    ) -> None:
        if offset < 0 or length < 0 or offset + length > len(points):
            raise ValueError(
                f"Split [{offset}, {offset + length}) outside {len(points)} points"
            )
        self.sources = sources
        self.points = points
        self.offset = int(offset)
        self.length = int(length)

    def __len__(self) -> int:
        return self.length

    def size(self) -> int:
        return self.length

    def point(self, idx: int) -> Point | None:
        if idx < 0 or idx >= self.length:
            return None
        return self.points[self.offset + idx]

    def get(self, idx: int) -> tuple[torch.Tensor, torch.Tensor] | None:
        """(X, Y) for `idx`, or None past the end of the split."""
        pt = self.point(int(idx))
        if pt is None:
            return None
        roll = self.sources[pt.source_index].roll
        x = roll[:, pt.x_start : pt.x_stop]
        y = roll[:, pt.y_start : pt.y_stop]
        return torch.from_numpy(x), torch.from_numpy(y)

    def __getitem__(self, idx: int) -> tuple[torch.Tensor, torch.Tensor]:
        item = self.get(int(idx))
        if item is None:
            raise IndexError(idx)
        return item

    def __iter__(self) -> Iterator[tuple[torch.Tensor, torch.Tensor]]:
        for idx in range(self.length):
            yield self[idx]


@dataclass
class RollDataset:
    sources: list[Source]
    points: list[Point]
    train: WindowSplit
    test: WindowSplit
    skipped: dict[str, str] = field(default_factory=dict)
    config: DatasetConfig | None = None
    velocity: VelocityMapping = DEFAULT_VELOCITY

    def size(self) -> int:
        return len(self.points)

    @property
    def debounce_threshold(self) -> int:
        return int(self.config.debounce_threshold) if self.config is not None else 0

    def compose(self, source_index: int, roll: np.ndarray) -> MidiFile:
        """Compose a grid (e.g. model output) onto one of the loaded sources."""
        return compose(
            self.sources[source_index],
            roll,
            debounce=self.debounce_threshold,
            velocity=self.velocity,
        )

    def describe(self) -> dict:
        """JSON-friendly summary, the same shape as the exporters' stats.json."""
        return {
            "sources": [
                {"name": s.name, "key": s.key, "shape": list(s.roll.shape)} for s in self.sources
            ],
            "points_total": len(self.points),
            "train": self.train.size(),
            "test": self.test.size(),
            "skipped": dict(self.skipped),
        }


def split_points(
    sources: Sequence[Source],
    points: list[Point],
    train_fraction: float,
    *,
    seed: int | None = None,
) -> tuple[list[Point], WindowSplit, WindowSplit]:
    """Shuffle `points` uniformly and split at ceil(total * train_fraction)."""
    rng = np.random.default_rng(seed)
    order = rng.permutation(len(points))
    shuffled = [points[int(i)] for i in order]
    num_train = int(math.ceil(len(shuffled) * float(train_fraction)))
    num_train = min(num_train, len(shuffled))
    train = WindowSplit(sources, shuffled, 0, num_train)
    test = WindowSplit(sources, shuffled, num_train, len(shuffled) - num_train)
    return shuffled, train, test


def load_sources(
    directory: str | Path,
    time_sig: str,
    *,
    velocity: VelocityMapping = DEFAULT_VELOCITY,
    skipped: dict[str, str] | None = None,
) -> list[Source]:
    """Parse every MIDI file under `directory` and rasterize those matching `time_sig`."""
    sources: list[Source] = []
    for path in iter_midi_files(directory):
        try:
            midi = read_midi_file(path)
            index = index_notes(midi)
        except (MidiError, OSError) as exc:
            logger.warning("Skipping %s: %s: %s", path.name, type(exc).__name__, exc)
            if skipped is not None:
                skipped[str(path)] = f"{type(exc).__name__}: {exc}"
            continue

        if index.key != time_sig:
            logger.debug("Skipping %s: key %s != %s", path.name, index.key, time_sig)
            continue

        sources.append(
            Source(name=path.name, midi=midi, index=index, roll=rasterize(index, velocity=velocity))
        )
    return sources


def load_dataset(
    directory: str | Path,
    time_sig: str,
    input_len: int,
    target_len: int,
    train_fraction: float = 0.9,
    *,
    rnn: bool = False,
    seed: int | None = None,
    velocity: VelocityMapping = DEFAULT_VELOCITY,
) -> RollDataset:
    """
    Load a folder of MIDI files as windowed (X, Y) train/test splits.

    Args:
        directory: Folder searched recursively for .mid/.midi files.
        time_sig: Filter key "num/den-n32-clicks-channels-gcd".
        input_len: Columns per input window X.
        target_len: Columns per target window Y.
        train_fraction: Share of shuffled points used for training.
        rnn: Use overlapping RNN windows (see `make_points`).
        seed: Shuffle seed.
    """
    skipped: dict[str, str] = {}
    sources = load_sources(directory, time_sig, velocity=velocity, skipped=skipped)

    points: list[Point] = []
    for source_index, source in enumerate(sources):
        points.extend(
            make_points(
                source.roll.shape[1],
                input_len,
                target_len,
                source_index=source_index,
                rnn=rnn,
            )
        )

    points, train, test = split_points(sources, points, train_fraction, seed=seed)
    logger.info(
        "Loaded %d source(s), %d point(s): train=%d test=%d skipped=%d",
        len(sources),
        len(points),
        train.size(),
        test.size(),
        len(skipped),
    )
    return RollDataset(
        sources=sources,
        points=points,
        train=train,
        test=test,
        skipped=skipped,
        velocity=velocity,
    )


def load_dataset_from_config(
    directory: str | Path,
    cfg: DatasetConfig,
    *,
    velocity: VelocityMapping = DEFAULT_VELOCITY,
) -> RollDataset:
    """`load_dataset` driven by a config; the config also sets the compose debounce."""
    dataset = load_dataset(
        directory,
        cfg.time_sig,
        int(cfg.input_len),
        int(cfg.target_len),
        float(cfg.train_fraction),
        rnn=bool(cfg.rnn),
        seed=cfg.seed,
        velocity=velocity,
    )
    dataset.config = cfg
    return dataset


def grid_keys(directory: str | Path) -> dict[str, str]:
    """Filter key per parseable file (failures map to "<ErrorName>: message")."""
    keys: dict[str, str] = {}
    for path in iter_midi_files(directory):
        try:
            keys[str(path)] = index_notes(read_midi_file(path)).key
        except (MidiError, OSError) as exc:
            keys[str(path)] = f"{type(exc).__name__}: {exc}"
    return keys

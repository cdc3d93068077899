"""
Per-run extraction.

AnnualExtractor walks the daily records of one run and computes, at every
January 1st, the prevalence, the normalised frequency of each marker and the
per-100 treatment failure rates. Its snapshots are only released when the run
reaches the terminal date.

MonthlyExtractor is the narrower mode: one scalar column at every first day of
the month, plus the value at a fixed terminal year. It has no completeness gate.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Tuple

import numpy as np

from error_handling import CustomizedError, DegenerateNormalization, RunIncomplete
from marker_decoder import MarkerPanel
from row_model import SCALAR_FIELDS, DailyRecord


HUNDRED = 100.0

Date = Tuple[int, int, int]


class ScanState(Enum):
    """States of the run scan."""
    SCANNING = "scanning"
    DONE = "done"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class SnapshotRecord:
    """Statistics of one run at one annual boundary."""
    year: int
    pfpr: float
    marker_freqs: Tuple[float, ...]
    ntf: float
    tf: float


@dataclass(frozen=True)
class MonthlyRecord:
    year: int
    month: int
    value: float


@dataclass
class MonthlyRunResult:
    records: List[MonthlyRecord] = field(default_factory=list)
    terminal_value: Optional[float] = None


def is_annual_boundary(record: DailyRecord) -> bool:
    return record.month == 1 and record.day == 1


def per_hundred(count: float, population: float) -> float:
    """Rescale an absolute count to a rate per 100 population."""
    if population == 0:
        raise DegenerateNormalization("population size is 0, can't rescale failure counts")
    return count * HUNDRED / population


def marker_frequencies(genotype_freqs: np.ndarray, panel: MarkerPanel) -> np.ndarray:
    """
    Frequency of each marker as its share of the total genotype mass.

    Raises:
        DegenerateNormalization: if the total mass is zero.
    """
    total_mass = genotype_freqs.sum()
    if total_mass == 0:
        raise DegenerateNormalization("total genotype frequency mass is 0")
    return panel.marker_sums(genotype_freqs) / total_mass


class AnnualExtractor:
    """
    Three-state scan over one run: SCANNING until the terminal date is seen
    (DONE) or the records run out (EXHAUSTED).

    The extractor keeps no state between runs; `extract` resets it, so one
    instance can serve a whole batch.
    """

    def __init__(self, panel: MarkerPanel, epoch_year: int, terminal_date: Date,
                 include_terminal_snapshot: bool = True):
        self.panel = panel
        self.epoch_year = epoch_year
        self.terminal_date = tuple(terminal_date)
        self.include_terminal_snapshot = include_terminal_snapshot
        self.state = ScanState.SCANNING
        self._buffer: List[SnapshotRecord] = []

    def _reset(self):
        self.state = ScanState.SCANNING
        self._buffer = []

    def snapshot(self, record: DailyRecord) -> SnapshotRecord:
        """Compute the snapshot statistics of a boundary record."""
        freqs = marker_frequencies(record.genotype_frequencies, self.panel)
        population = record.population
        schema = record.schema
        # Variants without failure columns report the rates as missing
        ntf = per_hundred(record.cumulative_ntf, population) if schema.has_field("cumulative_ntf") else math.nan
        tf = per_hundred(record.cumulative_tf, population) if schema.has_field("cumulative_tf") else math.nan
        return SnapshotRecord(
            year=record.year - self.epoch_year,
            pfpr=record.pfpr,
            marker_freqs=tuple(float(f) for f in freqs),
            ntf=ntf,
            tf=tf,
        )

    def step(self, record: DailyRecord) -> ScanState:
        """Feed one record while SCANNING and return the new state."""
        if self.state is not ScanState.SCANNING:
            raise CustomizedError(f"Can't consume records in state {self.state.value}")

        reached_terminal = record.date == self.terminal_date
        if is_annual_boundary(record) and (self.include_terminal_snapshot or not reached_terminal):
            self._buffer.append(self.snapshot(record))
        if reached_terminal:
            self.state = ScanState.DONE
        return self.state

    def finish(self) -> List[SnapshotRecord]:
        """
        Close the scan. Releases the buffered snapshots of a complete run.

        Raises:
            RunIncomplete: if the terminal date was never seen; the buffer is dropped.
        """
        if self.state is ScanState.SCANNING:
            self.state = ScanState.EXHAUSTED
        if self.state is ScanState.EXHAUSTED:
            n_dropped = len(self._buffer)
            self._buffer = []
            raise RunIncomplete(
                f"run ended before terminal date {self._format_date(self.terminal_date)} "
                f"({n_dropped} snapshot(s) discarded)")
        released, self._buffer = self._buffer, []
        return released

    def extract(self, records: Iterable[DailyRecord]) -> List[SnapshotRecord]:
        """Run the full scan over a record stream."""
        self._reset()
        try:
            for record in records:
                if self.step(record) is ScanState.DONE:
                    break
        except CustomizedError:
            self._buffer = []
            raise
        return self.finish()

    @staticmethod
    def _format_date(date: Date) -> str:
        return "{:04d}-{:02d}-{:02d}".format(*date)


class MonthlyExtractor:
    """Records one scalar column at each month start and at a terminal year."""

    def __init__(self, field_name: str, epoch_year: int, terminal_year_offset: int):
        if field_name not in SCALAR_FIELDS:
            raise CustomizedError(f"Monthly field '{field_name}' is not one of {list(SCALAR_FIELDS)}")
        self.field_name = field_name
        self.epoch_year = epoch_year
        self.terminal_year_offset = terminal_year_offset

    @property
    def terminal_date(self) -> Date:
        return (self.epoch_year + self.terminal_year_offset, 1, 1)

    def extract(self, records: Iterable[DailyRecord]) -> MonthlyRunResult:
        result = MonthlyRunResult()
        terminal_date = self.terminal_date
        for record in records:
            if record.day != 1:
                continue
            value = record.scalar(self.field_name)
            result.records.append(MonthlyRecord(record.year - self.epoch_year, record.month, value))
            if record.date == terminal_date:
                result.terminal_value = value
                break
        return result

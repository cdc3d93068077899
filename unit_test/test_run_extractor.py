import math
import pytest
import numpy as np
import os, sys

curr_dir = os.path.dirname(__file__)
codes_dir = os.path.join(curr_dir, '../resextract_codes')
if codes_dir not in sys.path:
    sys.path.insert(0, codes_dir)

from run_extractor import (
    ScanState,
    SnapshotRecord,
    AnnualExtractor,
    MonthlyExtractor,
    marker_frequencies,
    per_hundred,
    is_annual_boundary,
)
from marker_decoder import MarkerPanel
from row_model import STANDARD_SCHEMA, PFPR_ONLY_SCHEMA, parse_row
from error_handling import CustomizedError, DegenerateNormalization, MalformedRow, RunIncomplete
from synthetic_runs import make_line, daily_dates


def records_for(dates, schema=STANDARD_SCHEMA, **kwargs):
    return [parse_row(make_line(y, m, d, schema=schema, **kwargs), schema, i + 1)
            for i, (y, m, d) in enumerate(dates)]


def twice_monthly(first_year, last_year, stop=None):
    """The 1st and 15th of every month of the given years, then `stop` if given."""
    dates = [(y, m, d) for y in range(first_year, last_year + 1) for m in range(1, 13) for d in (1, 15)]
    if stop is not None:
        dates.append(stop)
    return dates


@pytest.fixture
def panel():
    return MarkerPanel()


@pytest.fixture
def extractor(panel):
    return AnnualExtractor(panel, epoch_year=2022, terminal_date=(2027, 1, 1))


class TestHelpers:

    def test_per_hundred(self):
        assert per_hundred(50, 2000) == pytest.approx(2.5)

    def test_per_hundred_zero_population(self):
        with pytest.raises(DegenerateNormalization, match="population"):
            per_hundred(3, 0)

    def test_marker_frequencies_uniform(self, panel):
        np.testing.assert_allclose(marker_frequencies(np.ones(128), panel), [0.5] * 4)

    def test_marker_frequencies_unnormalised_input(self, panel):
        freqs = np.zeros(128)
        freqs[0b000100] = 3.0  # c580y only
        freqs[0] = 1.0
        np.testing.assert_allclose(marker_frequencies(freqs, panel), [0.75, 0, 0, 0])

    def test_marker_frequencies_zero_mass(self, panel):
        with pytest.raises(DegenerateNormalization, match="mass is 0"):
            marker_frequencies(np.zeros(128), panel)

    def test_marker_frequencies_in_unit_interval(self, panel):
        freqs = np.random.default_rng(7).random(128) * 10
        values = marker_frequencies(freqs, panel)
        assert ((values >= 0) & (values <= 1)).all()

    def test_is_annual_boundary(self):
        jan1, jan2, feb1 = records_for([(2023, 1, 1), (2023, 1, 2), (2023, 2, 1)])
        assert is_annual_boundary(jan1)
        assert not is_annual_boundary(jan2)
        assert not is_annual_boundary(feb1)


class TestAnnualExtractor:

    def test_uniform_run_includes_terminal_snapshot(self, extractor):
        snaps = extractor.extract(records_for(twice_monthly(2022, 2026, stop=(2027, 1, 1))))
        assert extractor.state is ScanState.DONE
        assert [s.year for s in snaps] == [0, 1, 2, 3, 4, 5]
        for s in snaps:
            assert s.marker_freqs == pytest.approx((0.5, 0.5, 0.5, 0.5))

    def test_terminal_snapshot_excluded(self, panel):
        extractor = AnnualExtractor(panel, 2022, (2027, 1, 1), include_terminal_snapshot=False)
        snaps = extractor.extract(records_for(twice_monthly(2022, 2026, stop=(2027, 1, 1))))
        assert [s.year for s in snaps] == [0, 1, 2, 3, 4]

    def test_daily_run(self, extractor):
        snaps = extractor.extract(records_for(daily_dates((2022, 1, 1), (2027, 1, 1))))
        assert [s.year for s in snaps] == list(range(6))

    def test_stops_at_terminal_date(self, extractor):
        # Anything after the terminal date is never read, not even a broken line
        records = iter(records_for(twice_monthly(2022, 2026, stop=(2027, 1, 1))) + ["not a record"])
        snaps = extractor.extract(records)
        assert len(snaps) == 6
        assert next(records) == "not a record"

    def test_rates_and_prevalence(self, extractor):
        dates = [(2022, 1, 1), (2022, 6, 1), (2027, 1, 1)]
        snaps = extractor.extract(records_for(dates, ntf=50, tf=20, population=2000, pfpr=0.3))
        first = snaps[0]
        assert isinstance(first, SnapshotRecord)
        assert first.year == 0
        assert first.pfpr == pytest.approx(0.3)
        assert first.ntf == pytest.approx(2.5)
        assert first.tf == pytest.approx(1.0)

    def test_incomplete_run_discards_everything(self, extractor):
        with pytest.raises(RunIncomplete, match="2027-01-01 \\(5 snapshot\\(s\\) discarded\\)"):
            extractor.extract(records_for(twice_monthly(2022, 2026)))
        assert extractor.state is ScanState.EXHAUSTED
        assert extractor._buffer == []

    def test_empty_run(self, extractor):
        with pytest.raises(RunIncomplete):
            extractor.extract([])

    def test_malformed_boundary_row_aborts_run(self, extractor):
        records = records_for(twice_monthly(2022, 2026, stop=(2027, 1, 1)))
        fields = make_line(2024, 1, 1).rstrip("\n").split("\t")
        fields[STANDARD_SCHEMA.genotype_start] = "NA"
        records[48] = parse_row("\t".join(fields), STANDARD_SCHEMA, 49)
        with pytest.raises(MalformedRow, match="line 49"):
            extractor.extract(records)
        assert extractor._buffer == []

    def test_malformed_cell_off_boundary_is_ignored(self, extractor):
        records = records_for(twice_monthly(2022, 2026, stop=(2027, 1, 1)))
        fields = make_line(2024, 3, 15).rstrip("\n").split("\t")
        fields[STANDARD_SCHEMA.genotype_start] = "NA"
        records[53] = parse_row("\t".join(fields), STANDARD_SCHEMA, 54)
        assert len(extractor.extract(records)) == 6

    def test_zero_genotype_mass(self, extractor):
        with pytest.raises(DegenerateNormalization):
            extractor.extract(records_for([(2022, 1, 1), (2027, 1, 1)], genotypes=np.zeros(128)))

    def test_reusable_between_runs(self, extractor):
        with pytest.raises(RunIncomplete):
            extractor.extract(records_for([(2022, 1, 1)]))
        snaps = extractor.extract(records_for([(2022, 1, 1), (2027, 1, 1)]))
        assert [s.year for s in snaps] == [0, 5]

    def test_step_after_done(self, extractor):
        jan = records_for([(2027, 1, 1)])[0]
        assert extractor.step(jan) is ScanState.DONE
        with pytest.raises(CustomizedError, match="state done"):
            extractor.step(jan)

    def test_pfpr_only_schema_has_no_rates(self, panel):
        extractor = AnnualExtractor(panel, 2022, (2023, 1, 1))
        snaps = extractor.extract(records_for([(2022, 1, 1), (2023, 1, 1)], schema=PFPR_ONLY_SCHEMA))
        assert len(snaps) == 2
        assert math.isnan(snaps[0].ntf) and math.isnan(snaps[0].tf)
        assert snaps[0].marker_freqs == pytest.approx((0.5, 0.5, 0.5, 0.5))


class TestMonthlyExtractor:

    def test_month_starts_and_terminal_value(self):
        extractor = MonthlyExtractor("pfpr", epoch_year=2022, terminal_year_offset=2)
        result = extractor.extract(records_for(twice_monthly(2022, 2025), pfpr=0.2))
        # 24 month starts for 2022-2023 plus January 2024
        assert len(result.records) == 25
        assert (result.records[0].year, result.records[0].month) == (0, 1)
        assert (result.records[-1].year, result.records[-1].month) == (2, 1)
        assert result.terminal_value == pytest.approx(0.2)

    def test_no_completeness_gate(self):
        extractor = MonthlyExtractor("monthly_new_infections", 2022, 10)
        result = extractor.extract(records_for(twice_monthly(2022, 2022), new_infections=33))
        assert len(result.records) == 12
        assert result.terminal_value is None
        assert all(r.value == 33 for r in result.records)

    def test_unknown_field(self):
        with pytest.raises(CustomizedError, match="not one of"):
            MonthlyExtractor("genotype", 2022, 10)

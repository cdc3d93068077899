"""
Batch extraction over a parameter x replicate grid.

Every (param_id, run_id) pair resolves to one daily run file. Each job is
extracted on its own: a missing file, a malformed line or a truncated run is
logged and the batch moves on. Rows of successful jobs are appended to the
output table and flushed before the next job starts.
"""

import argparse
import logging
import os
import sys
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from base_func import read_default_params, read_params, resolve_path, str2bool
from error_handling import CustomizedError, MalformedRow, SourceUnavailable
from marker_decoder import GENOTYPE_DOMAIN, MarkerPanel
from output_sink import OutputSink
from replicate_summary import write_replicate_summary
from row_model import SCALAR_FIELDS, iter_records, resolve_schema
from run_extractor import AnnualExtractor, MonthlyExtractor

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "default_config.json"
MODES = ("annual", "monthly")
DEFAULT_OUTPUTS = {
    "annual": "yearly_data.csv",
    "monthly": "monthly_summary.csv",
}

EXIT_OK = 0
EXIT_BAD_CONFIG = 1
EXIT_JOBS_FAILED = 3


# ---------------- Configuration ---------------- #

class ExtractionConfig:
    def __init__(self, wk_dir, mode="annual", param_from=0, param_to=1, n_runs=1,
                 job_multiplier=1000, file_pattern="monthly_data_{job_id}.txt",
                 epoch_year=2022, terminal_date=(2027, 1, 1), include_terminal_snapshot=True,
                 schema="standard", markers=None, legacy_index_tables=None,
                 monthly_field="pfpr", terminal_year_offset=10,
                 output="", terminal_output="terminal_data.csv", summary_output=""):
        self.wk_dir = wk_dir # root of the run files
        self.mode = mode # annual | monthly
        self.param_from = param_from
        self.param_to = param_to # exclusive
        self.n_runs = n_runs
        self.job_multiplier = job_multiplier
        self.file_pattern = file_pattern
        self.epoch_year = epoch_year
        self.terminal_date = terminal_date
        self.include_terminal_snapshot = include_terminal_snapshot
        self.schema = schema
        self.markers = markers
        self.legacy_index_tables = legacy_index_tables or {}
        self.monthly_field = monthly_field
        self.terminal_year_offset = terminal_year_offset
        self.output = output or DEFAULT_OUTPUTS.get(mode, "")
        self.terminal_output = terminal_output
        self.summary_output = summary_output

    @classmethod
    def from_config_dict(cls, all_config: Dict[str, Any]) -> 'ExtractionConfig':
        basic_config = all_config.get("BasicRunConfiguration", {})
        ext_config = all_config.get("ExtractionConfiguration", {})
        return cls(
            wk_dir=basic_config.get("cwdir", "."),
            mode=ext_config.get("mode", "annual"),
            param_from=ext_config.get("param_from", 0),
            param_to=ext_config.get("param_to", 1),
            n_runs=ext_config.get("n_runs", 1),
            job_multiplier=ext_config.get("job_multiplier", 1000),
            file_pattern=ext_config.get("file_pattern", "monthly_data_{job_id}.txt"),
            epoch_year=ext_config.get("epoch_year", 2022),
            terminal_date=ext_config.get("terminal_date", [2027, 1, 1]),
            include_terminal_snapshot=str2bool(ext_config.get("include_terminal_snapshot", True)),
            schema=ext_config.get("schema", "standard"),
            markers=ext_config.get("markers"),
            legacy_index_tables=ext_config.get("legacy_index_tables"),
            monthly_field=ext_config.get("monthly_field", "pfpr"),
            terminal_year_offset=ext_config.get("terminal_year_offset", 10),
            output=ext_config.get("output", ""),
            terminal_output=ext_config.get("terminal_output", "terminal_data.csv"),
            summary_output=ext_config.get("summary_output", ""),
        )

    @staticmethod
    def _check_int(value, name, min_val=0):
        if not isinstance(value, int) or isinstance(value, bool) or value < min_val:
            raise CustomizedError(f"{name} must be an integer >= {min_val}, got {value!r}")

    def validate(self):
        if not os.path.isdir(self.wk_dir):
            raise CustomizedError(f"Source directory {self.wk_dir} does not exist.")
        if self.mode not in MODES:
            raise CustomizedError(f"{self.mode} isn't a valid extraction mode. Please choose one of {MODES}")
        self._check_int(self.param_from, "param_from")
        self._check_int(self.param_to, "param_to")
        if self.param_to < self.param_from:
            raise CustomizedError(f"param_to ({self.param_to}) must not be smaller than param_from ({self.param_from})")
        self._check_int(self.n_runs, "n_runs")
        self._check_int(self.job_multiplier, "job_multiplier", 1)
        if self.n_runs > self.job_multiplier:
            raise CustomizedError(f"n_runs ({self.n_runs}) exceeds job_multiplier ({self.job_multiplier}); "
                                  "job ids of neighbouring parameters would collide")
        if "{job_id}" not in self.file_pattern:
            raise CustomizedError(f"file_pattern '{self.file_pattern}' must contain '{{job_id}}'")
        self._check_int(self.epoch_year, "epoch_year")
        if self.mode == "annual":
            if not isinstance(self.terminal_date, (list, tuple)) or len(self.terminal_date) != 3:
                raise CustomizedError(f"terminal_date must be [year, month, day], got {self.terminal_date!r}")
            year, month, day = self.terminal_date
            self._check_int(year, "terminal_date year", self.epoch_year)
            self._check_int(month, "terminal_date month", 1)
            self._check_int(day, "terminal_date day", 1)
            if month > 12 or day > 31:
                raise CustomizedError(f"terminal_date {self.terminal_date} is not a calendar date")
        schema = resolve_schema(self.schema)
        if self.mode == "annual" and schema.genotype_count != GENOTYPE_DOMAIN:
            raise CustomizedError(f"Schema '{schema.name}' has a genotype block of {schema.genotype_count} columns, "
                                  f"markers need {GENOTYPE_DOMAIN}")
        if self.markers is not None and not isinstance(self.markers, dict):
            raise CustomizedError("markers must map marker names to bit positions")
        if self.mode == "monthly":
            if self.monthly_field not in SCALAR_FIELDS:
                raise CustomizedError(f"monthly_field '{self.monthly_field}' is not one of {list(SCALAR_FIELDS)}")
            if not schema.has_field(self.monthly_field):
                raise CustomizedError(f"Schema '{schema.name}' has no '{self.monthly_field}' column")
            self._check_int(self.terminal_year_offset, "terminal_year_offset")
        if not self.output:
            raise CustomizedError("An output path is required")

    def output_path(self, name):
        return resolve_path(name, self.wk_dir)


# ---------------- Jobs ---------------- #

@dataclass(frozen=True)
class JobSpec:
    param_id: int
    run_id: int
    job_id: int
    path: str


def make_job_id(param_id, run_id, multiplier=1000):
    return param_id * multiplier + run_id


def iter_jobs(config: ExtractionConfig) -> Iterator[JobSpec]:
    """All jobs of the grid, ascending param_id then ascending run_id."""
    for param_id in range(config.param_from, config.param_to):
        for run_id in range(config.n_runs):
            job_id = make_job_id(param_id, run_id, config.job_multiplier)
            file_name = config.file_pattern.format(job_id=job_id, param_id=param_id, run_id=run_id)
            yield JobSpec(param_id, run_id, job_id, os.path.join(config.wk_dir, file_name))


@dataclass
class BatchSummary:
    attempted: int = 0
    succeeded: int = 0
    rows_written: int = 0
    failures: Dict[str, List[Tuple[int, int, int]]] = field(default_factory=OrderedDict)

    @property
    def failed(self) -> int:
        return sum(len(jobs) for jobs in self.failures.values())

    def record_failure(self, job: JobSpec, error: CustomizedError):
        self.failures.setdefault(error.kind, []).append((job.param_id, job.run_id, job.job_id))

    def log(self):
        logger.info(f"{self.succeeded}/{self.attempted} jobs extracted, {self.rows_written} rows written")
        for kind, jobs in self.failures.items():
            logger.warning(f"{len(jobs)} job(s) failed with {kind}")


# ---------------- Driver ---------------- #

class BatchDriver:
    """Runs the extraction over the full grid with per-job isolation."""

    def __init__(self, config: ExtractionConfig):
        self.config = config
        self.summary = BatchSummary()
        self.schema = None

    def open_source(self, job: JobSpec):
        try:
            return open(job.path, "r")
        except OSError as e:
            raise SourceUnavailable(f"unable to open {job.path}: {e.strerror or e}")

    def extract_job(self, job: JobSpec, extractor):
        handle = self.open_source(job)
        with handle:
            try:
                return extractor.extract(iter_records(handle, self.schema))
            except UnicodeDecodeError as e:
                raise MalformedRow(f"undecodable bytes in {job.path}: {e}")
            except OSError as e:
                raise SourceUnavailable(f"error while reading {job.path}: {e}")

    def _annual_rows(self, job: JobSpec, snapshots, panel: MarkerPanel) -> List[Dict]:
        rows = []
        for snap in snapshots:
            row = OrderedDict(param_id=job.param_id, run_id=job.run_id, year=snap.year, pfpr=snap.pfpr)
            row.update(zip(panel.columns, snap.marker_freqs))
            row["ntf"] = snap.ntf
            row["tf"] = snap.tf
            rows.append(row)
        return rows

    def run(self) -> Tuple[Optional[BatchSummary], Optional[Exception]]:
        try:
            self.config.validate()
            self.schema = resolve_schema(self.config.schema)
            if self.config.mode == "annual":
                self._run_annual()
            else:
                self._run_monthly()
        except CustomizedError as e:
            logger.error(f"Extraction aborted: {e}")
            return None, e

        self.summary.log()
        print("********************************************************************\n"
              "                  RESISTANCE MARKERS EXTRACTED\n"
              "********************************************************************",
              flush=True)
        return self.summary, None

    def _each_job(self, extractor):
        """Yield (job, result) for every job that succeeded, logging the rest."""
        current_param = None
        for job in iter_jobs(self.config):
            if job.param_id != current_param:
                current_param = job.param_id
                logger.info(f"extracting data for param_id: {job.param_id}")
            self.summary.attempted += 1
            try:
                result = self.extract_job(job, extractor)
            except CustomizedError as e:
                self.summary.record_failure(job, e)
                logger.error(f"param_id: {job.param_id}, run_id: {job.run_id}, job_id: {job.job_id}, "
                             f"{e.kind}: {e}")
                continue
            self.summary.succeeded += 1
            yield job, result

    def _run_annual(self):
        cfg = self.config
        panel = MarkerPanel(cfg.markers, legacy_tables=cfg.legacy_index_tables)
        extractor = AnnualExtractor(panel, cfg.epoch_year, tuple(cfg.terminal_date),
                                    cfg.include_terminal_snapshot)
        columns = ["param_id", "run_id", "year", "pfpr"] + panel.columns + ["ntf", "tf"]
        output_path = cfg.output_path(cfg.output)

        with OutputSink(output_path, columns) as sink:
            for job, snapshots in self._each_job(extractor):
                self.summary.rows_written += sink.append(self._annual_rows(job, snapshots, panel))
        logger.info(f"Annual table written to {output_path}")

        if cfg.summary_output:
            write_replicate_summary(output_path, cfg.output_path(cfg.summary_output))

    def _run_monthly(self):
        cfg = self.config
        extractor = MonthlyExtractor(cfg.monthly_field, cfg.epoch_year, cfg.terminal_year_offset)
        monthly_columns = ["param_id", "run_id", "year", "month", cfg.monthly_field]
        terminal_column = f"{cfg.monthly_field}_at_year_{cfg.terminal_year_offset}"
        output_path = cfg.output_path(cfg.output)
        terminal_path = cfg.output_path(cfg.terminal_output)
        if cfg.summary_output:
            logger.warning("Replicate summaries are only produced in annual mode, ignoring summary_output")

        with OutputSink(output_path, monthly_columns) as sink, \
                OutputSink(terminal_path, ["param_id", "run_id", terminal_column]) as terminal_sink:
            for job, result in self._each_job(extractor):
                rows = [{"param_id": job.param_id, "run_id": job.run_id, "year": r.year,
                         "month": r.month, cfg.monthly_field: r.value} for r in result.records]
                self.summary.rows_written += sink.append(rows)
                if result.terminal_value is None:
                    logger.warning(f"param_id: {job.param_id}, run_id: {job.run_id}, job_id: {job.job_id} "
                                   f"never reached year {cfg.terminal_year_offset}, no terminal value")
                    continue
                terminal_sink.append([{"param_id": job.param_id, "run_id": job.run_id,
                                       terminal_column: result.terminal_value}])
        logger.info(f"Monthly table written to {output_path}, terminal values to {terminal_path}")


def exit_status(summary: Optional[BatchSummary], error: Optional[Exception]) -> int:
    if error is not None:
        return EXIT_BAD_CONFIG
    if summary.failed > 0:
        return EXIT_JOBS_FAILED
    return EXIT_OK


# ---------------- Config-based Interface ---------------- #

def extraction_byconfig(all_config):
    """
    Run the extraction described by a config dict with BasicRunConfiguration
    and ExtractionConfiguration sections. Returns None or the error.
    """
    try:
        config = ExtractionConfig.from_config_dict(all_config)
    except CustomizedError as e:
        return e
    _, error = BatchDriver(config).run()
    return error


# ---------------- CLI ---------------- #

def apply_grid(ext_config, grid):
    """Fill the parameter range and replicate count from the positional numbers."""
    if len(grid) == 2:
        ext_config["param_from"], ext_config["param_to"] = 0, grid[0]
        ext_config["n_runs"] = grid[1]
    elif len(grid) == 3:
        ext_config["param_from"], ext_config["param_to"], ext_config["n_runs"] = grid
    elif len(grid) != 0:
        raise CustomizedError("Expected 'n_params n_runs' or 'param_from param_to n_runs'")


def build_config(args):
    all_config = read_params(args.config, DEFAULT_CONFIG) if args.config else read_default_params(DEFAULT_CONFIG)
    ext_config = all_config["ExtractionConfiguration"]
    if args.root is not None:
        all_config["BasicRunConfiguration"]["cwdir"] = args.root
    elif not args.config:
        raise CustomizedError("A source directory is required when no -config is given")
    if not args.config and len(args.grid) == 0:
        raise CustomizedError("The parameter range and replicate count are required when no -config is given")
    apply_grid(ext_config, args.grid)
    overrides = {
        "mode": args.mode,
        "output": args.output,
        "schema": args.schema,
        "epoch_year": args.epoch_year,
        "summary_output": args.summary,
    }
    for key, value in overrides.items():
        if value is not None:
            ext_config[key] = value
    if args.terminal_year is not None:
        ext_config["terminal_date"] = [args.terminal_year, 1, 1]
    return all_config


def main(argv=None):
    parser = argparse.ArgumentParser(description="Extract yearly prevalence, resistance marker frequencies "
                                     "and treatment failure rates from a grid of simulation runs.")
    parser.add_argument("root", nargs="?", default=None, help="Directory holding monthly_data_<job_id>.txt files")
    parser.add_argument("grid", nargs="*", type=int,
                        help="'n_params n_runs' or 'param_from param_to n_runs'")
    parser.add_argument("-config", type=str, default="", help="Path to a json config file")
    parser.add_argument("-mode", type=str, choices=MODES, default=None)
    parser.add_argument("-output", type=str, default=None, help="Path of the output table")
    parser.add_argument("-schema", type=str, default=None, help="Name of a built-in row schema")
    parser.add_argument("-epoch_year", type=int, default=None)
    parser.add_argument("-terminal_year", type=int, default=None, help="Runs must reach January 1st of this year")
    parser.add_argument("-summary", type=str, default=None, help="Path of the replicate summary table")
    parser.add_argument("-log_level", type=str, default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        all_config = build_config(args)
        config = ExtractionConfig.from_config_dict(all_config)
    except (CustomizedError, OSError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_BAD_CONFIG

    summary, error = BatchDriver(config).run()
    return exit_status(summary, error)


if __name__ == "__main__":
    sys.exit(main())

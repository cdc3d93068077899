"""
Row model for the daily, tab-delimited simulation output.

A run file has one line per simulated day, no header, and fixed column
positions. The positions are described by a RowSchema so a new output layout
is a new entry in SCHEMAS, not new parsing code.
"""

from dataclasses import dataclass, fields
from typing import Dict, Iterator, List, Optional, TextIO, Union

import numpy as np

from error_handling import CustomizedError, MalformedRow
from marker_decoder import GENOTYPE_DOMAIN

DELIMITER = "\t"

# Scalar columns that may be requested by name (monthly extraction, schema checks)
SCALAR_FIELDS = (
    "population",
    "eir",
    "pfpr",
    "monthly_new_infections",
    "monthly_positive_cases",
    "cumulative_ntf",
    "cumulative_tf",
)


@dataclass(frozen=True)
class RowSchema:
    """
    Column positions of one output layout. Optional columns are None when the
    layout doesn't carry them.
    """
    name: str
    year: int
    month: int
    day: int
    population: int
    pfpr: int
    genotype_start: int
    genotype_count: int = GENOTYPE_DOMAIN
    eir: Optional[int] = None
    monthly_new_infections: Optional[int] = None
    monthly_positive_cases: Optional[int] = None
    cumulative_ntf: Optional[int] = None
    cumulative_tf: Optional[int] = None

    def __post_init__(self):
        for f in fields(self):
            if f.name in ("name", "genotype_count"):
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise CustomizedError(f"Schema '{self.name}': position of '{f.name}' must be a non-negative integer, got {value!r}")
        if self.genotype_count < 1:
            raise CustomizedError(f"Schema '{self.name}': genotype_count must be positive")

    @property
    def genotype_stop(self) -> int:
        return self.genotype_start + self.genotype_count

    @property
    def required_fields(self) -> int:
        """Minimum number of fields a line must have under this schema."""
        positions = [getattr(self, f.name) for f in fields(self)
                     if f.name not in ("name", "genotype_count", "genotype_start")]
        positions.append(self.genotype_stop - 1)
        return max(p for p in positions if p is not None) + 1

    def has_field(self, field_name: str) -> bool:
        return getattr(self, field_name, None) is not None

    @classmethod
    def from_dict(cls, name: str, positions: Dict[str, Optional[int]]) -> 'RowSchema':
        known = {f.name for f in fields(cls)} - {"name"}
        unknown = set(positions) - known
        if unknown:
            raise CustomizedError(f"Schema '{name}' has unknown fields {sorted(unknown)}")
        try:
            return cls(name=name, **positions)
        except TypeError as e:
            raise CustomizedError(f"Schema '{name}' is incomplete: {e}")


STANDARD_SCHEMA = RowSchema(
    name="standard",
    year=2,
    month=3,
    day=4,
    population=8,
    eir=10,
    pfpr=16,
    monthly_new_infections=17,
    cumulative_ntf=23,
    cumulative_tf=24,
    genotype_start=29,
    monthly_positive_cases=158,
)

PFPR_ONLY_SCHEMA = RowSchema(
    name="pfpr_only",
    year=2,
    month=3,
    day=4,
    population=8,
    pfpr=16,
    genotype_start=29,
)

SCHEMAS = {
    STANDARD_SCHEMA.name: STANDARD_SCHEMA,
    PFPR_ONLY_SCHEMA.name: PFPR_ONLY_SCHEMA,
}


def resolve_schema(schema: Union[str, Dict, RowSchema]) -> RowSchema:
    """Look up a built-in schema by name or build one from a position mapping."""
    if isinstance(schema, RowSchema):
        return schema
    if isinstance(schema, str):
        if schema not in SCHEMAS:
            raise CustomizedError(f"Unknown schema '{schema}'. Built-in schemas: {sorted(SCHEMAS)}")
        return SCHEMAS[schema]
    if isinstance(schema, dict):
        positions = dict(schema)
        name = positions.pop("name", "custom")
        return RowSchema.from_dict(name, positions)
    raise CustomizedError(f"Schema must be a name or a mapping of positions, got {type(schema).__name__}")


class DailyRecord:
    """
    One decoded line of a run file.

    The date is parsed up front since every line is tested against snapshot
    boundaries. Other values are parsed on first access and raise MalformedRow
    if the cell isn't numeric.
    """

    __slots__ = ("_fields", "schema", "line_number", "year", "month", "day", "_genotypes")

    def __init__(self, raw_fields: List[str], schema: RowSchema, line_number: Optional[int] = None):
        if len(raw_fields) < schema.required_fields:
            raise MalformedRow(
                f"expected at least {schema.required_fields} fields for schema '{schema.name}', "
                f"found {len(raw_fields)}", line_number)
        self._fields = raw_fields
        self.schema = schema
        self.line_number = line_number
        self._genotypes = None
        self.year = self._int(schema.year, "year")
        self.month = self._int(schema.month, "month")
        self.day = self._int(schema.day, "day")

    @property
    def date(self):
        return (self.year, self.month, self.day)

    def _int(self, position: int, label: str) -> int:
        cell = self._fields[position]
        try:
            return int(cell)
        except ValueError:
            raise MalformedRow(f"{label} (column {position}) is not an integer: {cell!r}", self.line_number)

    def _float(self, position: int, label: str) -> float:
        cell = self._fields[position]
        try:
            return float(cell)
        except ValueError:
            raise MalformedRow(f"{label} (column {position}) is not a number: {cell!r}", self.line_number)

    def scalar(self, field_name: str) -> float:
        """Value of a named scalar column of the schema."""
        if field_name not in SCALAR_FIELDS:
            raise CustomizedError(f"'{field_name}' is not a scalar field. Choose one of {list(SCALAR_FIELDS)}")
        position = getattr(self.schema, field_name)
        if position is None:
            raise MalformedRow(f"schema '{self.schema.name}' has no '{field_name}' column", self.line_number)
        return self._float(position, field_name)

    @property
    def population(self) -> float:
        return self.scalar("population")

    @property
    def pfpr(self) -> float:
        return self.scalar("pfpr")

    @property
    def cumulative_ntf(self) -> float:
        return self.scalar("cumulative_ntf")

    @property
    def cumulative_tf(self) -> float:
        return self.scalar("cumulative_tf")

    @property
    def genotype_frequencies(self) -> np.ndarray:
        """The genotype frequency block as a float vector, one entry per genotype index."""
        if self._genotypes is None:
            block = self._fields[self.schema.genotype_start:self.schema.genotype_stop]
            try:
                freqs = np.array(block, dtype=float)
            except ValueError:
                bad = next(i for i, cell in enumerate(block) if not _is_number(cell))
                raise MalformedRow(
                    f"genotype {bad} (column {self.schema.genotype_start + bad}) is not a number: {block[bad]!r}",
                    self.line_number)
            invalid = ~np.isfinite(freqs) | (freqs < 0)
            if invalid.any():
                bad = int(np.argmax(invalid))
                raise MalformedRow(f"genotype {bad} has invalid frequency {freqs[bad]}", self.line_number)
            self._genotypes = freqs
        return self._genotypes


def _is_number(cell: str) -> bool:
    try:
        float(cell)
        return True
    except ValueError:
        return False


def parse_row(line: str, schema: RowSchema, line_number: Optional[int] = None) -> DailyRecord:
    """Split one raw line on tabs and wrap it as a DailyRecord."""
    return DailyRecord(line.rstrip("\r\n").split(DELIMITER), schema, line_number)


def iter_records(handle: TextIO, schema: RowSchema) -> Iterator[DailyRecord]:
    """Lazily decode a run file, skipping blank lines."""
    for line_number, line in enumerate(handle, start=1):
        if line.strip() == "":
            continue
        yield parse_row(line, schema, line_number)

"""Builders for synthetic daily run files used across the test suites."""
import os, sys
from datetime import date, timedelta

import numpy as np

curr_dir = os.path.dirname(__file__)
codes_dir = os.path.join(curr_dir, '../resextract_codes')
if codes_dir not in sys.path:
    sys.path.insert(0, codes_dir)

from row_model import STANDARD_SCHEMA


def make_fields(year, month, day, schema=STANDARD_SCHEMA, population=2000, pfpr=0.1,
                ntf=0, tf=0, genotypes=None, eir=5.0, new_infections=10, positive_cases=4):
    fields = ["0"] * schema.required_fields
    fields[schema.year] = str(year)
    fields[schema.month] = str(month)
    fields[schema.day] = str(day)
    fields[schema.population] = str(population)
    fields[schema.pfpr] = str(pfpr)
    optional = {
        "eir": eir,
        "monthly_new_infections": new_infections,
        "monthly_positive_cases": positive_cases,
        "cumulative_ntf": ntf,
        "cumulative_tf": tf,
    }
    for name, value in optional.items():
        position = getattr(schema, name)
        if position is not None:
            fields[position] = str(value)
    if genotypes is None:
        genotypes = np.ones(schema.genotype_count)
    for i, g in enumerate(genotypes):
        fields[schema.genotype_start + i] = repr(float(g))
    return fields


def make_line(*args, **kwargs):
    return "\t".join(make_fields(*args, **kwargs)) + "\n"


def daily_dates(start, stop):
    """Every calendar day from start to stop inclusive, as (year, month, day)."""
    current = date(*start)
    last = date(*stop)
    while current <= last:
        yield (current.year, current.month, current.day)
        current += timedelta(days=1)


def run_lines(start, stop, **kwargs):
    return [make_line(y, m, d, **kwargs) for (y, m, d) in daily_dates(start, stop)]


def write_run(path, lines):
    with open(path, "w") as f:
        f.writelines(lines)
    return path

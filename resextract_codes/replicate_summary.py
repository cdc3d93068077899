import logging
from typing import List

import pandas as pd

from error_handling import CustomizedError

logger = logging.getLogger(__name__)

KEY_COLUMNS = ["param_id", "year"]
ID_COLUMNS = ["param_id", "run_id", "year"]


def summarize_replicates(df: pd.DataFrame) -> pd.DataFrame:
    """
    Average every metric of an annual table across replicates.

    Parameters:
        df (pd.DataFrame): Annual output with columns param_id, run_id, year and metrics.

    Returns:
        pd.DataFrame: One row per (param_id, year) with n_runs, <metric>_mean
        and <metric>_std, sorted by param_id then year.
    """
    missing = [c for c in ID_COLUMNS if c not in df.columns]
    if missing:
        raise CustomizedError(f"Annual table is missing columns {missing}")
    metrics: List[str] = [c for c in df.columns if c not in ID_COLUMNS]

    grouped = df.groupby(KEY_COLUMNS, sort=True)
    summary = grouped["run_id"].nunique().rename("n_runs").to_frame()
    if metrics:
        stats = grouped[metrics].agg(["mean", "std"])
        stats.columns = [f"{metric}_{stat}" for metric, stat in stats.columns]
        summary = summary.join(stats)
    return summary.reset_index()


def write_replicate_summary(annual_path: str, summary_path: str) -> pd.DataFrame:
    """Read a finished annual table and write its replicate summary next to it."""
    try:
        df = pd.read_csv(annual_path)
    except OSError as e:
        raise CustomizedError(f"Unable to read annual table {annual_path}: {e}")
    summary = summarize_replicates(df)
    try:
        summary.to_csv(summary_path, index=False)
    except OSError as e:
        raise CustomizedError(f"Unable to write replicate summary {summary_path}: {e}")
    logger.info(f"Replicate summary ({len(summary)} rows) written to {summary_path}")
    return summary

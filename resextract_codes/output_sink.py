import logging
import os
from typing import Dict, List, Sequence

import pandas as pd

from error_handling import CustomizedError

logger = logging.getLogger(__name__)


class OutputSink:
    """
    Append-only CSV table with a fixed column schema.

    The header is written when the sink opens. `append` is the only way to add
    rows, and every call ends with a flush, so rows already appended survive
    an interrupted batch. Used as a context manager:

        with OutputSink(path, columns) as sink:
            sink.append(rows)
    """

    def __init__(self, path: str, columns: Sequence[str]):
        if len(columns) == 0:
            raise CustomizedError("Output table needs at least one column")
        if len(set(columns)) != len(columns):
            raise CustomizedError(f"Duplicate output columns: {list(columns)}")
        self.path = path
        self.columns = list(columns)
        self.rows_written = 0
        self._handle = None

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    def open(self) -> 'OutputSink':
        out_dir = os.path.dirname(os.path.abspath(self.path))
        if not os.path.isdir(out_dir):
            raise CustomizedError(f"Output directory {out_dir} does not exist")
        try:
            self._handle = open(self.path, "w", newline="")
        except OSError as e:
            raise CustomizedError(f"Unable to open output table {self.path}: {e.strerror or e}")
        pd.DataFrame(columns=self.columns).to_csv(self._handle, index=False)
        self._handle.flush()
        logger.debug(f"Opened output table {self.path}")
        return self

    def append(self, rows: List[Dict]) -> int:
        """Write rows (dicts keyed by column) and flush. Returns the number written."""
        if not self.is_open:
            raise CustomizedError(f"Output table {self.path} is not open")
        if not rows:
            return 0
        df = pd.DataFrame(rows)
        missing = [c for c in self.columns if c not in df.columns]
        if missing:
            raise CustomizedError(f"Rows for {self.path} are missing columns {missing}")
        df[self.columns].to_csv(self._handle, index=False, header=False)
        self._handle.flush()
        self.rows_written += len(df)
        return len(df)

    def close(self):
        if self._handle is not None:
            self._handle.close()
            self._handle = None
            logger.debug(f"Closed output table {self.path} ({self.rows_written} rows)")

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

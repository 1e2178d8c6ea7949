"""Loading helpers for extracted receiver level CSV files."""
from __future__ import annotations

from pathlib import Path
from typing import List

import pandas as pd

REQUIRED_COLUMNS = ("Day", "Time")


def load_output_csv(path: str | Path) -> pd.DataFrame:
    """Load an extraction CSV and add an ``elapsed_s`` column.

    Parameters
    ----------
    path:
        CSV written by an extraction run: ``Day,Time,<parameters...>``.

    Returns
    -------
    pandas.DataFrame
        The rows in file order with ``elapsed_s`` holding seconds since the
        first row (day rollovers included).
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)

    df = pd.read_csv(path)
    missing = [column for column in REQUIRED_COLUMNS if column not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    clock = pd.to_timedelta(df["Time"].astype(str))
    offsets = pd.to_timedelta(df["Day"].astype(int) - 1, unit="D") + clock
    df = df.copy()
    if len(df):
        df["elapsed_s"] = (offsets - offsets.iloc[0]).dt.total_seconds()
    else:
        df["elapsed_s"] = pd.Series(dtype=float)
    return df


def parameter_columns(df: pd.DataFrame) -> List[str]:
    return [column for column in df.columns if column not in (*REQUIRED_COLUMNS, "elapsed_s")]

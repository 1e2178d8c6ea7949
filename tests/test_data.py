from __future__ import annotations

from pathlib import Path

import pytest

from agcpcm.data import load_output_csv, parameter_columns


def test_load_output_csv_elapsed_across_midnight(tmp_path: Path) -> None:
    path = tmp_path / "agc.csv"
    path.write_text(
        "Day,Time,L_RCVR1\n"
        "100,23:59:59.500,1.000000\n"
        "101,00:00:00.250,2.000000\n",
        encoding="utf-8",
    )
    df = load_output_csv(path)
    assert parameter_columns(df) == ["L_RCVR1"]
    assert df["elapsed_s"].tolist() == pytest.approx([0.0, 0.75])


def test_load_output_csv_requires_day_and_time(tmp_path: Path) -> None:
    path = tmp_path / "bad.csv"
    path.write_text("Time,L_RCVR1\n00:00:00.000,1.0\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_output_csv(path)
    with pytest.raises(FileNotFoundError):
        load_output_csv(tmp_path / "missing.csv")

"""Plotting helpers for extracted receiver levels."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from .data import load_output_csv, parameter_columns


def plot_csv(csv_path: Path, out_path: Optional[Path] = None) -> Path:
    df = load_output_csv(csv_path)
    columns = parameter_columns(df)
    if not columns:
        raise ValueError(f"{csv_path} has no parameter columns to plot")

    plt = _require_matplotlib()
    fig, ax = plt.subplots(figsize=(12, 5))
    for column in columns:
        ax.plot(df["elapsed_s"], df[column], label=column, linewidth=0.8)
    if len(df):
        ax.set_title(f"Receiver levels from day {df['Day'].iloc[0]} {df['Time'].iloc[0]}")
    ax.set_xlabel("Elapsed time (s)")
    ax.set_ylabel("Level (dB)")
    ax.grid(True, alpha=0.3)
    if len(columns) <= 12:
        ax.legend(loc="best", fontsize="small")

    fig.tight_layout()
    out_path = Path(out_path) if out_path is not None else Path(csv_path).with_suffix(".png")
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=150)
    plt.close(fig)
    return out_path


def _require_matplotlib() -> Any:
    home_cache = Path.home() / ".cache" / "fontconfig"
    try:
        home_cache.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise RuntimeError("matplotlib cannot write font cache in this environment") from exc

    try:
        import matplotlib
        matplotlib.use("Agg", force=True)
        import matplotlib.pyplot as plt  # type: ignore
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("matplotlib is required for plotting; install agcpcm[plot]") from exc
    except Exception as exc:  # pragma: no cover - environment issues
        raise RuntimeError(f"matplotlib initialisation failed: {exc}") from exc
    return plt

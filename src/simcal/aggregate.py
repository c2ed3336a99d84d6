"""
Result aggregation.

Combines per-simulation result shards into one consolidated table, flags
valid, outlying, retained and best rows, writes the table durably and only
then removes the shards.
"""

from __future__ import annotations

import tempfile
from collections.abc import Sequence
from pathlib import Path

import numpy as np
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from simcal.config.schema import IOConfig
from simcal.io import list_shards, read_arrow, write_table
from simcal.logging import getLogger

log = getLogger(__name__)

DEFAULT_SENTINEL = -999999999.0
DEFAULT_IQR_MULTIPLIER = 1.5

FLAG_COLUMNS = (
    "is_finite",
    "is_valid",
    "is_outlier",
    "is_retained",
    "is_best_subset",
    "is_best_model",
)
WEIGHT_COLUMNS = ("weight_all", "weight_retained", "weight_best")


def _base_table(table: pa.Table) -> pa.Table:
    derived = [c for c in (*FLAG_COLUMNS, *WEIGHT_COLUMNS) if c in table.column_names]
    return table.drop(derived) if derived else table


def _combine_streaming(paths: Sequence[Path]) -> pa.Table:
    """Append shards one at a time to a Parquet file, then read it back once."""
    with tempfile.TemporaryDirectory(prefix="simcal_combine_") as tmp_dir:
        tmp = Path(tmp_dir) / "combined.parquet"
        writer: pq.ParquetWriter | None = None
        try:
            for path in paths:
                table = _base_table(read_arrow(path))
                if writer is None:
                    writer = pq.ParquetWriter(tmp, table.schema)
                elif not table.schema.equals(writer.schema):
                    table = table.select(writer.schema.names).cast(writer.schema)
                writer.write_table(table)
        finally:
            if writer is not None:
                writer.close()
        return pq.read_table(tmp)


def _combine_concat(paths: Sequence[Path]) -> pa.Table:
    tables = [_base_table(read_arrow(p)) for p in paths]
    return pa.concat_tables(tables, promote_options="default")


def combine(paths: Sequence[Path], method: str = "streaming") -> pd.DataFrame:
    """
    Combine result tables into one DataFrame.

    Parameters
    ----------
    paths : sequence of Path
        Shards, optionally preceded by an earlier consolidated table. Later
        paths win when the same ``sim`` appears twice.
    method : {"streaming", "concat"}
        ``streaming`` keeps at most one shard in memory while combining;
        ``concat`` reads every shard then concatenates.

    Returns
    -------
    DataFrame
        Rows sorted by ``sim``. Empty when *paths* is empty.

    Raises
    ------
    ValueError
        If *method* is unknown.
    """
    if method not in ("streaming", "concat"):
        raise ValueError(f"method must be 'streaming' or 'concat', got {method!r}")
    if not paths:
        return pd.DataFrame()

    table = _combine_streaming(paths) if method == "streaming" else _combine_concat(paths)
    df = table.to_pandas()
    df = df.drop_duplicates(subset="sim", keep="last")
    return df.sort_values("sim", kind="stable").reset_index(drop=True)


def load_shards(shard_dir: Path, method: str = "streaming") -> pd.DataFrame:
    """Combine the current shards without touching them."""
    return combine(list_shards(shard_dir), method=method)


def tukey_outliers(values: np.ndarray, k: float = DEFAULT_IQR_MULTIPLIER) -> np.ndarray:
    """
    Flag values outside ``[Q1 - k*IQR, Q3 + k*IQR]``.

    Quantiles use linear interpolation. Fewer than two values flag nothing.
    """
    v = np.asarray(values, dtype=np.float64)
    if v.size < 2:
        return np.zeros(v.size, dtype=bool)
    q1, q3 = np.quantile(v, [0.25, 0.75])
    iqr = q3 - q1
    return (v < q1 - k * iqr) | (v > q3 + k * iqr)


def annotate(
    df: pd.DataFrame,
    sentinel: float = DEFAULT_SENTINEL,
    iqr_multiplier: float = DEFAULT_IQR_MULTIPLIER,
) -> pd.DataFrame:
    """
    Add row flags to a combined result table.

    Flags
    -----
    is_finite
        Likelihood is finite.
    is_valid
        Finite and not the rejection sentinel.
    is_outlier
        Tukey outlier among valid likelihoods.
    is_retained
        Finite and not an outlier.
    is_best_model
        Highest likelihood among valid rows (one row at most).
    is_best_subset
        False here; set by subset selection.

    Returns
    -------
    DataFrame
        A copy of *df* with the flag columns.
    """
    out = df.copy()
    lik = out["likelihood"].to_numpy(dtype=np.float64)
    is_finite = np.isfinite(lik)
    is_valid = is_finite & (lik != sentinel)

    is_outlier = np.zeros(len(out), dtype=bool)
    is_outlier[is_valid] = tukey_outliers(lik[is_valid], iqr_multiplier)

    is_best = np.zeros(len(out), dtype=bool)
    if is_valid.any():
        masked = np.where(is_valid, lik, -np.inf)
        is_best[int(np.argmax(masked))] = True

    out["is_finite"] = is_finite
    out["is_valid"] = is_valid
    out["is_outlier"] = is_outlier
    out["is_retained"] = is_finite & ~is_outlier
    out["is_best_model"] = is_best
    out["is_best_subset"] = False

    log.info(
        "Annotated %d simulations: %d valid, %d outliers, %d retained",
        len(out),
        int(is_valid.sum()),
        int(is_outlier.sum()),
        int(out["is_retained"].sum()),
    )
    return out


def consolidate(
    shard_dir: Path,
    output_path: Path,
    io: IOConfig,
    sentinel: float = DEFAULT_SENTINEL,
    iqr_multiplier: float = DEFAULT_IQR_MULTIPLIER,
) -> pd.DataFrame:
    """
    Merge shards (and any earlier consolidated table) into *output_path*.

    Shards are deleted only after the consolidated table has been written.
    On any failure they stay on disk for a retry.

    Returns
    -------
    DataFrame
        The annotated consolidated table.

    Raises
    ------
    RuntimeError
        If there is nothing to consolidate.
    """
    output_path = Path(output_path)
    shards = list_shards(shard_dir)
    sources = ([output_path] if output_path.exists() else []) + shards
    if not sources:
        raise RuntimeError(f"No simulation results found in {shard_dir}")

    log.info(
        "Consolidating %d shard(s)%s using %s mode",
        len(shards),
        " and existing table" if output_path.exists() else "",
        io.load_method,
    )
    df = annotate(combine(sources, method=io.load_method), sentinel, iqr_multiplier)
    write_table(df, output_path, io)

    if not output_path.exists():
        raise RuntimeError(f"Consolidated table {output_path} missing after write")
    for shard in shards:
        shard.unlink(missing_ok=True)
    log.info("Wrote %s (%d rows); removed %d shard(s)", output_path, len(df), len(shards))
    return df

"""Output layout and table/JSON serialization for calibration runs.

Every file a run produces goes through this module so that all writes share
the same durability rule: data is written to a temporary file in the target
directory, flushed to disk, then renamed over the destination. A reader sees
either the old file or the new one, never a partial write.
"""

from __future__ import annotations

import contextlib
import getpass
import json
import os
import platform
import re
import shutil
import socket
import sys
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
import pyarrow as pa
import pyarrow.csv as pacsv
import pyarrow.parquet as pq

from simcal.config.schema import IOConfig
from simcal.logging import getLogger

log = getLogger(__name__)

_SCHEMA_VERSION = 1

SHARD_PREFIX = "sim_"
TIMESERIES_PREFIX = "timeseries_"
_SHARD_RE = re.compile(r"^sim_0*([0-9]+)\.(parquet|csv)$")


@dataclass(slots=True, frozen=True)
class RunDirs:
    """
    Directory tree of one calibration run.

    Parameters
    ----------
    root : Path
        ``dir_output`` given by the caller.
    """

    root: Path

    @property
    def setup(self) -> Path:
        return self.root / "0_setup"

    @property
    def bfrs(self) -> Path:
        return self.root / "1_bfrs"

    @property
    def outputs(self) -> Path:
        return self.bfrs / "outputs"

    @property
    def shards(self) -> Path:
        return self.outputs / "parameters"

    @property
    def timeseries(self) -> Path:
        return self.outputs / "timeseries"

    @property
    def diagnostics(self) -> Path:
        return self.bfrs / "diagnostics"

    @property
    def jobs(self) -> Path:
        return self.bfrs / "jobs"

    @property
    def results(self) -> Path:
        return self.root / "3_results"

    @property
    def state_file(self) -> Path:
        return self.diagnostics / "run_state.json"

    def consolidated(self, io: IOConfig) -> Path:
        """Path of the consolidated simulations table."""
        return self.outputs / f"simulations{table_suffix(io)}"

    def create(self) -> RunDirs:
        """Create every directory of the tree and return self."""
        for d in (
            self.setup,
            self.shards,
            self.timeseries,
            self.diagnostics,
            self.jobs,
            self.results,
        ):
            d.mkdir(parents=True, exist_ok=True)
        return self

    def clean(self) -> None:
        """Remove everything the run wrote under ``root``."""
        for d in (self.setup, self.bfrs, self.results):
            if d.exists():
                shutil.rmtree(d)


def table_suffix(io: IOConfig) -> str:
    return ".csv" if io.format == "csv" else ".parquet"


def shard_name(sim_id: int, io: IOConfig) -> str:
    """Result shard file name, e.g. ``sim_0000042.parquet``."""
    return f"{SHARD_PREFIX}{sim_id:07d}{table_suffix(io)}"


def timeseries_name(sim_id: int, io: IOConfig) -> str:
    """Time-series shard file name, e.g. ``timeseries_0000042.parquet``."""
    return f"{TIMESERIES_PREFIX}{sim_id:07d}{table_suffix(io)}"


def list_shards(shard_dir: Path) -> list[Path]:
    """Return result shard paths in ``shard_dir`` sorted by simulation id."""
    if not shard_dir.exists():
        return []
    found = []
    for p in shard_dir.iterdir():
        m = _SHARD_RE.match(p.name)
        if m:
            found.append((int(m.group(1)), p))
    return [p for _, p in sorted(found)]


def parse_sim_ids(names: list[str] | list[Path]) -> list[int]:
    """
    Extract simulation ids from shard file names.

    Names that do not look like shards are skipped with a warning.

    Parameters
    ----------
    names : list of str or Path

    Returns
    -------
    list of int
        Sorted unique ids.
    """
    ids: set[int] = set()
    failed = []
    for name in names:
        m = _SHARD_RE.match(Path(name).name)
        if m:
            ids.add(int(m.group(1)))
        else:
            failed.append(str(name))
    if failed:
        log.warning(
            "Could not parse simulation id from %d file name(s): %s",
            len(failed),
            ", ".join(failed[:5]),
        )
    return sorted(ids)


# =============================================================================
# Durable writes
# =============================================================================


def _fsync_file(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _fsync_dir(path: Path) -> None:
    # Directory fsync is not supported everywhere (e.g. Windows).
    with contextlib.suppress(OSError):
        fd = os.open(path, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)


@contextlib.contextmanager
def atomic_write(path: Path) -> Iterator[Path]:
    """
    Yield a temporary path; on success move it over *path* durably.

    The temporary file lives in the destination directory so the final
    rename never crosses file systems. It is removed if the body raises.

    Examples
    --------
    >>> with atomic_write(Path("out.json")) as tmp:
    ...     tmp.write_text("{}")
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
    )
    os.close(fd)
    tmp = Path(tmp_name)
    try:
        yield tmp
        _fsync_file(tmp)
        os.replace(tmp, path)
        _fsync_dir(path.parent)
    finally:
        if tmp.exists():
            tmp.unlink()


def _json_default(obj: Any) -> Any:
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, Path):
        return str(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def write_json(data: Any, path: Path, *, versioned: bool = False) -> None:
    """Write *data* as indented JSON atomically."""
    if versioned and isinstance(data, dict):
        data = {"_schema_version": _SCHEMA_VERSION, **data}
    with atomic_write(path) as tmp:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=_json_default)
            f.flush()


def read_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def write_table(df: pd.DataFrame | pa.Table, path: Path, io: IOConfig) -> None:
    """
    Write a table atomically as Parquet or CSV according to *io*.

    Parameters
    ----------
    df : DataFrame or pyarrow.Table
    path : Path
        Destination file.
    io : IOConfig
        ``format``, ``compression`` and ``compression_level``.
    """
    table = df if isinstance(df, pa.Table) else pa.Table.from_pandas(df, preserve_index=False)
    with atomic_write(path) as tmp:
        if io.format == "csv":
            pacsv.write_csv(table, tmp)
        else:
            pq.write_table(
                table,
                tmp,
                compression=io.compression or "none",
                compression_level=io.compression_level if io.compression else None,
            )


def write_csv(df: pd.DataFrame, path: Path) -> None:
    """Write a diagnostics table as CSV regardless of the run's table format."""
    write_table(df, path, IOConfig(format="csv", compression=None, compression_level=None))


# Columns read back from CSV with fixed types; every other numeric column is
# float64 so that shards agree regardless of their values.
_CSV_INT_COLUMNS = ("sim", "iter", "seed_sim", "seed_iter")
_CSV_FLOAT_COLUMNS = ("likelihood",)


def _read_csv(path: Path) -> pa.Table:
    column_types = {name: pa.int64() for name in _CSV_INT_COLUMNS}
    column_types.update({name: pa.float64() for name in _CSV_FLOAT_COLUMNS})
    table = pacsv.read_csv(path, convert_options=pacsv.ConvertOptions(column_types=column_types))
    fields = []
    for fld in table.schema:
        if fld.name not in _CSV_INT_COLUMNS and (
            pa.types.is_null(fld.type) or pa.types.is_integer(fld.type)
        ):
            fld = fld.with_type(pa.float64())
        fields.append(fld)
    schema = pa.schema(fields)
    return table if schema.equals(table.schema) else table.cast(schema)


def read_arrow(path: Path) -> pa.Table:
    """
    Read a Parquet or CSV table by suffix.

    CSV carries no types, so identifier columns are read as int64 and the
    likelihood, parameters and any all-empty column as float64.
    """
    path = Path(path)
    if path.suffix == ".csv":
        return _read_csv(path)
    return pq.read_table(path)


def read_table(path: Path) -> pd.DataFrame:
    return read_arrow(path).to_pandas()


# =============================================================================
# Environment
# =============================================================================


def check_disk_space(path: Path, required_mb: float = 100) -> bool:
    """
    Warn when the file system holding *path* has less than *required_mb* free.

    The check is advisory: it never raises, and a failure to query the file
    system is itself only logged.

    Returns
    -------
    bool
        False when space is known to be insufficient.
    """
    target = Path(path)
    while not target.exists() and target != target.parent:
        target = target.parent
    try:
        free_mb = shutil.disk_usage(target).free / 1024**2
    except OSError as exc:
        log.warning("Could not check disk space at %s: %s", target, exc)
        return True
    if free_mb < required_mb:
        log.warning(
            "Low disk space at %s: %.0f MB free, %.0f MB recommended",
            target,
            free_mb,
            required_mb,
        )
        return False
    return True


def cluster_metadata() -> dict[str, Any]:
    """Host, user and scheduler environment recorded with each run."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = None
    return {
        "hostname": socket.gethostname(),
        "user": user,
        "python": sys.version.split()[0],
        "platform": platform.platform(),
        "pid": os.getpid(),
        "timestamp": datetime.now(tz=UTC).isoformat(),
        "slurm": {k: v for k, v in sorted(os.environ.items()) if k.startswith("SLURM_")},
    }

"""
Raw microarray signal loading.

Reads per-sample raw files into a single probes x samples intensity matrix:

- Affymetrix CEL files (text v3 or binary v4, optionally gzipped) through
  ``Bio.Affy.CelFile``, with a probe layout that places every perfect-match
  cell in its probe set. Layouts come from a GCOS text CDF or from a
  tab-delimited ``probeset, x, y`` table.
- Two-column intensity tables (``ID_REF``, ``VALUE``) for platforms that
  publish probe-level text files. Each probe is its own probe set there.
"""

import gzip
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import IO, List, Mapping, Tuple, Union

import numpy as np
import pandas as pd
from Bio.Affy import CelFile

logger = logging.getLogger(__name__)

LAYOUT_COLUMNS = ["probeset", "x", "y"]
COMPLEMENT = {"A": "T", "T": "A", "C": "G", "G": "C"}

# Affymetrix Command Console ("generic") files start with this magic byte
_CALVIN_MAGIC = b"\x3b"


@dataclass(frozen=True)
class RawIntensityMatrix:
    """Probe-level raw intensities for a batch of arrays.

    Attributes:
        intensities: Read-only array of shape (n_probes, n_samples)
        probe_ids: Identifier of each probe (row)
        probesets: Probe set each probe belongs to (row-aligned)
        samples: Sample accession of each column
    """

    intensities: np.ndarray
    probe_ids: Tuple[str, ...]
    probesets: Tuple[str, ...]
    samples: Tuple[str, ...]

    def __post_init__(self):
        values = np.array(self.intensities, dtype=float, copy=True)
        if values.ndim != 2:
            raise ValueError(f"Intensities must be 2-dimensional, got shape {values.shape}")
        n_probes, n_samples = values.shape
        if len(self.probe_ids) != n_probes or len(self.probesets) != n_probes:
            raise ValueError("probe_ids and probesets must have one entry per row")
        if len(self.samples) != n_samples:
            raise ValueError("samples must have one entry per column")
        if len(set(self.samples)) != n_samples:
            raise ValueError("Sample identifiers must be unique")
        if np.isnan(values).any():
            raise ValueError("Raw intensities contain missing values")
        if (values < 0).any():
            raise ValueError("Raw intensities must be non-negative")
        values.flags.writeable = False
        object.__setattr__(self, "intensities", values)
        object.__setattr__(self, "probe_ids", tuple(self.probe_ids))
        object.__setattr__(self, "probesets", tuple(self.probesets))
        object.__setattr__(self, "samples", tuple(self.samples))

    @property
    def shape(self) -> Tuple[int, int]:
        return self.intensities.shape

    @property
    def n_probesets(self) -> int:
        return len(set(self.probesets))

    def to_frame(self) -> pd.DataFrame:
        """Copy of the intensities as a DataFrame indexed by (probeset, probe)."""
        index = pd.MultiIndex.from_arrays(
            [list(self.probesets), list(self.probe_ids)], names=["probeset", "probe"]
        )
        return pd.DataFrame(self.intensities.copy(), index=index, columns=list(self.samples))


def _open(path: Path, mode: str) -> IO:
    if path.suffix.lower() == ".gz":
        return gzip.open(path, mode)
    return open(path, mode)


def is_cel_file(path: Union[str, Path]) -> bool:
    name = Path(path).name.lower()
    return name.endswith(".cel") or name.endswith(".cel.gz")


def read_cel(path: Union[str, Path]) -> CelFile.Record:
    """
    Read one CEL file.

    Version 3 files are text and must be opened in text mode, version 4
    files are binary; the first bytes decide which.

    Raises:
        ValueError: For Command Console CEL files, which Bio.Affy cannot read
    """
    path = Path(path)
    with _open(path, "rb") as fh:
        head = fh.read(4)

    if head.startswith(b"[CEL"):
        with _open(path, "rt") as fh:
            return CelFile.read(fh)
    if head.startswith(_CALVIN_MAGIC):
        raise ValueError(f"{path.name} is a Command Console CEL file; convert it to version 4 first")
    with _open(path, "rb") as fh:
        return CelFile.read(fh)


def read_layout_table(path: Union[str, Path]) -> pd.DataFrame:
    """Read a tab-delimited ``probeset, x, y`` layout of perfect-match cells."""
    layout = pd.read_csv(path, sep="\t", comment="#")
    missing = [c for c in LAYOUT_COLUMNS if c not in layout.columns]
    if missing:
        raise ValueError(f"Layout {path} lacks columns: {', '.join(missing)}")
    layout = layout[LAYOUT_COLUMNS].copy()
    layout["probeset"] = layout["probeset"].astype(str)
    layout["x"] = layout["x"].astype(int)
    layout["y"] = layout["y"].astype(int)
    return layout


def read_cdf_layout(path: Union[str, Path]) -> pd.DataFrame:
    """
    Extract the perfect-match probe layout from a GCOS text (ASCII) CDF.

    Perfect-match cells are those whose probe base at the interrogation
    position is the complement of the target base.

    Returns:
        DataFrame with columns ``probeset``, ``x``, ``y``
    """
    path = Path(path)
    rows: List[Tuple[str, int, int]] = []
    in_block = False
    block_name = None
    header: List[str] = []

    with _open(path, "rt") as fh:
        for line in fh:
            line = line.rstrip("\r\n")
            if line.startswith("["):
                in_block = line.startswith("[Unit") and "_Block" in line
                block_name = None
                header = []
                continue
            if not in_block or "=" not in line:
                continue

            key, value = line.split("=", 1)
            if key == "Name":
                block_name = value.strip()
            elif key == "CellHeader":
                header = value.split("\t")
            elif key.startswith("Cell") and header:
                cell = dict(zip(header, value.split("\t")))
                pbase = cell.get("PBASE", "").upper()
                tbase = cell.get("TBASE", "").upper()
                if COMPLEMENT.get(pbase) == tbase:
                    rows.append((block_name, int(cell["X"]), int(cell["Y"])))

    if not rows:
        raise ValueError(f"No perfect-match cells found in {path}; is it a text CDF?")
    logger.info("Read %d perfect-match cells from %s", len(rows), path.name)
    return pd.DataFrame(rows, columns=LAYOUT_COLUMNS)


def load_cel_batch(files: Mapping[str, Path], layout: pd.DataFrame) -> RawIntensityMatrix:
    """
    Load many CEL files into one probe-level matrix.

    Args:
        files: Sample accession -> CEL file path
        layout: Perfect-match layout (``probeset``, ``x``, ``y``)

    Returns:
        RawIntensityMatrix with one row per layout cell

    Raises:
        ValueError: If the arrays differ in geometry or the layout does not fit
    """
    if not files:
        raise ValueError("No CEL files to load")

    x = layout["x"].to_numpy()
    y = layout["y"].to_numpy()

    columns = []
    geometry = None
    for i, (sample, path) in enumerate(files.items(), 1):
        logger.info("[%d/%d] Reading %s", i, len(files), Path(path).name)
        record = read_cel(path)
        shape = record.intensities.shape
        if geometry is None:
            geometry = shape
            if x.max() >= shape[1] or y.max() >= shape[0]:
                raise ValueError(
                    f"Layout addresses cells outside the {shape[1]}x{shape[0]} array"
                )
        elif shape != geometry:
            raise ValueError(f"{sample} has geometry {shape}, expected {geometry}")
        columns.append(record.intensities[y, x])

    probe_ids = [f"{xi}:{yi}" for xi, yi in zip(x, y)]
    return RawIntensityMatrix(
        intensities=np.column_stack(columns),
        probe_ids=probe_ids,
        probesets=layout["probeset"].astype(str).tolist(),
        samples=list(files),
    )


def read_intensity_table(path: Union[str, Path]) -> pd.Series:
    """Read a per-sample ``ID_REF``/``VALUE`` table into a Series."""
    table = pd.read_csv(path, sep="\t", comment="#", dtype=str)
    if table.shape[1] < 2:
        raise ValueError(f"{path} needs an identifier and a value column")
    id_col = "ID_REF" if "ID_REF" in table.columns else table.columns[0]
    value_col = "VALUE" if "VALUE" in table.columns else table.columns[1]
    values = pd.to_numeric(table[value_col], errors="coerce")
    return pd.Series(values.to_numpy(), index=table[id_col].astype(str), name=value_col)


def load_intensity_tables(files: Mapping[str, Path]) -> RawIntensityMatrix:
    """
    Load per-sample intensity tables into one matrix.

    Only probes present in every table are kept.
    """
    if not files:
        raise ValueError("No intensity tables to load")

    series = {}
    for sample, path in files.items():
        s = read_intensity_table(path)
        if not s.index.is_unique:
            raise ValueError(f"{Path(path).name} lists some probes more than once")
        series[sample] = s
    frame = pd.concat(series, axis=1, join="inner").dropna()

    largest = max(len(s) for s in series.values())
    if len(frame) < largest:
        logger.warning("Kept %d of %d probes shared by all tables", len(frame), largest)

    probes = frame.index.astype(str).tolist()
    return RawIntensityMatrix(
        intensities=frame.to_numpy(dtype=float),
        probe_ids=probes,
        probesets=probes,
        samples=list(frame.columns),
    )

"""Shared builders for synthetic GEO series used across the test modules."""

import gzip
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest

ACCESSION = "GSE100"
PLATFORM = "GPL1"

SAMPLE_TITLES = {
    "GSM1": "CD4_unstim_0h_rep1_GPL1",
    "GSM2": "CD4_unstim_0h_rep2_GPL1",
    "GSM3": "CD4_unstim_0h_rep3_GPL1",
    "GSM4": "CD4_aCD3_24h_rep1_GPL1",
    "GSM5": "CD4_aCD3_24h_rep2_GPL1",
    "GSM6": "CD4_aCD3_24h_rep3_GPL1",
}

N_GENES = 150
PROBES_PER_GENE = 2
PLANTED_GENES = [f"GENE{i}" for i in range(10)]


def make_phenotype(titles=None) -> pd.DataFrame:
    """A GEOparse-like phenotype table."""
    titles = titles or SAMPLE_TITLES
    accessions = list(titles)
    return pd.DataFrame(
        {
            "title": [titles[a] for a in accessions],
            "geo_accession": accessions,
            "platform_id": [PLATFORM] * len(accessions),
            "supplementary_file": [
                f"ftp://ftp.ncbi.nlm.nih.gov/geo/samples/GSM1nnn/{a}/suppl/{a}_sample.txt.gz"
                for a in accessions
            ],
        },
        index=accessions,
    )


def make_gse(phenotype: pd.DataFrame) -> MagicMock:
    gse = MagicMock()
    gse.phenotype_data = phenotype
    gse.gpls = {PLATFORM: MagicMock(name=PLATFORM)}
    return gse


def probe_ids():
    return [f"{1000 + i}_at" for i in range(N_GENES * PROBES_PER_GENE)]


def gene_of_probe(probe_index: int) -> str:
    return f"GENE{probe_index // PROBES_PER_GENE}"


def make_intensities(seed: int = 0) -> pd.DataFrame:
    """
    Probe-level raw intensities for the six samples.

    Planted genes sit mid-range in the unstimulated samples and are
    eight-fold higher in the aCD3 samples, where they outrank every other
    probe. Quantile normalization keeps a rank change like this one.
    """
    rng = np.random.RandomState(seed)
    probes = probe_ids()
    base = rng.uniform(6, 10, size=len(probes))
    for i in range(len(PLANTED_GENES) * PROBES_PER_GENE):
        base[i] = rng.uniform(7, 8)

    samples = list(SAMPLE_TITLES)
    log_values = base[:, None] + rng.normal(0, 0.1, size=(len(probes), len(samples)))
    for j, sample in enumerate(samples):
        if "aCD3" in SAMPLE_TITLES[sample]:
            log_values[: len(PLANTED_GENES) * PROBES_PER_GENE, j] += 3
    return pd.DataFrame(2 ** log_values, index=probes, columns=samples)


def write_intensity_tables(raw_dir: Path, intensities: pd.DataFrame) -> None:
    raw_dir.mkdir(parents=True, exist_ok=True)
    for sample in intensities.columns:
        table = pd.DataFrame({"ID_REF": intensities.index, "VALUE": intensities[sample].round(3)})
        table.to_csv(raw_dir / f"{sample}_sample.txt", sep="\t", index=False)


def write_annotation(path: Path) -> None:
    """GEO platform annotation with a SOFT header and a table block."""
    rows = ["ID\tGene title\tGene symbol"]
    for i, probe in enumerate(probe_ids()):
        symbol = gene_of_probe(i)
        if i % PROBES_PER_GENE == 1 and i > 40:
            symbol = f"{symbol} /// ALIAS{i}"
        rows.append(f"{probe}\tsome gene\t{symbol}")
    rows.append("AFFX-Control\tcontrol\t")
    lines = [
        "^Annotation",
        "!Annotation_date = Jan 01 2020",
        f"^PLATFORM = {PLATFORM}",
        "!platform_table_begin",
        *rows,
        "!platform_table_end",
    ]
    path.parent.mkdir(parents=True, exist_ok=True)
    text = "\n".join(lines) + "\n"
    if path.suffix == ".gz":
        with gzip.open(path, "wt") as fh:
            fh.write(text)
    else:
        path.write_text(text)


@pytest.fixture
def phenotype():
    return make_phenotype()


@pytest.fixture
def cached_series(tmp_path):
    """A fully cached series: SOFT placeholder, raw tables and annotation."""
    cache_dir = tmp_path / "data"
    dataset_dir = cache_dir / ACCESSION
    (dataset_dir / "metadata").mkdir(parents=True)
    (dataset_dir / "metadata" / f"{ACCESSION}_family.soft.gz").write_bytes(b"")
    write_intensity_tables(dataset_dir / "raw", make_intensities())
    write_annotation(dataset_dir / "annotation" / f"{PLATFORM}.annot.gz")
    return cache_dir

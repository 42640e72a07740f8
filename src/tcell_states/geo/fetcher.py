"""
GEO series fetcher with a local, write-once cache.

Retrieves the SOFT family file of a GEO series with GEOparse and downloads
every sample's supplementary file (raw CEL or intensity table). Each dataset
is cached under ``<cache_dir>/<accession>/``::

    GSE12345/
        metadata/     GSE12345_family.soft.gz
        raw/          GSM1_xxx.CEL.gz, GSM2_xxx.CEL.gz, ...
        annotation/   GPL570.annot.gz (fetched on demand)

If the dataset directory exists, everything is read from disk, except the
raw files of a series first fetched without them. Downloads land in a hidden
``.GSE12345.partial`` (or ``GSE12345/.raw.partial``) directory first and are
moved into place only once every file has arrived.
"""

import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Union
from urllib.parse import urlparse

import GEOparse
import pandas as pd
import requests

from tcell_states.geo.http import create_session

logger = logging.getLogger(__name__)

GSE_PATTERN = re.compile(r"^GSE\d+$")
GPL_PATTERN = re.compile(r"^GPL\d+$")

METADATA_DIR = "metadata"
RAW_DIR = "raw"
ANNOTATION_DIR = "annotation"

GEO_HTTPS_HOST = "https://ftp.ncbi.nlm.nih.gov"
GPL_ANNOT_URL = GEO_HTTPS_HOST + "/geo/platforms/{stub}/{gpl}/annot/{gpl}.annot.gz"

# GEO writes this when a sample has no supplementary file
NO_SUPPLEMENTARY = "NONE"

DOWNLOAD_CHUNK_SIZE = 1 << 20


@dataclass
class GEODataset:
    """A GEO series as seen through the local cache."""

    accession: str
    directory: Path
    gse: Any
    phenotype: pd.DataFrame
    raw_files: List[Path] = field(default_factory=list)
    from_cache: bool = False

    @property
    def metadata_dir(self) -> Path:
        return self.directory / METADATA_DIR

    @property
    def raw_dir(self) -> Path:
        return self.directory / RAW_DIR

    @property
    def annotation_dir(self) -> Path:
        return self.directory / ANNOTATION_DIR

    @property
    def platforms(self) -> List[str]:
        """Platform accessions (GPL) referenced by the series."""
        return sorted(getattr(self.gse, "gpls", {}) or {})


def geo_stub(accession: str) -> str:
    """Return the GEO FTP bucket for an accession (GSE12345 -> GSE12nnn)."""
    prefix, digits = accession[:3], accession[3:]
    return f"{prefix}{digits[:-3]}nnn"


def to_https(url: str) -> str:
    """Rewrite a GEO ``ftp://`` link to the equivalent HTTPS link."""
    if url.startswith("ftp://"):
        parsed = urlparse(url)
        return f"https://{parsed.netloc}{parsed.path}"
    return url


def supplementary_urls(phenotype: pd.DataFrame) -> List[str]:
    """List every supplementary file URL in a GEOparse phenotype table.

    GEOparse joins multiple values of a metadata key with commas.
    """
    columns = [c for c in phenotype.columns if str(c).startswith("supplementary_file")]
    urls = []
    for column in columns:
        for value in phenotype[column].dropna():
            for url in str(value).split(","):
                url = url.strip()
                if url and url.upper() != NO_SUPPLEMENTARY:
                    urls.append(url)
    return list(dict.fromkeys(urls))


class GEOFetcher:
    """Fetches GEO series into a local cache directory.

    Example:
        fetcher = GEOFetcher(Path("data"))
        dataset = fetcher.fetch("GSE12345")
        print(dataset.phenotype[["title", "platform_id"]])
    """

    def __init__(
        self,
        cache_dir: Union[str, Path],
        session: Optional[requests.Session] = None,
        download_raw: bool = True,
    ):
        self.cache_dir = Path(cache_dir)
        self.session = session or create_session()
        self.download_raw = download_raw

    def dataset_dir(self, accession: str) -> Path:
        return self.cache_dir / accession

    def is_cached(self, accession: str) -> bool:
        return self.dataset_dir(accession).is_dir()

    def fetch(self, accession: str) -> GEODataset:
        """
        Return the dataset, downloading it only if it is not cached yet.

        A series cached by a metadata-only fetch has an empty ``raw/``
        directory; a fetch with ``download_raw`` adds the missing files.

        Args:
            accession: GEO series accession (e.g. ``GSE12345``)

        Returns:
            GEODataset read from the cache directory

        Raises:
            ValueError: If the accession is not a GEO series accession
            requests.HTTPError: If any download fails
        """
        accession = accession.strip().upper()
        if not GSE_PATTERN.match(accession):
            raise ValueError(f"Not a GEO series accession: {accession!r}")

        if self.is_cached(accession):
            logger.info("Using cached %s at %s", accession, self.dataset_dir(accession))
            dataset = self._load(accession, from_cache=True)
            if self.download_raw and not dataset.raw_files:
                # Cached by a metadata-only fetch
                self._download_raw(dataset)
                dataset = self._load(accession, from_cache=False)
            return dataset

        self._download(accession)
        return self._load(accession, from_cache=False)

    def _download(self, accession: str) -> None:
        final_dir = self.dataset_dir(accession)
        partial_dir = self.cache_dir / f".{accession}.partial"
        if partial_dir.exists():
            logger.warning("Removing leftover partial download %s", partial_dir)
            shutil.rmtree(partial_dir)

        metadata_dir = partial_dir / METADATA_DIR
        raw_dir = partial_dir / RAW_DIR
        for directory in (metadata_dir, raw_dir, partial_dir / ANNOTATION_DIR):
            directory.mkdir(parents=True, exist_ok=True)

        logger.info("Downloading SOFT family file for %s", accession)
        gse = GEOparse.get_GEO(geo=accession, destdir=str(metadata_dir), silent=True)

        if self.download_raw:
            self._download_supplementary(gse.phenotype_data, raw_dir, accession)

        partial_dir.rename(final_dir)
        logger.info("Cached %s at %s", accession, final_dir)

    def _download_raw(self, dataset: GEODataset) -> None:
        """Add the supplementary files to a series cached without them."""
        partial_dir = dataset.directory / f".{RAW_DIR}.partial"
        if partial_dir.exists():
            logger.warning("Removing leftover partial download %s", partial_dir)
            shutil.rmtree(partial_dir)
        partial_dir.mkdir(parents=True)

        self._download_supplementary(dataset.phenotype, partial_dir, dataset.accession)

        if dataset.raw_dir.exists():
            shutil.rmtree(dataset.raw_dir)
        partial_dir.rename(dataset.raw_dir)

    def _download_supplementary(self, phenotype: pd.DataFrame, dest_dir: Path, accession: str) -> None:
        urls = supplementary_urls(phenotype)
        logger.info("Downloading %d supplementary files for %s", len(urls), accession)
        for i, url in enumerate(urls, 1):
            logger.info("[%d/%d] %s", i, len(urls), url)
            self.download_file(url, dest_dir)

    def _load(self, accession: str, from_cache: bool) -> GEODataset:
        directory = self.dataset_dir(accession)
        soft_files = sorted((directory / METADATA_DIR).glob(f"{accession}_family.soft*"))
        if not soft_files:
            raise FileNotFoundError(
                f"No SOFT family file for {accession} in {directory / METADATA_DIR}"
            )

        gse = GEOparse.get_GEO(filepath=str(soft_files[0]), silent=True)
        raw_dir = directory / RAW_DIR
        raw_files = sorted(p for p in raw_dir.iterdir() if p.is_file()) if raw_dir.is_dir() else []

        return GEODataset(
            accession=accession,
            directory=directory,
            gse=gse,
            phenotype=gse.phenotype_data,
            raw_files=raw_files,
            from_cache=from_cache,
        )

    def download_file(self, url: str, dest_dir: Path) -> Path:
        """
        Stream one file into ``dest_dir``.

        The file is written under a ``.part`` name and renamed on completion.

        Returns:
            Path of the downloaded file
        """
        url = to_https(url)
        filename = Path(urlparse(url).path).name
        if not filename:
            raise ValueError(f"Cannot derive a file name from {url!r}")

        dest_dir.mkdir(parents=True, exist_ok=True)
        target = dest_dir / filename
        part = dest_dir / f"{filename}.part"

        response = self.session.get(url, stream=True)
        response.raise_for_status()
        with open(part, "wb") as fh:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if chunk:
                    fh.write(chunk)
        part.rename(target)
        return target

    def annotation_path(
        self,
        dataset: GEODataset,
        url: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> Path:
        """
        Return a local copy of a flat-file probe annotation, fetching it once.

        Args:
            dataset: Dataset whose ``annotation/`` directory holds the file
            url: Fixed annotation URL. Defaults to the GEO platform
                annotation (``GPLxxx.annot.gz``) of ``platform``.
            platform: GPL accession, defaults to the series' only platform

        Returns:
            Path to the annotation file
        """
        if url is None:
            if platform is None:
                if len(dataset.platforms) != 1:
                    raise ValueError(
                        f"{dataset.accession} uses platforms {dataset.platforms}; "
                        "pass the platform explicitly"
                    )
                platform = dataset.platforms[0]
            if not GPL_PATTERN.match(platform):
                raise ValueError(f"Not a GEO platform accession: {platform!r}")
            url = GPL_ANNOT_URL.format(stub=geo_stub(platform), gpl=platform)

        filename = Path(urlparse(url).path).name
        local = dataset.annotation_dir / filename
        if local.exists():
            logger.info("Using cached annotation %s", local)
            return local

        logger.info("Downloading annotation %s", url)
        return self.download_file(url, dataset.annotation_dir)

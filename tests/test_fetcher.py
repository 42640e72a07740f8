"""Tests for the cached GEO fetcher. No network access: GEOparse and HTTP are mocked."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pandas as pd
import pytest
import requests

from conftest import ACCESSION, PLATFORM, make_gse, make_phenotype
from tcell_states.geo.fetcher import (
    GEOFetcher,
    geo_stub,
    supplementary_urls,
    to_https,
)

GET_GEO = "tcell_states.geo.fetcher.GEOparse.get_GEO"


def _make_response(chunks=(b"abc", b"def"), error=None):
    response = MagicMock()
    response.iter_content.return_value = list(chunks)
    if error is not None:
        response.raise_for_status.side_effect = error
    return response


def _fake_get_geo(phenotype):
    """Stand-in for GEOparse.get_GEO that writes a SOFT file when downloading."""

    def get_geo(geo=None, filepath=None, destdir=None, silent=False):
        if geo is not None:
            Path(destdir).mkdir(parents=True, exist_ok=True)
            (Path(destdir) / f"{geo}_family.soft.gz").write_bytes(b"soft")
        return make_gse(phenotype)

    return get_geo


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:

    @pytest.mark.parametrize(
        "accession,stub",
        [("GSE12345", "GSE12nnn"), ("GSE123", "GSEnnn"), ("GPL570", "GPLnnn"), ("GPL10558", "GPL10nnn")],
    )
    def test_geo_stub(self, accession, stub):
        assert geo_stub(accession) == stub

    def test_to_https(self):
        assert (
            to_https("ftp://ftp.ncbi.nlm.nih.gov/geo/samples/GSM1nnn/GSM1/suppl/GSM1.CEL.gz")
            == "https://ftp.ncbi.nlm.nih.gov/geo/samples/GSM1nnn/GSM1/suppl/GSM1.CEL.gz"
        )
        assert to_https("https://example.org/a") == "https://example.org/a"

    def test_supplementary_urls(self):
        phenotype = pd.DataFrame({
            "supplementary_file_1": ["ftp://x/GSM1.CEL.gz", "ftp://x/GSM2.CEL.gz", "NONE"],
            "supplementary_file_2": ["ftp://x/GSM1.CHP.gz, ftp://x/GSM1.CEL.gz", None, None],
            "title": ["a", "b", "c"],
        })
        assert supplementary_urls(phenotype) == [
            "ftp://x/GSM1.CEL.gz",
            "ftp://x/GSM2.CEL.gz",
            "ftp://x/GSM1.CHP.gz",
        ]


# =============================================================================
# Fetching
# =============================================================================


class TestFetch:

    def test_rejects_non_series_accession(self, tmp_path):
        fetcher = GEOFetcher(tmp_path, session=MagicMock())
        with pytest.raises(ValueError, match="GSM1"):
            fetcher.fetch("GSM1")

    def test_cache_hit_does_not_download(self, cached_series):
        session = MagicMock()
        fetcher = GEOFetcher(cached_series, session=session)
        with patch(GET_GEO, side_effect=_fake_get_geo(make_phenotype())) as get_geo:
            dataset = fetcher.fetch(ACCESSION)

        session.get.assert_not_called()
        assert get_geo.call_count == 1
        assert "filepath" in get_geo.call_args.kwargs
        assert "geo" not in get_geo.call_args.kwargs
        assert dataset.from_cache
        assert dataset.platforms == [PLATFORM]
        assert len(dataset.raw_files) == 6

    def test_refetch_reuses_cache(self, tmp_path):
        session = MagicMock()
        session.get.return_value = _make_response()
        fetcher = GEOFetcher(tmp_path, session=session)
        with patch(GET_GEO, side_effect=_fake_get_geo(make_phenotype())):
            first = fetcher.fetch(ACCESSION)
            downloads = session.get.call_count
            second = fetcher.fetch(ACCESSION)

        assert not first.from_cache
        assert second.from_cache
        assert session.get.call_count == downloads == 6

    def test_download_populates_cache(self, tmp_path):
        session = MagicMock()
        session.get.return_value = _make_response()
        fetcher = GEOFetcher(tmp_path, session=session)
        with patch(GET_GEO, side_effect=_fake_get_geo(make_phenotype())):
            dataset = fetcher.fetch("gse100")

        assert dataset.accession == ACCESSION
        assert dataset.directory == tmp_path / ACCESSION
        assert (dataset.metadata_dir / f"{ACCESSION}_family.soft.gz").exists()
        assert dataset.annotation_dir.is_dir()
        names = sorted(p.name for p in dataset.raw_files)
        assert names == [f"GSM{i}_sample.txt.gz" for i in range(1, 7)]
        assert (dataset.raw_dir / "GSM1_sample.txt.gz").read_bytes() == b"abcdef"
        assert not list(tmp_path.glob(".*partial"))

        url = session.get.call_args_list[0].args[0]
        assert url.startswith("https://ftp.ncbi.nlm.nih.gov/")
        assert session.get.call_args_list[0].kwargs == {"stream": True}

    def test_metadata_only(self, tmp_path):
        session = MagicMock()
        fetcher = GEOFetcher(tmp_path, session=session, download_raw=False)
        with patch(GET_GEO, side_effect=_fake_get_geo(make_phenotype())):
            dataset = fetcher.fetch(ACCESSION)
        session.get.assert_not_called()
        assert dataset.raw_files == []

    def test_full_fetch_completes_metadata_only_cache(self, tmp_path):
        session = MagicMock()
        session.get.return_value = _make_response()
        with patch(GET_GEO, side_effect=_fake_get_geo(make_phenotype())) as get_geo:
            GEOFetcher(tmp_path, session=session, download_raw=False).fetch(ACCESSION)
            dataset = GEOFetcher(tmp_path, session=session).fetch(ACCESSION)

        assert session.get.call_count == 6
        assert not any("geo" in c.kwargs for c in get_geo.call_args_list[1:])
        assert not dataset.from_cache
        names = sorted(p.name for p in dataset.raw_files)
        assert names == [f"GSM{i}_sample.txt.gz" for i in range(1, 7)]
        assert not list(dataset.directory.glob(".*partial"))

    def test_metadata_only_fetch_of_full_cache(self, cached_series):
        session = MagicMock()
        fetcher = GEOFetcher(cached_series, session=session, download_raw=False)
        with patch(GET_GEO, side_effect=_fake_get_geo(make_phenotype())):
            dataset = fetcher.fetch(ACCESSION)
        session.get.assert_not_called()
        assert len(dataset.raw_files) == 6

    def test_failed_raw_completion_keeps_metadata_cache(self, tmp_path):
        session = MagicMock()
        session.get.return_value = _make_response(error=requests.HTTPError("404"))
        with patch(GET_GEO, side_effect=_fake_get_geo(make_phenotype())):
            GEOFetcher(tmp_path, session=session, download_raw=False).fetch(ACCESSION)
            with pytest.raises(requests.HTTPError):
                GEOFetcher(tmp_path, session=session).fetch(ACCESSION)

        raw_dir = tmp_path / ACCESSION / "raw"
        assert raw_dir.is_dir()
        assert list(raw_dir.iterdir()) == []

    def test_failed_download_leaves_no_cache(self, tmp_path):
        session = MagicMock()
        session.get.return_value = _make_response(error=requests.HTTPError("404"))
        fetcher = GEOFetcher(tmp_path, session=session)
        with patch(GET_GEO, side_effect=_fake_get_geo(make_phenotype())):
            with pytest.raises(requests.HTTPError):
                fetcher.fetch(ACCESSION)
        assert not fetcher.is_cached(ACCESSION)

    def test_leftover_partial_download_is_replaced(self, tmp_path):
        stale = tmp_path / f".{ACCESSION}.partial" / "raw"
        stale.mkdir(parents=True)
        (stale / "GSM9_stale.txt").write_text("old")

        session = MagicMock()
        session.get.return_value = _make_response()
        fetcher = GEOFetcher(tmp_path, session=session)
        with patch(GET_GEO, side_effect=_fake_get_geo(make_phenotype())):
            dataset = fetcher.fetch(ACCESSION)
        assert "GSM9_stale.txt" not in {p.name for p in dataset.raw_files}

    def test_missing_soft_file_in_cache(self, tmp_path):
        (tmp_path / ACCESSION).mkdir()
        fetcher = GEOFetcher(tmp_path, session=MagicMock())
        with pytest.raises(FileNotFoundError, match="SOFT"):
            fetcher.fetch(ACCESSION)


# =============================================================================
# Annotation files
# =============================================================================


class TestAnnotationPath:

    def _dataset(self, cached_series):
        fetcher = GEOFetcher(cached_series, session=MagicMock())
        with patch(GET_GEO, side_effect=_fake_get_geo(make_phenotype())):
            return fetcher, fetcher.fetch(ACCESSION)

    def test_reuses_local_platform_annotation(self, cached_series):
        fetcher, dataset = self._dataset(cached_series)
        path = fetcher.annotation_path(dataset)
        assert path == dataset.annotation_dir / f"{PLATFORM}.annot.gz"
        fetcher.session.get.assert_not_called()

    def test_downloads_fixed_url_once(self, cached_series):
        fetcher, dataset = self._dataset(cached_series)
        fetcher.session.get.return_value = _make_response([b"ID\tGene Symbol\n"])
        url = "https://example.org/annot/HG-U133A.na36.annot.csv"

        first = fetcher.annotation_path(dataset, url=url)
        second = fetcher.annotation_path(dataset, url=url)

        assert first == second == dataset.annotation_dir / "HG-U133A.na36.annot.csv"
        assert fetcher.session.get.call_count == 1

    def test_builds_platform_url(self, cached_series):
        fetcher, dataset = self._dataset(cached_series)
        fetcher.session.get.return_value = _make_response()
        fetcher.annotation_path(dataset, platform="GPL570")
        assert fetcher.session.get.call_args.args[0] == (
            "https://ftp.ncbi.nlm.nih.gov/geo/platforms/GPLnnn/GPL570/annot/GPL570.annot.gz"
        )

    def test_rejects_bad_platform(self, cached_series):
        fetcher, dataset = self._dataset(cached_series)
        with pytest.raises(ValueError, match="platform"):
            fetcher.annotation_path(dataset, platform="HG-U133A")

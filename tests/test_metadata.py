"""Tests for sample metadata tidying and title parsing."""

import logging
import math
from pathlib import Path

import pandas as pd
import pytest

from conftest import make_phenotype
from tcell_states.geo.metadata import (
    TitleGrammar,
    assign_sample_ids,
    malformed_titles,
    parse_replicate,
    parse_time_hours,
    sample_id_from_path,
    tidy_metadata,
)


class TestTitleGrammar:

    def test_parse_conforming_title(self):
        parsed = TitleGrammar().parse("CD8_aCD3;48h|rep2,HG-U133A")
        assert parsed == {
            "condition": "CD8",
            "treatment": "aCD3",
            "time": "48h",
            "replicate": "rep2",
            "title_platform": "HG-U133A",
        }

    def test_short_title_leaves_missing_fields(self):
        parsed = TitleGrammar().parse("CD4_unstim")
        assert parsed["treatment"] == "unstim"
        assert parsed["time"] is None
        assert parsed["title_platform"] is None

    def test_surplus_tokens_are_dropped(self):
        parsed = TitleGrammar(fields=("a", "b")).parse("x_y_z")
        assert parsed == {"a": "x", "b": "y"}

    def test_empty_tokens_are_skipped(self):
        assert TitleGrammar().tokenize("CD4__aCD3_") == ["CD4", "aCD3"]

    def test_missing_title(self):
        assert TitleGrammar().tokenize(None) == []
        assert TitleGrammar().tokenize(float("nan")) == []

    def test_conforms(self):
        grammar = TitleGrammar()
        assert grammar.conforms("CD4_aCD3_24h_rep1_GPL1")
        assert not grammar.conforms("CD4 aCD3 24h rep1")

    def test_custom_delimiters(self):
        grammar = TitleGrammar(delimiters="-", fields=("cell", "state"))
        assert grammar.parse("Treg-resting") == {"cell": "Treg", "state": "resting"}


class TestFieldParsers:

    @pytest.mark.parametrize(
        "token,hours",
        [("24h", 24.0), ("0h", 0.0), ("30min", 0.5), ("2d", 48.0), ("6", 6.0), ("1.5 hours", 1.5)],
    )
    def test_time_hours(self, token, hours):
        assert parse_time_hours(token) == pytest.approx(hours)

    @pytest.mark.parametrize("token", [None, "late", "3 weeks"])
    def test_unparseable_time(self, token):
        assert math.isnan(parse_time_hours(token))

    @pytest.mark.parametrize("token,index", [("rep2", 2), ("R3", 3), ("1", 1)])
    def test_replicate(self, token, index):
        assert parse_replicate(token) == index

    def test_unparseable_replicate(self):
        assert math.isnan(parse_replicate("repA"))


class TestTidyMetadata:

    def test_columns_and_index(self):
        tidy = tidy_metadata(make_phenotype())
        assert tidy.index.name == "sample"
        assert list(tidy.index) == ["GSM1", "GSM2", "GSM3", "GSM4", "GSM5", "GSM6"]
        for column in ("accession", "platform", "supplementary_url", "title", "treatment",
                       "time_hours", "replicate_index"):
            assert column in tidy.columns

    def test_parsed_fields(self):
        tidy = tidy_metadata(make_phenotype())
        row = tidy.loc["GSM4"]
        assert row["condition"] == "CD4"
        assert row["treatment"] == "aCD3"
        assert row["time_hours"] == 24.0
        assert row["replicate_index"] == 1
        assert row["platform"] == "GPL1"

    def test_first_supplementary_url_is_kept(self):
        phenotype = make_phenotype()
        phenotype["supplementary_file"] = "ftp://a/GSM_x.CEL.gz, ftp://a/GSM_x.CHP.gz"
        tidy = tidy_metadata(phenotype)
        assert (tidy["supplementary_url"] == "ftp://a/GSM_x.CEL.gz").all()

    def test_numbered_supplementary_column(self):
        phenotype = make_phenotype().rename(columns={"supplementary_file": "supplementary_file_1"})
        tidy = tidy_metadata(phenotype)
        assert tidy["supplementary_url"].notna().all()

    def test_malformed_titles_are_kept_silently(self, caplog):
        phenotype = make_phenotype({"GSM1": "CD4_unstim_0h_rep1_GPL1", "GSM2": "CD4 stimulated"})
        with caplog.at_level(logging.WARNING):
            tidy = tidy_metadata(phenotype)
        assert len(tidy) == 2
        assert tidy.loc["GSM2", "condition"] == "CD4 stimulated"
        assert pd.isna(tidy.loc["GSM2", "treatment"])
        assert pd.isna(tidy.loc["GSM2", "replicate_index"])
        assert "1 of 2 sample titles" in caplog.text

    def test_malformed_titles_listing(self):
        phenotype = make_phenotype({"GSM1": "CD4_unstim_0h_rep1_GPL1", "GSM2": "CD4_x_y_z_w_extra"})
        bad = malformed_titles(tidy_metadata(phenotype))
        assert list(bad["accession"]) == ["GSM2"]
        assert list(bad.columns) == ["accession", "title"]

    def test_duplicate_accession(self):
        phenotype = pd.concat([make_phenotype(), make_phenotype().iloc[:1]])
        with pytest.raises(ValueError, match="GSM1"):
            tidy_metadata(phenotype)

    def test_missing_title_column(self):
        with pytest.raises(ValueError, match="title"):
            tidy_metadata(make_phenotype().drop(columns="title"))


class TestSampleIds:

    def test_sample_id_from_path(self):
        assert sample_id_from_path(Path("raw/gsm123_foo.CEL.gz")) == "GSM123"
        assert sample_id_from_path(Path("raw/readme.txt")) is None

    def test_assign_sample_ids(self):
        mapping = assign_sample_ids([Path("GSM2_b.CEL"), Path("GSM1_a.CEL")])
        assert mapping == {"GSM2": Path("GSM2_b.CEL"), "GSM1": Path("GSM1_a.CEL")}

    def test_missing_accession(self):
        with pytest.raises(ValueError, match="readme"):
            assign_sample_ids([Path("readme.txt")])

    def test_two_files_for_one_sample(self):
        with pytest.raises(ValueError, match="GSM1"):
            assign_sample_ids([Path("GSM1_a.CEL"), Path("GSM1_b.CEL")])

"""
Sample metadata tidying.

Reduces a GEOparse phenotype table to the handful of fields the analysis
uses and parses the free-text sample title into structured fields with a
fixed delimiter grammar. Titles that do not follow the grammar yield rows
with missing or shifted fields; ``malformed_titles`` lists them.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from tcell_states.config import DEFAULT_TITLE_DELIMITERS, DEFAULT_TITLE_FIELDS

logger = logging.getLogger(__name__)

# phenotype column -> tidy column
METADATA_COLUMNS = {
    "geo_accession": "accession",
    "platform_id": "platform",
    "supplementary_file": "supplementary_url",
    "title": "title",
}

GSM_PATTERN = re.compile(r"(GSM\d+)", re.IGNORECASE)
_TIME_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")
_REPLICATE_PATTERN = re.compile(r"(\d+)\s*$")

TIME_UNITS_IN_HOURS = {
    "": 1.0,
    "h": 1.0,
    "hr": 1.0,
    "hrs": 1.0,
    "hour": 1.0,
    "hours": 1.0,
    "m": 1.0 / 60,
    "min": 1.0 / 60,
    "mins": 1.0 / 60,
    "minutes": 1.0 / 60,
    "d": 24.0,
    "day": 24.0,
    "days": 24.0,
}


@dataclass(frozen=True)
class TitleGrammar:
    """Fixed delimiter grammar for sample titles.

    Attributes:
        delimiters: Characters that separate title fields
        fields: Field names assigned to tokens, in order
    """

    delimiters: str = DEFAULT_TITLE_DELIMITERS
    fields: Tuple[str, ...] = DEFAULT_TITLE_FIELDS

    @property
    def pattern(self) -> re.Pattern:
        return re.compile("[" + re.escape(self.delimiters) + "]")

    def tokenize(self, title: str) -> List[str]:
        if not isinstance(title, str) and pd.isna(title):
            return []
        return [t.strip() for t in self.pattern.split(str(title)) if t.strip()]

    def parse(self, title: str) -> Dict[str, Optional[str]]:
        """Assign tokens to fields positionally. Surplus tokens are dropped."""
        tokens = self.tokenize(title)
        return {name: tokens[i] if i < len(tokens) else None for i, name in enumerate(self.fields)}

    def conforms(self, title: str) -> bool:
        return len(self.tokenize(title)) == len(self.fields)


def parse_time_hours(token: Optional[str]) -> float:
    """Convert an elapsed-time token (``24h``, ``30min``, ``2d``) to hours."""
    if token is None:
        return np.nan
    match = _TIME_PATTERN.match(str(token))
    if not match:
        return np.nan
    value, unit = match.groups()
    factor = TIME_UNITS_IN_HOURS.get(unit.lower())
    if factor is None:
        return np.nan
    return float(value) * factor


def parse_replicate(token: Optional[str]) -> float:
    """Extract the trailing replicate number (``rep2``, ``R2``, ``2``)."""
    if token is None:
        return np.nan
    match = _REPLICATE_PATTERN.search(str(token))
    return float(match.group(1)) if match else np.nan


def tidy_metadata(
    phenotype: pd.DataFrame,
    grammar: Optional[TitleGrammar] = None,
) -> pd.DataFrame:
    """
    Reduce a phenotype table and parse sample titles.

    Args:
        phenotype: GEOparse ``phenotype_data`` (one row per GSM)
        grammar: Title grammar, defaults to ``TitleGrammar()``

    Returns:
        DataFrame indexed by sample accession with columns ``accession``,
        ``platform``, ``supplementary_url``, ``title``, one column per
        grammar field, ``time_hours`` and ``replicate_index``.

    Raises:
        ValueError: If required columns are missing or accessions repeat
    """
    grammar = grammar or TitleGrammar()

    missing = [c for c in ("geo_accession", "title") if c not in phenotype.columns]
    if missing:
        raise ValueError(f"Phenotype table lacks columns: {', '.join(missing)}")

    tidy = pd.DataFrame(index=range(len(phenotype)))
    for source, target in METADATA_COLUMNS.items():
        column = _first_matching_column(phenotype, source)
        tidy[target] = phenotype[column].to_numpy() if column else None

    # GEOparse comma-joins multiple supplementary files; keep the first.
    tidy["supplementary_url"] = tidy["supplementary_url"].map(
        lambda v: str(v).split(",")[0].strip() if pd.notna(v) else None
    )

    if not tidy["accession"].is_unique:
        dupes = sorted(tidy.loc[tidy["accession"].duplicated(), "accession"].unique())
        raise ValueError(f"Duplicate sample accessions: {', '.join(dupes)}")

    parsed = pd.DataFrame([grammar.parse(t) for t in tidy["title"]], columns=list(grammar.fields))
    tidy = pd.concat([tidy, parsed], axis=1)

    if "time" in tidy.columns:
        tidy["time_hours"] = tidy["time"].map(parse_time_hours)
    if "replicate" in tidy.columns:
        tidy["replicate_index"] = tidy["replicate"].map(parse_replicate).astype("Int64")

    n_bad = int((~tidy["title"].map(grammar.conforms)).sum())
    if n_bad:
        logger.warning(
            "%d of %d sample titles do not split into %d fields",
            n_bad, len(tidy), len(grammar.fields),
        )

    return tidy.set_index("accession", drop=False).rename_axis("sample")


def _first_matching_column(df: pd.DataFrame, name: str) -> Optional[str]:
    if name in df.columns:
        return name
    for column in df.columns:
        if str(column).startswith(name):
            return column
    return None


def malformed_titles(tidy: pd.DataFrame, grammar: Optional[TitleGrammar] = None) -> pd.DataFrame:
    """Return the rows whose title does not split into exactly one token per field."""
    grammar = grammar or TitleGrammar()
    mask = ~tidy["title"].map(grammar.conforms)
    return tidy.loc[mask, ["accession", "title"]]


def sample_id_from_path(path: Path) -> Optional[str]:
    """GEO prefixes supplementary file names with the sample accession."""
    match = GSM_PATTERN.search(Path(path).name)
    return match.group(1).upper() if match else None


def assign_sample_ids(paths: Iterable[Path]) -> Dict[str, Path]:
    """
    Map sample accessions to raw files.

    Raises:
        ValueError: If a file name has no GSM prefix or two files share one
    """
    mapping: Dict[str, Path] = {}
    for path in paths:
        sample = sample_id_from_path(path)
        if sample is None:
            raise ValueError(f"Cannot find a GSM accession in file name {Path(path).name!r}")
        if sample in mapping:
            raise ValueError(f"Two raw files for {sample}: {mapping[sample].name}, {Path(path).name}")
        mapping[sample] = Path(path)
    return mapping

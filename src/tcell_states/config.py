"""Analysis configuration.

Defaults live on the ``AnalysisConfig`` dataclass. ``load_config`` layers a
``.env`` file, an optional JSON file, ``TCELL_STATES_*`` environment
variables and explicit keyword overrides on top of them, in that order.
"""

import json
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from dotenv import find_dotenv, load_dotenv

DEFAULT_CACHE_DIR = Path("data")
DEFAULT_OUTPUT_DIR = Path("results")

# Sample titles look like "CD4_aCD3_24h_rep1_HG-U133A"
DEFAULT_TITLE_DELIMITERS = "_;,|"
DEFAULT_TITLE_FIELDS = ("condition", "treatment", "time", "replicate", "title_platform")

ENV_PREFIX = "TCELL_STATES_"
_ENV_KEYS = {
    "CACHE_DIR": "cache_dir",
    "OUTPUT_DIR": "output_dir",
    "ANNOTATION_URL": "annotation_url",
    "LAYOUT_PATH": "layout_path",
}


@dataclass
class AnalysisConfig:
    """Configuration for one analysis session over a single GEO series."""

    accession: str = ""
    cache_dir: Path = DEFAULT_CACHE_DIR
    output_dir: Path = DEFAULT_OUTPUT_DIR

    # Fixed URL of a flat-file probe annotation. When unset the GEO
    # platform annotation (GPLxxx.annot.gz) is used.
    annotation_url: Optional[str] = None
    platform: Optional[str] = None
    # Read gene symbols from the SOFT platform table instead of a flat file
    use_platform_table: bool = False

    # Perfect-match probe layout for CEL files: GCOS text CDF or a
    # probeset/x/y table
    layout_path: Optional[Path] = None

    # Title grammar
    title_delimiters: str = DEFAULT_TITLE_DELIMITERS
    title_fields: Tuple[str, ...] = DEFAULT_TITLE_FIELDS

    # Two-level design
    design_column: str = "treatment"
    reference_level: Optional[str] = None
    test_level: Optional[str] = None

    # Significance thresholds
    fdr_threshold: float = 0.05
    log2fc_threshold: float = 1.0
    min_average_expression: Optional[float] = None

    # Preprocessing
    background_correct: bool = True
    quantile_normalize: bool = True

    # HTTP
    http_timeout: int = 120
    http_retries: int = 3

    # Extra per-dataset knobs that chapters may read
    extras: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.cache_dir = Path(self.cache_dir)
        self.output_dir = Path(self.output_dir)
        if self.layout_path is not None:
            self.layout_path = Path(self.layout_path)
        self.title_fields = tuple(self.title_fields)
        if not self.title_delimiters:
            raise ValueError("title_delimiters must not be empty")
        if not 0 < self.fdr_threshold <= 1:
            raise ValueError(f"fdr_threshold must be in (0, 1], got {self.fdr_threshold}")
        if self.log2fc_threshold < 0:
            raise ValueError(f"log2fc_threshold must be >= 0, got {self.log2fc_threshold}")

    @property
    def dataset_dir(self) -> Path:
        return self.cache_dir / self.accession

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Path):
                value = str(value)
            elif isinstance(value, tuple):
                value = list(value)
            data[f.name] = value
        return data


def _env_overrides() -> Dict[str, str]:
    overrides = {}
    for suffix, key in _ENV_KEYS.items():
        value = os.environ.get(ENV_PREFIX + suffix)
        if value:
            overrides[key] = value
    return overrides


def load_config(path: Optional[Union[str, Path]] = None, **overrides: Any) -> AnalysisConfig:
    """
    Build an AnalysisConfig from .env, a JSON file, the environment and overrides.

    Args:
        path: Optional JSON file whose keys are AnalysisConfig field names
        **overrides: Field values that take precedence over everything else

    Returns:
        AnalysisConfig

    Raises:
        ValueError: If the JSON file or overrides name an unknown field
    """
    load_dotenv(find_dotenv(usecwd=True))

    known = {f.name for f in fields(AnalysisConfig)}
    values: Dict[str, Any] = {}

    if path is not None:
        with open(path, encoding="utf-8") as fh:
            file_values = json.load(fh)
        unknown = sorted(set(file_values) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys in {path}: {', '.join(unknown)}")
        values.update(file_values)

    values.update(_env_overrides())

    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
    values.update({k: v for k, v in overrides.items() if v is not None})

    return replace(AnalysisConfig(), **values)

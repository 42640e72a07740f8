"""GEO retrieval and sample metadata tidying."""

from tcell_states.geo.fetcher import GEODataset, GEOFetcher
from tcell_states.geo.http import create_session
from tcell_states.geo.metadata import TitleGrammar, malformed_titles, tidy_metadata

__all__ = [
    "GEODataset",
    "GEOFetcher",
    "create_session",
    "TitleGrammar",
    "malformed_titles",
    "tidy_metadata",
]

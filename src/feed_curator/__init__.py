"""Budget-aware feed ingestion and hybrid-ranked curation."""

__version__ = "0.1.0"

"""Content enrichment adapters."""

from feed_curator.adapters.enrichment.fulltext import DomainGate, FullTextEnricher

__all__ = ["DomainGate", "FullTextEnricher"]

"""
Book identity and metadata reconciliation.
Import surface: identity helpers, the hydration pipeline, the enrichment
scheduler and the social counter synchronizer.
"""

from .context import ReconciliationContext
from .enrichment import EnrichmentScheduler
from .hydration import HydrationPipeline
from .identity import UNKNOWN_KEY, candidate_keys, canonical_key, convert_isbn13_to_isbn10
from .social import SocialCounterSynchronizer

__all__ = [
    "ReconciliationContext",
    "EnrichmentScheduler",
    "HydrationPipeline",
    "SocialCounterSynchronizer",
    "UNKNOWN_KEY",
    "candidate_keys",
    "canonical_key",
    "convert_isbn13_to_isbn10",
]

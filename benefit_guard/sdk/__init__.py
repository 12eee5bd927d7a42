"""
SDK for the benefit lookup service.

Provides the retrying HTTP client and its short-lived response cache.
"""

from .benefits_client import BenefitsApiClient, FetchOutcome
from .transient_cache import TransientCache

__all__ = ["BenefitsApiClient", "FetchOutcome", "TransientCache"]

"""
External collaborators of the sync pipeline: the messaging platform and the
lead scoring model.
"""

from .messaging_client import MessagingApiError, MessagingPlatformClient
from .scoring_client import LeadScorer, LeadScoringService, ScoringServiceError

__all__ = [
    "LeadScorer",
    "LeadScoringService",
    "MessagingApiError",
    "MessagingPlatformClient",
    "ScoringServiceError",
]

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from pydantic import BaseModel

from site_ingest.config import settings

logger = logging.getLogger(__name__)


class PlanDecision(BaseModel):
    allowed: bool
    tier: Optional[str] = None


class BillingClient(ABC):
    """Answers whether a user's plan includes URL import."""

    @abstractmethod
    async def get_plan(self, user_id: str) -> PlanDecision:
        pass


class StaticBillingClient(BillingClient):
    """
    Plan lookup from configuration: every user is on ``default_tier`` unless
    listed in ``overrides``.
    """

    def __init__(
        self,
        default_tier: str = settings.DEFAULT_PLAN_TIER,
        allowed_tiers: Optional[List[str]] = None,
        overrides: Optional[Dict[str, str]] = None,
    ):
        self.default_tier = default_tier
        self.allowed_tiers = [t.lower() for t in (allowed_tiers or settings.IMPORT_ALLOWED_PLANS)]
        self.overrides = overrides or {}

    async def get_plan(self, user_id: str) -> PlanDecision:
        tier = self.overrides.get(user_id, self.default_tier)
        allowed = bool(tier) and tier.lower() in self.allowed_tiers
        if not allowed:
            logger.debug(f"User {user_id} on plan {tier!r} cannot import URLs")
        return PlanDecision(allowed=allowed, tier=tier)

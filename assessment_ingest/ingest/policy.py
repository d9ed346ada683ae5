"""How risks are linked to the observations of their batch."""

from __future__ import annotations

from enum import Enum
from typing import List, Sequence

from assessment_ingest.models.oscal import Observation


class RiskLinkPolicy(str, Enum):
    """
    FIRST_OBSERVATION: every risk references only the batch's first observation,
        regardless of risk position or count. This is the long-standing behavior
        and stays the default until product owners decide otherwise.
    ALL_OBSERVATIONS: every risk references every observation of the batch.
    """

    FIRST_OBSERVATION = "first"
    ALL_OBSERVATIONS = "all"

    def related_observations(self, observations: Sequence[Observation]) -> List[str]:
        """Observation ids a risk of this batch should reference. Requires at least one observation."""
        if not observations:
            raise ValueError("risk linking needs at least one observation")
        if self is RiskLinkPolicy.ALL_OBSERVATIONS:
            return [o.id for o in observations]
        return [observations[0].id]

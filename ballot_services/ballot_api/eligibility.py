"""Per-election allow-lists of eligibility keys."""
import logging
from typing import Iterable, List

from ..shared import normalize_eligibility_key, normalize_eligibility_keys

logger = logging.getLogger(__name__)


class EligibilityStore:
    """
    Read access to the election_voters allow-list.

    Entries are written only by the lifecycle manager when an election is
    created and are immutable afterwards.
    """

    def __init__(self, database):
        self.database = database

    async def is_eligible(self, election_id: str, eligibility_key: str) -> bool:
        key = normalize_eligibility_key(eligibility_key)
        if not key:
            return False
        return await self.database.is_eligible(election_id, key)

    @staticmethod
    def prepare_bulk(eligibility_keys: Iterable[str]) -> List[str]:
        """
        Normalise a pasted voter list for bulk registration.

        Blank rows are dropped and repeats keep their first occurrence,
        silently, because hosts paste lists with accidental duplicates.
        """
        keys = list(eligibility_keys)
        prepared = normalize_eligibility_keys(keys)
        dropped = len(keys) - len(prepared)
        if dropped:
            logger.info(f"Dropped {dropped} blank or repeated eligibility keys")
        return prepared

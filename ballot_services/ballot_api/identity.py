"""Identity resolution: authenticated caller -> voter identity and eligibility key."""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..shared import ProfileRole, normalize_eligibility_key
from .errors import NotAuthenticated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoterIdentity:
    """Resolved caller."""
    voter_id: str
    eligibility_key: str
    name: Optional[str] = None
    role: str = ProfileRole.VOTER.value

    @property
    def is_admin(self) -> bool:
        return self.role == ProfileRole.ADMIN.value


class IdentityResolver:
    """
    Maps identity-provider subjects to profiles.

    The profiles table is the system of record kept in sync with the
    external identity provider. Lookups in both directions go through
    indexes: subject -> profile by primary key, and eligibility key ->
    profiles by the normalised key index.
    """

    def __init__(self, database):
        self.database = database

    async def resolve(self, subject: Optional[str]) -> VoterIdentity:
        """
        Resolve an authenticated caller.

        Raises:
            NotAuthenticated: No subject was supplied or it has no profile
        """
        if subject is None or not subject.strip():
            raise NotAuthenticated()

        profile = await self.database.fetch_profile(subject.strip())
        if profile is None:
            logger.warning(f"No profile for authenticated subject {subject!r}")
            raise NotAuthenticated("No voter profile is linked to this account")

        key = normalize_eligibility_key(profile.get("eligibility_key"))
        if not key:
            logger.warning(f"Profile {profile['id']} has no eligibility key")
            raise NotAuthenticated("Voter profile has no eligibility key")

        return VoterIdentity(
            voter_id=profile["id"],
            eligibility_key=key,
            name=profile.get("name"),
            role=profile.get("role") or ProfileRole.VOTER.value,
        )

    async def eligibility_keys_for(self, voter_ids: List[str]) -> Dict[str, str]:
        """
        Reverse mapping for a batch of voter identities.

        Identities without a profile (or with a blank key) are absent
        from the result; callers decide how to treat them.
        """
        profiles = await self.database.fetch_profiles_by_ids(sorted(set(voter_ids)))
        mapping = {}
        for profile in profiles:
            key = normalize_eligibility_key(profile.get("eligibility_key"))
            if key:
                mapping[profile["id"]] = key
        return mapping

    async def names_for_keys(self, eligibility_keys: List[str]) -> Dict[str, str]:
        """Display names by eligibility key. First registered profile wins on shared keys."""
        profiles = await self.database.fetch_profiles_by_keys(list(eligibility_keys))
        names = {}
        for profile in profiles:
            key = normalize_eligibility_key(profile.get("eligibility_key"))
            if key and key not in names and profile.get("name"):
                names[key] = profile["name"]
        return names

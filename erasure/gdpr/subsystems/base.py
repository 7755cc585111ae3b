"""
Abstract base class for erasure subsystems.

Every backend that holds user data is wrapped in a SubsystemClient with
the same two capabilities: delete everything in scope for a user, and
re-query to prove nothing is left. The coordinator iterates a fixed list
of clients instead of branching on backend names.

Implementations must:
1. Treat "nothing to delete" as success (return 0, do not raise)
2. Raise TransientSubsystemError for timeouts and backend failures
3. Never raise from verify(); report failures as not verified
4. Log hashed user references only
"""

from abc import ABC, abstractmethod
from typing import Sequence

from erasure.gdpr.schemas import SCOPE_ALL, SubsystemVerification


class SubsystemClient(ABC):
    """
    Uniform delete/verify capability for one backend.

    Attributes:
        name: Stable subsystem name used in results, errors and metrics
        residue_label: Label reported when verification finds leftovers
    """

    name: str = ""
    residue_label: str = ""

    def applies_to(self, scope: Sequence[str]) -> bool:
        """Whether this subsystem takes part in an erasure of this scope."""
        return True

    @abstractmethod
    async def delete(self, user_id: str, scope: Sequence[str]) -> int:
        """
        Delete the user's data held by this subsystem.

        Args:
            user_id: Raw user id (never logged)
            scope: Normalised scope, e.g. ["all"] or ["sessions", "consents"]

        Returns:
            Number of records/objects removed (0 when nothing was there)

        Raises:
            TransientSubsystemError: Backend unavailable or failed
        """
        ...

    @abstractmethod
    async def verify(self, user_id: str, scope: Sequence[str]) -> SubsystemVerification:
        """
        Re-query the backend for anything left for the user.

        Returns:
            SubsystemVerification; query failures come back as not verified
        """
        ...

    def residue(self, suffix: str = "") -> str:
        return f"{self.name}:{suffix or self.residue_label}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


def scope_includes_all(scope: Sequence[str]) -> bool:
    return SCOPE_ALL in scope

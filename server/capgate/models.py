"""capgate - Membership Records

Immutable dataclasses handed from the store to the resolver and the API.
"""

from dataclasses import dataclass
from typing import Optional

from .capabilities import ContextType


@dataclass(frozen=True)
class Membership:
    """One user's membership in one workspace or project, as stored.

    ``role`` and ``capabilities`` are the raw column values; the resolver
    decides what they mean.
    """
    user_id: str
    context_type: ContextType
    context_id: str
    role: str
    capabilities: Optional[str]   # serialized JSON array

    @property
    def context_key(self) -> tuple[ContextType, str]:
        return (self.context_type, self.context_id)


@dataclass(frozen=True)
class User:
    id: str
    email: str
    display_name: Optional[str] = None

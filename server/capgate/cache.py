"""capgate - Request-Scoped Capability Cache

One instance per request. Memoizes resolutions keyed by
(user_id, context_type, context_id) and remembers which context's membership
produced each answer, so invalidating a workspace also drops project entries
that fell back to it.
"""

from typing import Optional

from .capabilities import Capability, ContextType
from .resolver import CapabilityResolver, coerce_context_type


class CapabilityCache:

    def __init__(self, resolver: CapabilityResolver):
        self._resolver = resolver
        # key -> (capabilities, source context or None)
        self._entries: dict[
            tuple[str, ContextType, str],
            tuple[frozenset[Capability], Optional[tuple[ContextType, str]]],
        ] = {}

    def resolve(
        self,
        user_id: str,
        context_id: str,
        context_type: ContextType = ContextType.WORKSPACE,
    ) -> frozenset[Capability]:
        context_type = coerce_context_type(context_type)
        key = (user_id, context_type, context_id)
        entry = self._entries.get(key)
        if entry is None:
            entry = self._resolver.resolve_with_source(user_id, context_id, context_type)
            self._entries[key] = entry
        return entry[0]

    def invalidate(self, user_id: str = None, context_id: str = None) -> int:
        """Drop entries matching the given user and/or context. Returns count dropped.

        A context matches when it is the entry's own context or the context
        whose membership answered it. With no arguments everything is dropped.
        """
        if user_id is None and context_id is None:
            dropped = len(self._entries)
            self._entries.clear()
            return dropped

        def matches(key, source) -> bool:
            entry_user, _, entry_context = key
            if user_id is not None and entry_user != user_id:
                return False
            if context_id is not None:
                source_id = source[1] if source else None
                if context_id not in (entry_context, source_id):
                    return False
            return True

        stale = [key for key, (_, source) in self._entries.items() if matches(key, source)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

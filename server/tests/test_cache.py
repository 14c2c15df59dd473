"""Tests for the request-scoped capability cache."""
import sys
import os
from unittest.mock import MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from capgate.cache import CapabilityCache
from capgate.capabilities import Capability, ContextType
from capgate.models import Membership
from capgate.resolver import CapabilityResolver

VIEW = frozenset({Capability.VIEW})
VIEW_EDIT = frozenset({Capability.VIEW, Capability.EDIT})


def _resolver(answers=None):
    """Mock resolver. ``answers`` maps (user, context_id) -> (caps, source)."""
    answers = answers or {}
    resolver = MagicMock(spec=CapabilityResolver)
    resolver.resolve_with_source.side_effect = (
        lambda user, ctx, ctype: answers.get((user, ctx), (frozenset(), None))
    )
    return resolver


class TestMemoization:

    def test_second_call_does_not_hit_resolver(self):
        resolver = _resolver({("u1", "w1"): (VIEW, (ContextType.WORKSPACE, "w1"))})
        cache = CapabilityCache(resolver)

        assert cache.resolve("u1", "w1") == VIEW
        assert cache.resolve("u1", "w1") == VIEW
        assert resolver.resolve_with_source.call_count == 1

    def test_context_type_is_part_of_key(self):
        resolver = _resolver()
        cache = CapabilityCache(resolver)

        cache.resolve("u1", "x", ContextType.WORKSPACE)
        cache.resolve("u1", "x", ContextType.PROJECT)
        assert resolver.resolve_with_source.call_count == 2

    def test_string_context_type_shares_entry_with_enum(self):
        resolver = _resolver()
        cache = CapabilityCache(resolver)

        cache.resolve("u1", "p1", "project")
        cache.resolve("u1", "p1", ContextType.PROJECT)
        assert resolver.resolve_with_source.call_count == 1

    def test_empty_results_are_cached_too(self):
        resolver = _resolver()
        cache = CapabilityCache(resolver)

        cache.resolve("u1", "w1")
        cache.resolve("u1", "w1")
        assert resolver.resolve_with_source.call_count == 1
        assert len(cache) == 1

    def test_separate_caches_do_not_share(self):
        resolver = _resolver()
        CapabilityCache(resolver).resolve("u1", "w1")
        CapabilityCache(resolver).resolve("u1", "w1")
        assert resolver.resolve_with_source.call_count == 2


class TestInvalidation:

    def _populated(self):
        answers = {
            ("u1", "w1"): (VIEW_EDIT, (ContextType.WORKSPACE, "w1")),
            ("u1", "p1"): (VIEW_EDIT, (ContextType.WORKSPACE, "w1")),  # fell back
            ("u2", "w1"): (VIEW, (ContextType.WORKSPACE, "w1")),
            ("u2", "w2"): (VIEW, (ContextType.WORKSPACE, "w2")),
        }
        cache = CapabilityCache(_resolver(answers))
        cache.resolve("u1", "w1")
        cache.resolve("u1", "p1", ContextType.PROJECT)
        cache.resolve("u2", "w1")
        cache.resolve("u2", "w2")
        return cache

    def test_invalidate_user(self):
        cache = self._populated()
        assert cache.invalidate(user_id="u1") == 2
        assert len(cache) == 2

    def test_invalidate_context_includes_fallback_entries(self):
        cache = self._populated()
        assert cache.invalidate(context_id="w1") == 3
        assert len(cache) == 1

    def test_invalidate_user_and_context(self):
        cache = self._populated()
        assert cache.invalidate(user_id="u2", context_id="w2") == 1
        assert len(cache) == 3

    def test_invalidate_everything(self):
        cache = self._populated()
        assert cache.invalidate() == 4
        assert len(cache) == 0

    def test_invalidated_entry_is_resolved_again(self):
        resolver = _resolver({("u1", "w1"): (VIEW, (ContextType.WORKSPACE, "w1"))})
        cache = CapabilityCache(resolver)
        cache.resolve("u1", "w1")
        cache.invalidate(user_id="u1")
        cache.resolve("u1", "w1")
        assert resolver.resolve_with_source.call_count == 2


class TestInvalidationWithResolver:
    """Invalidation over a real CapabilityResolver and a mutable store."""

    class _Store:
        def __init__(self):
            self.memberships = {}
            self.projects = {"p1": "w1"}

        def get_membership(self, user_id, context_type, context_id):
            return self.memberships.get((user_id, ContextType(context_type), context_id))

        def get_project_workspace_id(self, project_id):
            return self.projects.get(project_id)

    def test_empty_fallback_is_dropped_when_workspace_changes(self):
        store = self._Store()
        cache = CapabilityCache(CapabilityResolver(store))
        assert cache.resolve("u1", "p1", ContextType.PROJECT) == frozenset()

        store.memberships[("u1", ContextType.WORKSPACE, "w1")] = Membership(
            "u1", ContextType.WORKSPACE, "w1", "manager", '["view", "create", "edit"]'
        )
        assert cache.invalidate(context_id="w1") == 1
        assert cache.resolve("u1", "p1", ContextType.PROJECT) == {
            Capability.VIEW, Capability.CREATE, Capability.EDIT,
        }

    def test_missing_project_entry_only_matches_itself(self):
        store = self._Store()
        cache = CapabilityCache(CapabilityResolver(store))
        cache.resolve("u1", "ghost", ContextType.PROJECT)
        assert cache.invalidate(context_id="w1") == 0
        assert cache.invalidate(context_id="ghost") == 1

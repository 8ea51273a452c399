"""Tests for recipient resolution."""
from alerts.recipients import ConfigRecipientResolver, CachingRecipientResolver, Recipient, RecipientResolver
from models.enums import FallbackPolicy
from utils.clock import ManualClock

RECIPIENTS = {
    "dash-1": {
        "manager": [{"id": "u1", "address": "u1@x.org", "name": "Ann"}],
        "editor": [{"id": "u2", "address": "u2@x.org"}, {"id": "u1", "address": "u1@x.org"}],
    },
    "*": {
        "manager": [{"id": "site", "address": "site@x.org"}],
    },
}
ADMINS = [{"id": "root", "address": "root@x.org"}]


def test_resolve_roles_deduplicates():
    resolver = ConfigRecipientResolver(RECIPIENTS, ADMINS)
    ids = [r.id for r in resolver.resolve("dash-1", ["manager", "editor"])]
    assert ids == ["u1", "u2", "site"]


def test_wildcard_scope_applies_everywhere():
    resolver = ConfigRecipientResolver(RECIPIENTS)
    assert [r.id for r in resolver.resolve("dash-9", ["manager"])] == ["site"]


def test_no_match_without_fallback_is_empty():
    resolver = ConfigRecipientResolver(RECIPIENTS, ADMINS)
    assert resolver.resolve("dash-1", ["auditor"]) == []
    assert resolver.resolve("dash-1", []) == []


def test_admin_fallback_only_when_requested():
    resolver = ConfigRecipientResolver(RECIPIENTS, ADMINS)
    assert resolver.resolve("dash-1", [], FallbackPolicy.ADMINS) == [Recipient("root", "root@x.org")]
    # Roles that resolve do not pull in admins
    assert [r.id for r in resolver.resolve("dash-1", ["manager"], "admins")] == ["u1", "site"]


def test_resolvers_satisfy_protocol():
    assert isinstance(ConfigRecipientResolver(), RecipientResolver)
    assert isinstance(CachingRecipientResolver(ConfigRecipientResolver()), RecipientResolver)


class CountingResolver:
    def __init__(self):
        self.calls = 0

    def resolve(self, scope, roles, fallback=FallbackPolicy.NONE):
        self.calls += 1
        return [Recipient(f"user{self.calls}", "")]


def test_caching_resolver_respects_ttl():
    clock = ManualClock()
    inner = CountingResolver()
    cached = CachingRecipientResolver(inner, clock=clock, ttl=300)

    first = cached.resolve("dash-1", ["b", "a"])
    assert cached.resolve("dash-1", ["a", "b"]) == first
    assert inner.calls == 1

    cached.resolve("dash-2", ["a", "b"])
    assert inner.calls == 2

    clock.advance(seconds=300)
    assert cached.resolve("dash-1", ["a", "b"]) != first
    assert inner.calls == 3

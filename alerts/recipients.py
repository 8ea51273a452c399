"""Recipient resolution for internal messages."""
import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from models.enums import FallbackPolicy
from utils.cache import TTLCache

logger = logging.getLogger("kpiwatch.alerts.recipients")


@dataclass(frozen=True)
class Recipient:
    id: str
    address: str
    name: str = ""


@runtime_checkable
class RecipientResolver(Protocol):
    def resolve(self, scope, roles, fallback=FallbackPolicy.NONE) -> list: ...


def _to_recipient(raw):
    if isinstance(raw, Recipient):
        return raw
    return Recipient(id=str(raw["id"]), address=raw.get("address", ""), name=raw.get("name", ""))


class ConfigRecipientResolver:
    """Resolve roles to recipients from the ``notifications`` config section.

    ``recipients`` maps scope -> role -> list of {id, address, name}. The
    ``"*"`` scope applies to every scope. The admin list is only used when the
    caller passes ``FallbackPolicy.ADMINS`` and the roles resolve to nobody.
    """

    def __init__(self, recipients=None, admins=None):
        self.recipients = recipients or {}
        self.admins = [_to_recipient(a) for a in (admins or [])]

    def resolve(self, scope, roles, fallback=FallbackPolicy.NONE):
        found = {}
        for scope_key in (str(scope), "*"):
            by_role = self.recipients.get(scope_key) or {}
            for role in roles or []:
                for raw in by_role.get(role, []):
                    r = _to_recipient(raw)
                    found.setdefault(r.id, r)

        if not found and FallbackPolicy(fallback) == FallbackPolicy.ADMINS:
            logger.debug(f"No recipients for {scope} roles={roles}; using admin list")
            return list(self.admins)
        return list(found.values())


class CachingRecipientResolver:
    """Wrap another resolver and keep its answers for a bounded time."""

    def __init__(self, inner, clock=None, ttl=300):
        self.inner = inner
        self.cache = TTLCache(clock=clock, default_ttl=ttl)

    def resolve(self, scope, roles, fallback=FallbackPolicy.NONE):
        key = (str(scope), tuple(sorted(roles or [])), FallbackPolicy(fallback).value)
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)
        result = self.inner.resolve(scope, roles, fallback)
        self.cache.set(key, tuple(result))
        return list(result)

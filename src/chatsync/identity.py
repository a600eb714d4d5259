"""Canonical address resolution across the two addressing schemes.

A contact may be addressed either by its phone-number address
(``<user>@s.whatsapp.net``) or by a hidden/local alias
(``<opaque>@lid``).  Storage identity always uses the canonical form, so
every chat id, contact id and message ``remoteJid`` passes through
:meth:`IdentityResolver.resolve` before it reaches the store.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from chatsync.errors import UnresolvableAddressError

logger = logging.getLogger(__name__)

USER_SERVER = "s.whatsapp.net"
LEGACY_USER_SERVER = "c.us"
HIDDEN_SERVERS = frozenset({"lid", "hosted.lid"})

# Hint-record fields that carry the canonical alternate of a hidden address,
# in order of preference.
ALTERNATE_ADDRESS_FIELDS: tuple[str, ...] = ("pnJid", "remoteJidAlt", "senderPn", "phoneNumber")

AliasLookup = Callable[[str], "str | None | Awaitable[str | None]"]
"""Collaborator mapping an opaque identifier to a canonical address (or None)."""


def split_jid(address: str) -> tuple[str, str | None]:
    """Split an address into ``(user, server)``; server is None without ``@``."""
    user, sep, server = address.partition("@")
    return (user, server) if sep else (address, None)


def normalize_jid(address: str) -> str:
    """Return the device-less, agent-less form of *address*.

    ``"123:4@s.whatsapp.net"`` and ``"123_1@c.us"`` both normalize to
    ``"123@s.whatsapp.net"``.  Addresses without a server part are returned
    stripped but otherwise unchanged.
    """
    address = address.strip()
    user, server = split_jid(address)
    if server is None:
        return address
    user = user.split(":", 1)[0].split("_", 1)[0]
    if server == LEGACY_USER_SERVER:
        server = USER_SERVER
    return f"{user}@{server}"


def is_hidden(address: str) -> bool:
    """True for addresses in the hidden/local (alias) form."""
    _, server = split_jid(address.strip())
    return server in HIDDEN_SERVERS


class IdentityResolver:
    """Rewrites addresses to their canonical storage form.

    Resolution order for a hidden address:

    1. an alternate-address field on the hint record, when it holds a
       canonical address
    2. the injected alias lookup, keyed by ``lookup_key`` (defaults to the
       address itself)
    3. the normalized input

    Canonical addresses skip steps 1 and 2, which keeps resolution
    idempotent: ``resolve(resolve(a)) == resolve(a)``.
    """

    def __init__(
        self,
        lookup: AliasLookup | None = None,
        *,
        alternate_fields: tuple[str, ...] = ALTERNATE_ADDRESS_FIELDS,
    ) -> None:
        self._lookup = lookup
        self._alternate_fields = alternate_fields

    async def resolve(
        self,
        address: Any,
        hint: Mapping[str, Any] | None = None,
        *,
        lookup_key: str | None = None,
    ) -> str:
        """Return the canonical address for *address*.

        Raises
        ------
        UnresolvableAddressError
            If *address* is missing or blank.
        """
        if not isinstance(address, str) or not address.strip():
            raise UnresolvableAddressError(address)

        normalized = normalize_jid(address)
        if not is_hidden(normalized):
            return normalized

        alternate = self._from_hint(hint)
        if alternate is not None:
            return alternate

        resolved = await self._from_lookup(lookup_key or normalized)
        if resolved is not None:
            return resolved

        return normalized

    def _from_hint(self, hint: Mapping[str, Any] | None) -> str | None:
        if not hint:
            return None
        for name in self._alternate_fields:
            value = hint.get(name)
            if isinstance(value, str) and value.strip():
                candidate = normalize_jid(value)
                if not is_hidden(candidate):
                    return candidate
        return None

    async def _from_lookup(self, key: str) -> str | None:
        if self._lookup is None:
            return None
        try:
            result = self._lookup(key)
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            logger.warning(
                "Alias lookup failed for %s; keeping original address", key, exc_info=True
            )
            return None
        if not isinstance(result, str) or not result.strip():
            return None
        return normalize_jid(result)

"""Unit tests for canonical address resolution."""

from __future__ import annotations

import pytest

from chatsync.errors import UnresolvableAddressError
from chatsync.identity import IdentityResolver, is_hidden, normalize_jid, split_jid

pytestmark = pytest.mark.unit

ADDRESSES = [
    "123@s.whatsapp.net",
    "123:7@s.whatsapp.net",
    "123_1:2@s.whatsapp.net",
    "123@c.us",
    "abc@lid",
    "abc:3@lid",
    "120363000000000000@g.us",
    "status@broadcast",
    "no-server",
    "  456@s.whatsapp.net  ",
]


class TestNormalize:
    @pytest.mark.parametrize(
        ("address", "expected"),
        [
            ("123@s.whatsapp.net", "123@s.whatsapp.net"),
            ("123:7@s.whatsapp.net", "123@s.whatsapp.net"),
            ("123_1:2@s.whatsapp.net", "123@s.whatsapp.net"),
            ("123@c.us", "123@s.whatsapp.net"),
            ("abc:3@lid", "abc@lid"),
            ("no-server", "no-server"),
        ],
    )
    def test_normalize_jid(self, address, expected):
        assert normalize_jid(address) == expected

    def test_split_and_hidden(self):
        assert split_jid("a@b") == ("a", "b")
        assert split_jid("a") == ("a", None)
        assert is_hidden("abc@lid")
        assert is_hidden("abc@hosted.lid")
        assert not is_hidden("abc@s.whatsapp.net")


class TestResolve:
    @pytest.mark.parametrize("address", ADDRESSES)
    async def test_resolution_is_idempotent(self, address):
        mapping = {"abc@lid": "999@s.whatsapp.net"}
        resolver = IdentityResolver(mapping.get)

        once = await resolver.resolve(address)

        assert await resolver.resolve(once) == once

    async def test_canonical_address_skips_hint_and_lookup(self):
        calls: list[str] = []

        def lookup(key: str) -> str:
            calls.append(key)
            return "other@s.whatsapp.net"

        resolver = IdentityResolver(lookup)
        resolved = await resolver.resolve(
            "123:1@s.whatsapp.net", {"pnJid": "555@s.whatsapp.net"}
        )

        assert resolved == "123@s.whatsapp.net"
        assert calls == []

    async def test_hint_alternate_field_wins_over_lookup(self):
        resolver = IdentityResolver(lambda key: "777@s.whatsapp.net")

        resolved = await resolver.resolve("abc@lid", {"pnJid": "555:2@s.whatsapp.net"})

        assert resolved == "555@s.whatsapp.net"

    async def test_hidden_hint_value_is_ignored(self):
        resolver = IdentityResolver(lambda key: "777@s.whatsapp.net")

        resolved = await resolver.resolve("abc@lid", {"remoteJidAlt": "def@lid"})

        assert resolved == "777@s.whatsapp.net"

    async def test_async_lookup_keyed_by_lookup_key(self):
        seen: list[str] = []

        async def lookup(key: str) -> str | None:
            seen.append(key)
            return "321@s.whatsapp.net" if key == "MSG1" else None

        resolver = IdentityResolver(lookup)

        assert await resolver.resolve("abc@lid", lookup_key="MSG1") == "321@s.whatsapp.net"
        assert seen == ["MSG1"]

    async def test_lookup_miss_falls_back_to_normalized_input(self):
        resolver = IdentityResolver(lambda key: None)

        assert await resolver.resolve("abc:4@lid") == "abc@lid"

    async def test_lookup_failure_falls_back_to_normalized_input(self, caplog):
        def lookup(key: str) -> str:
            raise RuntimeError("mapping store offline")

        resolver = IdentityResolver(lookup)

        assert await resolver.resolve("abc@lid") == "abc@lid"
        assert "Alias lookup failed" in caplog.text

    async def test_no_lookup_configured(self):
        assert await IdentityResolver().resolve("abc@lid") == "abc@lid"

    @pytest.mark.parametrize("address", [None, "", "   ", 42])
    async def test_missing_address_raises(self, address):
        with pytest.raises(UnresolvableAddressError) as exc_info:
            await IdentityResolver().resolve(address)

        assert exc_info.value.address == address

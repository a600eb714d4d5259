"""Unit tests for reaction and receipt merging."""

from __future__ import annotations

import pytest

from chatsync.store.merge import SELF_AUTHOR, key_author, merge_reaction, merge_receipt

pytestmark = pytest.mark.unit

ALICE = {"remoteJid": "g@g.us", "participant": "alice@s.whatsapp.net", "fromMe": False}
BOB = {"remoteJid": "g@g.us", "participant": "bob@s.whatsapp.net", "fromMe": False}
ME = {"remoteJid": "g@g.us", "fromMe": True}


class TestKeyAuthor:
    def test_own_message(self):
        assert key_author(ME) == SELF_AUTHOR

    def test_participant_preferred_over_chat(self):
        assert key_author(ALICE) == "alice@s.whatsapp.net"

    def test_direct_chat_falls_back_to_remote_jid(self):
        assert key_author({"remoteJid": "123@s.whatsapp.net"}) == "123@s.whatsapp.net"

    def test_missing_key(self):
        assert key_author(None) == ""


class TestMergeReaction:
    def test_new_author_is_appended(self):
        existing = [{"key": ALICE, "text": "👍"}]

        merged = merge_reaction(existing, {"key": BOB, "text": "❤️"})

        assert [r["text"] for r in merged] == ["👍", "❤️"]

    def test_same_author_replaces_previous(self):
        existing = [{"key": ALICE, "text": "👍"}, {"key": BOB, "text": "😂"}]

        merged = merge_reaction(existing, {"key": ALICE, "text": "🔥"})

        assert merged == [{"key": BOB, "text": "😂"}, {"key": ALICE, "text": "🔥"}]

    def test_empty_text_removes_reaction(self):
        existing = [{"key": ME, "text": "👍"}, {"key": ALICE, "text": "😮"}]

        merged = merge_reaction(existing, {"key": ME, "text": ""})

        assert merged == [{"key": ALICE, "text": "😮"}]

    def test_at_most_one_reaction_per_author(self):
        merged: list = []
        for text in ("a", "b", "c"):
            merged = merge_reaction(merged, {"key": ALICE, "text": text})

        assert merged == [{"key": ALICE, "text": "c"}]

    def test_existing_is_not_mutated(self):
        existing = [{"key": ALICE, "text": "👍"}]

        merge_reaction(existing, {"key": ALICE, "text": ""})

        assert existing == [{"key": ALICE, "text": "👍"}]

    def test_none_existing(self):
        assert merge_reaction(None, {"key": BOB, "text": "x"}) == [{"key": BOB, "text": "x"}]


class TestMergeReceipt:
    def test_replaces_same_user(self):
        existing = [
            {"userJid": "a@s.whatsapp.net", "receiptTimestamp": 1},
            {"userJid": "b@s.whatsapp.net", "receiptTimestamp": 2},
        ]

        merged = merge_receipt(existing, {"userJid": "a@s.whatsapp.net", "readTimestamp": 3})

        assert merged == [
            {"userJid": "b@s.whatsapp.net", "receiptTimestamp": 2},
            {"userJid": "a@s.whatsapp.net", "readTimestamp": 3},
        ]

    def test_appends_new_user(self):
        merged = merge_receipt([], {"userJid": "c@s.whatsapp.net", "receiptTimestamp": 9})

        assert merged == [{"userJid": "c@s.whatsapp.net", "receiptTimestamp": 9}]

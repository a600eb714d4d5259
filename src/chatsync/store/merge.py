"""Pure merge functions for the message collection fields.

``reactions`` and ``userReceipt`` are keyed collections: one entry per
author (reactions) or per user (receipts).  An incoming entry replaces the
stored entry with the same key instead of being appended blindly.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

SELF_AUTHOR = "me"


def key_author(key: Mapping[str, Any] | None) -> str:
    """Author of a message key: ``"me"`` for own messages, else the sender."""
    if not key:
        return ""
    if key.get("fromMe"):
        return SELF_AUTHOR
    return key.get("participant") or key.get("remoteJid") or ""


def merge_reaction(
    existing: Sequence[Mapping[str, Any]] | None,
    reaction: Mapping[str, Any],
) -> list[dict[str, Any]]:
    """Replace the reaction of ``reaction``'s author.

    An empty ``text`` removes that author's reaction altogether.  Reactions by
    other authors keep their order.
    """
    author = key_author(reaction.get("key"))
    merged = [dict(item) for item in existing or () if key_author(item.get("key")) != author]
    if reaction.get("text"):
        merged.append(dict(reaction))
    return merged


def merge_receipt(
    existing: Sequence[Mapping[str, Any]] | None,
    receipt: Mapping[str, Any],
) -> list[dict[str, Any]]:
    """Replace the receipt with the same ``userJid``, moving it to the end."""
    user = receipt.get("userJid")
    merged = [dict(item) for item in existing or () if item.get("userJid") != user]
    merged.append(dict(receipt))
    return merged

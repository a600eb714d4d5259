"""Relational shape of the persisted entity kinds.

Each entity kind maps the protocol's camelCase field names onto snake_case
columns of a session-scoped table.  The column table of a kind doubles as the
field allowlist applied by :mod:`chatsync.sanitizer`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class EntityKind(enum.StrEnum):
    """Persisted entity kinds."""

    SESSION = "session"
    CHAT = "chat"
    CONTACT = "contact"
    MESSAGE = "message"


class ColumnType(enum.StrEnum):
    """Storage type of a column, as understood by the sanitizer and the store."""

    TEXT = "text"
    INTEGER = "integer"
    BIGINT = "bigint"
    BOOLEAN = "boolean"
    JSONB = "jsonb"
    BYTEA = "bytea"


@dataclass(frozen=True)
class Column:
    """One persisted field: wire name, column name and storage type."""

    field: str
    column: str
    type: ColumnType


@dataclass(frozen=True)
class TableSpec:
    """Table mapping for one entity kind.

    ``identity`` lists the wire field names that, together with the session
    id, uniquely identify a row.
    """

    kind: EntityKind
    table: str
    identity: tuple[str, ...]
    columns: tuple[Column, ...]
    _by_field: dict[str, Column] = field(init=False, repr=False, compare=False)
    _by_column: dict[str, Column] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_field", {c.field: c for c in self.columns})
        object.__setattr__(self, "_by_column", {c.column: c for c in self.columns})

    @property
    def fields(self) -> frozenset[str]:
        return frozenset(self._by_field)

    @property
    def identity_columns(self) -> tuple[str, ...]:
        return tuple(self._by_field[name].column for name in self.identity)

    def column_for(self, field_name: str) -> Column | None:
        return self._by_field.get(field_name)

    def field_for_column(self, column_name: str) -> Column | None:
        return self._by_column.get(column_name)


def _camel_to_snake(name: str) -> str:
    out: list[str] = []
    for index, char in enumerate(name):
        if char.isupper():
            prev_upper = index > 0 and name[index - 1].isupper()
            next_lower = index + 1 < len(name) and name[index + 1].islower()
            if index > 0 and (not prev_upper or next_lower):
                out.append("_")
            out.append(char.lower())
        else:
            out.append(char)
    return "".join(out)


def _columns(**types: ColumnType) -> tuple[Column, ...]:
    return tuple(Column(name, _camel_to_snake(name), kind) for name, kind in types.items())


T = ColumnType

SESSION_TABLE = TableSpec(
    kind=EntityKind.SESSION,
    table="sessions",
    identity=("id",),
    columns=_columns(id=T.TEXT, data=T.TEXT),
)

CHAT_TABLE = TableSpec(
    kind=EntityKind.CHAT,
    table="chats",
    identity=("id",),
    columns=_columns(
        id=T.TEXT,
        archived=T.BOOLEAN,
        contactPrimaryIdentityKey=T.BYTEA,
        conversationTimestamp=T.BIGINT,
        createdAt=T.BIGINT,
        createdBy=T.TEXT,
        description=T.TEXT,
        disappearingMode=T.JSONB,
        displayName=T.TEXT,
        endOfHistoryTransfer=T.BOOLEAN,
        endOfHistoryTransferType=T.INTEGER,
        ephemeralExpiration=T.INTEGER,
        ephemeralSettingTimestamp=T.BIGINT,
        isDefaultSubgroup=T.BOOLEAN,
        isParentGroup=T.BOOLEAN,
        lastMsgTimestamp=T.BIGINT,
        lastMessageRecvTimestamp=T.BIGINT,
        lidJid=T.TEXT,
        markedAsUnread=T.BOOLEAN,
        mediaVisibility=T.INTEGER,
        messages=T.JSONB,
        muteEndTime=T.BIGINT,
        name=T.TEXT,
        newJid=T.TEXT,
        notSpam=T.BOOLEAN,
        oldJid=T.TEXT,
        pHash=T.TEXT,
        parentGroupId=T.TEXT,
        participant=T.JSONB,
        pinned=T.BIGINT,
        pnJid=T.TEXT,
        pnhDuplicateLidThread=T.BOOLEAN,
        readOnly=T.BOOLEAN,
        shareOwnPn=T.BOOLEAN,
        support=T.BOOLEAN,
        suspended=T.BOOLEAN,
        tcToken=T.BYTEA,
        tcTokenSenderTimestamp=T.BIGINT,
        tcTokenTimestamp=T.BIGINT,
        terminated=T.BOOLEAN,
        unreadCount=T.INTEGER,
        unreadMentionCount=T.INTEGER,
        wallpaper=T.JSONB,
    ),
)

CONTACT_TABLE = TableSpec(
    kind=EntityKind.CONTACT,
    table="contacts",
    identity=("id",),
    columns=_columns(
        id=T.TEXT,
        name=T.TEXT,
        notify=T.TEXT,
        verifiedName=T.TEXT,
        imgUrl=T.TEXT,
        status=T.TEXT,
    ),
)

MESSAGE_TABLE = TableSpec(
    kind=EntityKind.MESSAGE,
    table="messages",
    identity=("remoteJid", "id"),
    columns=_columns(
        remoteJid=T.TEXT,
        id=T.TEXT,
        agentId=T.TEXT,
        bizPrivacyStatus=T.INTEGER,
        broadcast=T.BOOLEAN,
        clearMedia=T.BOOLEAN,
        duration=T.INTEGER,
        ephemeralDuration=T.INTEGER,
        ephemeralOffToOn=T.BOOLEAN,
        ephemeralOutOfSync=T.BOOLEAN,
        ephemeralStartTimestamp=T.BIGINT,
        eventResponses=T.JSONB,
        finalLiveLocation=T.JSONB,
        futureproofData=T.BYTEA,
        ignore=T.BOOLEAN,
        keepInChat=T.JSONB,
        key=T.JSONB,
        labels=T.JSONB,
        mediaCiphertextSha256=T.BYTEA,
        mediaData=T.JSONB,
        message=T.JSONB,
        messageC2STimestamp=T.BIGINT,
        messageSecret=T.BYTEA,
        messageStubParameters=T.JSONB,
        messageStubType=T.INTEGER,
        messageTimestamp=T.BIGINT,
        multicast=T.BOOLEAN,
        originalSelfAuthorUserJidString=T.TEXT,
        participant=T.TEXT,
        paymentInfo=T.JSONB,
        photoChange=T.JSONB,
        pollAdditionalMetadata=T.JSONB,
        pollUpdates=T.JSONB,
        pushName=T.TEXT,
        quotedPaymentInfo=T.JSONB,
        quotedStickerData=T.JSONB,
        reactions=T.JSONB,
        revokeMessageTimestamp=T.BIGINT,
        starred=T.BOOLEAN,
        status=T.INTEGER,
        statusAlreadyViewed=T.BOOLEAN,
        statusPsa=T.JSONB,
        urlNumber=T.BOOLEAN,
        urlText=T.BOOLEAN,
        userReceipt=T.JSONB,
        verifiedBizName=T.TEXT,
    ),
)

del T

TABLES: dict[EntityKind, TableSpec] = {
    spec.kind: spec for spec in (SESSION_TABLE, CHAT_TABLE, CONTACT_TABLE, MESSAGE_TABLE)
}


def table_for(kind: EntityKind | str) -> TableSpec:
    """Return the table mapping for *kind*."""
    return TABLES[EntityKind(kind)]

"""Contact rows."""

from __future__ import annotations

from collections.abc import Iterable

import asyncpg

from chatsync.models import CONTACT_TABLE
from chatsync.store.base import EntityStore, affected_rows


class ContactStore(EntityStore):
    spec = CONTACT_TABLE

    async def delete_except(
        self, keep_ids: Iterable[str], *, conn: asyncpg.Connection | None = None
    ) -> int:
        """Delete every contact of the session whose id is not in *keep_ids*."""
        async with self._connection(conn, operation="delete_except") as c:
            status = await c.execute(
                f"DELETE FROM {self.table} WHERE session_id = $1 AND NOT (id = ANY($2::text[]))",
                self.session_id,
                list(keep_ids),
            )
        return affected_rows(status)

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from authcentral.logging import get_logger
from authcentral.storage.common import BoundedStore, normalize_ip
from authcentral.storage.models import AuditEntry

logger = get_logger(__name__)


@dataclass
class RequestMeta:
    """Who is calling: carried from the HTTP layer into audit entries."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuditLogger:
    """Fire-and-forget writer for the audit log.

    ``record`` schedules the write and returns immediately. A failed write is
    logged and dropped; it never reaches the caller.
    """

    def __init__(self, store: BoundedStore) -> None:
        self.store = store
        self._pending: Set[asyncio.Task] = set()

    def record(
        self,
        action: str,
        resource: str,
        status: str,
        *,
        user_id: Optional[str] = None,
        request: Optional[RequestMeta] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[asyncio.Task]:
        entry = AuditEntry(
            action=action,
            resource=resource,
            status=status,
            user_id=user_id,
            ip_address=normalize_ip(request.ip_address) if request else None,
            user_agent=request.user_agent if request else None,
            metadata=metadata,
        )
        try:
            task = asyncio.get_running_loop().create_task(self._write(entry))
        except RuntimeError:
            logger.warning("audit_no_event_loop", action=action, resource=resource)
            return None
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _write(self, entry: AuditEntry) -> None:
        try:
            await self.store.record_audit(entry)
        except Exception as exc:
            logger.warning(
                "audit_write_failed",
                action=entry.action,
                resource=entry.resource,
                status=entry.status,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def drain(self) -> None:
        """Wait for in-flight writes; used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[AuditEntry]:
        return await self.store.list_audit_entries(user_id, limit)

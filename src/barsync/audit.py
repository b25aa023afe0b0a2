"""Append-only audit trail scoped by business tenant."""

from __future__ import annotations

from typing import List, Optional, Union

from . import log
from .constants import AuditAction, Capability, Collection
from .data_manager import AuditLog, User
from .entity_store import EntityStore, utc_now_iso
from .permissions import role_allows


class AuditRecorder:
    """Writes immutable :class:`AuditLog` entries through the entity store."""

    def __init__(self, store: EntityStore) -> None:
        self._store = store

    def record(
        self,
        action: Union[AuditAction, str],
        details: str,
        actor: Optional[User],
    ) -> Optional[AuditLog]:
        """Append an audit entry for ``actor``.

        The user's id, name, and business are copied into the entry so later
        profile edits never rewrite history. Without an acting user there is
        nobody to attribute the action to and the call is a no-op that
        returns ``None``; storage failures propagate.

        Args:
            action (AuditAction | str): Action tag.
            details (str): Free-text description.
            actor (User | None): The user performing the action.

        Returns:
            AuditLog | None: The stored entry, or ``None`` without an actor.
        """

        if actor is None:
            log.debug("Skipped audit entry '%s': no acting user", action)
            return None

        tag = action.value if isinstance(action, AuditAction) else str(action)
        entry = AuditLog(
            id="",
            timestamp=utc_now_iso(),
            user_id=actor.id,
            user_name=actor.name,
            action=tag,
            details=details,
            business_id=actor.business_id,
        )
        return self._store.add(Collection.AUDIT_LOGS, entry)

    def visible_logs(self, viewer: User) -> List[AuditLog]:
        """Return the entries ``viewer`` may see, newest first.

        Platform users see every tenant's entries; everybody else only sees
        entries of their own business.
        """

        entries = self._store.audit_logs
        if not role_allows(viewer.role, Capability.VIEW_ALL_TENANTS):
            entries = [entry for entry in entries if entry.business_id == viewer.business_id]
        return sorted(entries, key=lambda entry: entry.timestamp, reverse=True)

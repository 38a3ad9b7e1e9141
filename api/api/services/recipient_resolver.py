"""Resolve who receives billing notices for a branch.

One policy serves every notice type:

1. The laundry's registered contact email.
2. If the laundry has none, the emails of active ``admin`` profiles
   attached to the branch.
3. If there are none of those either, every active profile of the branch.

Duplicates are removed case-insensitively, first occurrence wins.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession
from subscription_engine.state.repository import RecipientRepository

logger = logging.getLogger(__name__)

_FALLBACK_BRANCH_NAME = "Sucursal"
_FALLBACK_LAUNDRY_NAME = "Lavandería"


@dataclass(frozen=True)
class NotificationContext:
    """Everything the dispatcher needs to address one subscription's notices."""

    subscription_id: str
    branch_id: str
    branch_name: str = _FALLBACK_BRANCH_NAME
    laundry_name: str = _FALLBACK_LAUNDRY_NAME
    recipients: tuple[str, ...] = field(default_factory=tuple)


def dedupe_emails(emails: Iterable[str | None]) -> list[str]:
    """Strip, drop blanks and remove case-insensitive duplicates, keeping order."""
    seen: set[str] = set()
    out: list[str] = []
    for email in emails:
        if not email:
            continue
        cleaned = email.strip()
        key = cleaned.lower()
        if cleaned and key not in seen:
            seen.add(key)
            out.append(cleaned)
    return out


class RecipientResolver:
    """Build :class:`NotificationContext` objects from the state store."""

    def __init__(self, session: AsyncSession) -> None:
        self._repo = RecipientRepository(session)

    async def resolve_recipients(self, branch_id: str, laundry_email: str | None) -> list[str]:
        contact = dedupe_emails([laundry_email])
        if contact:
            return contact

        admins = dedupe_emails(await self._repo.branch_profile_emails(branch_id, roles=["admin"]))
        if admins:
            return admins

        return dedupe_emails(await self._repo.branch_profile_emails(branch_id))

    async def build_context(self, subscription_id: str, branch_id: str) -> NotificationContext:
        """Look up names and recipients for *subscription_id*'s branch."""
        branch = await self._repo.get_branch_context(branch_id)
        if branch is None:
            logger.warning("Branch %s for subscription %s not found", branch_id, subscription_id)
            return NotificationContext(subscription_id=subscription_id, branch_id=branch_id)

        recipients = await self.resolve_recipients(branch_id, branch["laundry_email"])
        return NotificationContext(
            subscription_id=subscription_id,
            branch_id=branch_id,
            branch_name=branch["branch_name"] or _FALLBACK_BRANCH_NAME,
            laundry_name=branch["laundry_name"] or _FALLBACK_LAUNDRY_NAME,
            recipients=tuple(recipients),
        )

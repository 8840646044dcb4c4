"""Member identity resolution for tenant-scoped events."""

from __future__ import annotations

from datetime import date
from typing import Any, Mapping
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.core.settings import settings
from rewardloop_api.models.tenant import Client, Member
from rewardloop_api.services.errors import EventValidationError, MemberNotFoundError

_PROFILE_FIELDS = ("email", "phone", "full_name", "birth_date")


def normalize_referral_code(code: str | None) -> str | None:
    if code is None:
        return None
    cleaned = code.strip().upper()
    return cleaned or None


class MemberService:
    """Find or create members by external id, email or phone."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_client(self, client_id: UUID) -> Client | None:
        return await self._db.get(Client, client_id)

    async def find_member(self, client_id: UUID, identifier: str) -> Member | None:
        """Match on external id first, then email, then phone."""

        identifier = (identifier or "").strip()
        if not identifier:
            return None

        stmt = select(Member).where(Member.client_id == client_id, Member.external_id == identifier)
        member = (await self._db.execute(stmt)).scalar_one_or_none()
        if member is not None:
            return member

        stmt = (
            select(Member)
            .where(
                Member.client_id == client_id,
                or_(func.lower(Member.email) == identifier.lower(), Member.phone == identifier),
            )
            .order_by(Member.created_at.asc())
            .limit(1)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def require_member(self, client_id: UUID, identifier: str) -> Member:
        member = await self.find_member(client_id, identifier)
        if member is None:
            raise MemberNotFoundError(f"No member {identifier!r} for client {client_id}")
        return member

    async def find_by_referral_code(self, client_id: UUID, code: str) -> Member | None:
        normalized = normalize_referral_code(code)
        if not normalized:
            return None
        stmt = select(Member).where(Member.client_id == client_id, Member.referral_code == normalized)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def ensure_member(
        self,
        client_id: UUID,
        identifier: str,
        *,
        profile: Mapping[str, Any] | None = None,
    ) -> Member:
        """Fetch or create the member, filling blank profile fields.

        Commits on creation; a concurrent insert of the same identity is
        resolved by rolling back and re-reading the winner's row.
        """

        identifier = (identifier or "").strip()
        if not identifier:
            raise EventValidationError("member_identifier is required")

        member = await self.find_member(client_id, identifier)
        if member is not None:
            if self._apply_profile(member, profile):
                await self._db.flush()
            return member

        member = Member(
            client_id=client_id,
            external_id=identifier,
            referral_code=await self._generate_unique_referral_code(),
        )
        if "@" in identifier:
            member.email = identifier
        self._apply_profile(member, profile)
        self._db.add(member)
        try:
            await self._db.flush()
        except IntegrityError:
            await self._db.rollback()
            logger.warning("Detected race when creating member", client_id=str(client_id), identifier=identifier)
            return await self.ensure_member(client_id, identifier, profile=profile)

        await self._db.commit()
        logger.info("Created member", client_id=str(client_id), member_id=str(member.id))
        return member

    def _apply_profile(self, member: Member, profile: Mapping[str, Any] | None) -> bool:
        if not profile:
            return False
        changed = False
        for field in _PROFILE_FIELDS:
            value = profile.get(field)
            if value in (None, "") or getattr(member, field):
                continue
            if field == "birth_date" and isinstance(value, str):
                try:
                    value = date.fromisoformat(value)
                except ValueError:
                    continue
            setattr(member, field, value)
            changed = True
        attributes = profile.get("attributes")
        if isinstance(attributes, Mapping) and attributes:
            merged = {**(member.attributes or {}), **attributes}
            if merged != member.attributes:
                member.attributes = merged
                changed = True
        return changed

    async def _generate_unique_referral_code(self) -> str:
        length = max(settings.referral_code_length, 6)
        while True:
            candidate = uuid4().hex[:length].upper()
            stmt = select(Member.id).where(Member.referral_code == candidate)
            if (await self._db.execute(stmt)).scalar_one_or_none() is None:
                return candidate


__all__ = ["MemberService", "normalize_referral_code"]

"""Organization repository and the SQL recipient resolver."""

from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cashguard.alerting.schemas import Audience
from cashguard.db.models import Organization, OrganizationMember
from cashguard.exceptions import StorageError


class OrganizationRepository:
    """Organization + membership lookups."""

    async def get_by_id(self, db: AsyncSession, organization_id: str) -> Optional[Organization]:
        result = await db.execute(select(Organization).where(Organization.id == organization_id))
        return result.scalar_one_or_none()

    async def list_member_emails(
        self, db: AsyncSession, organization_id: str, roles: Sequence[str]
    ) -> list[str]:
        result = await db.execute(
            select(OrganizationMember.email)
            .where(
                OrganizationMember.organization_id == organization_id,
                OrganizationMember.role.in_(list(roles)),
            )
            .order_by(OrganizationMember.email)
        )
        return list(result.scalars().all())


organization_repo = OrganizationRepository()


class SqlRecipientResolver:
    """
    Recipients are the organization's members with an alerting role.

    An unknown organization resolves to its id as the display name and
    no recipients, which the service records as a failed delivery.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        roles: Sequence[str] = ("owner", "admin", "member"),
    ):
        self._session_factory = session_factory
        self._roles = tuple(roles)

    async def resolve(self, organization_id: str) -> Audience:
        try:
            async with self._session_factory() as session:
                org = await organization_repo.get_by_id(session, organization_id)
                if org is None:
                    return Audience(organization_name=organization_id, recipients=[])
                emails = await organization_repo.list_member_emails(
                    session, organization_id, self._roles
                )
        except SQLAlchemyError as e:
            raise StorageError(
                "Recipient lookup failed",
                details={"organization_id": organization_id, "error": type(e).__name__},
            ) from e
        return Audience(organization_name=org.name, recipients=emails)

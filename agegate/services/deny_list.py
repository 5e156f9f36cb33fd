from __future__ import annotations

from datetime import date

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agegate.core.logger import get_logger
from agegate.models.banned_customer import BannedCustomer

logger = get_logger(component="DenyListService")


class DenyListService:
    """Reads the ``banned_customers`` table maintained by the admin tooling."""

    async def find_banned_customer(
        self,
        session: AsyncSession,
        *,
        document_type: str,
        document_number: str | None,
        issuing_region: str | None,
        first_name: str | None = None,
        last_name: str | None = None,
        date_of_birth: date | None = None,
    ) -> BannedCustomer | None:
        if document_type and document_number:
            result = await session.execute(
                select(BannedCustomer)
                .where(
                    BannedCustomer.document_type == document_type,
                    BannedCustomer.document_number == document_number,
                    BannedCustomer.issuing_region == (issuing_region or ""),
                )
                .limit(1)
            )
            record = result.scalar_one_or_none()
            if record is not None:
                logger.info("Deny-list match on document", document_type=document_type)
                return record

        if first_name and last_name and date_of_birth:
            result = await session.execute(
                select(BannedCustomer)
                .where(
                    func.lower(BannedCustomer.first_name) == first_name.lower(),
                    func.lower(BannedCustomer.last_name) == last_name.lower(),
                    BannedCustomer.date_of_birth == date_of_birth,
                )
                .limit(1)
            )
            record = result.scalar_one_or_none()
            if record is not None:
                logger.info("Deny-list match on name and date of birth")
                return record

        return None

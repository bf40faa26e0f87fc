"""Member → provider customer resolution."""

import logging
from typing import Optional

from paysync.catalog.base import CustomerLink, CustomerLinkStore, Member
from paysync.payments.reconcile import CreationLock, LocalCreationLock, resolve_or_create
from paysync.providers.base import PaymentProvider, ProviderCustomer

logger = logging.getLogger(__name__)


class CustomerLinkResolver:
    """Maps a member to a live provider customer, creating one on first use."""

    def __init__(
        self,
        provider: PaymentProvider,
        customers: CustomerLinkStore,
        lock: Optional[CreationLock] = None,
    ):
        self.provider = provider
        self.customers = customers
        self.lock = lock or LocalCreationLock()

    async def resolve_or_create_customer(self, member: Member) -> ProviderCustomer:
        """
        Return the first cached provider customer not flagged deleted.

        Rows whose lookup fails are skipped. When no row verifies, a customer is
        created from the member's email and name and a new row is stored.
        """

        async def create() -> ProviderCustomer:
            customer = await self.provider.create_customer(member.email, member.name)
            await self.customers.add(
                CustomerLink(
                    member_id=member.id,
                    customer_id=customer.id,
                    email=customer.email,
                    name=customer.name,
                )
            )
            logger.info(f"Created provider customer {customer.id} for member {member.id}")
            return customer

        resolution = await resolve_or_create(
            f"customer:{member.id}",
            scan=lambda: self.customers.list_for_member(member.id),
            fetch=lambda row: self.provider.get_customer(row.customer_id),
            accept=lambda row, customer: not customer.deleted,
            create=create,
            lock=self.lock,
        )
        return resolution.value

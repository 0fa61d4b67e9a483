from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from regateo.models.listing import Listing
from regateo.stores.base import read_scope


@dataclass(frozen=True)
class ListingSnapshot:
    id: str
    title: str
    price: float
    currency: str
    seller_id: str
    status: str

    @property
    def is_available(self) -> bool:
        return self.status == "active"


class ListingCatalog:
    """Lectura del catálogo de publicaciones (colaborador externo, solo lectura)"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get_listing(self, listing_id: str) -> Optional[ListingSnapshot]:
        async with read_scope(self.session_factory) as session:
            listing = await session.get(Listing, listing_id)
            if listing is None:
                return None
            return ListingSnapshot(
                id=listing.id,
                title=listing.title,
                price=listing.price,
                currency=listing.currency or "USD",
                seller_id=listing.seller_id,
                status=listing.status or "active",
            )

"""
Utilidades compartidas por las pruebas: base de datos SQLite temporal en
fichero, canal de cambios en memoria y servicios ya conectados.
"""
import asyncio
import os
import tempfile
import unittest

from regateo.db.session import create_engine_for, create_session_factory, create_tables
from regateo.models.listing import Listing
from regateo.realtime.feed import LocalChangeFeed
from regateo.services.messaging import ConversationService
from regateo.services.offers import OfferService
from regateo.stores.conversations import ConversationStore
from regateo.stores.listings import ListingCatalog
from regateo.stores.offers import OfferStore

BUYER = "buyer-1"
SELLER = "seller-1"
OUTSIDER = "outsider-1"
TOOL_ID = "tool-1"


def temp_database_url():
    fd, path = tempfile.mkstemp(suffix=".db", prefix="regateo-test-")
    os.close(fd)
    return path, f"sqlite+aiosqlite:///{path}"


async def insert_listing(session_factory, listing_id=TOOL_ID, price=200.0, seller_id=SELLER,
                         status="active", title="Cordless drill"):
    async with session_factory() as session:
        async with session.begin():
            session.add(Listing(id=listing_id, title=title, price=price, currency="USD",
                                status=status, seller_id=seller_id))


class DatabaseTestCase(unittest.IsolatedAsyncioTestCase):
    """Cada prueba tiene su propia base de datos y su propio canal de cambios"""

    async def asyncSetUp(self):
        self.db_path, url = temp_database_url()
        self.engine = create_engine_for(url)
        await create_tables(self.engine)
        self.session_factory = create_session_factory(self.engine)

        self.feed = LocalChangeFeed()
        self.offer_store = OfferStore(self.session_factory, self.feed)
        self.conversation_store = ConversationStore(self.session_factory, self.feed)
        self.offers = OfferService(self.offer_store, ListingCatalog(self.session_factory))
        self.messaging = ConversationService(self.conversation_store)

    async def asyncTearDown(self):
        await self.engine.dispose()
        if os.path.exists(self.db_path):
            os.remove(self.db_path)

    async def add_listing(self, **kwargs):
        await insert_listing(self.session_factory, **kwargs)

    async def open_offer(self, price=150.0, message="Would you take 150?"):
        await self.add_listing()
        return await self.offers.create_offer(BUYER, TOOL_ID, price, message)


async def wait_for(predicate, timeout=2.0, interval=0.01):
    """Espera a que `predicate()` sea cierto dejando correr el event loop"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("La condición no se cumplió a tiempo")
        await asyncio.sleep(interval)

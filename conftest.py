"""
Shared pytest fixtures: a fresh in-memory database per test and a clock
pinned to a known date.
"""

from datetime import date
from decimal import Decimal

import pytest

from catalog_store import CatalogStore
from circulation_ledger import CirculationLedger
from database_models import LibraryDatabase, UserRole
from library_clock import FixedClock
from library_reports import LibraryReports
from membership_store import MembershipStore


@pytest.fixture
def database():
    """Fixture providing an empty in-memory database with the schema created"""
    db = LibraryDatabase('sqlite://')
    db.initialize_schema()
    yield db
    db.dispose()


@pytest.fixture
def clock():
    return FixedClock(date(2024, 1, 1))


@pytest.fixture
def catalog(database):
    return CatalogStore(database)


@pytest.fixture
def members(database):
    return MembershipStore(database)


@pytest.fixture
def ledger(database, catalog, members, clock):
    return CirculationLedger(database, catalog, members, clock=clock,
                             loan_period_days=14, fine_per_day=Decimal('1.00'))


@pytest.fixture
def reports(catalog, members, ledger):
    return LibraryReports(catalog, members, ledger)


@pytest.fixture
def alice(members):
    return members.create('alice', 'secret1', email='alice@example.com').value


@pytest.fixture
def bob(members):
    return members.create('bob', 'secret2').value


@pytest.fixture
def admin(members):
    user_id = members.create('librarian', 'adminpass', role=UserRole.ADMIN).value
    return members.get_by_id(user_id)


@pytest.fixture
def single_copy_book(catalog):
    return catalog.create('Ulysses', 'James Joyce', total_copies=1,
                          isbn='9780199535675', category='Fiction').value

import pytest_asyncio

from refdb import Database

from tests.schemas import Course, Food, Guest, Hero, Item, Note, Player, Reservation, Student, Team

@pytest_asyncio.fixture
async def db():
    '''Fresh in-memory database.'''
    async with Database(":memory:") as db:
        yield db

@pytest_asyncio.fixture
async def heroes(db):
    await db.prepare(Hero, Item, Food)
    return db

@pytest_asyncio.fixture
async def league(db):
    await db.prepare(Team, Player)
    return db

@pytest_asyncio.fixture
async def hotel(db):
    await db.prepare(Guest, Reservation)
    return db

@pytest_asyncio.fixture
async def school(db):
    await db.prepare(Course, Student, Course.students.schema)
    return db

@pytest_asyncio.fixture
async def notes(db):
    await db.prepare(Note)
    return db

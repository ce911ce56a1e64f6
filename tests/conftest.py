"""Shared fixtures for challenge tracker tests.

Database tests run against an in-memory SQLite database through aiosqlite.
``StaticPool`` keeps a single connection so every session sees the same
database for the lifetime of one test.

Scenario (``scenario`` fixture):
- Challenge "March Move" from 2026-03-02 (Monday) to 2026-03-29, 28 days,
  streak threshold 10 points, final days from day 26
- Participants: alice (paid), bob (paid); carol is not a participant
- Types:
  - run: unit_based on minutes, 5 base + 1/minute (30 min = 35)
  - walk: unit_based on miles, 1/mile (8 miles = 8, below the streak threshold)
  - drinks: untagged legacy config, 5/drink, penalty, 1 free drink per day
  - special: completion worth 10, week 1 only, back in the final days, max 1
- A second challenge "Other" with its own type, used for cross-challenge checks
"""

from __future__ import annotations

from datetime import date, timedelta
from types import SimpleNamespace
from typing import AsyncGenerator

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from challenge_tracker.shared.config import Settings
from challenge_tracker.shared.database import Base
from challenge_tracker.web import models  # noqa: F401
from challenge_tracker.web.crud import ActivityOperations, ChallengeOperations, LedgerOperations
from challenge_tracker.web.events import event_bus
from challenge_tracker.web.models import Activity, PaymentStatus
from challenge_tracker.web.schemas import Actor

START = date(2026, 3, 2)


def day(n: int) -> date:
    """Calendar date of challenge day ``n`` (day 1 is the start date)."""
    return START + timedelta(days=n - 1)


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        environment="testing",
        database_url="sqlite+aiosqlite:///:memory:",
    )


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session(engine) -> AsyncGenerator[AsyncSession, None]:
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def clean_event_bus():
    yield
    event_bus.clear()


# ============================================================================
# SCENARIO FIXTURES
# ============================================================================


@pytest.fixture
async def scenario(session: AsyncSession, settings: Settings) -> SimpleNamespace:
    """Challenge, participants and activity types described in the module docstring."""
    challenges = ChallengeOperations(session, settings)

    challenge = await challenges.create_challenge(
        name="March Move",
        start_date=START,
        end_date=day(28),
        streak_min_points=10,
        final_days_start=26,
    )
    other = await challenges.create_challenge(
        name="Other",
        start_date=START,
        end_date=day(28),
    )

    alice = await challenges.add_participant(challenge.id, "alice", PaymentStatus.PAID)
    bob = await challenges.add_participant(challenge.id, "bob", PaymentStatus.PAID)

    run = await challenges.create_activity_type(
        challenge.id,
        "Run",
        {"type": "unit_based", "unit": "minutes", "pointsPerUnit": 1, "basePoints": 5},
    )
    walk = await challenges.create_activity_type(
        challenge.id,
        "Walk",
        {"type": "unit_based", "unit": "miles", "pointsPerUnit": 1},
    )
    drinks = await challenges.create_activity_type(
        challenge.id,
        "Drinks",
        {"unit": "drinks", "pointsPerUnit": 5},
        is_negative=True,
    )
    special = await challenges.create_activity_type(
        challenge.id,
        "Week One Special",
        {"type": "completion", "fixedPoints": 10},
        valid_weeks=[1],
        available_in_final_days=True,
        max_per_challenge=1,
    )
    other_type = await challenges.create_activity_type(
        other.id,
        "Other Run",
        {"type": "unit_based", "unit": "minutes"},
    )

    return SimpleNamespace(
        challenge=challenge,
        other=other,
        alice=alice,
        bob=bob,
        run=run,
        walk=walk,
        drinks=drinks,
        special=special,
        other_type=other_type,
    )


@pytest.fixture
def activities(session: AsyncSession, settings: Settings) -> ActivityOperations:
    return ActivityOperations(session, settings)


@pytest.fixture
def ledger(session: AsyncSession, settings: Settings) -> LedgerOperations:
    return LedgerOperations(session, settings)


@pytest.fixture
def alice_actor() -> Actor:
    return Actor(user_id="alice")


@pytest.fixture
def admin_actor() -> Actor:
    return Actor(user_id="admin", is_admin=True)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


async def count_activities(session: AsyncSession, user_id: str, active_only: bool = True) -> int:
    stmt = select(func.count()).select_from(Activity).where(Activity.user_id == user_id)
    if active_only:
        stmt = stmt.where(Activity.deleted_at.is_(None))
    return (await session.execute(stmt)).scalar_one()

"""
Pytest configuration and fixtures for backend tests.

Provides shared fixtures for:
- Test database sessions
- Request contexts
- Sample data factories
- FastAPI test client
"""

import os
from datetime import date, time

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app modules
os.environ['CHAPTER_EVENTS_DB_URL'] = 'sqlite:///:memory:'
os.environ['CHAPTER_EVENTS_ENV'] = 'test'

from backend.src.middleware.tenant import RequestContext
from backend.src.models import Base, EventSeries
from backend.src.services.instance_service import compute_series_until
from backend.src.services.recurrence_codec import load_rule


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope='function')
def test_db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    # Enable foreign key constraints for SQLite
    # This must be set for each connection
    def _fk_pragma_on_connect(dbapi_con, con_record):
        dbapi_con.execute('pragma foreign_keys=ON')

    event.listen(engine, 'connect', _fk_pragma_on_connect)

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope='function')
def test_db_session(test_db_engine):
    """Create a test database session."""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ============================================================================
# Context Fixtures
# ============================================================================

@pytest.fixture
def admin_ctx():
    """Chapter administrator acting in chapter 1."""
    return RequestContext(chapter_id=1, member_id=7, is_admin=True)


@pytest.fixture
def member_ctx():
    """Regular member acting in chapter 1."""
    return RequestContext(chapter_id=1, member_id=42)


# ============================================================================
# Sample Data Factories
# ============================================================================

@pytest.fixture
def sample_series_data():
    """Factory for creating sample series data."""
    def _create(
        title='Monday Night Meetup',
        start_date=date(2024, 1, 1),
        rule='FREQ=WEEKLY;BYDAY=MO',
        start_time=time(19, 0),
        end_time=time(21, 0),
        timezone='America/New_York',
        **kwargs
    ):
        data = {
            'title': title,
            'start_date': start_date,
            'rule': rule,
            'start_time': start_time,
            'end_time': end_time,
            'timezone': timezone,
            'location_name': 'Community Hall',
        }
        data.update(kwargs)
        return data

    return _create


@pytest.fixture
def sample_series(test_db_session, sample_series_data):
    """Factory for creating persisted EventSeries rows."""
    def _create(**kwargs):
        data = sample_series_data(**kwargs)
        data.setdefault('chapter_id', 1)
        series = EventSeries(**data)
        series.series_until = compute_series_until(series.start_date, load_rule(series.rule))
        test_db_session.add(series)
        test_db_session.commit()
        test_db_session.refresh(series)
        return series

    return _create


# ============================================================================
# FastAPI Test Client Fixture
# ============================================================================

ADMIN_HEADERS = {'X-Chapter-Id': '1', 'X-Member-Id': '7', 'X-Is-Admin': 'true'}
MEMBER_HEADERS = {'X-Chapter-Id': '1', 'X-Member-Id': '42'}


@pytest.fixture
def admin_headers():
    """Proxy headers for a chapter administrator."""
    return dict(ADMIN_HEADERS)


@pytest.fixture
def member_headers():
    """Proxy headers for a regular member."""
    return dict(MEMBER_HEADERS)


@pytest.fixture
def test_client(test_db_session):
    """Create a test client for FastAPI application."""
    from fastapi.testclient import TestClient
    from backend.src.main import app
    from backend.src.db.database import get_db

    # Override dependencies
    def get_test_db():
        try:
            yield test_db_session
        finally:
            pass

    app.dependency_overrides[get_db] = get_test_db

    with TestClient(app) as client:
        yield client

    # Clear overrides
    app.dependency_overrides.clear()

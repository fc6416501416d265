"""Shared test fixtures."""
from datetime import datetime, timedelta

import pytest
from unittest.mock import patch, MagicMock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from leadengine.database import Base

# Modules that bind get_session at import time
SESSION_TARGETS = [
    'leadengine.database.get_session',
    'leadengine.distribution.service.get_session',
    'leadengine.distribution.jobs.get_session',
    'leadengine.distribution.events.get_session',
    'leadengine.services.score_store.get_session',
]

T0 = datetime(2026, 10, 1, 9, 0, 0)


def _import_models():
    import leadengine.models.lead
    import leadengine.models.realtor
    import leadengine.models.property
    import leadengine.models.realtor_score
    import leadengine.models.assignment_log
    import leadengine.models.lead_event


class FakeRedis:
    """Minimal in-memory Redis fake: strings, hashes, pub/sub capture."""

    def __init__(self):
        self.get_store = {}
        self.hash_store = {}
        self.published = []

    def get(self, key):
        return self.get_store.get(key)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.get_store:
            return None
        self.get_store[key] = str(value)
        return True

    def incr(self, key):
        val = int(self.get_store.get(key, 0)) + 1
        self.get_store[key] = str(val)
        return val

    def delete(self, *keys):
        for k in keys:
            self.get_store.pop(k, None)
            self.hash_store.pop(k, None)

    def hset(self, key, field, value):
        self.hash_store.setdefault(key, {})[field] = value

    def hincrby(self, key, field, amount):
        h = self.hash_store.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)

    def hgetall(self, key):
        return dict(self.hash_store.get(key, {}))

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    """Fake Redis pipeline that replays queued calls on execute()."""

    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    def __getattr__(self, name):
        def queue(*args):
            self._ops.append((name, args))
            return self
        return queue

    def execute(self):
        for name, args in self._ops:
            getattr(self._redis, name)(*args)
        self._ops = []


@pytest.fixture
def db_engine():
    """In-memory SQLite engine with schema created."""
    engine = create_engine('sqlite:///:memory:')
    _import_models()
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """SQLAlchemy session bound to in-memory SQLite. Rolls back after each test."""
    Session = sessionmaker(bind=db_engine)
    session = Session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(autouse=True)
def patch_get_session(db_session):
    """Route all get_session() calls to the test session.

    We disable close() so that service functions calling session.close()
    in their finally blocks don't invalidate the shared test session.
    """
    _real_close = db_session.close
    db_session.close = lambda: None
    patches = [patch(target, return_value=db_session) for target in SESSION_TARGETS]
    for p in patches:
        p.start()
    yield db_session
    for p in patches:
        p.stop()
    db_session.close = _real_close


@pytest.fixture(autouse=True)
def fake_redis():
    """Shared client swapped for an in-memory fake; breaker registry cleared."""
    from leadengine.services import circuit_breaker
    fake = FakeRedis()
    circuit_breaker._registry.clear()
    with patch('leadengine.extensions.redis_client', fake):
        yield fake
    circuit_breaker._registry.clear()


@pytest.fixture(autouse=True)
def default_policy():
    """Policy from the built-in defaults, not whatever YAML is on disk."""
    from leadengine.distribution import policy
    policy.reset_cache()
    with patch('leadengine.distribution.policy._config_path', return_value='/nonexistent/distribution_config.yaml'):
        yield policy.get_policy()
    policy.reset_cache()


@pytest.fixture
def mock_queue():
    """RQ queue stand-in for the service and scheduler."""
    queue = MagicMock()
    queue.fetch_job.return_value = None
    with patch('leadengine.distribution.service._get_queue', return_value=queue):
        yield queue


@pytest.fixture
def app(fake_redis):
    """Flask test app."""
    from leadengine import create_app
    app = create_app()
    app.config['TESTING'] = True
    yield app


@pytest.fixture
def client(app):
    """Flask test client."""
    with app.test_client() as c:
        yield c


# ── Factories ────────────────────────────────────────────────────────────────

@pytest.fixture
def make_realtor(db_session):
    from leadengine.models.realtor import Realtor

    def _make(realtor_id, status='ACTIVE', **overrides):
        realtor = Realtor(id=realtor_id, name=overrides.pop('name', realtor_id.title()), status=status, **overrides)
        db_session.add(realtor)
        db_session.commit()
        return realtor
    return _make


@pytest.fixture
def make_team(db_session, make_realtor):
    """Team with members; `members` maps realtor id → role. Missing realtors are created."""
    from leadengine.models.realtor import Realtor, Team, TeamMember

    def _make(team_id, members=None, owner_id=None):
        db_session.add(Team(id=team_id, name=team_id.title(), owner_id=owner_id))
        for realtor_id, role in (members or {}).items():
            if db_session.get(Realtor, realtor_id) is None:
                make_realtor(realtor_id)
            db_session.add(TeamMember(team_id=team_id, realtor_id=realtor_id, role=role))
        db_session.commit()
        return db_session.get(Team, team_id)
    return _make


@pytest.fixture
def make_property(db_session):
    from leadengine.models.property import Property

    def _make(property_id='prop-1', team_id=None, capturer_realtor_id=None, owner_realtor_id=None):
        prop = Property(
            id=property_id, title=f'Listing {property_id}', team_id=team_id,
            capturer_realtor_id=capturer_realtor_id, owner_realtor_id=owner_realtor_id,
        )
        db_session.add(prop)
        db_session.commit()
        return prop
    return _make


@pytest.fixture
def make_lead(db_session):
    from leadengine.models.lead import Lead

    def _make(lead_id='lead-1', property_id='prop-1', created_at=None, **overrides):
        defaults = dict(
            id=lead_id,
            property_id=property_id,
            status='UNASSIGNED',
            pipeline_stage='NEW',
            rejected_realtor_ids=[],
            version=0,
            created_at=created_at or T0,
            updated_at=created_at or T0,
        )
        defaults.update(overrides)
        lead = Lead(**defaults)
        db_session.add(lead)
        db_session.commit()
        return lead
    return _make


@pytest.fixture
def make_score(db_session):
    from leadengine.models.realtor_score import RealtorScore

    def _make(realtor_id, avg_rating=None, total_ratings=0, points=0, last_assigned_at=None, **overrides):
        row = RealtorScore(
            realtor_id=realtor_id, avg_rating=avg_rating, total_ratings=total_ratings, points=points,
            last_assigned_at=last_assigned_at, leads_accepted=0, leads_rejected=0, leads_expired=0,
            total_response_minutes=0, **overrides,
        )
        db_session.add(row)
        db_session.commit()
        return row
    return _make


@pytest.fixture
def reserved_lead(make_team, make_property, make_lead):
    """Lead reserved to realtor-a until T0 + 10 minutes."""
    make_team('team-1', {'realtor-a': 'REALTOR', 'realtor-b': 'REALTOR'})
    make_property('prop-1', team_id='team-1')
    return make_lead(
        'lead-1', status='RESERVED', reserved_realtor_id='realtor-a',
        reserved_at=T0, reserved_until=T0 + timedelta(minutes=10),
    )

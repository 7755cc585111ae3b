"""
Shared fixtures for erasure pipeline tests.

Provides:
- In-memory SQLite primary store and analytics warehouse
- An in-memory S3 double and a mocked identity provider (httpx MockTransport)
- A frozen, steppable clock
- A fully wired ErasurePipeline with one seeded user
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, Generator, List

import httpx
import pytest
from botocore.exceptions import ClientError
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from erasure.database import Base
from erasure.gdpr import audit  # noqa: F401  registers the audit table
from erasure.gdpr.hashing import SubjectHasher
from erasure.gdpr.pipeline import ErasurePipeline
from erasure.models import (
    Consent,
    Subscription,
    TrainingSession,
    UserAccount,
    UserSetting,
)
from erasure.settings import Settings

TEST_SECRET = "test-certificate-signing-secret-0123456789"
TEST_SALT = "test-salt"
TEST_USER_ID = "user-123"
TEST_EMAIL = "alice@example.com"
TEST_BUCKET = "user-uploads"
START_TIME = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryS3:
    """Just enough of the boto3 S3 client for list/delete by prefix."""

    def __init__(self, page_size: int = 1000):
        self.buckets: Dict[str, Dict[str, bytes]] = {}
        self.page_size = page_size
        self.delete_calls: List[int] = []
        self.fail_deletes = False

    def put_object(self, Bucket: str, Key: str, Body: bytes = b"") -> None:
        self.buckets.setdefault(Bucket, {})[Key] = Body

    def list_objects_v2(self, Bucket, Prefix="", MaxKeys=None, ContinuationToken=None):
        if Bucket not in self.buckets:
            raise ClientError(
                {"Error": {"Code": "NoSuchBucket", "Message": "missing"}}, "ListObjectsV2"
            )
        keys = sorted(k for k in self.buckets[Bucket] if k.startswith(Prefix))
        start = int(ContinuationToken) if ContinuationToken else 0
        size = min(MaxKeys or self.page_size, self.page_size)
        page = keys[start:start + size]
        truncated = start + size < len(keys)
        resp = {
            "KeyCount": len(page),
            "Contents": [{"Key": k} for k in page],
            "IsTruncated": truncated,
        }
        if truncated:
            resp["NextContinuationToken"] = str(start + size)
        return resp

    def delete_objects(self, Bucket, Delete):
        if self.fail_deletes:
            raise ClientError(
                {"Error": {"Code": "ServiceUnavailable", "Message": "try later"}}, "DeleteObjects"
            )
        self.delete_calls.append(len(Delete["Objects"]))
        for obj in Delete["Objects"]:
            self.buckets.get(Bucket, {}).pop(obj["Key"], None)
        return {"Deleted": [{"Key": obj["Key"]} for obj in Delete["Objects"]]}


class FakeIdentityProvider:
    """Admin API for ``/users/{id}`` backed by a dict, served via MockTransport."""

    def __init__(self):
        self.users: Dict[str, dict] = {}
        self.fail_with: int = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"error": "unavailable"})
        user_id = request.url.path.rsplit("/", 1)[-1]
        if request.method == "GET":
            if user_id not in self.users:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json=self.users[user_id])
        if request.method == "DELETE":
            if self.users.pop(user_id, None) is None:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(204)
        return httpx.Response(405)

    def client(self) -> httpx.Client:
        return httpx.Client(base_url="http://identity.test/admin", transport=httpx.MockTransport(self.handler))


def _memory_engine() -> Engine:
    return create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        certificate_signing_secret=TEST_SECRET,
        user_hash_salt=TEST_SALT,
        object_storage_bucket=TEST_BUCKET,
        _env_file=None,
    )


@pytest.fixture
def hasher() -> SubjectHasher:
    return SubjectHasher(TEST_SALT)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    """Primary store session on a fresh in-memory database."""
    engine = _memory_engine()
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def warehouse_engine() -> Generator[Engine, None, None]:
    engine = _memory_engine()
    with engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE users_anonymized (user_hash TEXT NOT NULL, country TEXT, age_bucket TEXT)"
        ))
        conn.execute(text(
            "CREATE TABLE training_sessions (user_hash TEXT NOT NULL, duration_seconds INTEGER)"
        ))
    yield engine
    engine.dispose()


@pytest.fixture
def s3() -> InMemoryS3:
    client = InMemoryS3()
    client.buckets[TEST_BUCKET] = {}
    return client


@pytest.fixture
def identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def pipeline(db_session, settings, s3, warehouse_engine, identity, clock) -> ErasurePipeline:
    return ErasurePipeline.from_settings(
        db_session,
        settings,
        s3_client=s3,
        warehouse_engine=warehouse_engine,
        identity_http=identity.client(),
        clock=clock,
    )


def _seed_user(
    db: Session,
    s3: InMemoryS3,
    warehouse: Engine,
    identity: FakeIdentityProvider,
    hasher: SubjectHasher,
    user_id: str = TEST_USER_ID,
    email: str = TEST_EMAIL,
    sessions: int = 3,
    files: int = 2,
) -> UserAccount:
    """Create a user with data in every subsystem."""
    user = UserAccount(id=user_id, email=email, display_name="Alice")
    db.add(user)
    for i in range(sessions):
        db.add(TrainingSession(user_id=user_id, exercise="squat", duration_seconds=60 * (i + 1)))
    db.add(UserSetting(user_id=user_id, key="units", value={"system": "metric"}))
    db.add(Subscription(user_id=user_id, plan="premium"))
    db.add(Consent(user_id=user_id, purpose="analytics"))
    db.commit()

    for i in range(files):
        s3.put_object(Bucket=TEST_BUCKET, Key=f"users/{user_id}/videos/{i}.mp4", Body=b"x")

    user_hash = hasher.user_hash(user_id)
    with warehouse.begin() as conn:
        conn.execute(
            text("INSERT INTO users_anonymized (user_hash, country) VALUES (:h, 'DE')"),
            {"h": user_hash},
        )
        conn.execute(
            text("INSERT INTO training_sessions (user_hash, duration_seconds) VALUES (:h, 60)"),
            {"h": user_hash},
        )

    identity.users[user_id] = {"uid": user_id, "email": email}
    return user


@pytest.fixture
def user_factory(db_session, s3, warehouse_engine, identity, hasher):
    """Create users with data in every subsystem: user_factory(user_id, email)."""
    def factory(user_id: str = TEST_USER_ID, email: str = TEST_EMAIL, **kwargs) -> UserAccount:
        return _seed_user(db_session, s3, warehouse_engine, identity, hasher, user_id, email, **kwargs)
    return factory


@pytest.fixture
def seeded_user(user_factory) -> UserAccount:
    return user_factory()


@pytest.fixture
def warehouse_rows(warehouse_engine):
    """Count analytics rows for a user hash."""
    def count(user_hash: str) -> int:
        return _count_warehouse_rows(warehouse_engine, user_hash)
    return count


def _count_warehouse_rows(engine: Engine, user_hash: str) -> int:
    with engine.connect() as conn:
        return sum(
            conn.execute(
                text(f"SELECT COUNT(*) FROM {table} WHERE user_hash = :h"), {"h": user_hash}
            ).scalar_one()
            for table in ("users_anonymized", "training_sessions")
        )

"""
Pytest configuration and shared fixtures for Memory Care tests.

This module provides:
- Test database setup (SQLite in-memory through aiosqlite)
- httpx AsyncClient over the ASGI app with dependency overrides
- User factories and bearer tokens
- Fake scorer and conclusion writer in place of the external service
"""

import os

# =============================================================================
# TEST SETTINGS BEFORE ANY APP IMPORTS
# =============================================================================
os.environ.setdefault("SQLALCHEMY_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from typing import List, Optional

import httpx
import pytest
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from memory_care.database.db import get_db
from memory_care.database.models import Base, User, UserRole
from memory_care.repository import assignment as assignment_registry
from memory_care.repository import image as image_pool
from memory_care.schemas import ConclusionsResult, GroundTruthUpsert, ScoreResult
from memory_care.services.auth import auth_service
from memory_care.services.errors import ScorerUnavailable
from memory_care.services.scorer import get_conclusion_writer, get_scorer


# =============================================================================
# DATABASE FIXTURES
# =============================================================================


@pytest.fixture
async def test_engine():
    """Create a test database engine using SQLite in-memory."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


# =============================================================================
# USER FIXTURES
# =============================================================================


@pytest.fixture
def make_user(db):
    """Factory: creates a committed user with the given role."""
    counter = {"n": 0}

    async def _make_user(role: UserRole, name: Optional[str] = None) -> User:
        counter["n"] += 1
        user = User(
            role=role,
            name=name or f"{role.value}-{counter['n']}",
            email=f"{role.value}{counter['n']}@example.com",
        )
        db.add(user)
        await db.commit()
        return user

    return _make_user


@pytest.fixture
async def patient(make_user):
    return await make_user(UserRole.patient, "Мария")


@pytest.fixture
async def caregiver(make_user):
    return await make_user(UserRole.caregiver, "Хуан")


@pytest.fixture
async def doctor(make_user):
    return await make_user(UserRole.doctor, "Доктор")


@pytest.fixture
async def admin(make_user):
    return await make_user(UserRole.admin, "Админ")


@pytest.fixture
async def assigned_caregiver(db, caregiver, patient):
    await assignment_registry.assign(db, caregiver.id, patient.id)
    return caregiver


@pytest.fixture
def make_images(db):
    """Factory: registers n free images with ground truth for an uploader."""

    async def _make_images(uploader: User, n: int = 3, with_ground_truth: bool = True):
        images = []
        for i in range(n):
            ground_truth = (
                GroundTruthUpsert(
                    text=f"Семья на пляже, фото {i}",
                    keywords=["пляж", "семья"],
                    guide_questions=["Кто на фото?"],
                )
                if with_ground_truth
                else None
            )
            images.append(
                await image_pool.register_image(
                    db,
                    uploader_id=uploader.id,
                    url=f"https://storage.example.com/{uploader.id}/{i}.jpg",
                    ground_truth=ground_truth,
                )
            )
        return images

    return _make_images


def token_for(user: User) -> str:
    return jwt.encode(
        {"sub": user.id}, key=auth_service.SECRET_KEY, algorithm=auth_service.ALGORITHM
    )


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {token_for(user)}"}


# =============================================================================
# SCORER FIXTURES
# =============================================================================


def make_score(total: float = 0.6, **overrides) -> ScoreResult:
    values = dict(
        rate_omission=0.2,
        rate_commission=0.1,
        rate_exactness=0.8,
        coherence=0.7,
        fluency=0.9,
        total=total,
        hits=["пляж"],
        omitted_details=["зонт"],
        omitted_keywords=["семья"],
        added_elements=[],
        conclusion="Хорошее описание",
    )
    values.update(overrides)
    return ScoreResult(**values)


class FakeScorer:
    """In-memory scorer: returns queued results, or fails while fail=True."""

    def __init__(self, results: Optional[List[ScoreResult]] = None):
        self.results = list(results or [])
        self.fail = False
        self.calls = []

    async def score(self, patient_text, ground_truth) -> ScoreResult:
        self.calls.append((patient_text, ground_truth.text))
        if self.fail:
            raise ScorerUnavailable("Сервис оценки не ответил")
        if self.results:
            return self.results.pop(0)
        return make_score()


class FakeConclusionWriter:
    def __init__(self):
        self.fail = False
        self.calls = []

    async def write(self, rates, scores) -> ConclusionsResult:
        self.calls.append((rates, scores))
        if self.fail:
            raise ScorerUnavailable("Сервис заключений недоступен")
        return ConclusionsResult(
            technical=f"total={rates.total:.2f}", plain="Пациент справился хорошо"
        )


@pytest.fixture
def scorer():
    return FakeScorer()


@pytest.fixture
def conclusion_writer():
    return FakeConclusionWriter()


# =============================================================================
# APPLICATION FIXTURES
# =============================================================================


@pytest.fixture
def app(session_maker, scorer, conclusion_writer):
    """Configure the app with the test database and fake external services."""
    from main import app as fastapi_app
    from memory_care.routes.sessions import description_rate_limiter

    async def _override_get_db():
        async with session_maker() as session:
            yield session

    async def _no_rate_limit():
        return None

    fastapi_app.dependency_overrides[get_db] = _override_get_db
    fastapi_app.dependency_overrides[get_scorer] = lambda: scorer
    fastapi_app.dependency_overrides[get_conclusion_writer] = lambda: conclusion_writer
    fastapi_app.dependency_overrides[description_rate_limiter] = _no_rate_limit
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

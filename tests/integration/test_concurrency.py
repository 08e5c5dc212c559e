"""
Integration tests for concurrent writers.

Each caller gets its own connection to a file-backed SQLite database, so the
requests really overlap.

Tests cover:
- Parallel assign() calls against one patient
- Parallel try_reserve() calls over overlapping images
"""

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from memory_care.database.models import (
    MAX_CAREGIVERS_PER_PATIENT,
    Base,
    CareAssignment,
    ImageStatus,
    ReferenceImage,
    User,
    UserRole,
)
from memory_care.repository import assignment as assignment_registry
from memory_care.repository import image as image_pool
from memory_care.services.errors import (
    CaregiverUnavailable,
    CoreError,
    ImageAlreadyAssigned,
    PatientAtCapacity,
)


@pytest.fixture
async def file_session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


async def _add_users(maker, role: UserRole, n: int):
    async with maker() as db:
        users = [
            User(role=role, name=f"{role.value}-{i}", email=f"{role.value}{i}@example.com")
            for i in range(n)
        ]
        db.add_all(users)
        await db.commit()
        return [u.id for u in users]


def _outcome(result) -> str:
    if isinstance(result, BaseException):
        return type(result).__name__
    return "ok"


class TestConcurrentAssign:
    """Tests for parallel assign() calls."""

    async def test_parallel_caregivers_fill_all_slots(self, file_session_maker):
        [patient_id] = await _add_users(file_session_maker, UserRole.patient, 1)
        caregiver_ids = await _add_users(file_session_maker, UserRole.caregiver, 6)

        async def _assign(caregiver_id):
            async with file_session_maker() as db:
                await assignment_registry.assign(db, caregiver_id, patient_id)

        results = await asyncio.gather(
            *(_assign(c) for c in caregiver_ids), return_exceptions=True
        )
        outcomes = [_outcome(r) for r in results]

        assert outcomes.count("ok") == MAX_CAREGIVERS_PER_PATIENT
        assert sorted(o for o in outcomes if o != "ok") == ["PatientAtCapacity"] * 3

        async with file_session_maker() as db:
            slots = (
                await db.execute(
                    select(CareAssignment.slot).where(CareAssignment.patient_id == patient_id)
                )
            ).scalars().all()
        assert sorted(slots) == [1, 2, 3]

    async def test_parallel_patients_for_one_caregiver(self, file_session_maker):
        patient_ids = await _add_users(file_session_maker, UserRole.patient, 4)
        [caregiver_id] = await _add_users(file_session_maker, UserRole.caregiver, 1)

        async def _assign(patient_id):
            async with file_session_maker() as db:
                await assignment_registry.assign(db, caregiver_id, patient_id)

        results = await asyncio.gather(
            *(_assign(p) for p in patient_ids), return_exceptions=True
        )

        assert [_outcome(r) for r in results].count("ok") == 1
        for result in results:
            if isinstance(result, BaseException):
                assert isinstance(result, CaregiverUnavailable)

    async def test_losers_get_tagged_errors(self, file_session_maker):
        [patient_id] = await _add_users(file_session_maker, UserRole.patient, 1)
        caregiver_ids = await _add_users(file_session_maker, UserRole.caregiver, 5)

        async def _assign(caregiver_id):
            async with file_session_maker() as db:
                await assignment_registry.assign(db, caregiver_id, patient_id)

        results = await asyncio.gather(
            *(_assign(c) for c in caregiver_ids), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                assert isinstance(result, PatientAtCapacity)
                assert isinstance(result, CoreError)
                assert result.detail["error"] == "PatientAtCapacity"


class TestConcurrentReserve:
    """Tests for parallel try_reserve() calls."""

    async def test_overlapping_reservations(self, file_session_maker):
        [uploader_id] = await _add_users(file_session_maker, UserRole.caregiver, 1)
        async with file_session_maker() as db:
            images = [
                await image_pool.register_image(
                    db, uploader_id=uploader_id, url=f"https://storage.example.com/{i}.jpg"
                )
                for i in range(5)
            ]
        ids = [i.id for i in images]

        async def _reserve(picked):
            async with file_session_maker() as db:
                try:
                    await image_pool.try_reserve(db, picked)
                    await db.commit()
                except ImageAlreadyAssigned:
                    await db.rollback()
                    raise

        results = await asyncio.gather(
            _reserve(ids[:3]), _reserve(ids[2:]), return_exceptions=True
        )

        assert sorted(_outcome(r) for r in results) == ["ImageAlreadyAssigned", "ok"]

        async with file_session_maker() as db:
            statuses = dict(
                (
                    await db.execute(
                        select(ReferenceImage.id, ReferenceImage.status).where(
                            ReferenceImage.id.in_(ids)
                        )
                    )
                ).all()
            )
        assigned = [i for i in ids if statuses[i] == ImageStatus.assigned_to_session]
        assert len(assigned) == 3
        assert assigned in (ids[:3], ids[2:])

from typing import List, Optional

from loguru import logger
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from memory_care.database.models import (
    MAX_CAREGIVERS_PER_PATIENT,
    CareAssignment,
    User,
    UserRole,
)
from memory_care.services.errors import (
    CaregiverUnavailable,
    NotFoundError,
    PatientAtCapacity,
)


async def get_user_with_role(
    db: AsyncSession, user_id: str, role: UserRole, lock: bool = False
) -> User:
    """
    Возвращает пользователя с указанной ролью или NotFoundError.
    lock=True берет блокировку строки (SELECT ... FOR UPDATE) до конца транзакции.
    """
    stmt = select(User).where(User.id == user_id, User.role == role)
    if lock:
        stmt = stmt.with_for_update()
    user = await db.scalar(stmt)
    if not user:
        raise NotFoundError(f"Пользователь {user_id} с ролью {role.value} не найден")
    return user


async def _caregiver_assignment(
    db: AsyncSession, caregiver_id: str
) -> Optional[CareAssignment]:
    return await db.scalar(
        select(CareAssignment).where(CareAssignment.caregiver_id == caregiver_id)
    )


async def _taken_slots(db: AsyncSession, patient_id: str) -> List[int]:
    result = await db.execute(
        select(CareAssignment.slot).where(CareAssignment.patient_id == patient_id)
    )
    return list(result.scalars().all())


async def assign(db: AsyncSession, caregiver_id: str, patient_id: str) -> CareAssignment:
    """
    Асинхронно связывает опекуна с пациентом.

    Строки опекуна и пациента блокируются в фиксированном порядке (сначала опекун),
    поэтому параллельные назначения на того же опекуна или пациента выполняются
    по очереди. Ограничения уникальности в схеме отсекают всё, что прошло мимо
    блокировок (например, на SQLite): если занятым оказался только слот, берется
    следующий свободный.

    :raises CaregiverUnavailable: у опекуна уже есть пациент
    :raises PatientAtCapacity: у пациента уже 3 опекуна
    :raises NotFoundError: неизвестный опекун или пациент
    """
    for _ in range(MAX_CAREGIVERS_PER_PATIENT):
        await get_user_with_role(db, caregiver_id, UserRole.caregiver, lock=True)
        await get_user_with_role(db, patient_id, UserRole.patient, lock=True)

        if await _caregiver_assignment(db, caregiver_id):
            raise CaregiverUnavailable(f"Опекун {caregiver_id} уже связан с пациентом")

        taken = await _taken_slots(db, patient_id)
        free_slots = sorted(set(range(1, MAX_CAREGIVERS_PER_PATIENT + 1)) - set(taken))
        if not free_slots:
            raise PatientAtCapacity(
                f"У пациента {patient_id} уже {MAX_CAREGIVERS_PER_PATIENT} опекуна"
            )

        assignment = CareAssignment(
            caregiver_id=caregiver_id, patient_id=patient_id, slot=free_slots[0]
        )
        db.add(assignment)
        try:
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            logger.warning(
                f"Assignment {caregiver_id} -> {patient_id} lost slot {assignment.slot}: {e}"
            )
            continue

        logger.info(
            f"Caregiver {caregiver_id} assigned to patient {patient_id} (slot {assignment.slot})"
        )
        return assignment

    # Каждая неудачная попытка означает слот, занятый другим запросом.
    if await _caregiver_assignment(db, caregiver_id):
        raise CaregiverUnavailable(f"Опекун {caregiver_id} уже связан с пациентом")
    raise PatientAtCapacity(
        f"У пациента {patient_id} уже {MAX_CAREGIVERS_PER_PATIENT} опекуна"
    )


async def remove(db: AsyncSession, caregiver_id: str, patient_id: str) -> bool:
    """Удаляет связь, если она есть. Отсутствие связи - не ошибка."""
    result = await db.execute(
        delete(CareAssignment).where(
            CareAssignment.caregiver_id == caregiver_id,
            CareAssignment.patient_id == patient_id,
        )
    )
    await db.commit()
    removed = result.rowcount > 0
    if removed:
        logger.info(f"Caregiver {caregiver_id} removed from patient {patient_id}")
    else:
        logger.debug(f"No assignment {caregiver_id} -> {patient_id}, nothing to remove")
    return removed


async def list_caregivers_of(db: AsyncSession, patient_id: str) -> List[User]:
    result = await db.execute(
        select(User)
        .join(CareAssignment, CareAssignment.caregiver_id == User.id)
        .where(CareAssignment.patient_id == patient_id)
        .order_by(CareAssignment.slot)
    )
    return list(result.scalars().all())


async def count_caregivers_of(db: AsyncSession, patient_id: str) -> int:
    count = await db.scalar(
        select(func.count())
        .select_from(CareAssignment)
        .where(CareAssignment.patient_id == patient_id)
    )
    return count or 0


async def is_caregiver_available(db: AsyncSession, caregiver_id: str) -> bool:
    return await _caregiver_assignment(db, caregiver_id) is None


async def is_assigned(db: AsyncSession, caregiver_id: str, patient_id: str) -> bool:
    assignment = await _caregiver_assignment(db, caregiver_id)
    return assignment is not None and assignment.patient_id == patient_id


async def get_patient_of_caregiver(db: AsyncSession, caregiver_id: str) -> Optional[User]:
    return await db.scalar(
        select(User)
        .join(CareAssignment, CareAssignment.patient_id == User.id)
        .where(CareAssignment.caregiver_id == caregiver_id)
    )


async def list_unassigned_users(db: AsyncSession, role: UserRole) -> List[User]:
    """
    Пользователи, которым ещё можно назначить связь:
    опекуны без пациента или пациенты, у которых меньше 3 опекунов.
    """
    if role == UserRole.caregiver:
        stmt = (
            select(User)
            .outerjoin(CareAssignment, CareAssignment.caregiver_id == User.id)
            .where(User.role == UserRole.caregiver, CareAssignment.id.is_(None))
        )
    elif role == UserRole.patient:
        stmt = (
            select(User)
            .outerjoin(CareAssignment, CareAssignment.patient_id == User.id)
            .where(User.role == UserRole.patient)
            .group_by(User.id)
            .having(func.count(CareAssignment.id) < MAX_CAREGIVERS_PER_PATIENT)
        )
    else:
        return []
    result = await db.execute(stmt.order_by(User.name))
    return list(result.scalars().all())

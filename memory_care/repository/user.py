from typing import List, Optional, Tuple
import uuid

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from memory_care.database.models import User, UserRole
from memory_care.schemas import UserCreate
from memory_care.services.errors import ConflictError


async def get_user_by_email(email: str, db: AsyncSession) -> User | None:
    """
    Асинхронно получает пользователя по его email.

    """
    stmt = select(User).where(User.email.ilike(email.lower()))
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_user_by_uuid(uuid: str, db: AsyncSession) -> User | None:
    """
    Асинхронно получает пользователя по его UUID.

    """
    stmt = select(User).where(User.id == uuid)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def create_user(body: UserCreate, db: AsyncSession) -> User:
    """
    Асинхронно регистрирует профиль пользователя, выданный провайдером идентификации.

    """
    if await get_user_by_email(body.email, db):
        raise ConflictError(f"Пользователь с email {body.email} уже существует")

    new_user = User(
        id=body.id or str(uuid.uuid4()),
        role=body.role,
        name=body.name,
        email=body.email.lower(),
    )
    db.add(new_user)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        logger.warning(f"User registration rejected: {e}")
        raise ConflictError("Пользователь с таким ID или email уже существует")
    logger.info(f"User {new_user.id} registered with role {new_user.role.value}")
    return new_user


async def list_users(
    db: AsyncSession,
    role: Optional[UserRole] = None,
    skip: int = 0,
    limit: int = 50,
) -> Tuple[List[User], int]:
    filters = [User.role == role] if role else []
    total = await db.scalar(select(func.count()).select_from(User).where(*filters))
    result = await db.execute(
        select(User).where(*filters).order_by(User.name).offset(skip).limit(limit)
    )
    return list(result.scalars().all()), total or 0

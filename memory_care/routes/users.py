from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from memory_care.database.db import get_db
from memory_care.database.models import User, UserRole
from memory_care.repository import assignment as assignment_registry
from memory_care.repository import user as repository_users
from memory_care.schemas import PaginatedUsersResponse, UserCreate, UserResponse
from memory_care.services.access import admin_access
from memory_care.services.auth import auth_service


router = APIRouter(prefix="/users", tags=["Users"])


@router.post(
    "",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(admin_access)],
)
async def register_user(body: UserCreate, db: AsyncSession = Depends(get_db)):
    """Регистрирует профиль пользователя из провайдера идентификации."""
    return await repository_users.create_user(body, db)


@router.get(
    "",
    response_model=PaginatedUsersResponse,
    dependencies=[Depends(admin_access)],
)
async def list_users(
    role: Optional[UserRole] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    users, total = await repository_users.list_users(db, role=role, skip=skip, limit=limit)
    return PaginatedUsersResponse(items=users, total=total)


@router.get("/me", response_model=UserResponse)
async def read_me(current_user: User = Depends(auth_service.get_current_user)):
    return current_user


@router.get(
    "/unassigned",
    response_model=List[UserResponse],
    dependencies=[Depends(admin_access)],
)
async def list_unassigned_users(
    role: UserRole = Query(..., description="caregiver или patient"),
    db: AsyncSession = Depends(get_db),
):
    """
    Опекуны без пациента или пациенты, у которых есть свободное место для опекуна.
    """
    return await assignment_registry.list_unassigned_users(db, role)

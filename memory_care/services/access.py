from typing import Iterable

from fastapi import Depends, HTTPException, status

from memory_care.database.models import User, UserRole
from memory_care.services.auth import auth_service
from memory_care.config.config import settings


def is_admin(user: User) -> bool:
    return user.role == UserRole.admin or user.email in settings.admin_accounts


class RoleAccess:
    """
    Пропускает пользователя с одной из ролей и возвращает его профиль.
    Администраторы из settings.admin_accounts проходят всегда.
    """

    def __init__(self, roles: Iterable[UserRole], detail: str):
        self.roles = set(roles)
        self.detail = detail

    async def __call__(self, user: User = Depends(auth_service.get_current_user)):
        if user.role in self.roles or is_admin(user):
            return user
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=self.detail)


admin_access = RoleAccess([UserRole.admin], "Forbidden operation")
doctor_access = RoleAccess([UserRole.doctor], "Требуются права врача.")
caregiver_access = RoleAccess([UserRole.caregiver], "Требуются права опекуна.")
patient_access = RoleAccess([UserRole.patient], "Требуются права пациента.")
doctor_or_admin_access = RoleAccess(
    [UserRole.doctor, UserRole.admin], "Требуются права врача или администратора."
)
staff_access = RoleAccess(
    [UserRole.doctor, UserRole.caregiver],
    "Доступ запрещен. Требуются права врача или опекуна.",
)

from jose import JWTError, jwt
from fastapi import HTTPException, status, Depends
from fastapi.security import OAuth2PasswordBearer

from memory_care.database.db import get_db
from memory_care.repository import user as repository_users
from memory_care.config.config import settings
from loguru import logger

from sqlalchemy.ext.asyncio import AsyncSession


class Auth:
    """
    Проверка токенов, выданных внешним провайдером идентификации.
    Сами токены здесь не выпускаются.
    """

    SECRET_KEY = settings.secret_key
    ALGORITHM = settings.algorithm
    oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

    def decode_access_token(self, token: str) -> str:
        """
        Декодирует access-токен и возвращает ID пользователя из поля sub.

        :raises HTTPException 401: неверная подпись, истекший срок или нет sub
        """
        try:
            payload = jwt.decode(token, key=self.SECRET_KEY, algorithms=[self.ALGORITHM])
        except JWTError as e:
            error_message = str(e).lower()
            detail_for_user = (
                "Не удалось проверить учетные данные: неверный или поврежденный токен."
            )
            if "signature has expired" in error_message:
                detail_for_user = "Срок действия токена истек."
            elif "signature verification failed" in error_message:
                detail_for_user = "Недействительная подпись."
            logger.warning(f"JWT error: {error_message}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=detail_for_user,
                headers={"WWW-Authenticate": "Bearer"},
            )

        user_id = payload.get("sub")
        if user_id is None:
            logger.warning(f"Token payload missing 'sub'. Payload: {payload}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Некорректный токен: отсутствует идентификатор пользователя.",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return user_id

    async def get_current_user(
        self, token: str = Depends(oauth2_scheme), db: AsyncSession = Depends(get_db)
    ):
        """
        Проверяет access-токен и возвращает профиль пользователя из базы.

        :param token: Access токен из заголовка "Authorization: Bearer".
        :param db: Асинхронная сессия базы данных.
        :return: Объект User
        :raises HTTPException 401: токен невалиден или профиль не зарегистрирован
        """
        user_id = self.decode_access_token(token)
        user = await repository_users.get_user_by_uuid(user_id, db)
        if user is None:
            logger.warning(f"Token for unknown user {user_id}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Пользователь не найден.",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return user


auth_service = Auth()

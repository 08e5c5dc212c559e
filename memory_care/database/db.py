from memory_care.config.config import settings
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

SQLALCHEMY_DATABASE_URL = settings.sqlalchemy_database_url

POOL_SIZE = 10
MAX_OVERFLOW = 30

engine_options = {"pool_pre_ping": True}
if not SQLALCHEMY_DATABASE_URL.startswith("sqlite"):
    engine_options.update(
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=60,
        pool_recycle=3600,
    )

engine = create_async_engine(SQLALCHEMY_DATABASE_URL, **engine_options)
async_session_maker = async_sessionmaker(
    engine, expire_on_commit=False, class_=AsyncSession
)


async def get_db():
    """
    Функция get_db открывает новое асинхронное подключение к базе данных
    если для текущего контекста программы ещё такового нет.
    После завершения запроса подключение закрывается.

    :return: Асинхронный обьект сессии AsyncSession
    """
    async with async_session_maker() as session:
        yield session

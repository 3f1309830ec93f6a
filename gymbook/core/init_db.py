import asyncio
import logging

from sqlalchemy import inspect

from gymbook.core.config import ENVIRONMENT
from gymbook.core.database import Base, async_session, db_manager, engine
from gymbook.core.exceptions import ConfigurationError, DatabaseError

# Регистрация всех моделей в Base.metadata
import gymbook.staff.models  # noqa: F401
import gymbook.students.models  # noqa: F401

logger = logging.getLogger(__name__)


async def init_database():
    """Проверить соединение и создать недостающие таблицы"""
    try:
        logger.info("Starting database initialization...")

        await db_manager.check_connection()
        logger.info("Database connection verified")

        await db_manager.create_tables()
        logger.info("Database tables created/verified")

    except DatabaseError:
        raise
    except Exception as e:
        logger.error(f"Unexpected error during database initialization: {e}")
        raise DatabaseError(f"Database initialization failed: {str(e)}")


async def verify_database_setup() -> bool:
    """Все таблицы моделей присутствуют в базе"""
    async with engine.connect() as conn:
        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))

    missing = sorted(set(Base.metadata.tables) - existing)
    if missing:
        raise DatabaseError("Database schema is incomplete", details={"missing_tables": missing})

    logger.info(f"Database verification passed: {len(existing)} tables found")
    return True


async def reset_database():
    """Пересоздать схему (только development / test)"""
    if ENVIRONMENT not in ["development", "dev", "test"]:
        raise ConfigurationError(
            "ENVIRONMENT",
            "Database reset is only allowed in development or test environments",
        )

    logger.warning("RESETTING DATABASE - ALL DATA WILL BE LOST")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.info("All tables dropped")

    await init_database()
    logger.info("Database reset completed")


async def run_expiry_sweep():
    """Списание истекших партий токенов, для внешнего планировщика (cron)"""
    from gymbook.students.crud.tokens import sweep_expired_grants

    async with async_session() as session:
        result = await sweep_expired_grants(session)

    logger.info(
        f"Expiry sweep finished: {result.processed_grants} grants, "
        f"{result.expired_tokens} tokens expired"
    )
    return result


if __name__ == "__main__":
    import sys

    from gymbook.core.config import LOG_FORMAT, LOG_LEVEL
    from gymbook.core.logging_utils import setup_logging

    setup_logging(LOG_LEVEL, LOG_FORMAT)

    commands = {
        "init": init_database,
        "verify": verify_database_setup,
        "reset": reset_database,
        "sweep": run_expiry_sweep,
    }

    async def main():
        command = sys.argv[1] if len(sys.argv) > 1 else "init"
        if command not in commands:
            print(f"Unknown command: {command}")
            print(f"Available commands: {', '.join(commands)}")
            sys.exit(1)
        try:
            await commands[command]()
        finally:
            await db_manager.close_connections()

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Cancelled by user")
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)

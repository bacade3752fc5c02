import asyncio
from loguru import logger

from config.settings import settings
from database.base import init_db
from services.maintenance_service import MaintenanceService
from services.payment_timeout_service import PaymentTimeoutSweeper, run_periodic_sweep
from services.sweep_guard import create_sweep_guard


async def run_periodic_maintenance_sync(interval_seconds: int):
    """Keep fleet status in line with due maintenance"""
    maintenance_service = MaintenanceService()

    while True:
        try:
            changed = await maintenance_service.sync_all()
            if changed:
                logger.info(f"🔧 Maintenance sync changed {changed} vehicle(s)")
        except Exception as e:
            logger.exception(f"❌ Maintenance sync error: {e}")

        await asyncio.sleep(interval_seconds)


async def main():
    """Start the background worker"""

    # Logging
    logger.add(
        settings.log_file,
        rotation="1 day",
        retention="7 days",
        level=settings.log_level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}"
    )

    logger.info("🚀 Starting rental worker...")

    guard = await create_sweep_guard(settings.redis_url, settings.use_redis_sweep_guard)

    try:
        logger.info("🗄️ Initializing database...")
        await init_db()
        logger.info("✅ Database ready")

        sweeper = PaymentTimeoutSweeper(guard=guard)

        logger.info(
            f"⏱️ Payment timeout {settings.payment_timeout_minutes} min, "
            f"sweep every {settings.sweep_interval_seconds}s"
        )
        await asyncio.gather(
            run_periodic_sweep(sweeper, settings.sweep_interval_seconds),
            run_periodic_maintenance_sync(settings.sweep_interval_seconds),
        )

    except Exception as e:
        logger.error(f"❌ Worker failed to start: {e}")
        raise
    finally:
        redis_client = getattr(guard, "redis", None)
        if redis_client is not None:
            await redis_client.aclose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("👋 Worker stopped by user")
    except Exception as e:
        logger.error(f"💥 Fatal error: {e}")
        raise

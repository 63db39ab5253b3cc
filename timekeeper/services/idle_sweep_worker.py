import asyncio
import logging
import os

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from timekeeper.database import SessionLocal
from timekeeper.services.idle_sweep import DEFAULT_BATCH_SIZE, run_idle_sweep

logger = logging.getLogger(__name__)

# pg_try_advisory_lock key pair reserved for the idle sweep.
_SWEEP_LOCK_KEYS = (5151, 5152)


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def idle_sweep_enabled() -> bool:
    # Tests invoke run_idle_sweep directly.
    if os.getenv("PYTEST_CURRENT_TEST"):
        return False
    v = os.getenv("IDLE_SWEEP_ENABLED")
    if v is None:
        return True
    return v.strip() not in {"0", "false", "False", "no", "NO"}


def try_acquire_sweep_lock(db: Session) -> bool:
    if db.get_bind().dialect.name != "postgresql":
        return True
    res = db.execute(
        text("select pg_try_advisory_lock(:k1, :k2)"),
        {"k1": _SWEEP_LOCK_KEYS[0], "k2": _SWEEP_LOCK_KEYS[1]},
    ).scalar()
    return bool(res)


def release_sweep_lock(db: Session) -> None:
    if db.get_bind().dialect.name != "postgresql":
        return
    db.execute(
        text("select pg_advisory_unlock(:k1, :k2)"),
        {"k1": _SWEEP_LOCK_KEYS[0], "k2": _SWEEP_LOCK_KEYS[1]},
    )


async def idle_sweep_worker_loop(*, interval_seconds: float = 60.0, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
    """
    Periodic idle sweep.

    Only the process holding the advisory lock sweeps; the others keep
    polling for it. Database failures never escape the loop.
    """
    logger.info(
        "Idle sweep worker started",
        extra={"interval_seconds": float(interval_seconds), "batch_size": int(batch_size)},
    )

    while True:
        lock_db: Session = SessionLocal()
        have_lock = False

        try:
            have_lock = try_acquire_sweep_lock(lock_db)
            if not have_lock:
                lock_db.close()
                await asyncio.sleep(interval_seconds)
                continue

            while True:
                result = await asyncio.to_thread(run_idle_sweep, batch_size=batch_size)
                if result.paused or result.failed:
                    logger.info(
                        "Idle sweep tick",
                        extra={"checked": result.checked, "paused": result.paused, "failed": result.failed},
                    )
                await asyncio.sleep(interval_seconds)

        except asyncio.CancelledError:
            logger.info("Idle sweep worker cancelled; shutting down")
            raise

        except (OperationalError, DBAPIError):
            # Lock connection died; drop pooled connections and start over.
            logger.exception(
                "Idle sweep worker lock connection failed",
                extra={"component": "idle_sweep_worker", "reason": "lock_dbapi_error"},
            )
            try:
                engine = lock_db.get_bind()
                if engine is not None and hasattr(engine, "dispose"):
                    engine.dispose()
            except Exception:
                logger.debug("Engine dispose failed", exc_info=True)
            await asyncio.sleep(interval_seconds)

        except Exception:
            logger.exception(
                "Idle sweep worker crashed",
                extra={"component": "idle_sweep_worker", "reason": "outer_unexpected"},
            )
            await asyncio.sleep(interval_seconds)

        finally:
            try:
                if have_lock:
                    release_sweep_lock(lock_db)
            except Exception:
                logger.debug("Advisory unlock failed", exc_info=True)
            lock_db.close()


def start_idle_sweep_task() -> asyncio.Task | None:
    if not idle_sweep_enabled():
        logger.info("Idle sweep worker disabled")
        return None

    interval_seconds = float(_env_int("IDLE_SWEEP_INTERVAL_SECONDS", 60))
    batch_size = _env_int("IDLE_SWEEP_BATCH_SIZE", DEFAULT_BATCH_SIZE)
    return asyncio.create_task(idle_sweep_worker_loop(interval_seconds=interval_seconds, batch_size=batch_size))

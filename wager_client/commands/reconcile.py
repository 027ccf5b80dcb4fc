import asyncio

from wager_client.database import Base, SessionLocal, engine
from wager_client.handles import HandleStore
from wager_client.logging_config import get_logger
from wager_client.reconciliation import generate_reconciliation_csv

logger = get_logger(__name__)


async def reconcile(output_path: str = "reconciliation.csv", handles: HandleStore | None = None, session_factory=SessionLocal) -> int:
    """Write the unconfirmed-leg report; exit code 1 when anything needs attention."""
    Base.metadata.create_all(bind=engine)
    handles = handles or HandleStore()
    try:
        csv_text, unconfirmed = await generate_reconciliation_csv(handles, session_factory)
    finally:
        await handles.close()
    with open(output_path, "w", newline="") as f:
        f.write(csv_text)
    logger.info("Wrote reconciliation report path=%s unconfirmed=%s", output_path, unconfirmed)
    return 1 if unconfirmed else 0

if __name__ == "__main__":
    exit_code = asyncio.run(reconcile())
    raise SystemExit(exit_code)

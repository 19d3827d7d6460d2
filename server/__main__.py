import os
import logging
import threading
import uvicorn
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from database import init_db
from server.api import app, services
from server.worker import Worker

logger = logging.getLogger(__name__)


def main():
    init_db()
    logger.info("Database initialized")

    # The clock shares the API's event bus so its closes reach stream subscribers
    worker = Worker(services=services)
    clock = threading.Thread(target=worker.run_loop, name="auction-clock", daemon=True)
    clock.start()

    try:
        uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", 8000)))
    finally:
        worker.stop()
        clock.join(timeout=worker.poll_seconds * 2)
        logger.info("Auction clock stopped")


if __name__ == "__main__":
    main()

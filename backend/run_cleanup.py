"""Run the refresh token retention sweep as a standalone process."""

import logging
import time

from authcore.services.cleanup_worker import cleanup_worker


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    cleanup_worker.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        cleanup_worker.stop()


if __name__ == "__main__":
    main()

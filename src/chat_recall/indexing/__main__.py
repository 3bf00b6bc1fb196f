"""CLI entry point for the indexing daemon.

Allows running the indexer as a module:
    python -m chat_recall.indexing
"""

import signal
import sys
from types import FrameType

from chat_recall.config import load_config
from chat_recall.errors import FatalConfigurationError
from chat_recall.indexing.daemon import run_indexer
from chat_recall.indexing.orchestrator import request_shutdown
from chat_recall.logging import get_logger

logger = get_logger("indexer")


def signal_handler(signum: int, frame: FrameType | None) -> None:
    """Handle shutdown signals gracefully."""
    sig_name = signal.Signals(signum).name
    logger.info("Received signal %s, shutting down", sig_name)
    request_shutdown()


def main() -> None:
    """Main entry point for the indexing daemon."""
    # Set up signal handlers for graceful shutdown
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        config = load_config()
        run_indexer(config)
    except FatalConfigurationError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(2)
    except KeyboardInterrupt:
        # Handle case where signal handler didn't catch it
        logger.info("Interrupted, shutting down")
        request_shutdown()

    sys.exit(0)


if __name__ == "__main__":
    main()

import logging
import sys
from typing import List, Optional

from .config import ProxyConfig
from .server import ProxyServer

logger = logging.getLogger(__name__)


def main(argv: Optional[List[str]] = None) -> int:
    try:
        config = ProxyConfig.from_args(argv)
    except ValueError as e:
        print(e, file=sys.stderr)
        return 2

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    server = ProxyServer(config)
    try:
        server.start()
    except KeyboardInterrupt:
        logger.info("Shutting down")
        server.shutdown()
    except OSError as e:
        logger.error(f"Could not start server: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())

"""Entry point of the harvester node manager."""

import logging
import sys
from typing import Optional, Sequence

from .errors import NodeManagerError
from .logs import flush_logs, init_logs
from .manager import Manager
from .option import parse_options
from .profiling import init_profiling
from .signals import setup_signal_context

logger = logging.getLogger(__name__)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the node manager; return the process exit status."""
    opt = parse_options(argv)

    init_logs(opt)
    init_profiling(opt)

    try:
        ctx = setup_signal_context()
        Manager(opt).run(ctx)
    except NodeManagerError as e:
        logger.error(f"Node manager failed: {e}")
        return 1
    else:
        logger.info("Node manager stopped")
        return 0
    finally:
        flush_logs()


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()

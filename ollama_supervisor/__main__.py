"""
Entry point for running the supervisor via `python -m ollama_supervisor`.

Used as the container ENTRYPOINT.
"""

import sys

from .config import load_config
from .exceptions import ConfigError
from .logs import setup_logging
from .supervisor import EXIT_CONFIG_ERROR, Supervisor


def main():
    """Run the supervisor and exit with its status."""
    try:
        config = load_config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    setup_logging(config)
    sys.exit(Supervisor(config).run())


if __name__ == "__main__":
    main()

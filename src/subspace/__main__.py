"""
CLI entry point: ``python -m subspace``

Reads ``SUBSPACE_CONFIG`` (a YAML or JSON file) if set, otherwise
configuration comes from environment variables.
"""

import os

from subspace.backend import Backend
from subspace.observability import configure_logging


def main() -> None:
    config_path = os.environ.get("SUBSPACE_CONFIG")
    backend = Backend.from_config(config_path) if config_path else Backend.from_env()
    configure_logging(backend.config.log_level, backend.config.log_format)
    backend.serve()


if __name__ == "__main__":
    main()

#!/usr/bin/env python
"""
Command-line entry point for the fiscal invoicing platform.
"""

import os
import sys
from pathlib import Path

from dotenv import load_dotenv


def main() -> None:
    # Local development: certificates, DB credentials and FISCAL_* flags from .env
    env_path = Path(__file__).resolve().parent / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.dev")

    from django.core.management import execute_from_command_line  # noqa: PLC0415

    execute_from_command_line(sys.argv)


if __name__ == "__main__":
    main()

#!/usr/bin/env python
"""Django's command-line utility for administrative tasks."""
import os
import sys


def main():
    # Load secrets (if configured) before Django settings are loaded
    import classroom_server.env_bootstrap  # noqa: F401

    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "classroom_server.settings")
    from django.core.management import execute_from_command_line

    execute_from_command_line(sys.argv)


if __name__ == "__main__":
    main()

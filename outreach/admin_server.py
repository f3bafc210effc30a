from __future__ import annotations

"""
Thin entrypoint for the outreach scheduler admin (FastAPI) server.

  ADMIN_TOKEN=... python -m outreach.admin_server
"""

from outreach.web.admin_api import run_server


def main() -> None:
    run_server()


if __name__ == "__main__":
    main()

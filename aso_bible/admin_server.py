from __future__ import annotations

"""
Thin entrypoint for the ASO Bible admin (FastAPI) server.

  ADMIN_TOKEN=... DATABASE_URL=... python -m aso_bible.admin_server
"""

from aso_bible.web.admin_api import run_server


def main() -> None:
    run_server()


if __name__ == "__main__":
    main()

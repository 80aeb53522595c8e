from __future__ import annotations

import uvicorn

from chatrelay.apps.api.main import create_app
from chatrelay.core.config import get_settings


def main() -> None:
    # Serve the ingest and admin API with env-driven bind settings.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()

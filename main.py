from __future__ import annotations

import os

from canteen_dashboard.app import create_app
from canteen_dashboard.config import Settings, configure_logging

settings = Settings.from_env()
configure_logging(settings.log_level)
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8080")),
        reload=True,
    )

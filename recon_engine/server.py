"""Run the API with uvicorn (recon-engine-server)."""

import uvicorn

from .api import app
from .config import get_settings


def main():
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()

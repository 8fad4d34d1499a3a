from __future__ import annotations

import uvicorn

from billing.api import create_app
from billing.config import Settings, load_dotenv
from billing.logger import configure_logging
from billing.service import build_service

load_dotenv()
_settings = Settings.from_env()
configure_logging(_settings.log_level)
app = create_app(build_service(_settings))


def main(host: str = "0.0.0.0", port: int = 8000) -> None:
    uvicorn.run("billing.api_main:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()

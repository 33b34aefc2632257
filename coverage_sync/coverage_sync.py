from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv

from .api.api import create_app
from .config import load_settings
from .logging_config import configure_logging


env_path = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(env_path)

settings = load_settings()
configure_logging(settings)
app = create_app(settings=settings)

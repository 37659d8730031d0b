"""Environment helpers shared by the API, the arq worker and alembic."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# backend/.env, next to alembic.ini
BACKEND_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


def load_env_file() -> bool:
    """Load backend/.env (or a .env in the working directory) into os.environ.

    Existing variables win over the file, so values set by the deployment
    (SendCloud keys, webhook secret, DATABASE_URL) are never replaced.

    Returns:
        True when a file was found and read
    """
    path = BACKEND_ENV_FILE if BACKEND_ENV_FILE.exists() else None
    loaded = load_dotenv(dotenv_path=path, override=False)
    if loaded:
        logger.info("[ENV] Loaded %s (existing variables kept)", path or ".env")
    else:
        logger.debug("[ENV] No .env file found")
    return loaded


def require_env(name: str) -> str:
    """Return a mandatory environment variable, reading .env on a miss.

    Raises:
        RuntimeError: If the variable is still unset after loading .env
    """
    value = os.getenv(name)
    if not value:
        load_env_file()
        value = os.getenv(name)
    if not value:
        raise RuntimeError(
            f"{name} is not set. Export it or add it to backend/.env."
        )
    return value

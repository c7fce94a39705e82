"""Local .env loading for development runs of the worker."""

import logging
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

# backend/.env, next to alembic.ini
_BACKEND_ENV = Path(__file__).resolve().parents[2] / ".env"


def load_env_file(path: Optional[Path] = None) -> bool:
    """Load variables from a .env file without overwriting the environment.

    Looks at `path`, then backend/.env, then the nearest .env found from the
    current working directory.

    Returns:
        True when a file was found and read.
    """
    candidates = [path] if path else [_BACKEND_ENV]
    for candidate in candidates:
        if candidate and candidate.is_file():
            load_dotenv(candidate, override=False)
            logger.info("Loaded %s (existing variables were NOT overwritten)", candidate)
            return True

    found = find_dotenv(usecwd=True)
    if found:
        load_dotenv(found, override=False)
        logger.info("Loaded %s (existing variables were NOT overwritten)", found)
        return True

    logger.debug("No local .env file found")
    return False

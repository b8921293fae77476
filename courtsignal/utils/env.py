"""Local .env loading for processes started outside the API (alembic, scripts)."""

import logging
from typing import Optional

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)


def load_env_file(path: Optional[str] = None) -> bool:
    """Load DATABASE_URL, META_* and LOMI_* from a local .env file.

    Variables already present in the environment win, so a deployed
    process never has its configuration replaced by a stray .env.

    Args:
        path: Explicit .env path; searched upwards from the cwd when omitted

    Returns:
        True if a file was found and read
    """
    dotenv_path = path or find_dotenv(usecwd=True)
    if not dotenv_path:
        logger.debug("[ENV] No .env file found")
        return False

    loaded = load_dotenv(dotenv_path, override=False)
    if loaded:
        logger.info(f"[ENV] Loaded {dotenv_path} (existing variables kept)")
    return loaded

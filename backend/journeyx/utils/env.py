def require_env(name: str) -> str:
    """Return the value of a mandatory environment variable or raise ConfigurationError.
    WHY: Fail-fast during worker/API startup when the store location is missing.
    """
    import os
    from journeyx.exceptions import ConfigurationError

    value = os.getenv(name)
    if not value:
        raise ConfigurationError(f"Missing required environment variable: {name}")
    return value


def load_env_file() -> None:
    """Load environment variables from .env file if not already set.

    WHAT:
        Loads variables from a local .env file into os.environ.
        Does NOT overwrite existing environment variables.
    WHY:
        Local runs of the API and the arq worker read REDIS_URL and the
        pattern lists from the same .env without clobbering deployed values.
    """
    import logging
    from dotenv import load_dotenv

    logger = logging.getLogger(__name__)

    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")

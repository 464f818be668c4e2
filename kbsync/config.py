from pathlib import Path
import dotenv
import logging
import os
from typing import Optional
from openai import AsyncOpenAI


ROOT = Path(__file__).parent.parent

dotenv.load_dotenv(ROOT / '.env')

# Logging configuration
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name"""
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    return logger


# Constants
VALID_ENVIRONMENTS = ['production', 'staging', 'local']
DEFAULT_ENVIRONMENT = 'staging'
DEFAULT_CONFIG_PATH = 'sync_config.yaml'


def get_secret(name: str, environment: str = DEFAULT_ENVIRONMENT, required: bool = True) -> Optional[str]:
    """
    Look up a secret in the process environment.

    The environment-specific variable (e.g. ``SLACK_BOT_TOKEN_STAGING``) takes
    precedence over the plain one (``SLACK_BOT_TOKEN``).

    Args:
        name: Base variable name
        environment: The environment name ('production', 'staging', 'local')
        required: Raise when neither variable is set

    Returns:
        The secret value, or None when missing and not required

    Raises:
        ValueError: If the secret is required and missing
    """
    value = os.environ.get(f'{name}_{environment.upper()}')
    if not value:
        value = os.environ.get(name)
    if not value and required:
        raise ValueError(f'Missing {name}_{environment.upper()} or {name} environment variable')
    return value


def get_openai_client(environment: str = DEFAULT_ENVIRONMENT) -> AsyncOpenAI:
    """Get OpenAI client for the given environment"""
    api_key = get_secret('OPENAI_API_KEY', environment)
    # Retries are governed by the sync engine's retry policy
    return AsyncOpenAI(api_key=api_key, max_retries=0)


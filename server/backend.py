import logging

from .config import StorageConfig
from .database import Database
from .memory import MemoryBackend
from .storage import Backend

logger = logging.getLogger(__name__)


def create_backend(config: StorageConfig) -> Backend:
    """
    Build the storage backend named by config.backend.

    Raises:
        ValueError: Unknown backend type
    """
    if config.backend == "sqlite":
        backend = Database(config.database_url)
    elif config.backend == "memory":
        backend = MemoryBackend()
    else:
        raise ValueError(f"Unknown backend type: {config.backend} (use 'sqlite' or 'memory')")

    logger.info("Using %s backend", backend.name)
    return backend

from dataclasses import dataclass
from environs import Env


@dataclass
class JWTConfig:
    secret_key: str
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7


@dataclass
class StorageConfig:
    """ Storage backend """
    backend: str = "sqlite"   # sqlite | memory
    database_url: str = "sqlite+aiosqlite:///./quickpic.db"


@dataclass
class RelayConfig:
    """ Unacknowledged message retention, 0 disables the purge loop """
    message_retention_hours: int = 0
    purge_interval_seconds: int = 3600


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"


@dataclass
class Config:
    """ Config """
    jwt: JWTConfig
    storage: StorageConfig
    relay: RelayConfig
    server: ServerConfig


def load_config(path: str | None = None) -> Config:
    env = Env()
    env.read_env(path)

    return Config(
        jwt=JWTConfig(
            secret_key=env('SECRET_KEY', 'development-secret-change-in-production'),
            access_token_expire_minutes=env.int('ACCESS_TOKEN_EXPIRE_MINUTES', 15),
            refresh_token_expire_days=env.int('REFRESH_TOKEN_EXPIRE_DAYS', 7)
        ),
        storage=StorageConfig(
            backend=env('BACKEND_TYPE', 'sqlite').lower(),
            database_url=env('DATABASE_URL', 'sqlite+aiosqlite:///./quickpic.db')
        ),
        relay=RelayConfig(
            message_retention_hours=env.int('MESSAGE_RETENTION_HOURS', 0),
            purge_interval_seconds=env.int('PURGE_INTERVAL_SECONDS', 3600)
        ),
        server=ServerConfig(
            host=env('HOST', '0.0.0.0'),
            port=env.int('PORT', 8080),
            log_level=env('LOG_LEVEL', 'INFO').upper()
        )
    )

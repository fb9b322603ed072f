from pydantic_settings import BaseSettings
from pathlib import Path
import yaml

CONFIG_PATH = Path(__file__).resolve().parent / "application.yaml"

# application.yaml section -> {key in section: Settings field}
YAML_FIELDS = {
    "database": {
        "url": "DATABASE_URL",
        "pool_size": "DB_POOL_SIZE",
        "max_overflow": "DB_MAX_OVERFLOW",
        "pool_timeout": "DB_POOL_TIMEOUT",
        "pool_recycle": "DB_POOL_RECYCLE",
        "echo": "DB_ECHO",
    },
    "redis": {"url": "REDIS_URL"},
    "dispatch": {
        "poll_interval_sec": "POLL_INTERVAL_SEC",
        "default_ride_price": "DEFAULT_RIDE_PRICE",
    },
    "realtime": {"backend": "REALTIME_BACKEND"},
    "cache": {"backend": "CACHE_BACKEND"},
    "payments": {"capture_delay_sec": "PAYMENT_CAPTURE_DELAY_SEC"},
    "logging": {"level": "LOG_LEVEL"},
}


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://postgres@localhost:5432/unihub"
    REDIS_URL: str = "redis://localhost:6379/0"

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = -1
    DB_ECHO: bool = False

    # "memory" keeps channels/cache in-process, "redis" shares them across processes
    REALTIME_BACKEND: str = "redis"
    CACHE_BACKEND: str = "redis"

    POLL_INTERVAL_SEC: float = 60.0
    DEFAULT_RIDE_PRICE: float = 5.99
    PAYMENT_CAPTURE_DELAY_SEC: float = 1.0
    LOG_LEVEL: str = "DEBUG"

    # .env next to this file (unihub/.env)
    model_config = {"env_file": str(Path(__file__).resolve().parent / ".env")}

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings):
        # environment and .env beat values passed in from application.yaml
        return env_settings, dotenv_settings, init_settings, file_secret_settings


def read_yaml_config(path: Path = CONFIG_PATH) -> dict:
    """Flatten the known sections of application.yaml into Settings field names."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}

    values = {}
    for section, fields in YAML_FIELDS.items():
        block = raw.get(section) or {}
        for key, field in fields.items():
            if block.get(key) is not None:
                values[field] = block[key]
    return values


def load_settings(path: Path = CONFIG_PATH) -> Settings:
    return Settings(**read_yaml_config(path))


settings = load_settings()

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """
    Minichart Grid Configuration
    Process-level settings are loaded from environment variables.
    Per-user grid settings (interval, sorting, alerts...) live in the settings store instead.
    """

    # Environment
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
    DEBUG = ENVIRONMENT == "development"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Binance USD-M futures endpoints
    BINANCE_FUTURES_REST_URL = os.getenv("BINANCE_FUTURES_REST_URL", "https://fapi.binance.com")
    BINANCE_FUTURES_WS_URL = os.getenv("BINANCE_FUTURES_WS_URL", "wss://fstream.binance.com/stream")

    # Market data tuning
    HISTORY_LIMIT = max(1, int(os.getenv("HISTORY_LIMIT", "500")))
    HISTORY_CONCURRENCY = max(1, int(os.getenv("HISTORY_CONCURRENCY", "8")))
    STREAMS_PER_CONNECTION = max(1, int(os.getenv("STREAMS_PER_CONNECTION", "200")))
    WS_RECONNECT_MIN_SEC = max(0.5, float(os.getenv("WS_RECONNECT_MIN_SEC", "2")))
    WS_RECONNECT_MAX_SEC = max(WS_RECONNECT_MIN_SEC, float(os.getenv("WS_RECONNECT_MAX_SEC", "60")))

    # Settings persistence
    SETTINGS_BACKEND = os.getenv("SETTINGS_BACKEND", "json").strip().lower()
    SETTINGS_FILE = os.getenv("SETTINGS_FILE", "minichart_grid_settings.json")
    SETTINGS_NAMESPACE = os.getenv("SETTINGS_NAMESPACE", "minichart_grid_")
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Telegram Bot (optional alert sink)
    TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
    TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID")

    # HTTP server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")

    @classmethod
    def validate(cls):
        """Validate configuration on startup."""
        import logging
        logger = logging.getLogger(__name__)

        warnings = []

        if cls.SETTINGS_BACKEND not in {"memory", "json", "redis"}:
            warnings.append(f"SETTINGS_BACKEND={cls.SETTINGS_BACKEND!r} unknown (falling back to json)")
        if cls.SETTINGS_BACKEND == "memory":
            warnings.append("SETTINGS_BACKEND=memory (grid settings will not survive a restart)")
        if not cls.TELEGRAM_BOT_TOKEN or not cls.TELEGRAM_CHAT_ID:
            logger.info("Telegram credentials not set - alerts go to the log only")

        for w in warnings:
            logger.warning(f"⚠️  {w}")

        if cls.ENVIRONMENT == "production":
            logger.info("🚀 Running in PRODUCTION mode")
        else:
            logger.info("🔧 Running in DEVELOPMENT mode")

        return len(warnings) == 0

    @classmethod
    def is_production(cls) -> bool:
        return cls.ENVIRONMENT == "production"


config = Config()

import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_base_url: str = os.getenv("BOOKSHARE_API_URL", "http://localhost:5155")
    chat_hub_path: str = os.getenv("BOOKSHARE_CHAT_HUB_PATH", "/chathub")
    request_timeout: float = float(os.getenv("BOOKSHARE_REQUEST_TIMEOUT", "15"))
    connect_timeout: float = float(os.getenv("BOOKSHARE_CONNECT_TIMEOUT", "5"))

    # Read retries; mutations are never retried
    query_retry_count: int = int(os.getenv("BOOKSHARE_QUERY_RETRY_COUNT", "1"))
    retry_backoff: float = float(os.getenv("BOOKSHARE_RETRY_BACKOFF", "0.5"))

    # Notification polling
    notifications_poll_interval: float = float(os.getenv("BOOKSHARE_NOTIFICATIONS_POLL_INTERVAL", "30"))

    # Realtime chat channel
    reconnect_base_delay: float = float(os.getenv("BOOKSHARE_RECONNECT_BASE_DELAY", "1"))
    reconnect_max_delay: float = float(os.getenv("BOOKSHARE_RECONNECT_MAX_DELAY", "30"))
    max_reconnect_attempts: int = int(os.getenv("BOOKSHARE_MAX_RECONNECT_ATTEMPTS", "5"))
    hub_keepalive_interval: float = float(os.getenv("BOOKSHARE_HUB_KEEPALIVE_INTERVAL", "15"))

    # Chat
    chat_page_size: int = int(os.getenv("BOOKSHARE_CHAT_PAGE_SIZE", "50"))
    max_message_length: int = int(os.getenv("BOOKSHARE_MAX_MESSAGE_LENGTH", "2000"))
    chat_rate_limit: int = int(os.getenv("BOOKSHARE_CHAT_RATE_LIMIT", "30"))
    chat_rate_window: float = float(os.getenv("BOOKSHARE_CHAT_RATE_WINDOW", "120"))

    # Credentials
    keyring_service: str = os.getenv("BOOKSHARE_KEYRING_SERVICE", "bookshare")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "BookShare")
    app_version: str = os.getenv("APP_VERSION", "0.1.0")
    debug: bool = _env_flag("DEBUG")
    log_level: str = os.getenv("BOOKSHARE_LOG_LEVEL", "DEBUG" if _env_flag("DEBUG") else "WARNING")

    @property
    def chat_hub_url(self) -> str:
        return f"{self.api_base_url.rstrip('/')}/{self.chat_hub_path.lstrip('/')}"


settings = Settings()

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

DEFAULT_MONGODB_URI = "mongodb://localhost:27017/teleblog"
DEFAULT_MONGODB_TIMEOUT_MS = 2000
DEFAULT_DATA_DIR = os.path.join(os.getcwd(), "data")
DEFAULT_BLOG_URL_TEMPLATE = "https://{subdomain}.yourdomain.com"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000


@dataclass
class Settings:
    bot_token: str = ""
    mongodb_uri: str = DEFAULT_MONGODB_URI
    mongodb_timeout_ms: int = DEFAULT_MONGODB_TIMEOUT_MS
    data_dir: str = DEFAULT_DATA_DIR
    blog_url_template: str = DEFAULT_BLOG_URL_TEMPLATE
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = "WARNING"


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-integer %s=%r", name, raw)
        return default


def load_settings(dotenv: bool = True) -> Settings:
    """Build Settings from the environment, loading a .env file first if present."""
    if dotenv:
        load_dotenv()
    return Settings(
        bot_token=(os.getenv("BOT_TOKEN") or "").strip(),
        mongodb_uri=os.getenv("MONGODB_URI", DEFAULT_MONGODB_URI).strip(),
        mongodb_timeout_ms=_int_env("MONGODB_TIMEOUT_MS", DEFAULT_MONGODB_TIMEOUT_MS),
        data_dir=os.getenv("TELEBLOG_DATA_DIR", DEFAULT_DATA_DIR),
        blog_url_template=os.getenv("BLOG_URL_TEMPLATE", DEFAULT_BLOG_URL_TEMPLATE),
        host=os.getenv("HOST", DEFAULT_HOST),
        port=_int_env("PORT", DEFAULT_PORT),
        log_level=(os.getenv("LOG_LEVEL") or "WARNING").upper(),
    )


def configure_logging(level: str = "WARNING") -> None:
    logging.basicConfig(format=LOG_FORMAT, level=getattr(logging, level, logging.WARNING))
    # httpx logs every request at INFO, including the bot token in the URL
    logging.getLogger("httpx").setLevel(logging.WARNING)

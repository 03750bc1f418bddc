#!/usr/bin/env python3
"""
Settings and logging for the fetch proxy.

Importing this module configures the process-wide log handler once and
exposes a single validated `config` object. Values come from the process
environment, an optional `.env` file beside this module, and an optional
YAML secrets file named by SECRETS_FILE (which wins over both).
"""

import sys
from logging import getLogger, basicConfig, StreamHandler, DEBUG, INFO, WARNING, ERROR
from os import environ, path
from typing import Any, Callable, Dict, List, Optional

import yaml
from dotenv import load_dotenv

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_ALLOWED_ORIGINS = "http://localhost:3000,http://localhost:3001"
SECRETS_MAX_BYTES = 1024 * 1024

LOG_LEVELS = {
    "DEBUG": DEBUG,
    "INFO": INFO,
    "WARNING": WARNING,
    "ERROR": ERROR,
}


def _setup_global_logger():
    """Route all application and library logging to stdout.

    LOG_LEVEL picks the threshold (INFO when unset or unknown) and
    LOG_TIMESTAMPS=false drops the time prefix, which is handy when a
    supervisor already stamps each line.
    """
    level = LOG_LEVELS.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)
    fields = ["%(name)s", "%(levelname)s", "%(message)s"]
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        fields.insert(0, "%(asctime)s")

    basicConfig(
        level=level,
        format=" - ".join(fields),
        handlers=[StreamHandler(sys.stdout)],
        force=True,
    )
    # Flush per line under container runtimes; test runners swap stdout for objects without reconfigure()
    for stream in (sys.stdout, sys.stderr):
        if hasattr(stream, "reconfigure"):
            stream.reconfigure(line_buffering=True)

    # The Azure exporter is chatty at INFO
    getLogger("azure").setLevel(LOG_LEVELS.get(environ.get("AZURE_LOG_LEVEL", "WARNING").upper(), WARNING))

    return getLogger("FetchProxy")


def get_logger(name: str):
    """Return the `FetchProxy.<name>` logger for a module."""
    return getLogger(f"FetchProxy.{name}")


logger = _setup_global_logger()


class Config:
    """Validated settings for the proxy.

    Each numeric setting falls back to its default, with a warning, when the
    environment holds something unusable. A secrets file looks like:

    ```yaml
    environment:
      ALLOWED_ORIGINS: "https://reader.example.com"
      APPLICATIONINSIGHTS_CONNECTION_STRING: "InstrumentationKey=..."
    ```
    """

    def __init__(self):
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), ".env")
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded .env overrides from {dotenv_path}")
        self._apply_secrets_file(environ.get("SECRETS_FILE"))
        self._load_settings()

    def _number(self, name: str, default, minimum, cast: Callable[[str], Any]):
        """Read a numeric variable, enforcing a lower bound."""
        raw = environ.get(name)
        if raw is None or not raw.strip():
            return default
        try:
            value = cast(raw)
        except ValueError:
            logger.warning(f"{name}={raw!r} is not a number, using {default}")
            return default
        if value < minimum:
            logger.warning(f"{name}={value} is below {minimum}, using {default}")
            return default
        return value

    def _origins(self, raw: str) -> List[str]:
        """Split a comma-separated origin list, dropping blanks and trailing slashes."""
        return [item.strip().rstrip("/") for item in raw.split(",") if item.strip().rstrip("/")]

    def _load_settings(self):
        self.HOST = environ.get("HOST", "0.0.0.0")
        self.PORT = self._number("PORT", 8080, 1, int)
        if self.PORT > 65535:
            logger.warning(f"PORT={self.PORT} is out of range, using 8080")
            self.PORT = 8080
        self.APP_ENV = environ.get("APP_ENV", "development").strip().lower() or "development"
        self.IS_DEVELOPMENT = self.APP_ENV == "development"

        self.ALLOWED_ORIGINS = self._origins(environ.get("ALLOWED_ORIGINS", DEFAULT_ALLOWED_ORIGINS))
        if not self.ALLOWED_ORIGINS:
            logger.warning("ALLOWED_ORIGINS is empty; browsers on other origins will be refused")

        self.USER_AGENT = environ.get("USER_AGENT", DEFAULT_USER_AGENT)
        self.REQUEST_TIMEOUT = self._number("REQUEST_TIMEOUT", 60.0, 1.0, float)
        self.CONNECT_TIMEOUT = self._number("CONNECT_TIMEOUT", 10.0, 0.5, float)
        self.POOL_MAX_PER_HOST = self._number("POOL_MAX_PER_HOST", 10, 1, int)
        self.POOL_IDLE_TIMEOUT = self._number("POOL_IDLE_TIMEOUT", 90.0, 1.0, float)
        self.MAX_REDIRECTS = self._number("MAX_REDIRECTS", 5, 0, int)

    def _apply_secrets_file(self, secrets_path: Optional[str]):
        """Copy a YAML mapping (top level or under `environment`) into os.environ."""
        if not secrets_path:
            return

        data = self._read_yaml(secrets_path)
        if isinstance(data, dict) and isinstance(data.get("environment"), dict):
            data = data["environment"]
        if not isinstance(data, dict):
            logger.warning(f"Ignoring secrets file {secrets_path}: expected a mapping")
            return

        applied = 0
        for key, value in data.items():
            if not isinstance(key, str) or value is None:
                logger.warning(f"Ignoring secrets entry {key!r}")
                continue
            environ[key] = str(value)
            applied += 1
        logger.info(f"Applied {applied} settings from secrets file {secrets_path}")

    def _read_yaml(self, file_path: str) -> Any:
        """Parse a small YAML file, returning None if it is missing, oversized or broken."""
        try:
            size = path.getsize(file_path)
            if size > SECRETS_MAX_BYTES:
                logger.error(f"Secrets file {file_path} is {size} bytes, over the {SECRETS_MAX_BYTES} byte limit")
                return None
            with open(file_path, "r", encoding="utf-8") as f:
                return yaml.safe_load(f)
        except FileNotFoundError:
            logger.warning(f"Secrets file not found at {file_path}")
        except yaml.YAMLError as e:
            logger.error(f"Secrets file {file_path} is not valid YAML: {e}")
        except OSError as e:
            logger.error(f"Cannot read secrets file {file_path}: {e}")
        return None

    def get_config_summary(self) -> Dict[str, Any]:
        """Settings safe to log at startup."""
        return {
            "host": self.HOST,
            "port": self.PORT,
            "app_env": self.APP_ENV,
            "allowed_origins": list(self.ALLOWED_ORIGINS),
            "request_timeout": self.REQUEST_TIMEOUT,
            "connect_timeout": self.CONNECT_TIMEOUT,
            "pool_max_per_host": self.POOL_MAX_PER_HOST,
            "pool_idle_timeout": self.POOL_IDLE_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "secrets_file": bool(environ.get("SECRETS_FILE")),
        }


config = Config()

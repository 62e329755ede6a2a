import logging
import os
from pathlib import Path
from urllib.parse import urlparse
from pydantic import BaseModel
from dataclasses import dataclass, field, fields, replace
from typing import Mapping
import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[1]

logger = logging.getLogger(__name__)


class ProxySettings(BaseModel):
    server: str | None = None
    username: str | None = None
    password: str | None = None

    @property
    def url(self) -> str | None:
        """
        Full proxy URL with credentials if available, otherwise bare server.

        For aiohttp:
            proxy=self.url

        For Playwright:
            proxy=self.playwright
        """
        if self.server and self.username and self.password:
            parsed = urlparse(self.server)
            hostport = parsed.netloc or f"{parsed.hostname}:{parsed.port}"
            return f"{parsed.scheme}://{self.username}:{self.password}@{hostport}"
        return self.server

    @property
    def playwright(self) -> dict | None:
        if not self.server:
            return None
        proxy_dict = {"server": self.server}
        if self.username and self.password:
            proxy_dict["username"] = self.username
            proxy_dict["password"] = self.password
        return proxy_dict


def parse_proxy_line(line: str) -> ProxySettings | None:
    """
    Parse one proxy entry: either a bare `host:port` or a full URL with
    optional credentials. Returns None for lines that do not look like a proxy.
    """
    line = line.strip().strip('"').strip("'")
    if not line or line.startswith("#"):
        return None
    if "://" not in line:
        line = f"http://{line}"

    parsed = urlparse(line)
    if not parsed.scheme or not parsed.hostname:
        return None

    server = f"{parsed.scheme}://{parsed.hostname}"
    if parsed.port:
        server += f":{parsed.port}"

    return ProxySettings(
        server=server,
        username=parsed.username,
        password=parsed.password,
    )


def load_proxy_list_from_txt(path: str | Path | None) -> tuple[ProxySettings, ...]:
    """
    Load a newline-separated proxy list. A missing or empty file is a valid
    state and yields an empty tuple (direct connection).
    """
    if not path:
        return ()

    p = Path(path)
    if not p.is_absolute():
        p = PROJECT_ROOT / p

    if not p.exists():
        logger.warning("Proxy file not found: %s", p)
        return ()

    proxies = []
    for ln in p.read_text(encoding="utf-8").splitlines():
        proxy = parse_proxy_line(ln)
        if proxy is None:
            if ln.strip() and not ln.strip().startswith("#"):
                logger.warning("Proxy line does not look like a URL: %s", ln)
            continue
        proxies.append(proxy)

    logger.info("Loaded %d proxies from %s", len(proxies), p)
    return tuple(proxies)


@dataclass
class ScrapeConfig:
    """
    Central configuration for page acquisition.

    Values can be overridden via scrape_config.yaml at the project root and,
    for deployment-specific paths, via environment variables.
    """

    # General
    user_agent: str = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    captcha_detection_bytes: int = 4096
    proxy_file_path: str | None = None

    # HTTP client tuning
    http_total_timeout_s: float = 30.0
    http_connect_timeout_s: float = 10.0
    http_page_types: list[str] = field(default_factory=list)

    # Browser tuning
    browser_binary_path: str | None = None
    browser_headless: bool = True
    browser_block_heavy: bool = False
    browser_locale: str = "en-US"
    browser_timeout_ms: int = 60_000
    browser_implicit_wait_ms: int = 5_000
    wait_for_selector_timeout_ms: int = 45_000
    download_dir: str = "downloads"
    session_create_attempts: int = 3
    session_create_backoff_s: float = 2.0

    # Browser pool
    pool_max_sessions: int = 8
    pool_borrow_timeout_s: float = 10.0

    # Retries
    retry_max_attempts: int = 3
    retry_backoff_s: float = 30.0

    # Anti-bot signatures
    error_title_marker: str = "error"
    captcha_selectors: list[str] = field(
        default_factory=lambda: ["img[src='/captcha.gif']", "h2#challenge-running"]
    )
    error_selectors: list[str] = field(default_factory=lambda: ["div#main-message"])
    captcha_text_markers: list[str] = field(default_factory=lambda: ["are you a robot"])
    blocking_statuses: list[int] = field(default_factory=lambda: [403, 429])

    # Page cache
    page_store_path: str = "data/page_sources.jsonl"
    clean_url_domains: list[str] = field(default_factory=lambda: ["parlament.hu"])
    country_domains: dict[str, str] = field(default_factory=dict)
    stats_log_every: int = 50

    # Logging and exports
    log_level: str = "INFO"
    log_file: str | None = None
    stats_csv_name: str | None = None
    results_dir: str = "results"


def load_scrape_config(path: str | Path | None = None) -> ScrapeConfig:
    """
    Load ScrapeConfig from YAML if present; otherwise use defaults.

    By default, looks for `scrape_config.yaml` at the project root.
    """

    if path is None:
        path = PROJECT_ROOT / "scrape_config.yaml"

    path = Path(path)

    if not path.exists():
        logger.info("YAML not found at %s, using defaults", path)
        return ScrapeConfig()

    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}

    if not isinstance(data, dict):
        logger.warning("Expected mapping in %s, got %s, using defaults", path, type(data))
        return ScrapeConfig()

    allowed_keys = {f.name for f in fields(ScrapeConfig)}
    filtered = {k: v for k, v in data.items() if k in allowed_keys}

    return ScrapeConfig(**filtered)


def apply_env_overrides(config: ScrapeConfig, environ: Mapping[str, str] | None = None) -> ScrapeConfig:
    """
    Overlay deployment settings read from the environment:
    PROXY_FILE_PATH, CHROME_LOCATION and BROWSER_POOL_SIZE.
    """
    env = os.environ if environ is None else environ
    overrides = {}

    if env.get("PROXY_FILE_PATH"):
        overrides["proxy_file_path"] = env["PROXY_FILE_PATH"]
    if env.get("CHROME_LOCATION"):
        overrides["browser_binary_path"] = env["CHROME_LOCATION"]
    if env.get("BROWSER_POOL_SIZE"):
        try:
            overrides["pool_max_sessions"] = int(env["BROWSER_POOL_SIZE"])
        except ValueError:
            logger.warning("Ignoring non-integer BROWSER_POOL_SIZE=%r", env["BROWSER_POOL_SIZE"])

    return replace(config, **overrides) if overrides else config


def setup_logger(
    name: str = "legiscache",
    level: int | str = logging.INFO,
    log_file: str | Path | None = None,
) -> logging.Logger:
    """Attach console (and optionally file) handlers to the package logger."""
    log = logging.getLogger(name)
    log.setLevel(level)

    if log.hasHandlers():
        log.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
    log.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        if not log_path.is_absolute():
            log_path = PROJECT_ROOT / log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        log.addHandler(file_handler)

    return log

"""
Captcha / error page detection.

The guard looks at what a fetcher brought back and decides whether the
source is pushing back on us:
- page title containing "error"
- a captcha image or challenge header
- a browser error page (div#main-message)
- known "are you a robot" text near the top of the document
- a blocking status recorded for the main document (403, 429)
"""

import logging
from dataclasses import dataclass

from bs4 import BeautifulSoup

from .metrics import PageSnapshot
from .settings import ScrapeConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AntiBotVerdict:
    reason: str


class AntiBotGuard:
    def __init__(self, config: ScrapeConfig):
        self.title_marker = config.error_title_marker.lower()
        self.captcha_selectors = list(config.captcha_selectors)
        self.error_selectors = list(config.error_selectors)
        self.text_markers = [m.lower() for m in config.captcha_text_markers]
        self.blocking_statuses = set(config.blocking_statuses)
        self.detection_bytes = config.captcha_detection_bytes

    def inspect(self, snapshot: PageSnapshot) -> AntiBotVerdict | None:
        if snapshot.status in self.blocking_statuses:
            return self._verdict(snapshot, f"blocking status {snapshot.status}")

        soup = BeautifulSoup(snapshot.html or "", "html.parser")

        title = snapshot.title
        if title is None and soup.title is not None:
            title = soup.title.get_text()
        if title and self.title_marker and self.title_marker in title.lower():
            return self._verdict(snapshot, f"error title {title.strip()!r}")

        for selector in self.captcha_selectors:
            if soup.select_one(selector) is not None:
                return self._verdict(snapshot, f"captcha element {selector}")

        for selector in self.error_selectors:
            if soup.select_one(selector) is not None:
                return self._verdict(snapshot, f"error element {selector}")

        head = (snapshot.html or "")[: self.detection_bytes].lower()
        for marker in self.text_markers:
            if marker in head:
                return self._verdict(snapshot, f"captcha text {marker!r}")

        return None

    def _verdict(self, snapshot: PageSnapshot, reason: str) -> AntiBotVerdict:
        logger.warning("Captcha or error page on %s (%s, %s)", snapshot.url, reason, snapshot.proxy_hint)
        return AntiBotVerdict(reason)

import logging
import random
from pathlib import Path
from typing import Sequence

from .settings import ProxySettings, load_proxy_list_from_txt

logger = logging.getLogger(__name__)


class ProxySelector:
    """
    Immutable proxy list with a uniform random pick per session.

    An empty list is valid and means "connect directly".
    """

    def __init__(self, proxies: Sequence[ProxySettings] = (), rng: random.Random | None = None):
        self._proxies: tuple[ProxySettings, ...] = tuple(proxies)
        self._rng = rng or random.Random()

    @classmethod
    def from_file(cls, path: str | Path | None) -> "ProxySelector":
        return cls(load_proxy_list_from_txt(path))

    @property
    def proxies(self) -> tuple[ProxySettings, ...]:
        return self._proxies

    def __len__(self) -> int:
        return len(self._proxies)

    def next(self) -> ProxySettings | None:
        if not self._proxies:
            return None
        proxy = self._rng.choice(self._proxies)
        logger.info("Set random proxy to: %s", proxy.server)
        return proxy

import logging
from pathlib import Path
from typing import Iterator, Protocol

import pandas as pd
from pydantic import ValidationError

from .records import PageRecord
from .settings import PROJECT_ROOT, ScrapeConfig
from .utils import clean_url, uses_clean_url

logger = logging.getLogger(__name__)

RESULTS_DIR = PROJECT_ROOT / "results"


class PageStore(Protocol):
    """Cache contract every fetch goes through. A hit never touches the network."""

    def lookup(self, url: str, page_type: str | None = None) -> PageRecord | None: ...

    def store(self, record: PageRecord) -> PageRecord: ...

    def exists(self, url: str) -> bool: ...


class MemoryPageStore:
    """
    Dict-backed page store.

    Records are keyed by (page_type, url). Sources listed in
    `clean_url_domains` are matched on their clean URL instead, since their
    URLs carry per-session tokens.

    The key is unique: storing a record for a key that is already present
    keeps the first record and returns it. Two concurrent fetches of the same
    page can still both hit the network; only one of them ends up stored.
    """

    def __init__(self, clean_url_domains: list[str] | None = None):
        self.clean_url_domains = list(clean_url_domains or [])
        self._records: dict[tuple[str, str], PageRecord] = {}
        self._by_url: dict[str, list[PageRecord]] = {}
        self._by_clean_url: dict[str, PageRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[PageRecord]:
        return iter(list(self._records.values()))

    def lookup(self, url: str, page_type: str | None = None) -> PageRecord | None:
        if uses_clean_url(url, self.clean_url_domains):
            return self._by_clean_url.get(clean_url(url))
        if page_type is None:
            found = self._by_url.get(url)
            return found[0] if found else None
        return self._records.get((page_type.upper(), url))

    def exists(self, url: str) -> bool:
        if uses_clean_url(url, self.clean_url_domains):
            return clean_url(url) in self._by_clean_url
        return url in self._by_url

    def store(self, record: PageRecord) -> PageRecord:
        existing = self._existing(record)
        if existing is not None:
            logger.warning("Page already stored, keeping first copy: %s [%s]", record.url, record.page_type)
            return existing
        self._index(record)
        self._persist(record)
        logger.debug("Storing page: %s", record.url)
        return record

    def replace(self, record: PageRecord) -> PageRecord:
        """Explicit re-fetch: drop whatever is stored for the key and store `record`."""
        self._unindex(record)
        self._index(record)
        self._rewrite()
        logger.info("Replaced stored page: %s [%s]", record.url, record.page_type)
        return record

    def _existing(self, record: PageRecord) -> PageRecord | None:
        if uses_clean_url(record.url, self.clean_url_domains):
            return self._by_clean_url.get(record.clean_url or clean_url(record.url))
        return self._records.get((record.page_type, record.url))

    def _index(self, record: PageRecord) -> None:
        self._records[(record.page_type, record.url)] = record
        self._by_url.setdefault(record.url, []).append(record)
        self._by_clean_url.setdefault(record.clean_url or clean_url(record.url), record)

    def _unindex(self, record: PageRecord) -> None:
        old = self._existing(record)
        if old is None:
            return
        self._records.pop((old.page_type, old.url), None)
        remaining = [r for r in self._by_url.get(old.url, []) if r is not old]
        if remaining:
            self._by_url[old.url] = remaining
        else:
            self._by_url.pop(old.url, None)
        key = old.clean_url or clean_url(old.url)
        if self._by_clean_url.get(key) is old:
            del self._by_clean_url[key]

    def _persist(self, record: PageRecord) -> None:
        pass

    def _rewrite(self) -> None:
        pass


class JsonlPageStore(MemoryPageStore):
    """
    Page store persisted as JSON lines.

    The file is read once at start; each stored record is appended as one
    line, and the file is rewritten only on an explicit replace.
    """

    def __init__(self, path: str | Path, clean_url_domains: list[str] | None = None):
        super().__init__(clean_url_domains)
        path = Path(path)
        if not path.is_absolute():
            path = PROJECT_ROOT / path
        self.path = path
        self._load()

    @classmethod
    def from_config(cls, config: ScrapeConfig) -> "JsonlPageStore":
        return cls(config.page_store_path, config.clean_url_domains)

    def _load(self) -> None:
        if not self.path.exists():
            return
        skipped = 0
        with self.path.open(encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                if not line.strip():
                    continue
                try:
                    record = PageRecord.model_validate_json(line)
                except ValidationError as e:
                    logger.warning(
                        "Skipping unreadable stored page at %s:%d: %s", self.path, lineno, e.errors()[0]["msg"]
                    )
                    skipped += 1
                    continue
                if self._existing(record) is None:
                    self._index(record)
                else:
                    logger.debug("Skipping duplicate stored page at %s:%d", self.path, lineno)
        logger.info("Loaded %d stored pages from %s", len(self), self.path)
        # rewrite without the unreadable lines
        if skipped:
            self._rewrite()

    def _persist(self, record: PageRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(record.model_dump_json() + "\n")

    def _rewrite(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            for record in self:
                fh.write(record.model_dump_json() + "\n")
        tmp.replace(self.path)


def save_df(df: pd.DataFrame, name: str, results_dir: str | Path = RESULTS_DIR) -> Path | None:
    """Write fetch statistics to <results_dir>/<name>.csv; empty frames are skipped."""
    if df.empty:
        return None

    results_dir = Path(results_dir)
    if not results_dir.is_absolute():
        results_dir = PROJECT_ROOT / results_dir
    results_dir.mkdir(parents=True, exist_ok=True)
    out_path = results_dir / f"{name}.csv"
    df.to_csv(out_path, index=False)
    logger.info("Saved %s", out_path)
    return out_path

from datetime import date

from pydantic import BaseModel, ConfigDict, Field

from .utils import Country, clean_url


class PageRecord(BaseModel):
    """
    Cached snapshot of a fetched page plus its metadata.

    This is what every country parser reads. Once stored for a
    (page_type, url) key it is never mutated; a re-fetch replaces it
    explicitly through the store.
    """

    model_config = ConfigDict(frozen=True)

    url: str
    page_type: str
    raw_source: str
    country: Country
    collection_date: date = Field(default_factory=date.today)
    size: int = 0
    clean_url: str | None = None
    metadata: str | None = None

    @classmethod
    def build(
        cls,
        url: str,
        page_type: str,
        raw_source: str,
        country: Country,
        metadata: str | None = None,
    ) -> "PageRecord":
        return cls(
            url=url,
            page_type=page_type.upper(),
            raw_source=raw_source,
            country=country,
            size=len(raw_source),
            clean_url=clean_url(url),
            metadata=metadata,
        )

"""
Top-level run loop.

Fetch errors are turned into typed outcomes here and nowhere else. A fatal
outcome (the source is serving captchas even without proxy) stops the run:
requests not yet started are skipped and the report says why.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterable

from .errors import (
    AntiBotBlockedError,
    FetchError,
    FetchFailedError,
    PermanentFetchError,
    PoolClosedError,
    PoolExhaustedError,
)
from .records import PageRecord

if TYPE_CHECKING:
    from .coordinator import FetchCoordinator
    from .policy import FetchStrategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchRequest:
    url: str
    page_type: str
    wait_for_selector: str | None = None
    strategy: "FetchStrategy | None" = None
    metadata: str | None = None


class OutcomeStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"          # permanent error, skip this item
    EXHAUSTED = "exhausted"    # transient errors used up the retries
    BUSY = "busy"              # no browser session within the borrow timeout
    FATAL = "fatal"            # abort the whole run
    SKIPPED = "skipped"        # not attempted because the run was aborted


@dataclass
class Outcome:
    request: FetchRequest
    status: OutcomeStatus
    record: PageRecord | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.OK


@dataclass
class RunReport:
    outcomes: list[Outcome] = field(default_factory=list)
    aborted: bool = False
    fatal_reason: str | None = None

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    @property
    def records(self) -> list[PageRecord]:
        return [o.record for o in self.outcomes if o.record is not None]


async def outcome_for(coordinator: "FetchCoordinator", request: FetchRequest) -> Outcome:
    try:
        record = await coordinator.fetch(
            request.url, request.page_type, request.wait_for_selector, request.strategy, request.metadata
        )
    except AntiBotBlockedError as e:
        return Outcome(request, OutcomeStatus.FATAL, reason=str(e))
    except PoolClosedError as e:
        return Outcome(request, OutcomeStatus.FATAL, reason=str(e))
    except PoolExhaustedError as e:
        return Outcome(request, OutcomeStatus.BUSY, reason=str(e))
    except FetchFailedError as e:
        return Outcome(request, OutcomeStatus.EXHAUSTED, reason=str(e))
    except PermanentFetchError as e:
        return Outcome(request, OutcomeStatus.FAILED, reason=str(e))
    except FetchError as e:
        return Outcome(request, OutcomeStatus.FAILED, reason=f"{type(e).__name__}: {e}")
    return Outcome(request, OutcomeStatus.OK, record=record)


async def run_requests(
    coordinator: "FetchCoordinator",
    requests: Iterable[FetchRequest],
    concurrency: int = 4,
) -> RunReport:
    """
    Run requests on `concurrency` workers and collect one Outcome per request,
    in input order.
    """
    pending = list(requests)
    results: list[Outcome | None] = [None] * len(pending)
    queue: asyncio.Queue[int] = asyncio.Queue()
    for index in range(len(pending)):
        queue.put_nowait(index)

    report = RunReport()
    abort = asyncio.Event()

    async def worker() -> None:
        while True:
            try:
                index = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            request = pending[index]
            if abort.is_set():
                results[index] = Outcome(request, OutcomeStatus.SKIPPED, reason=report.fatal_reason)
                continue

            outcome = await outcome_for(coordinator, request)
            results[index] = outcome
            if outcome.status is OutcomeStatus.FATAL and not abort.is_set():
                logger.error("Aborting run: %s", outcome.reason)
                report.aborted = True
                report.fatal_reason = outcome.reason
                abort.set()
            elif outcome.status is not OutcomeStatus.OK:
                logger.warning("Skipping %s: %s", request.url, outcome.reason)

    workers = [asyncio.create_task(worker()) for _ in range(max(1, concurrency))]
    await asyncio.gather(*workers)

    report.outcomes = [o for o in results if o is not None]
    logger.info(
        "Run finished: %d ok, %d failed, %d exhausted, %d busy, %d skipped%s",
        report.count(OutcomeStatus.OK), report.count(OutcomeStatus.FAILED),
        report.count(OutcomeStatus.EXHAUSTED), report.count(OutcomeStatus.BUSY),
        report.count(OutcomeStatus.SKIPPED), " (aborted)" if report.aborted else "",
    )
    return report

"""Observation consensus.

Every external reading the pipeline acts on is fetched from several
independent requesters and reduced by a strategy:

    IdenticalAggregation  every requester must return byte-identical data
                          (canonical JSON). Used for the active-policy list.
    MedianByFields        per-field median over the requesters that reported
                          the field, with a per-field quorum. Used for
                          weather and vegetation readings.

Fetching follows the same shape as a parallel agent run: one task per
requester in a TaskGroup, each with its own timeout and exception boundary,
so one slow or broken requester never cancels the others. Whether the
surviving samples are enough is the strategy's decision, not the fetcher's.
"""

import asyncio
import json
import logging
import statistics
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel

from core.errors import ConsensusDivergenceError, QuorumNotReachedError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")
M = TypeVar("M", bound=BaseModel)

DEFAULT_TIMEOUT_SECONDS = 30


@dataclass
class ObservationSample(Generic[T]):
    """One requester's answer.

    Attributes:
        requester: Requester name, for logs.
        value: The reading, or None if the fetch failed.
        error: Failure description when value is None.
        elapsed_ms: Wall-clock fetch time.
    """

    requester: str
    value: T | None = None
    error: str | None = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ConsensusResult(Generic[T]):
    """Reduced value plus the samples it came from."""

    value: T
    samples: list[ObservationSample[T]] = field(default_factory=list)

    @property
    def contributors(self) -> int:
        return sum(1 for s in self.samples if s.ok)


class AggregationStrategy(Protocol[T]):
    """Reduces samples to one value or raises a ConsensusError."""

    def reduce(self, samples: list[ObservationSample[T]], quorum: int, label: str) -> T:
        ...


def majority(requester_count: int) -> int:
    """Smallest strict majority of requester_count."""
    return requester_count // 2 + 1


def canonical_bytes(value: Any) -> bytes:
    """Serialise value to canonical JSON bytes for identity comparison."""
    def plain(v: Any) -> Any:
        if isinstance(v, BaseModel):
            return v.model_dump(mode="json", by_alias=True)
        if isinstance(v, (list, tuple)):
            return [plain(item) for item in v]
        return v

    return json.dumps(plain(value), sort_keys=True, separators=(",", ":"), default=str).encode()


class IdenticalAggregation(Generic[T]):
    """All requesters must agree exactly.

    Attributes:
        require_all: When True (the default) a single failed requester aborts
            the reduction. When False, the agreeing requesters only need to
            reach quorum.
    """

    def __init__(self, require_all: bool = True) -> None:
        self.require_all = require_all

    def reduce(self, samples: list[ObservationSample[T]], quorum: int, label: str) -> T:
        ok = [s for s in samples if s.ok]
        failed = [s.requester for s in samples if not s.ok]

        if self.require_all and failed:
            raise QuorumNotReachedError(f"{label}: no answer from {', '.join(failed)}")
        if len(ok) < quorum or not ok:
            raise QuorumNotReachedError(f"{label}: {len(ok)} of {len(samples)} answered, quorum {quorum}")

        reference = canonical_bytes(ok[0].value)
        diverging = [s.requester for s in ok[1:] if canonical_bytes(s.value) != reference]
        if diverging:
            raise ConsensusDivergenceError(
                f"{label}: {', '.join(diverging)} disagree with {ok[0].requester}"
            )
        return ok[0].value


class MedianByFields(Generic[M]):
    """Per-field median of a pydantic model's numeric fields.

    None values are not votes. A field with fewer values than the quorum
    aborts the reduction. With an even number of values the median is the
    mean of the two middle ones.
    """

    def __init__(self, model: type[M], fields: Sequence[str]) -> None:
        self.model = model
        self.fields = tuple(fields)

    def reduce(self, samples: list[ObservationSample[M]], quorum: int, label: str) -> M:
        reduced: dict[str, float] = {}
        for name in self.fields:
            values = [
                getattr(s.value, name)
                for s in samples
                if s.ok and s.value is not None and getattr(s.value, name) is not None
            ]
            if len(values) < quorum:
                raise QuorumNotReachedError(
                    f"{label}: field '{name}' reported by {len(values)} of {len(samples)}, quorum {quorum}"
                )
            reduced[name] = statistics.median(values)
        return self.model(**reduced)


class ObservationConsensus:
    """Fans a fetch out to every requester and reduces the answers.

    Attributes:
        quorum: Minimum agreeing requesters. None means a strict majority of
            however many requesters a fetch is given.
        timeout_seconds: Per-requester timeout.
    """

    def __init__(self, quorum: int | None = None, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.quorum = quorum
        self.timeout_seconds = timeout_seconds

    async def fetch(
        self,
        requesters: Sequence[R],
        fetch_fn: Callable[[R], Awaitable[T]],
        strategy: AggregationStrategy[T],
        label: str = "observation",
    ) -> ConsensusResult[T]:
        """Fetch from every requester concurrently and reduce with strategy.

        Args:
            requesters: Independent sources. Each should have a name attribute.
            fetch_fn: Coroutine function taking one requester.
            strategy: How to combine the answers.
            label: Short description for logs and error messages.

        Returns:
            ConsensusResult with the reduced value and all samples.

        Raises:
            QuorumNotReachedError: Too few usable answers.
            ConsensusDivergenceError: Answers that must agree did not.
        """
        if not requesters:
            raise QuorumNotReachedError(f"{label}: no requesters configured")

        quorum = self.quorum if self.quorum is not None else majority(len(requesters))

        async with asyncio.TaskGroup() as tg:
            tasks = [
                tg.create_task(self._fetch_safely(requester, fetch_fn, label))
                for requester in requesters
            ]
        samples = [t.result() for t in tasks]

        value = strategy.reduce(samples, quorum, label)
        return ConsensusResult(value=value, samples=samples)

    async def _fetch_safely(
        self,
        requester: R,
        fetch_fn: Callable[[R], Awaitable[T]],
        label: str,
    ) -> ObservationSample[T]:
        """Run one fetch. Never raises; failures become an errored sample."""
        name = getattr(requester, "name", repr(requester))
        start = time.perf_counter()
        try:
            value = await asyncio.wait_for(fetch_fn(requester), timeout=self.timeout_seconds)
            return ObservationSample(requester=name, value=value, elapsed_ms=(time.perf_counter() - start) * 1000)

        except asyncio.TimeoutError:
            logger.error("%s: requester '%s' timed out after %ss.", label, name, self.timeout_seconds)
            return ObservationSample(
                requester=name,
                error=f"timed out after {self.timeout_seconds}s",
                elapsed_ms=(time.perf_counter() - start) * 1000,
            )

        except Exception as exc:
            logger.error("%s: requester '%s' failed: %s", label, name, exc)
            return ObservationSample(
                requester=name,
                error=str(exc) or type(exc).__name__,
                elapsed_ms=(time.perf_counter() - start) * 1000,
            )

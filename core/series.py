"""Per-metric append-only series with session-relative dates.

Origin rule:
    The first sample accepted in a session, across all metrics, fixes
    ``session.origin_date``. Every stored :class:`Observation` carries
    ``relative_date = sample.date - origin_date``. The origin is only
    cleared by a session-control operation on :class:`SessionContext`,
    which is always paired with :meth:`SeriesAccumulator.clear`.

Append rule:
    Series are append-only. No deduplication, no reordering, and no
    monotonicity check on ``relative_date``. A sample older than the
    origin produces a negative ``relative_date``.

State machine (per session)::

    EMPTY --first accepted sample--> ANCHORED
      ^                                  |
      +------session-control op----------+

Thread safety:
    **NOT thread-safe.** Single owner only, like the session it reads.

Example:
    >>> from core.observations import Sample
    >>> from core.session import SessionContext
    >>> session = SessionContext()
    >>> series = SeriesAccumulator(session)
    >>> series.add_observation("cpu", Sample(date=1000, value=0.5))
    >>> series.add_observation("cpu", Sample(date=1003, value=0.7))
    >>> series.get_max_relative_date("cpu")
    3
    >>> series.get_series("mem")
    ()
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from core.observations import Observation, Sample
from core.session import SessionContext


class AccumulatorState(str, Enum):
    """Anchoring state of the current session.

    States:
        EMPTY: No sample accepted yet, origin unset.
        ANCHORED: Origin fixed by the first accepted sample.
    """

    EMPTY = "EMPTY"
    ANCHORED = "ANCHORED"


class SeriesStats(BaseModel):
    """Immutable snapshot of accumulator contents.

    Attributes:
        metric_count: Number of metrics with at least one observation.
        observation_count: Total observations across all metrics.
        state: Anchoring state at snapshot time.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    metric_count: int = Field(ge=0, description="Metrics with data")
    observation_count: int = Field(ge=0, description="Observations stored")
    state: AccumulatorState = Field(description="Anchoring state")


class SeriesAccumulator:
    """Mapping from metric name to its ordered observations.

    Args:
        session: The session whose ``origin_date`` anchors every series.
    """

    __slots__ = ("_session", "_table")

    def __init__(self, session: SessionContext) -> None:
        self._session: SessionContext = session
        self._table: dict[str, list[Observation]] = {}

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_observation(self, metric: str, sample: Sample) -> None:
        """Store ``sample`` under ``metric`` relative to the session origin.

        Anchors the origin on the first accepted sample of the session,
        then creates the metric's series or appends to it.

        Args:
            metric: Metric name. New names create a new series.
            sample: Parsed sample with an absolute timestamp.
        """
        origin: int | None = self._session.origin_date
        if origin is None:
            origin = sample.date
            self._session.origin_date = origin

        observation: Observation = Observation.model_construct(
            relative_date=sample.date - origin,
            value=sample.value,
        )
        series: list[Observation] | None = self._table.get(metric)
        if series is None:
            self._table[metric] = [observation]
        else:
            series.append(observation)

    def clear(self) -> None:
        """Drop every series. The session clears its own origin."""
        self._table = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_series(self, metric: str) -> tuple[Observation, ...]:
        """Return the observations of ``metric`` in arrival order.

        Returns:
            A tuple snapshot of the series. Empty for unknown metrics.
        """
        return tuple(self._table.get(metric, ()))

    def get_max_relative_date(self, metric: str) -> int:
        """Return the relative date of the last observation of ``metric``.

        Returns:
            The last element's ``relative_date``, or ``0`` if the metric
            has no observations. ``0`` is a sentinel, not an error.
        """
        series: list[Observation] | None = self._table.get(metric)
        if not series:
            return 0
        return series[-1].relative_date

    def metric_names(self) -> list[str]:
        """Metric names in first-seen order."""
        return list(self._table)

    @property
    def state(self) -> AccumulatorState:
        if self._session.origin_date is None:
            return AccumulatorState.EMPTY
        return AccumulatorState.ANCHORED

    def stats(self) -> SeriesStats:
        return SeriesStats(
            metric_count=len(self._table),
            observation_count=sum(len(s) for s in self._table.values()),
            state=self.state,
        )

    def __contains__(self, metric: object) -> bool:
        return metric in self._table

    def __len__(self) -> int:
        return len(self._table)

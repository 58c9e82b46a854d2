"""Token-checked ingestion of raw metric batches.

``IngestionPipeline.ingest()`` is the single entry point for data:

1. A batch whose token differs from the current session token is
   discarded silently. No state changes, no error.
2. Otherwise the batch is parsed line by line and every well-formed
   sample is appended to the accumulator in line order. Malformed lines
   are dropped individually; a batch is never rejected wholesale.

Counters:
    The pipeline keeps lifetime counters for observability. They are
    never reset by session-control operations, so they describe the
    whole process lifetime rather than a single session.

Example:
    >>> from core.session import SessionContext
    >>> from core.series import SeriesAccumulator
    >>> session = SessionContext()
    >>> token = session.reset_subscriptions(1)
    >>> pipeline = IngestionPipeline(session, SeriesAccumulator(session))
    >>> pipeline.ingest("cpu", token, "1000\\t0.5\\n1001\\t0.7")
    2
    >>> pipeline.ingest("cpu", "stale", "1002\\t0.9")
    0
"""

import logging

from pydantic import BaseModel, ConfigDict, Field

from core.observations import ObservationBatch
from core.series import SeriesAccumulator
from core.session import SessionContext

logger: logging.Logger = logging.getLogger(__name__)


class PipelineStats(BaseModel):
    """Immutable snapshot of ingestion counters.

    Attributes:
        batches_accepted: Batches whose token matched the session.
        batches_stale: Batches discarded for a token mismatch.
        samples_accepted: Samples appended to the accumulator.
        lines_dropped: Malformed lines skipped inside accepted batches.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    batches_accepted: int = Field(ge=0, description="Batches ingested")
    batches_stale: int = Field(ge=0, description="Batches with a stale token")
    samples_accepted: int = Field(ge=0, description="Samples appended")
    lines_dropped: int = Field(ge=0, description="Malformed lines skipped")


class IngestionPipeline:
    """Validates batch tokens and feeds parsed samples to the accumulator.

    Args:
        session: Session holding the current token.
        accumulator: Destination for accepted samples.
    """

    def __init__(
        self,
        session: SessionContext,
        accumulator: SeriesAccumulator,
    ) -> None:
        self._session: SessionContext = session
        self._accumulator: SeriesAccumulator = accumulator

        self._batches_accepted: int = 0
        self._batches_stale: int = 0
        self._samples_accepted: int = 0
        self._lines_dropped: int = 0

    def ingest(self, metric: str, token: str, raw_text: str) -> int:
        """Ingest one raw batch for ``metric``.

        Args:
            metric: Metric the batch belongs to.
            token: Session token the batch was sent for.
            raw_text: Raw batch in the tab/newline wire format.

        Returns:
            Number of samples appended. ``0`` for a stale token.
        """
        if not self._session.matches(token):
            self._batches_stale += 1
            logger.debug(
                "Discarding %s batch for stale token %s (current=%s)",
                metric,
                token,
                self._session.token,
            )
            return 0

        batch: ObservationBatch = ObservationBatch(raw_text)
        accepted: int = 0
        for sample in batch:
            self._accumulator.add_observation(metric, sample)
            accepted += 1

        self._batches_accepted += 1
        self._samples_accepted += accepted
        self._lines_dropped += batch.line_count() - accepted
        return accepted

    def stats(self) -> PipelineStats:
        return PipelineStats(
            batches_accepted=self._batches_accepted,
            batches_stale=self._batches_stale,
            samples_accepted=self._samples_accepted,
            lines_dropped=self._lines_dropped,
        )

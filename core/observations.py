"""Observation models and the raw-batch parser for benchmark metric feeds.

This module defines the sample types that flow from the wire into the
series accumulator, and the stateless parser that turns a raw text
batch into samples.

Wire format:
    A batch is ASCII text. Records are separated by ``"\\n"`` and fields
    within a record by ``"\\t"``. Field 0 is an integer timestamp,
    field 1 is a decimal value, further fields are reserved and ignored.

Drop policy:
    Each line is parsed independently. A line yields exactly one
    :class:`Sample` iff it has at least two fields, field 0 is an ASCII
    integer and field 1 an ASCII decimal (optional exponent) that is
    finite as a float. A trailing ``"\\r"`` is ignored.
    Anything else yields nothing and never affects sibling lines.

Hot-path construction:
    Samples and observations are created with ``model_construct()`` to
    skip Pydantic validation, because the values have already been
    checked by the parser. Regular construction (with validation) is
    safe for tests and external data.

Example:
    >>> from core.observations import parse_observations
    >>> list(parse_observations("1000\\t0.5\\nbad\\n1001\\t0.7\\textra"))
    [Sample(date=1000, value=0.5), Sample(date=1001, value=0.7)]
"""

import math
import re
from typing import Iterator

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Wire delimiters
# ---------------------------------------------------------------------------

RECORD_SEPARATOR: str = "\n"
"""Separates records within a raw batch."""

FIELD_SEPARATOR: str = "\t"
"""Separates fields within a record."""

_DATE_FIELD: re.Pattern[str] = re.compile(r"[+-]?[0-9]+")
"""ASCII integer timestamp."""

_VALUE_FIELD: re.Pattern[str] = re.compile(
    r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?"
)
"""ASCII decimal value with optional exponent."""


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class Sample(BaseModel):
    """A single parsed record with its absolute timestamp.

    Attributes:
        date: Absolute integer timestamp from field 0 of the record.
        value: Finite floating-point value from field 1 of the record.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    date: int = Field(description="Absolute timestamp (field 0)")
    value: float = Field(allow_inf_nan=False, description="Sample value (field 1)")


class Observation(BaseModel):
    """A sample stored in a metric series, relative to the session origin.

    ``relative_date`` is ``date - origin_date`` where ``origin_date`` is
    the timestamp of the first sample accepted in the session. It is
    negative when an out-of-order sample predates the origin; that is
    an allowed value.

    Attributes:
        relative_date: Offset from the session origin.
        value: Sample value.

    Example:
        >>> Observation(relative_date=0, value=0.5)
        Observation(relative_date=0, value=0.5)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    relative_date: int = Field(description="Offset from the session origin")
    value: float = Field(description="Sample value")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def parse_line(line: str) -> Sample | None:
    """Parse one record into a :class:`Sample`.

    Args:
        line: A single record without the record separator.

    Returns:
        The parsed sample, or ``None`` if the record is malformed
        (fewer than two fields, non-integer timestamp, non-numeric or
        non-finite value).
    """
    fields: list[str] = line.removesuffix("\r").split(FIELD_SEPARATOR)
    if len(fields) < 2:
        return None
    if not (_DATE_FIELD.fullmatch(fields[0]) and _VALUE_FIELD.fullmatch(fields[1])):
        return None
    date: int = int(fields[0])
    value: float = float(fields[1])
    if not math.isfinite(value):
        return None
    return Sample.model_construct(date=date, value=value)


def parse_observations(raw_text: str) -> Iterator[Sample]:
    """Lazily parse a raw batch into samples, in line order.

    Malformed lines are skipped individually. The generator has no
    side effects, so calling it again on the same text yields the
    same samples.

    Args:
        raw_text: Raw batch text (zero or more records).

    Yields:
        One :class:`Sample` per well-formed line.
    """
    for line in raw_text.split(RECORD_SEPARATOR):
        sample: Sample | None = parse_line(line)
        if sample is not None:
            yield sample


class ObservationBatch:
    """Restartable view of a raw batch.

    Every iteration re-parses the stored text, so the batch can be
    walked any number of times. ``line_count`` includes records the
    grammar rejects.

    Args:
        raw_text: Raw batch text.

    Example:
        >>> batch = ObservationBatch("1\\t2.0\\nnope")
        >>> [s.date for s in batch], [s.date for s in batch]
        ([1], [1])
        >>> batch.line_count()
        2
    """

    __slots__ = ("_raw_text",)

    def __init__(self, raw_text: str) -> None:
        self._raw_text: str = raw_text

    def __iter__(self) -> Iterator[Sample]:
        return parse_observations(self._raw_text)

    def line_count(self) -> int:
        """Number of records in the batch, including malformed ones."""
        return self._raw_text.count(RECORD_SEPARATOR) + 1

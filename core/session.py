"""Identity of the active benchmark session.

The session token correlates a subscription request with the data
deliveries that answer it. Any message carrying a token other than the
current one belongs to a stale or superseded session and is dropped by
the caller.

Loaded flag:
    ``mark_batch_finished()`` records that the server finished the
    initial metrics batch for the current token, and ``change_session()``
    clears it. ``reset_subscriptions()`` leaves it untouched and
    ``is_loaded()`` always reports ``True``. Both behaviours are kept as
    observed. Read the raw flag via :attr:`SessionContext.loaded`.

Origin date:
    ``origin_date`` is ``None`` until the first sample of the session is
    accepted by :class:`core.series.SeriesAccumulator`, which is the only
    writer. Session-control operations clear it.

Example:
    >>> from core.session import SessionContext
    >>> session = SessionContext()
    >>> session.reset_subscriptions(42)
    >>> session.bench_id
    42
    >>> session.matches(session.token)
    True
    >>> session.matches("other")
    False
"""

import logging
import uuid
from typing import Union

from pydantic import BaseModel, ConfigDict, Field

logger: logging.Logger = logging.getLogger(__name__)

BenchId = Union[int, str]
"""Opaque benchmark identifier as assigned by the server."""


def generate_token() -> str:
    """Return a fresh random session token."""
    return uuid.uuid4().hex


class SessionSnapshot(BaseModel):
    """Immutable point-in-time copy of a :class:`SessionContext`.

    Attributes:
        bench_id: Current benchmark id, ``None`` before the first
            session-control operation.
        token: Current session token, ``None`` before the first
            session-control operation.
        origin_date: Timestamp of the first accepted sample, or ``None``.
        loaded: Raw loaded flag (see module docstring).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    bench_id: BenchId | None = Field(default=None, description="Benchmark id")
    token: str | None = Field(default=None, description="Session token")
    origin_date: int | None = Field(
        default=None,
        description="Timestamp of the first accepted sample of the session",
    )
    loaded: bool = Field(default=False, description="Raw batch-finished flag")


class SessionContext:
    """Mutable holder of the current session identity.

    **NOT thread-safe.** Owned by a single :class:`core.metrics_store.MetricsStore`
    and mutated only from its consumer path.
    """

    __slots__ = ("bench_id", "token", "origin_date", "loaded")

    def __init__(self) -> None:
        self.bench_id: BenchId | None = None
        self.token: str | None = None
        self.origin_date: int | None = None
        self.loaded: bool = False

    def reset_subscriptions(self, bench_id: BenchId) -> str:
        """Start a new session for ``bench_id`` with a fresh token.

        Clears the origin date. The loaded flag is left as is.

        Args:
            bench_id: Benchmark to track from now on.

        Returns:
            The newly generated token.
        """
        self.bench_id = bench_id
        self.token = generate_token()
        self.origin_date = None
        logger.info("Session reset (bench=%s, token=%s)", bench_id, self.token)
        return self.token

    def change_session(self, bench_id: BenchId, token: str) -> None:
        """Adopt an externally supplied bench id and token.

        Used to resume a known session. Clears the origin date and the
        loaded flag.
        """
        self.bench_id = bench_id
        self.token = token
        self.origin_date = None
        self.loaded = False
        logger.info("Session changed (bench=%s, token=%s)", bench_id, token)

    def matches(self, token: str | None) -> bool:
        return token == self.token

    def mark_batch_finished(self, token: str) -> bool:
        """Set the loaded flag if ``token`` is the current session token.

        Returns:
            ``True`` if the flag was set, ``False`` for a stale token.
        """
        if not self.matches(token):
            logger.debug("Ignoring batch-finished for stale token %s", token)
            return False
        self.loaded = True
        return True

    def is_loaded(self) -> bool:
        return True

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            bench_id=self.bench_id,
            token=self.token,
            origin_date=self.origin_date,
            loaded=self.loaded,
        )

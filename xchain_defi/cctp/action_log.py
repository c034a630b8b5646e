"""Human readable progress log of a transfer attempt.

The orchestrator appends an :py:class:`ActionLogEvent` for every phase
transition. Callers consume them as a stream with :py:meth:`ActionLog.subscribe`
or look at the whole history with :py:attr:`ActionLog.events`.

Entries are never edited. A ``pending`` step is closed by appending a
``success`` or ``error`` event with the same ``step`` name.
"""

import asyncio
import datetime
import enum
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class ActionStatus(enum.Enum):
    pending = "pending"
    success = "success"
    error = "error"


@dataclass(slots=True, frozen=True)
class ActionLogEvent:
    """One line in the action log."""

    #: Transfer attempt this event belongs to
    attempt_id: str

    #: Machine readable phase name, e.g. ``leg1_submit``
    step: str

    message: str

    status: ActionStatus

    timestamp: datetime.datetime = field(default_factory=lambda: datetime.datetime.now(datetime.timezone.utc))

    #: Explorer link for transactions
    link: str | None = None

    link_text: str | None = None

    #: Seconds since the matching pending event
    duration: float | None = None

    def __str__(self):
        line = f"[{self.status.value}] {self.message}"
        if self.link:
            line += f" ({self.link})"
        return line


#: Marker put on subscriber queues when the log is closed
END_OF_LOG = None


class ActionLog:
    """Append-only event log with streaming subscribers."""

    def __init__(self, attempt_id: str):
        self.attempt_id = attempt_id
        self._events: list[ActionLogEvent] = []
        self._subscribers: list[asyncio.Queue] = []
        self._started: dict[str, datetime.datetime] = {}
        self.closed = False

    @property
    def events(self) -> list[ActionLogEvent]:
        """Snapshot of all events so far."""
        return list(self._events)

    def append(
        self,
        step: str,
        message: str,
        status: ActionStatus,
        link: str | None = None,
        link_text: str | None = None,
    ) -> ActionLogEvent:
        assert not self.closed, f"Action log of {self.attempt_id} is closed"

        now = datetime.datetime.now(datetime.timezone.utc)
        duration = None
        if status == ActionStatus.pending:
            self._started[step] = now
        elif step in self._started:
            duration = (now - self._started.pop(step)).total_seconds()

        event = ActionLogEvent(
            attempt_id=self.attempt_id,
            step=step,
            message=message,
            status=status,
            timestamp=now,
            link=link,
            link_text=link_text,
            duration=duration,
        )
        self._events.append(event)

        match status:
            case ActionStatus.error:
                logger.warning("%s: %s", self.attempt_id, event)
            case _:
                logger.info("%s: %s", self.attempt_id, event)

        for queue in self._subscribers:
            queue.put_nowait(event)
        return event

    def pending(self, step: str, message: str, **kwargs) -> ActionLogEvent:
        return self.append(step, message, ActionStatus.pending, **kwargs)

    def success(self, step: str, message: str, **kwargs) -> ActionLogEvent:
        return self.append(step, message, ActionStatus.success, **kwargs)

    def error(self, step: str, message: str, **kwargs) -> ActionLogEvent:
        return self.append(step, message, ActionStatus.error, **kwargs)

    def subscribe(self) -> asyncio.Queue:
        """Get a queue receiving every future event, then :py:data:`END_OF_LOG`."""
        queue = asyncio.Queue()
        if self.closed:
            queue.put_nowait(END_OF_LOG)
        else:
            self._subscribers.append(queue)
        return queue

    def close(self):
        """No more events. Wakes up all subscribers."""
        if self.closed:
            return
        self.closed = True
        for queue in self._subscribers:
            queue.put_nowait(END_OF_LOG)
        self._subscribers.clear()

    def reopen(self):
        """Allow a resumed attempt to continue its history."""
        self.closed = False

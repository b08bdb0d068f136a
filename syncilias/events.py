"""Structured progress events emitted by the synchronization core.

The core never prints anything itself. Everything a user might want to see
is sent to an :class:`EventSink`; the default sink renders the events with
:mod:`logging` and keeps them off any active tqdm progress bar.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from tqdm import tqdm

logger = logging.getLogger(__name__)


@dataclass
class NodeDiscovered:
    kind: str
    path: str
    url: Optional[str] = None


@dataclass
class JobStarted:
    kind: str
    path: str
    decision: str


@dataclass
class JobDone:
    kind: str
    path: str
    ok: bool
    error_kind: Optional[str] = None
    message: str = ""


@dataclass
class SyncWarning:
    message: str


@dataclass
class FatalError:
    message: str
    error_kind: str = "error"


class EventSink:
    def emit(self, event) -> None:
        raise NotImplementedError


class LoggingEventSink(EventSink):
    def emit(self, event) -> None:
        if isinstance(event, NodeDiscovered):
            logger.debug(f"Found {event.kind} {event.path}")
        elif isinstance(event, JobStarted):
            logger.info(f"Syncing {event.kind} {event.path} [{event.decision}]")
        elif isinstance(event, JobDone):
            if event.ok:
                logger.debug(f"Done {event.path}")
            else:
                self._write(
                    f"Error: syncing {event.path} failed [{event.error_kind}]: {event.message}"
                )
        elif isinstance(event, SyncWarning):
            self._write(f"Warning: {event.message}")
        elif isinstance(event, FatalError):
            self._write(f"Fatal: {event.message}")
            logger.critical(event.message)

    def _write(self, line: str) -> None:
        # tqdm.write keeps running progress bars intact
        tqdm.write(line)


@dataclass
class CollectingEventSink(EventSink):
    """Keeps every event; handy for --dry-run and tests"""

    events: List[object] = field(default_factory=list)

    def emit(self, event) -> None:
        self.events.append(event)

    def of_type(self, event_type) -> List:
        return [e for e in self.events if isinstance(e, event_type)]

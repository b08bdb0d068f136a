import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from syncilias.errors import ReconcileError
from syncilias.events import EventSink, LoggingEventSink, SyncWarning
from syncilias.filetree import EXPANDABLE_KINDS, Kind, Node, NodeState, sanitize
from syncilias.ignore import IgnoreMatcher

logger = logging.getLogger(__name__)

OVERVIEW_NAMES = {Kind.COURSE: "course.html", Kind.FOLDER: "folder.html"}


class Decision(Enum):
    SKIP = "skip"
    FETCH = "fetch"
    REFRESH = "refresh"


class JobKind(Enum):
    FILE = "file"
    THREAD = "thread"
    RECORDED_LECTURE = "recorded lecture"
    OVERVIEW = "overview page"
    LINK = "weblink"


JOB_KINDS = {
    Kind.FILE: JobKind.FILE,
    Kind.THREAD: JobKind.THREAD,
    Kind.RECORDED_LECTURE: JobKind.RECORDED_LECTURE,
    Kind.LINK: JobKind.LINK,
}


@dataclass
class SyncJob:
    node: Node
    target: Path
    decision: Decision
    kind: JobKind
    # re-validate an existing recording instead of downloading it
    check_only: bool = False

    @property
    def display_path(self) -> str:
        return str(self.target)


@dataclass
class Plan:
    jobs: List[SyncJob] = field(default_factory=list)
    # parents always come before their children
    directories: List[Path] = field(default_factory=list)
    failures: List[Tuple[str, ReconcileError]] = field(default_factory=list)

    @property
    def pending(self) -> List[SyncJob]:
        return [j for j in self.jobs if j.decision != Decision.SKIP]


class Namer:
    """Local name of a remote object, before collision handling"""

    def __init__(self, course_names: Optional[Dict[str, str]] = None) -> None:
        self.course_names = course_names or {}

    def local_name(self, node: Node) -> str:
        name = node.name
        if node.type == Kind.COURSE:
            # courses can be renamed by display name or by ref id
            name = self.course_names.get(name, self.course_names.get(str(node.id), name))
        return sanitize(name)


class Reconciler:
    """Maps the crawled tree onto the output directory and plans the jobs"""

    def __init__(
        self,
        output_dir: Path,
        ignore: Optional[IgnoreMatcher] = None,
        namer: Optional[Namer] = None,
        events: Optional[EventSink] = None,
        force: bool = False,
        check_videos: bool = False,
        save_ilias_pages: bool = False,
        skip_files: bool = False,
    ) -> None:
        self.output_dir = output_dir
        self.ignore = ignore or IgnoreMatcher()
        self.namer = namer or Namer()
        self.events = events or LoggingEventSink()
        self.force = force
        self.check_videos = check_videos
        self.save_ilias_pages = save_ilias_pages
        self.skip_files = skip_files

    def reconcile(self, root: Node) -> Plan:
        for name, display_names in root.remove_children_nameclashes(self.namer.local_name):
            self.events.emit(
                SyncWarning(
                    f"Name collision for {name!r} between {', '.join(map(repr, display_names))}, "
                    "appending an id suffix"
                )
            )
        plan = Plan()
        self._overview(root, self.output_dir, plan)
        self._visit(root, plan)
        logger.info(f"Planned {len(plan.pending)} of {len(plan.jobs)} jobs")
        return plan

    def _decide(self, target: Path) -> Decision:
        if not target.exists():
            return Decision.FETCH
        if self.force:
            return Decision.REFRESH
        return Decision.SKIP

    def _overview(self, node: Node, directory: Path, plan: Plan) -> None:
        if not self.save_ilias_pages or "page" not in node.metadata:
            return
        name = OVERVIEW_NAMES.get(node.type)
        if name is None:
            return
        target = directory / name
        plan.jobs.append(SyncJob(node, target, self._decide(target), JobKind.OVERVIEW))

    def _visit(self, node: Node, plan: Plan) -> None:
        for child in node.children:
            if child.excluded or child.type in (Kind.UNSUPPORTED, Kind.DESKTOP):
                continue
            if not child.local_name:
                path = "/".join(child.get_path()[1:])
                error = ReconcileError(f"cannot derive a file name from {child.name!r}")
                plan.failures.append((path, error))
                self.events.emit(SyncWarning(f"skipping {child.type.value} {path}: {error}"))
                continue

            relative = child.local_path()
            if self.ignore.is_excluded(relative, child.is_dir):
                # the name only became final after collision handling
                child.excluded = True
                continue
            target = self.output_dir / relative

            if child.type in EXPANDABLE_KINDS:
                # disabled or failed expansions are not mirrored
                if child.state != NodeState.EXPANDED:
                    continue
                plan.directories.append(target)
                self._overview(child, target, plan)
                self._visit(child, plan)
            elif child.type == Kind.THREAD:
                decision = self._decide_thread(child, target)
                plan.jobs.append(SyncJob(child, target, decision, JobKind.THREAD))
            elif child.type == Kind.FILE:
                if self.skip_files:
                    continue
                plan.jobs.append(SyncJob(child, target, self._decide(target), JobKind.FILE))
            elif child.type == Kind.RECORDED_LECTURE:
                decision = self._decide(target)
                check_only = False
                if decision == Decision.SKIP and self.check_videos:
                    decision = Decision.REFRESH
                    check_only = True
                plan.jobs.append(
                    SyncJob(child, target, decision, JobKind.RECORDED_LECTURE, check_only)
                )
            else:
                decision = self._decide(target)
                plan.jobs.append(SyncJob(child, target, decision, JOB_KINDS[child.type]))

    def _decide_thread(self, node: Node, target: Path) -> Decision:
        if not target.exists():
            return Decision.FETCH
        if self.force:
            return Decision.REFRESH
        if not target.is_dir():
            return Decision.REFRESH
        saved = sum(1 for p in target.iterdir() if p.suffix == ".html")
        if saved < node.metadata.get("posts", 0):
            return Decision.FETCH
        return Decision.SKIP

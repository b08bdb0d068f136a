import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from syncilias.crawler import Crawler
from syncilias.errors import ConfigError
from syncilias.events import EventSink, LoggingEventSink
from syncilias.filetree import Node
from syncilias.ignore import IgnoreMatcher
from syncilias.ratelimit import RateLimiter
from syncilias.reconcile import Decision, Namer, Plan, Reconciler
from syncilias.scheduler import JobResult, Scheduler
from syncilias.session import Credentials, IliasSession, SessionStore
from syncilias.strategies import FfmpegMuxer, Retriever
from syncilias.urls import DEFAULT_BASE_URL

logger = logging.getLogger(__name__)


def check_config(config: Dict[str, Any]) -> Path:
    """Validate the option values and prepare the output directory"""
    for key in ("jobs", "rate"):
        value = config.get(key, 1)
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            raise ConfigError(f"{key} must be a positive integer, got {value!r}")
    course_names = config.get("course_names", {})
    if not isinstance(course_names, dict):
        raise ConfigError("course_names must be a mapping of course names to folder names")

    output = Path(config.get("output", ".")).expanduser()
    try:
        output.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"cannot create output directory {output}: {e}") from e
    if not os.access(output, os.W_OK):
        raise ConfigError(f"output directory {output} is not writable")
    return output


class SyncIlias:
    def __init__(
        self,
        config: Dict[str, Any],
        credentials: Optional[Credentials] = None,
        events: Optional[EventSink] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        muxer: Optional[FfmpegMuxer] = None,
    ) -> None:
        self.config = config
        self.output = check_config(config)
        self.events = events or LoggingEventSink()
        jobs = config.get("jobs", 1)

        self.limiter = RateLimiter(config.get("rate", 8))
        self.session = IliasSession(
            config.get("base_url") or DEFAULT_BASE_URL,
            self.limiter,
            credentials,
            proxy=config.get("proxy"),
            transport=transport,
        )
        self.session_store = SessionStore(self.output / ".iliassession")
        self.ignore = IgnoreMatcher(self.output, self.events)
        self.namer = Namer(config.get("course_names"))
        self.crawler = Crawler(
            self.session,
            self.ignore,
            self.events,
            local_name=self.namer.local_name,
            jobs=jobs,
            content_tree=config.get("content_tree", False),
            forum=config.get("forum", False),
            no_videos=config.get("no_videos", False),
            save_ilias_pages=config.get("save_ilias_pages", False),
        )
        self.reconciler = Reconciler(
            self.output,
            self.ignore,
            self.namer,
            self.events,
            force=config.get("force", False),
            check_videos=config.get("check_videos", False),
            save_ilias_pages=config.get("save_ilias_pages", False),
            skip_files=config.get("skip_files", False),
        )
        self.retriever = Retriever(
            self.session,
            self.events,
            combine_videos=config.get("combine_videos", False),
            muxer=muxer,
            progress=config.get("progress", True),
        )
        self.scheduler = Scheduler(self.retriever, jobs, self.events)

        self.root_node: Optional[Node] = None
        self.plan: Optional[Plan] = None
        self.results: List[JobResult] = []

    async def __aenter__(self) -> "SyncIlias":
        await self.session.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            if self.config.get("keep_session"):
                self.session.persist(self.session_store)
        finally:
            await self.session.__aexit__(exc_type, exc_val, exc_tb)

    async def login(self) -> None:
        """Log in, or reuse the saved session with --keep-session"""
        if self.config.get("keep_session") and self.session.restore(self.session_store):
            # validity is only known with the first request; it logs in again if needed
            return
        await self.session.login()

    async def sync(self) -> Node:
        """Retrieves the tree of remote objects"""
        self.ignore.load()
        if self.config.get("sync_url"):
            root = self.crawler.url_root(self.config["sync_url"])
        elif self.config.get("all"):
            root = self.crawler.memberships_root()
        else:
            root = self.crawler.desktop_root()
        self.root_node = await self.crawler.crawl(root)
        return self.root_node

    def reconcile(self) -> Plan:
        if self.root_node is None:
            raise RuntimeError("Root node is missing. Did you call sync()?")
        self.plan = self.reconciler.reconcile(self.root_node)
        return self.plan

    async def download_all_files(self) -> List[JobResult]:
        plan = self.plan if self.plan is not None else self.reconcile()
        for directory in plan.directories:
            directory.mkdir(parents=True, exist_ok=True)
        self.results = await self.scheduler.run(plan.jobs)
        return self.results

    def shutdown(self) -> None:
        self.scheduler.shutdown()

    def summary(self) -> List[str]:
        lines = []
        done = [r for r in self.results if r.ok and r.job.decision != Decision.SKIP]
        skipped = [r for r in self.results if r.job.decision == Decision.SKIP]
        failed = [r for r in self.results if not r.ok]
        lines.append(f"{len(done)} synced, {len(skipped)} up to date, {len(failed)} failed")
        for path, error in self.crawler.failures:
            lines.append(f"  failed to list {path or '/'} [{error.kind}]: {error}")
        if self.plan is not None:
            for path, error in self.plan.failures:
                lines.append(f"  skipped {path} [{error.kind}]: {error}")
        for result in failed:
            lines.append(f"  failed {result.job.target} [{result.error_kind}]: {result.message}")
        return lines

import asyncio
import logging
import shutil
import tempfile
import urllib.parse
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from tqdm import tqdm

from syncilias import pages
from syncilias.errors import HttpError, JobError, NetworkError
from syncilias.events import EventSink, LoggingEventSink, SyncWarning
from syncilias.filetree import sanitize
from syncilias.reconcile import Decision, JobKind, SyncJob
from syncilias.session import IliasSession

logger = logging.getLogger(__name__)


def write_atomic(path: Path, text: str) -> None:
    tmp = path.with_name(path.name + ".temp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)


class FfmpegMuxer:
    """Combines the streams of a recording into one file with ffmpeg"""

    def __init__(self, ffmpeg: str = "ffmpeg") -> None:
        self.ffmpeg = ffmpeg

    async def combine(self, inputs: List[Path], output: Path) -> None:
        args: List[str] = ["-y"]
        for path in inputs:
            args += ["-i", str(path)]
        args += ["-c", "copy"]
        for i in range(len(inputs)):
            args += ["-map", str(i)]
        combined = inputs[0].parent / f"combined{output.suffix}"
        args.append(str(combined))

        logger.info(f"Combining {len(inputs)} streams into {output}")
        try:
            process = await asyncio.create_subprocess_exec(
                self.ffmpeg,
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise JobError(f"{self.ffmpeg} not found, is ffmpeg installed?") from e
        _, stderr = await process.communicate()
        if process.returncode != 0:
            tail = stderr.decode(errors="replace").strip().splitlines()[-1:]
            raise JobError(f"ffmpeg exited with {process.returncode}: {' '.join(tail)}")
        shutil.move(str(combined), str(output))


class Retriever:
    """Executes sync jobs, one strategy per job kind"""

    block_size = 1024 * 8

    def __init__(
        self,
        session: IliasSession,
        events: Optional[EventSink] = None,
        combine_videos: bool = False,
        muxer: Optional[FfmpegMuxer] = None,
        progress: bool = True,
    ) -> None:
        self.session = session
        self.events = events or LoggingEventSink()
        self.combine_videos = combine_videos
        self.muxer = muxer or FfmpegMuxer()
        self.progress = progress
        self.strategies: Dict[JobKind, Callable[[SyncJob], Awaitable[None]]] = {
            JobKind.FILE: self.download_file,
            JobKind.THREAD: self.download_thread,
            JobKind.RECORDED_LECTURE: self.download_lecture,
            JobKind.OVERVIEW: self.write_overview,
            JobKind.LINK: self.resolve_link,
        }

    async def retrieve(self, job: SyncJob) -> None:
        await self.strategies[job.kind](job)

    def _absolute(self, href: str, base: Optional[str] = None) -> str:
        return urllib.parse.urljoin(base or self.session.base_url, href)

    async def download(self, url: str, dest: Path) -> None:
        """Download to ``dest`` with a progress bar, resuming a partial download"""
        resume_size = 0
        headers = {}
        tmp_dest = dest.with_name(dest.name + ".temp")
        if tmp_dest.exists():
            resume_size = tmp_dest.stat().st_size
            headers = {"Range": f"bytes={resume_size}-"}

        async with self.session.stream(url, headers=headers) as response:
            if resume_size and response.status_code != 206:
                # the server ignored the range, start over
                resume_size = 0
            logger.info(f"Downloading {dest}")
            total_size_in_bytes = int(response.headers.get("content-length", 0)) + resume_size
            with tqdm(
                total=total_size_in_bytes,
                unit="iB",
                unit_scale=True,
                desc=dest.name,
                leave=False,
                disable=not self.progress,
            ) as progress_bar:
                if resume_size:
                    progress_bar.update(resume_size)
                with tmp_dest.open("ab" if resume_size else "wb") as file:
                    async for data in response.aiter_bytes(self.block_size):
                        file.write(data)
                        progress_bar.update(len(data))
        tmp_dest.replace(dest)

    async def download_file(self, job: SyncJob) -> None:
        if not job.node.url:
            raise JobError("file without url")
        await self.download(job.node.url, job.target)

    async def download_thread(self, job: SyncJob) -> None:
        job.target.mkdir(parents=True, exist_ok=True)
        overwrite = job.decision == Decision.REFRESH
        url: Optional[str] = job.node.url
        seen = set()
        while url and url not in seen:
            seen.add(url)
            soup = await self.session.get_html(url)
            try:
                posts, next_page = pages.parse_thread_page(soup)
            except ValueError as e:
                raise JobError(str(e)) from e
            for post in posts:
                path = job.target / sanitize(post.file_name)
                if overwrite or not path.exists():
                    write_atomic(path, pages.wrap_html(post.html))
                attachments = [
                    (pages.image_file_name(post.id, src), self._absolute(src, url))
                    for src in post.images
                ] + [
                    (f"{post.id}_{name}", self._absolute(href, url))
                    for name, href in post.attachments
                ]
                for name, attachment_url in attachments:
                    dest = job.target / sanitize(name)
                    if dest.exists() and not overwrite:
                        continue
                    try:
                        await self.download(attachment_url, dest)
                    except (NetworkError, HttpError) as e:
                        self.events.emit(SyncWarning(f"could not download {dest}: {e}"))
            url = self._absolute(next_page, url) if next_page else None

    async def _streams(self, job: SyncJob) -> List[str]:
        if not job.node.url:
            raise JobError("recording without url")
        markup = await self.session.fetch(job.node.url)
        try:
            streams = pages.parse_paella_streams(markup)
        except ValueError as e:
            raise JobError(str(e)) from e
        return [self._absolute(s, job.node.url) for s in streams]

    async def download_lecture(self, job: SyncJob) -> None:
        streams = await self._streams(job)
        if job.check_only:
            await self._check_lecture(job, streams)
            return

        if len(streams) == 1:
            await self.download(streams[0], job.target)
        elif self.combine_videos:
            with tempfile.TemporaryDirectory() as tmp:
                parts = []
                for i, url in enumerate(streams, start=1):
                    part = Path(tmp) / f"Stream{i}.mp4"
                    await self.download(url, part)
                    parts.append(part)
                await self.muxer.combine(parts, job.target)
        else:
            job.target.mkdir(exist_ok=True)
            for i, url in enumerate(streams, start=1):
                await self.download(url, job.target / f"Stream{i}.mp4")

    async def _check_lecture(self, job: SyncJob, streams: List[str]) -> None:
        if len(streams) == 1:
            local = [(streams[0], job.target)]
        elif job.target.is_dir():
            local = [
                (url, job.target / f"Stream{i}.mp4")
                for i, url in enumerate(streams, start=1)
            ]
        else:
            # combined recordings can't be compared to their sources
            logger.debug(f"Not checking combined recording {job.target}")
            return
        for url, path in local:
            if not path.is_file():
                continue
            response = await self.session.head(url)
            remote_size = int(response.headers.get("content-length", 0))
            if remote_size and remote_size != path.stat().st_size:
                self.events.emit(
                    SyncWarning(f"{path} was updated, consider moving the outdated file")
                )

    async def write_overview(self, job: SyncJob) -> None:
        html = pages.insert_base_href(job.node.metadata["page"], self.session.base_url)
        write_atomic(job.target, html)

    async def resolve_link(self, job: SyncJob) -> None:
        if not job.node.url:
            raise JobError("weblink without url")
        response = await self.session.head(job.node.url, check_status=False)
        final_url = str(response.url)
        if not final_url.startswith(self.session.base_url):
            write_atomic(job.target, final_url + "\n")
            return

        # a list of links shown by ILIAS itself
        soup = await self.session.get_html(final_url)
        links, problems = pages.parse_link_list(soup, self.session.base_url)
        for problem in problems:
            self.events.emit(SyncWarning(f"{job.node.name}: {problem}"))
        job.target.mkdir(exist_ok=True)
        for name, url in links:
            response = await self.session.head(url.url, check_status=False)
            name = sanitize(name) or sanitize(url.object_id())
            write_atomic(job.target / name, str(response.url) + "\n")

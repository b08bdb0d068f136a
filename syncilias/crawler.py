import asyncio
import logging
from pathlib import PurePosixPath
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from syncilias import pages
from syncilias.errors import ConfigError, CrawlError, FetchError
from syncilias.events import EventSink, LoggingEventSink, NodeDiscovered, SyncWarning
from syncilias.filetree import EXPANDABLE_KINDS, Kind, Node, NodeState, Source
from syncilias.ignore import IgnoreMatcher
from syncilias.pages import ListedItem
from syncilias.session import IliasSession
from syncilias.urls import IliasUrl, classify

logger = logging.getLogger(__name__)

# collapsed sessions are expanded one per page load
MAX_EXPAND_ROUNDS = 32


def unique_names(items: List[ListedItem]) -> List[ListedItem]:
    """Number repeated names: sheet.pdf, sheet2.pdf, sheet3.pdf, ..."""
    seen: Dict[str, int] = {}
    for item in items:
        count = seen.get(item.name, 0) + 1
        seen[item.name] = count
        if count > 1:
            path = PurePosixPath(item.name)
            suffix = path.suffix if path.stem else ""
            item.name = f"{item.name[: len(item.name) - len(suffix)]}{count}{suffix}"
    return items


class Crawler:
    """Builds the tree of remote objects reachable from a root.

    Every object is listed at most once per crawl, keyed by its remote id.
    Objects excluded by the ignore rules stay in the tree (marked as
    excluded) but are never requested, and an excluded copy of an object
    does not hide its other copies.
    """

    def __init__(
        self,
        session: IliasSession,
        ignore: Optional[IgnoreMatcher] = None,
        events: Optional[EventSink] = None,
        local_name: Callable[[Node], str] = lambda node: node.sanitized_name,
        jobs: int = 1,
        content_tree: bool = False,
        forum: bool = False,
        no_videos: bool = False,
        save_ilias_pages: bool = False,
    ) -> None:
        self.session = session
        self.ignore = ignore or IgnoreMatcher()
        self.events = events or LoggingEventSink()
        self.local_name = local_name
        self.content_tree = content_tree
        self.forum = forum
        self.no_videos = no_videos
        self.save_ilias_pages = save_ilias_pages
        self.failures: List[Tuple[str, CrawlError]] = []
        self._visited: Set[str] = set()
        # the node listed for each visited id
        self._holders: Dict[str, Node] = {}
        self._semaphore = asyncio.Semaphore(jobs)

    # Roots

    def desktop_root(self) -> Node:
        return Node(
            "",
            "desktop",
            Kind.DESKTOP,
            self.session.url(pages.DESKTOP_PATH),
            source=Source.DESKTOP,
        )

    def memberships_root(self) -> Node:
        return Node(
            "",
            "memberships",
            Kind.DESKTOP,
            self.session.url(pages.MEMBERSHIPS_PATH),
            source=Source.MEMBERSHIPS,
        )

    def url_root(self, url: str) -> Node:
        """Mirror the contents of a single course or folder"""
        ilias_url = IliasUrl.from_href(url, self.session.base_url)
        kind = classify(ilias_url)
        if kind not in EXPANDABLE_KINDS:
            raise ConfigError(f"cannot sync {url}: it is a {kind.value}")
        return Node("", ilias_url.object_id(), kind, ilias_url.url, source=Source.URL)

    # Bookkeeping

    def _claim(self, node: Node) -> bool:
        """Mark the id of a node as visited, False if it already was"""
        if node.id in self._visited:
            return False
        self._visited.add(node.id)
        self._holders[node.id] = node
        return True

    def relative_path(self, node: Node) -> PurePosixPath:
        parts = []
        cur = node
        while cur.parent is not None:
            parts.insert(0, self.local_name(cur))
            cur = cur.parent
        return PurePosixPath(*parts)

    def _placement(self, node: Node) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
        ids = []
        cur = node
        while cur.parent is not None:
            ids.insert(0, str(cur.id))
            cur = cur.parent
        return self.relative_path(node).parts, tuple(ids)

    def _warn(self, message: str) -> None:
        self.events.emit(SyncWarning(message))

    def _report(self, node: Node, parsed: Tuple[List[ListedItem], List[str]]) -> List[ListedItem]:
        items, problems = parsed
        for problem in problems:
            self._warn(f"{node.name}: {problem}")
        return items

    # Crawling

    async def crawl(self, root: Node) -> Node:
        """Expand everything reachable from ``root``.

        An object linked from several places is listed once and kept at a
        single place, the one with the smallest local path. Which listing
        answered first does not matter.
        """
        self._claim(root)
        if self.content_tree:
            # the course tree endpoint only answers in tree mode
            await self._set_tree_mode("tree")
        try:
            pending = [root]
            while pending:
                await asyncio.gather(*(self._expand(n) for n in pending))
                while self._settle(root):
                    pass
                pending = [n for n in self._unexpanded(root) if self._claim(n)]
        finally:
            if self.content_tree:
                await self._set_tree_mode("flat")
        return root

    async def _set_tree_mode(self, mode: str) -> None:
        try:
            await self.session.fetch(self.session.url(pages.TREE_MODE_PATH.format(mode=mode)))
        except FetchError as e:
            self._warn(f"could not switch content tree mode to {mode}: {e}")

    def _should_expand(self, node: Node) -> bool:
        if node.excluded or node.type not in EXPANDABLE_KINDS:
            return False
        if node.type == Kind.FORUM and not self.forum:
            return False
        if node.type == Kind.LECTURE_SERIES and self.no_videos:
            return False
        return True

    async def _expand(self, node: Node) -> None:
        path = self.relative_path(node)
        node.state = NodeState.EXPANDING
        self.ignore.add_directory(path)
        try:
            async with self._semaphore:
                try:
                    items = await self._list(node)
                except ValueError as e:
                    raise CrawlError(f"unreadable page: {e}") from e
        except (FetchError, CrawlError) as e:
            node.state = NodeState.FAILED
            error = e if isinstance(e, CrawlError) else CrawlError(str(e))
            self.failures.append((str(path), error))
            self._warn(f"could not list {node.type.value} {path}: {e}")
            return
        node.state = NodeState.EXPANDED

        children = []
        for item in items:
            child = self._add_child(node, item)
            if child is None or not self._should_expand(child):
                continue
            if self._claim(child):
                children.append(child)
            else:
                logger.debug(f"Already visited {child.url}")
        await asyncio.gather(*(self._expand(c) for c in children))

    def _add_child(self, node: Node, item: ListedItem) -> Optional[Node]:
        if item.kind == Kind.DESKTOP:
            # dashboard links inside listings
            return None
        source = Source.LISTING
        if node.parent is None and node.source in (Source.DESKTOP, Source.MEMBERSHIPS):
            source = node.source
        elif self.content_tree and node.type == Kind.COURSE:
            source = Source.TREE
        child = node.add_child(
            item.name,
            item.url.object_id(),
            item.kind,
            url=item.url.url,
            source=source,
            metadata=item.metadata,
        )
        if child is None:
            return None
        path = self.relative_path(child)
        self.events.emit(NodeDiscovered(child.type.value, str(path), child.url))
        if child.type == Kind.UNSUPPORTED:
            logger.info(f"Ignored unsupported object {path} ({child.url})")
        elif self.ignore.is_excluded(path, child.is_dir):
            child.excluded = True
        return child

    # Cross-linked objects

    def _visible(self, node: Node) -> Iterator[Node]:
        for child in node.children:
            if child.excluded or child.type == Kind.UNSUPPORTED:
                continue
            yield child
            yield from self._visible(child)

    def _unexpanded(self, root: Node) -> List[Node]:
        return [
            n
            for n in self._visible(root)
            if n.state == NodeState.PENDING and n.id not in self._visited and self._should_expand(n)
        ]

    def _settle(self, root: Node) -> bool:
        """Keep a single occurrence of one object linked from several places.

        Returns False once every object appears only once.
        """
        occurrences: Dict[str, List[Node]] = {}
        for node in self._visible(root):
            occurrences.setdefault(node.id, []).append(node)

        candidates = []
        for node_id, nodes in occurrences.items():
            holder = self._holders.get(node_id)
            if holder is root:
                # links back to the root
                candidates.append(((), nodes, None, holder))
                continue
            canonical = min(nodes, key=self._placement)
            if len(nodes) > 1 or (holder is not None and holder is not canonical):
                candidates.append((self._placement(canonical), nodes, canonical, holder))
        if not candidates:
            return False

        _, nodes, canonical, holder = min(candidates, key=lambda c: c[0])
        if canonical is None:
            for node in nodes:
                node.detach()
            return True
        if holder is not None and holder is not canonical:
            logger.debug(f"Moving {self.relative_path(holder)} to {self.relative_path(canonical)}")
            canonical.take_contents(holder)
            self._holders[canonical.id] = canonical
            self._reapply_ignore(canonical)
        for node in nodes:
            if node is not canonical:
                node.detach()
        return True

    def _reapply_ignore(self, node: Node) -> None:
        """Check the ignore rules again after a subtree moved"""
        self.ignore.add_directory(self.relative_path(node))
        for child in node.children:
            if child.type == Kind.UNSUPPORTED:
                continue
            child.excluded = self.ignore.is_excluded(self.relative_path(child), child.is_dir)
            if not child.excluded and child.children:
                self._reapply_ignore(child)

    async def _list(self, node: Node) -> List[ListedItem]:
        if node.type == Kind.DESKTOP:
            soup = await self.session.get_html(node.url)
            return self._report(node, pages.parse_container_items(soup, self.session.base_url))
        if node.type == Kind.COURSE and self.content_tree:
            return await self._list_course_tree(node)
        if node.type in (Kind.COURSE, Kind.FOLDER):
            return await self._list_container(node)
        if node.type == Kind.EXERCISE:
            soup = await self.session.get_html(node.url)
            files = self._report(node, pages.parse_exercise_files(soup, self.session.base_url))
            return unique_names(files)
        if node.type == Kind.FORUM:
            return await self._list_forum(node)
        if node.type == Kind.LECTURE_SERIES:
            return await self._list_lectures(node)
        raise CrawlError(f"cannot expand a {node.type.value}")

    async def _list_container(self, node: Node, soup=None) -> List[ListedItem]:
        if soup is None:
            soup = await self.session.get_html(node.url)
        seen = set()
        for _ in range(MAX_EXPAND_ROUNDS):
            href = pages.find_expand_link(soup)
            if href is None or href in seen:
                break
            seen.add(href)
            soup = await self.session.get_html(IliasUrl.from_href(href, self.session.base_url).url)
        if self.save_ilias_pages:
            text = pages.main_text(soup)
            if text is not None:
                node.metadata["page"] = text
        return self._report(node, pages.parse_container_items(soup, self.session.base_url))

    async def _list_course_tree(self, node: Node) -> List[ListedItem]:
        markup = await self.session.fetch(node.url)
        soup = pages.soupify(markup)
        cmd_node = pages.find_cmd_node(markup)
        ref_id = IliasUrl(node.url).ref_id
        if cmd_node is not None and ref_id is not None:
            tree_url = pages.content_tree_url(self.session.base_url, ref_id, cmd_node)
            try:
                tree = await self.session.get_html(tree_url)
            except FetchError as e:
                reason = str(e)
            else:
                if self.save_ilias_pages:
                    text = pages.main_text(soup)
                    if text is not None:
                        node.metadata["page"] = text
                return self._report(node, pages.parse_content_tree(tree, self.session.base_url))
        else:
            reason = "can't find cmdNode"
        if pages.has_join_button(soup):
            # groups we are not a member of
            logger.info(f"Skipping {node.name}, not a member")
            return []
        self._warn(f"{node.name}: falling back to incomplete course content extractor! ({reason})")
        return await self._list_container(node, soup)

    async def _list_forum(self, node: Node) -> List[ListedItem]:
        soup = await self.session.get_html(node.url)
        href = pages.find_link_containing(soup, pages.FULL_TABLE_MARKER)
        if href is None:
            if pages.is_empty_table(soup):
                return []
            raise CrawlError("unable to find full thread list link")
        soup = await self.session.get_html(IliasUrl.from_href(href, self.session.base_url).url)
        threads = self._report(node, pages.parse_forum_threads(soup, self.session.base_url))
        if pages.has_more_table_pages(soup):
            self._warn(f"{node.name}: ignoring older threads")
        return threads

    async def _list_lectures(self, node: Node) -> List[ListedItem]:
        ref_id = IliasUrl(node.url).ref_id
        if ref_id is None:
            raise CrawlError("lecture series without ref_id")
        soup = await self.session.get_html(pages.lecture_list_url(self.session.base_url, ref_id))
        href = pages.find_link_containing(soup, pages.FULL_TABLE_MARKER)
        if href is None:
            if pages.is_empty_table(soup):
                return []
            raise CrawlError("video list link not found")
        full_url = pages.full_lecture_table_url(href, self.session.base_url)
        logger.debug(f"Rewrote video list to {full_url}")
        soup = await self.session.get_html(full_url)
        entries, problems = pages.parse_lecture_table(soup)
        for problem in problems:
            self._warn(f"{node.name}: {problem}")
        lectures = []
        for title, href in entries:
            try:
                url = IliasUrl.from_href(href, self.session.base_url)
            except ValueError as e:
                self._warn(f"{node.name}: skipped recording {title} ({e})")
                continue
            lectures.append(ListedItem(f"{title}.mp4", url, Kind.RECORDED_LECTURE, {"title": title}))
        return lectures

import base64
import hashlib
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, List, Optional, Tuple

# Characters that are illegal in file names on at least one common filesystem
INVALID_CHARS = frozenset('"*:<>?/\\|')
MAX_NAME_BYTES = 255


class Kind(Enum):
    DESKTOP = "personal desktop"
    COURSE = "course"
    FOLDER = "folder"
    FILE = "file"
    EXERCISE = "exercise"
    FORUM = "forum"
    THREAD = "thread"
    LECTURE_SERIES = "lecture series"
    RECORDED_LECTURE = "recorded lecture"
    LINK = "weblink"
    UNSUPPORTED = "unsupported"


# Kinds that are represented by a directory on disk
DIRECTORY_KINDS = frozenset(
    {
        Kind.DESKTOP,
        Kind.COURSE,
        Kind.FOLDER,
        Kind.EXERCISE,
        Kind.FORUM,
        Kind.THREAD,
        Kind.LECTURE_SERIES,
    }
)

# Kinds whose children are discovered by the crawler
EXPANDABLE_KINDS = frozenset(
    {
        Kind.DESKTOP,
        Kind.COURSE,
        Kind.FOLDER,
        Kind.EXERCISE,
        Kind.FORUM,
        Kind.LECTURE_SERIES,
    }
)


class Source(Enum):
    DESKTOP = "desktop"
    MEMBERSHIPS = "memberships"
    TREE = "content tree"
    URL = "url"
    LISTING = "listing"


class NodeState(Enum):
    PENDING = "pending"
    EXPANDING = "expanding"
    EXPANDED = "expanded"
    FAILED = "failed"


def sanitize(name: str) -> str:
    name = "".join("-" if s in INVALID_CHARS else s for s in name)
    name = "".join(s for s in name if s.isprintable())
    name = name.strip()
    # "." and ".." would escape the mirrored tree
    if name.strip(".") == "":
        return ""
    return shorten(name)


def shorten(name: str, limit: int = MAX_NAME_BYTES) -> str:
    """Cut a name down to ``limit`` bytes, keeping its extension"""
    if len(name.encode("utf-8")) <= limit:
        return name
    path = PurePosixPath(name)
    suffix = path.suffix if len(path.suffix) <= 16 else ""
    stem = name[: len(name) - len(suffix)]
    budget = limit - len(suffix.encode("utf-8"))
    while len(stem.encode("utf-8")) > budget:
        stem = stem[:-1]
    return stem.rstrip() + suffix


def disambiguate(name: str, id) -> str:
    # urlsafe base64 of the id hash, so the suffix is stable across runs
    filename = PurePosixPath(name)
    suffix = filename.suffix if filename.stem else ""
    stem = name[: len(name) - len(suffix)]
    return (
        stem
        + "_"
        + base64.urlsafe_b64encode(
            hashlib.md5(str(id).encode("utf-8")).hexdigest().encode("utf-8")
        ).decode()[:10]
        + suffix
    )


class Node:
    def __init__(
        self,
        name: str,
        id,
        type: Kind,
        url: Optional[str] = None,
        parent: Optional["Node"] = None,
        source: Source = Source.LISTING,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.name = name
        self.id = id
        self.url = url
        self.type = type
        self.parent = parent
        self.source = source
        self.metadata: Dict[str, Any] = metadata or {}
        self.children: List[Node] = []
        self.state = NodeState.PENDING
        # Excluded by an ignore rule; kept in the tree so the crawl result is complete
        self.excluded = False
        # Final local name, assigned by the reconciler
        self.local_name: Optional[str] = None

    def __repr__(self):
        return f"Node(name={self.name}, id={self.id}, url={self.url}, type={self.type})"

    @property
    def is_dir(self) -> bool:
        return self.type in DIRECTORY_KINDS

    @property
    def sanitized_name(self) -> str:
        return sanitize(self.name)

    def add_child(
        self,
        name: str,
        id,
        type: Kind,
        url: Optional[str] = None,
        source: Source = Source.LISTING,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional["Node"]:
        # Check for duplicate ids and just ignore those nodes:
        if any(c.id == id for c in self.children):
            return None

        temp = Node(name, id, type, url=url, parent=self, source=source, metadata=metadata)
        self.children.append(temp)
        return temp

    def get_path(self) -> List[str]:
        ret = []
        cur: Optional[Node] = self
        while cur is not None:
            ret.insert(0, cur.name)
            cur = cur.parent
        return ret

    def local_path(self) -> PurePosixPath:
        """Path relative to the output directory, root excluded"""
        parts = []
        cur: Optional[Node] = self
        while cur is not None and cur.parent is not None:
            parts.insert(0, cur.local_name or cur.sanitized_name)
            cur = cur.parent
        return PurePosixPath(*parts)

    def detach(self) -> None:
        if self.parent is not None:
            self.parent.children.remove(self)
            self.parent = None

    def take_contents(self, other: "Node") -> None:
        """Move the listed children and listing state of ``other`` here"""
        for child in other.children:
            child.parent = self
        self.children.extend(other.children)
        other.children = []
        self.state, other.state = other.state, NodeState.PENDING
        for key, value in other.metadata.items():
            self.metadata.setdefault(key, value)

    def walk(self) -> Iterable["Node"]:
        """Parent-before-child traversal of the whole subtree"""
        yield self
        for child in self.children:
            yield from child.walk()

    def list_files(self, root: Optional[PurePosixPath] = None) -> Iterable[PurePosixPath]:
        if not root:
            root = PurePosixPath("/")
        for node in self.walk():
            if node is not self and not node.excluded:
                yield root / node.local_path()

    def remove_children_nameclashes(
        self, local_name=lambda node: node.sanitized_name
    ) -> List[Tuple[str, List[str]]]:
        """Give every child a unique local name.

        Children whose local names collide get the hash of their id appended.
        Returns a list of ``(clashing local name, display names)`` pairs.
        Recurses into the whole subtree.
        """
        clashes = []
        by_name: Dict[str, List[Node]] = {}
        for child in self.children:
            child.local_name = local_name(child)
            by_name.setdefault(child.local_name.casefold(), []).append(child)

        for siblings in by_name.values():
            if len(siblings) < 2:
                continue
            clashes.append((siblings[0].local_name, [s.name for s in siblings]))
            for s in siblings:
                s.local_name = disambiguate(s.local_name, s.id)

        for child in self.children:
            # recurse whole tree
            clashes.extend(child.remove_children_nameclashes(local_name))
        return clashes

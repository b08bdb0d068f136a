import urllib.parse
from typing import Dict, Optional

from syncilias.filetree import Kind

DEFAULT_BASE_URL = "https://ilias.studium.kit.edu/"

# goto.php?target=<prefix>_<ref id>[_...]
GOTO_TARGETS = {
    "crs": Kind.COURSE,
    "grp": Kind.COURSE,
    "fold": Kind.FOLDER,
    "frm": Kind.FORUM,
    "exc": Kind.EXERCISE,
    "webr": Kind.LINK,
    "xoct": Kind.LECTURE_SERIES,
}

# baseClass is *sometimes* in CamelCase, keys are lower case
BASE_CLASSES = {
    "ilexercisehandlergui": Kind.EXERCISE,
    "illinkresourcehandlergui": Kind.LINK,
    "ilobjplugindispatchgui": Kind.LECTURE_SERIES,
    "ilpersonaldesktopgui": Kind.DESKTOP,
    "ildashboardgui": Kind.DESKTOP,
    "ilmembershipoverviewgui": Kind.DESKTOP,
}

# commands that show an object rather than one of its parts
NAVIGATION_CMDS = {None, "view", "render", "frameset", "showThreads", "showSummary"}


class IliasUrl:
    """An absolute ILIAS URL together with the query parameters ILIAS routes by"""

    def __init__(self, url: str) -> None:
        self.url = url
        split = urllib.parse.urlsplit(url)
        self.path = split.path
        self.params: Dict[str, str] = {
            k: v for k, v in urllib.parse.parse_qsl(split.query, keep_blank_values=True)
        }

    @classmethod
    def from_href(cls, href: str, base_url: str = DEFAULT_BASE_URL) -> "IliasUrl":
        return cls(urllib.parse.urljoin(base_url, href.strip()))

    def __repr__(self):
        return f"IliasUrl({self.url})"

    def __eq__(self, other):
        return isinstance(other, IliasUrl) and other.url == self.url

    def __hash__(self):
        return hash(self.url)

    def param(self, name: str) -> Optional[str]:
        return self.params.get(name)

    @property
    def base_class(self) -> str:
        return self.params.get("baseClass", "")

    @property
    def cmd(self) -> Optional[str]:
        return self.params.get("cmd")

    @property
    def cmd_class(self) -> Optional[str]:
        return self.params.get("cmdClass")

    @property
    def cmd_node(self) -> Optional[str]:
        return self.params.get("cmdNode")

    @property
    def thr_pk(self) -> Optional[str]:
        return self.params.get("thr_pk")

    @property
    def target(self) -> Optional[str]:
        return self.params.get("target")

    @property
    def is_goto(self) -> bool:
        return self.path.endswith("goto.php")

    @property
    def ref_id(self) -> Optional[str]:
        ref_id = self.params.get("ref_id")
        if ref_id:
            return ref_id
        if self.target:
            parts = self.target.split("_")
            if len(parts) > 1 and parts[1].isdigit():
                return parts[1]
        return None

    def object_id(self) -> str:
        """Stable identifier of the object this URL points to"""
        if self.thr_pk:
            return f"thr_{self.thr_pk}"
        ref_id = self.ref_id
        # download commands carry the ref_id of their container
        if ref_id and (self.is_goto or self.cmd in NAVIGATION_CMDS):
            return ref_id
        return self.url

    def with_params(self, **params: str) -> "IliasUrl":
        """Copy of this URL with some query parameters replaced or added"""
        split = urllib.parse.urlsplit(self.url)
        query = dict(self.params)
        query.update(params)
        return IliasUrl(
            urllib.parse.urlunsplit(split._replace(query=urllib.parse.urlencode(query)))
        )


def classify(url: IliasUrl) -> Kind:
    """Guess the kind of object a link points to from its routing parameters"""
    if url.thr_pk:
        return Kind.THREAD

    if url.is_goto:
        target = url.target or ""
        prefix = target.split("_")[0]
        if prefix == "file":
            # without the "download" suffix it is a page with metadata
            return Kind.FILE if target.endswith("download") else Kind.UNSUPPORTED
        return GOTO_TARGETS.get(prefix, Kind.UNSUPPORTED)

    if url.cmd == "showThreads":
        return Kind.FORUM

    base_class = url.base_class.lower()
    if base_class == "ilrepositorygui":
        if url.cmd in ("view", "render"):
            return Kind.FOLDER
        if url.cmd is None:
            return Kind.COURSE
        return Kind.UNSUPPORTED
    return BASE_CLASSES.get(base_class, Kind.UNSUPPORTED)

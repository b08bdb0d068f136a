"""Parsers for the ILIAS pages syncilias understands.

Every function here is pure: it takes markup (or a parsed soup) and returns
plain data, so the crawler and the download strategies never touch selectors
directly.
"""
import json
import re
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup as bs
from bs4 import Tag

from syncilias.filetree import Kind
from syncilias.urls import IliasUrl, classify

DESKTOP_PATH = "ilias.php?baseClass=ilDashboardGUI&cmd=jumpToSelectedItems"
MEMBERSHIPS_PATH = "ilias.php?baseClass=ilmembershipoverviewgui"
TREE_MODE_PATH = "ilias.php?baseClass=ilRepositoryGUI&cmd=frameset&set_mode={mode}&ref_id=1"

NO_ENTRIES = "Keine Einträge"
FULL_TABLE_MARKER = "trows=800"
EXERCISE_DOWNLOAD_CMDS = {
    "downloadFile": "file",
    "downloadGlobalFeedbackFile": "solution",
    "downloadFeedbackFile": "feedback",
}

CMD_NODE_REGEX = re.compile(r"cmdNode=uf:\w\w")
EXPAND_LINK_REGEX = re.compile(r"expand=\d")
IMAGE_SRC_REGEX = re.compile(r"\./data/produktiv/mobs/mm_(\d+)/([^?]+).+")
XOCT_REGEX = re.compile(
    r"<script>\s+xoctPaellaPlayer\.init\(([\s\S]+)\)\s+</script>", re.MULTILINE
)


def soupify(markup) -> bs:
    return bs(markup, features="lxml")


@dataclass
class ListedItem:
    name: str
    url: IliasUrl
    kind: Kind
    metadata: Dict[str, Any] = field(default_factory=dict)


def is_error_page(soup: bs) -> bool:
    return soup.select_one("div.alert-danger") is not None


def is_login_page(soup: bs) -> bool:
    return (
        soup.select_one('form[name="formlogin"]') is not None
        or soup.select_one('form[name="login_form"]') is not None
    )


def _link_name(link: Tag) -> str:
    return link.get_text().replace("/", "-").strip()


def _item_from_link(link: Tag, base_url: str, item: Optional[Tag] = None) -> ListedItem:
    name = _link_name(link)
    url = IliasUrl.from_href(link["href"], base_url)
    kind = classify(url)
    metadata: Dict[str, Any] = {}

    if kind == Kind.THREAD:
        name = url.thr_pk or name
    elif kind == Kind.FILE and item is not None:
        # properties: extension, size, version (the latter only for updated files)
        props = [p.get_text().strip() for p in item.select("span.il_ItemProperty")]
        if len(props) > 2 and props[2].startswith("Version: "):
            version = props[2][len("Version: ") :]
            metadata["version"] = version
            name += f"_v{version}"
        if props and props[0]:
            metadata["extension"] = props[0]
            name = f"{name}.{props[0]}"
    return ListedItem(name, url, kind, metadata)


def _bad_link(link: Tag, error: ValueError) -> str:
    return f"skipped unreadable link {link['href']!r} ({error})"


def parse_container_items(soup: bs, base_url: str) -> Tuple[List[ListedItem], List[str]]:
    """Items of a course, folder, desktop or membership listing

    Returns the items and warnings about links that could not be read.
    """
    items = []
    warnings = []
    for item in soup.select("div.il_ContainerListItem"):
        link = item.select_one("a.il_ContainerItemTitle")
        # items without links are ignored
        if link is None or not link.get("href"):
            continue
        try:
            items.append(_item_from_link(link, base_url, item))
        except ValueError as e:
            warnings.append(_bad_link(link, e))
    return items, warnings


def find_expand_link(soup: bs) -> Optional[str]:
    """Link that expands a collapsed session in a folder, if any"""
    for link in soup.find_all("a", href=True):
        if EXPAND_LINK_REGEX.search(link["href"]):
            return link["href"]
    return None


def main_text(soup: bs) -> Optional[str]:
    """Custom text at the top of a course or folder page"""
    container = soup.select_one("#ilContentContainer")
    if container is None:
        return None
    first = container.find(True)
    if first is not None and "ilContainerBlock" in (first.get("class") or []):
        # first element is the content overview => no custom text
        return None
    inner = "".join(str(c) for c in container.contents)
    # shorter snippets are layout leftovers, not content
    if len(inner) <= 40:
        return None
    return inner


def find_cmd_node(markup: str) -> Optional[str]:
    match = CMD_NODE_REGEX.search(markup)
    if not match:
        return None
    return match.group(0)[len("cmdNode=") :]


def has_join_button(soup: bs) -> bool:
    return soup.select_one('input[name="cmd[join]"]') is not None


def content_tree_url(base_url: str, ref_id: str, cmd_node: str) -> str:
    query = urllib.parse.urlencode(
        {
            "ref_id": ref_id,
            "cmdClass": "ilobjcoursegui",
            "cmd": "showRepTree",
            "cmdNode": cmd_node,
            "baseClass": "ilRepositoryGUI",
            "cmdMode": "asynch",
            "exp_cmd": "getNodeAsync",
            "node_id": f"exp_node_rep_exp_{ref_id}",
            "exp_cont": "il_expl2_jstree_cont_rep_exp",
            "searchterm": "",
        }
    )
    return urllib.parse.urljoin(base_url, f"ilias.php?{query}")


def parse_content_tree(soup: bs, base_url: str) -> Tuple[List[ListedItem], List[str]]:
    items = []
    warnings = []
    for link in soup.find_all("a"):
        # links without href are disabled courses
        if not link.get("href"):
            continue
        try:
            items.append(_item_from_link(link, base_url))
        except ValueError as e:
            warnings.append(_bad_link(link, e))
    return items, warnings


def find_link_containing(soup: bs, marker: str) -> Optional[str]:
    for link in soup.find_all("a", href=True):
        if marker in link["href"]:
            return link["href"]
    return None


def is_empty_table(soup: bs) -> bool:
    cell = soup.find("td")
    return cell is not None and NO_ENTRIES in cell.get_text()


def parse_forum_threads(soup: bs, base_url: str) -> Tuple[List[ListedItem], List[str]]:
    """Threads of a forum table, with their post count

    Returns the threads and warnings about rows that could not be read.
    """
    threads = []
    warnings = []
    for row in soup.find_all("tr"):
        if "hidden-print" in (row.get("class") or []):
            # thread count
            continue
        if row.find("th") is not None:
            continue
        cells = row.find_all("td", recursive=False)
        if len(cells) != 6:
            warnings.append(f"unusual table row ({len(cells)} cells)")
            continue
        link = cells[1].find("a", href=True)
        if link is None:
            warnings.append("thread link not found")
            continue
        try:
            url = IliasUrl.from_href(link["href"], base_url)
        except ValueError as e:
            warnings.append(_bad_link(link, e))
            continue
        if not url.thr_pk:
            warnings.append(f"thr_pk not found for thread {link['href']}")
            continue
        try:
            posts = int(cells[3].get_text().split()[0])
        except (IndexError, ValueError):
            warnings.append(f"parsing post count failed for thread {url.thr_pk}")
            continue
        title = link.get_text().strip()
        threads.append(
            ListedItem(
                f"{url.thr_pk}_{title}",
                url,
                Kind.THREAD,
                {"posts": posts, "title": title},
            )
        )
    return threads, warnings


def has_more_table_pages(soup: bs) -> bool:
    return bool(soup.select("div.ilTableNav > table > tbody > tr > td > a"))


@dataclass
class Post:
    id: str
    author: str
    title: str
    html: str
    images: List[str] = field(default_factory=list)
    attachments: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def file_name(self) -> str:
        return f"{self.id}_{self.author}_{self.title}.html"


def _post_author(text: str) -> str:
    parts = [p.strip() for p in text.strip().split("|")]
    if len(parts) == 2:
        # pseudonymous forum
        return parts[0]
    if len(parts) == 3:
        return parts[1] if parts[1] != "Pseudonym" else parts[0]
    raise ValueError(f"author data in unknown format: {text!r}")


def parse_thread_page(soup: bs) -> Tuple[List[Post], Optional[str]]:
    """Posts of one thread page and the href of the next page, if any"""
    posts = []
    for row in soup.select(".ilFrmPostRow"):
        title_tag = row.select_one(".ilFrmPostTitle")
        author_tag = row.select_one("span.small")
        container = row.select_one(".ilFrmPostContentContainer")
        if title_tag is None or author_tag is None or container is None:
            raise ValueError("forum post without title, author or content")
        link = container.find("a", id=True)
        if link is None:
            raise ValueError("post link not found")
        post = Post(
            id=link["id"],
            author=_post_author(author_tag.get_text()),
            title=title_tag.get_text().strip(),
            html="".join(str(c) for c in container.contents),
        )
        for image in container.find_all("img"):
            if image.get("src"):
                post.images.append(image["src"])
        attachments = container.select_one(".ilFrmPostAttachmentsContainer")
        if attachments is not None:
            for attachment in attachments.find_all("a", href=True):
                if "cmd=deliverZipFile" in attachment["href"]:
                    # all attachments as one archive, the single files are listed too
                    continue
                post.attachments.append((attachment.get_text().strip(), attachment["href"]))
        posts.append(post)

    next_page = None
    table = soup.find("table")
    if table is not None:
        page_links = table.select("tbody tr td a")
        if page_links and page_links[-1].get_text().strip() == ">>":
            next_page = page_links[-1].get("href")
    return posts, next_page


def image_file_name(post_id: str, src: str) -> str:
    match = IMAGE_SRC_REGEX.match(src)
    if match:
        # image uploaded to ILIAS
        return f"{post_id}_{match.group(1)}_{match.group(2)}"
    # external image
    return f"{post_id}_{src}"


def parse_exercise_files(soup: bs, base_url: str) -> Tuple[List[ListedItem], List[str]]:
    files = []
    warnings = []
    for row in soup.select(".form-group"):
        link = row.find("a", href=True)
        if link is None:
            continue
        try:
            url = IliasUrl.from_href(link["href"], base_url)
        except ValueError as e:
            warnings.append(_bad_link(link, e))
            continue
        role = EXERCISE_DOWNLOAD_CMDS.get(url.cmd or "")
        if role is None:
            continue
        name_tag = row.select_one(".il_InfoScreenProperty")
        if name_tag is None:
            continue
        files.append(ListedItem(name_tag.get_text().strip(), url, Kind.FILE, {"role": role}))
    return files, warnings


def lecture_list_url(base_url: str, ref_id: str) -> str:
    return urllib.parse.urljoin(
        base_url,
        f"ilias.php?ref_id={ref_id}&cmdClass=xocteventgui&cmdNode=nc:n4:14u"
        "&baseClass=ilObjPluginDispatchGUI&lang=de&limit=20"
        "&cmd=asyncGetTableGUI&cmdMode=asynch",
    )


def full_lecture_table_url(href: str, base_url: str) -> str:
    """Rewrite the "show 800 rows" link so it returns the bare table"""
    url = IliasUrl.from_href(href, base_url)
    return url.with_params(
        cmd="asyncGetTableGUI", cmdClass="xocteventgui", cmdMode="asynch"
    ).url


def parse_lecture_table(soup: bs) -> Tuple[List[Tuple[str, str]], List[str]]:
    """(title, player href) of every recording in an Opencast table"""
    entries = []
    warnings = []
    for row in soup.select(".ilTableOuter > div > table > tbody > tr"):
        link = row.select_one('a[target="_blank"]')
        if link is None or not link.get("href"):
            if NO_ENTRIES not in row.get_text():
                warnings.append("table row without link")
            continue
        cells = row.find_all("td")
        if len(cells) < 3:
            continue
        title = cells[2].get_text().strip()
        if not title or title.startswith("<div"):
            continue
        entries.append((title, link["href"]))
    return entries, warnings


def parse_paella_streams(markup: str) -> List[str]:
    """mp4 source of every stream the Opencast player would show"""
    match = XOCT_REGEX.search(markup)
    if not match:
        raise ValueError("xoct player json not found")
    data = json.loads(match.group(1).split(",\n")[0].strip())
    streams = data.get("streams")
    if not isinstance(streams, list) or not streams:
        raise ValueError("video streams not found")
    sources = []
    for stream in streams:
        try:
            sources.append(stream["sources"]["mp4"][0]["src"])
        except (KeyError, IndexError, TypeError):
            raise ValueError("video src not found")
    return sources


def parse_link_list(soup: bs, base_url: str) -> Tuple[List[Tuple[str, IliasUrl]], List[str]]:
    links = []
    warnings = []
    for link in soup.find_all("a", href=True):
        try:
            url = IliasUrl.from_href(link["href"], base_url)
        except ValueError as e:
            warnings.append(_bad_link(link, e))
            continue
        if url.cmd == "callLink":
            links.append((link.get_text().strip(), url))
    return links, warnings


def wrap_html(content: str, base_url: Optional[str] = None) -> str:
    """Turn a page fragment into a standalone document.

    With ``base_url`` a ``<base>`` element is inserted so relative links
    still resolve against the portal when the file is opened from disk.
    """
    base = f'<base href="{base_url}">' if base_url else ""
    return (
        '<!DOCTYPE html>\n<html><head><meta charset="utf-8">'
        f"{base}</head><body>\n{content}\n</body></html>\n"
    )


def insert_base_href(content: str, base_url: str) -> str:
    return wrap_html(content, base_url)

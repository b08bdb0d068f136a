import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import List, Optional, Tuple

from pathspec import GitIgnoreSpec

from syncilias.events import SyncWarning

logger = logging.getLogger(__name__)

IGNORE_FILE = ".iliasignore"


def load_ignore_text(path: Path) -> Optional[str]:
    """Contents of an ignore file, or None if there is none"""
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def compile_rules(text: str) -> Tuple[List, List[str]]:
    """Compile gitignore-style lines into patterns.

    Invalid lines are dropped and reported instead of failing the whole file.
    """
    patterns = []
    problems = []
    for number, line in enumerate(text.splitlines(), start=1):
        try:
            spec = GitIgnoreSpec.from_lines([line])
        except ValueError as e:
            problems.append(f"line {number}: {e}")
            continue
        patterns.extend(p for p in spec.patterns if p.include is not None)
    return patterns, problems


@dataclass
class IgnoreFile:
    origin: str
    patterns: List = field(default_factory=list)
    # Directory inside the mirrored tree the file was found in
    anchor: PurePosixPath = PurePosixPath()
    # Path from the file's directory down to the output directory
    prefix: str = ""

    def match(self, relative_path: PurePosixPath, is_directory: bool) -> Optional[bool]:
        """True/False if a rule decides, None if no rule matches"""
        if self.anchor.parts:
            if relative_path.parts[: len(self.anchor.parts)] != self.anchor.parts:
                return None
            relative_path = PurePosixPath(*relative_path.parts[len(self.anchor.parts) :])
        path = self.prefix + relative_path.as_posix()
        if is_directory:
            path += "/"
        decision = None
        # last match wins
        for pattern in self.patterns:
            if pattern.regex.match(path):
                decision = pattern.include
        return decision


class IgnoreMatcher:
    """Decides which remote objects are excluded by ``.iliasignore`` files.

    Files closer to the object take precedence: files inside the mirrored
    tree come first (deepest first), then the one in the output directory,
    then those in its ancestors. Within one file the last matching rule
    wins and ``!`` negates.
    """

    def __init__(self, output_dir: Optional[Path] = None, events=None) -> None:
        self.output_dir = output_dir
        self.events = events
        self.files: List[IgnoreFile] = []
        self._loaded_dirs = set()

    def _warn(self, message: str) -> None:
        if self.events is not None:
            self.events.emit(SyncWarning(message))
        else:
            logger.warning(message)

    def add_rules(
        self,
        text: str,
        anchor: PurePosixPath = PurePosixPath(),
        prefix: str = "",
        origin: str = "<rules>",
    ) -> None:
        patterns, problems = compile_rules(text)
        for problem in problems:
            self._warn(f"malformed ignore file {origin}: {problem}")
        if patterns:
            self.files.append(IgnoreFile(origin, patterns, anchor, prefix))
            # nearest anchor first, stable for the output dir and its ancestors
            self.files.sort(key=lambda f: -len(f.anchor.parts))

    def _read(self, path: Path) -> Optional[str]:
        try:
            return load_ignore_text(path)
        except (OSError, UnicodeDecodeError) as e:
            self._warn(f"could not read ignore file {path}: {e}")
            return None

    def load(self) -> None:
        """Read the ignore files of the output directory and all its ancestors"""
        if self.output_dir is None:
            return
        directory = self.output_dir.resolve()
        prefix: List[str] = []
        while True:
            path = directory / IGNORE_FILE
            text = self._read(path)
            if text is not None:
                self.add_rules(
                    text, prefix="".join(f"{p}/" for p in prefix), origin=str(path)
                )
            if directory.parent == directory:
                break
            prefix.insert(0, directory.name)
            directory = directory.parent
        self._loaded_dirs.add(PurePosixPath())

    def add_directory(self, relative_dir: PurePosixPath) -> None:
        """Pick up the ignore file of a directory inside the mirrored tree"""
        if self.output_dir is None or not relative_dir.parts:
            return
        if relative_dir in self._loaded_dirs:
            return
        self._loaded_dirs.add(relative_dir)
        path = self.output_dir / Path(*relative_dir.parts) / IGNORE_FILE
        text = self._read(path)
        if text is not None:
            self.add_rules(text, anchor=relative_dir, origin=str(path))

    def is_excluded(self, relative_path: PurePosixPath, is_directory: bool) -> bool:
        for ignore_file in self.files:
            decision = ignore_file.match(relative_path, is_directory)
            if decision is not None:
                if decision:
                    logger.info(f"Ignored {relative_path}")
                return decision
        return False

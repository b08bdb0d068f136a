import asyncio
import getpass
import json
import logging
import os
import signal
from argparse import ArgumentParser
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import keyring
from keyring.errors import KeyringError

from syncilias.errors import AuthError, ConfigError, NoCredentials
from syncilias.events import FatalError, LoggingEventSink
from syncilias.sync import SyncIlias

logger = logging.getLogger(__name__)

EXIT_CONFIG = 1
EXIT_AUTH = 77
KEYRING_SERVICE = "syncilias"

# (config key, default) of every option that may be set in config.json
OPTIONS = {
    "base_url": None,
    "output": ".",
    "jobs": 1,
    "rate": 8,
    "proxy": None,
    "username": None,
    "use_keyring": False,
    "course_names": {},
    "content_tree": False,
    "forum": False,
    "no_videos": False,
    "skip_files": False,
    "check_videos": False,
    "combine_videos": False,
    "save_ilias_pages": False,
    "keep_session": False,
    "force": False,
    "sync_url": None,
    "all": False,
}


class CredentialProvider:
    """Finds the username and password, asking the user as a last resort"""

    def __init__(
        self,
        output: Path,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_keyring: bool = False,
    ) -> None:
        self.output = output
        self.username = username
        self.password = password
        self.use_keyring = use_keyring

    def _login_file(self) -> Optional[Tuple[str, str]]:
        path = self.output / ".iliaslogin"
        if not path.is_file():
            return None
        lines = path.read_text(encoding="utf-8").split("\n")
        if len(lines) < 2 or not lines[0].strip() or not lines[1].strip():
            raise NoCredentials(f"{path} must contain the username and password on two lines")
        return lines[0].strip(), lines[1].strip()

    def __call__(self) -> Tuple[str, str]:
        if self.username and self.password:
            return self.username, self.password
        from_file = self._login_file()
        if from_file:
            return from_file

        username = self.username
        try:
            if not username:
                username = input("Username: ").strip()
            password = self.password
            if not password and self.use_keyring:
                try:
                    password = keyring.get_password(KEYRING_SERVICE, username)
                except KeyringError as e:
                    logger.warning(f"Could not read password from keyring: {e}")
            if not password:
                password = getpass.getpass("Password: ")
                if password and self.use_keyring:
                    try:
                        keyring.set_password(KEYRING_SERVICE, username, password)
                    except KeyringError as e:
                        logger.warning(f"Could not save password in keyring: {e}")
        except EOFError as e:
            raise NoCredentials("no credentials given and no terminal to ask for them") from e
        if not username or not password:
            raise NoCredentials("you need to provide a username and password")
        return username, password


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="python3 -m syncilias",
        description="Synchronization client for ILIAS. All optional arguments override those in config.json.",
    )
    parser.add_argument("-o", "--output", default=None, help="Directory to download files to")
    parser.add_argument(
        "-j", "--jobs", type=int, default=None, help="Parallel download jobs (default 1)"
    )
    parser.add_argument(
        "--rate", type=int, default=None, help="Requests per minute (default 8)"
    )
    parser.add_argument(
        "-p", "--proxy", default=None, help="Proxy, e.g. socks5h://127.0.0.1:1080"
    )
    parser.add_argument(
        "-f", "--force", action="store_true", help="Re-download files that already exist"
    )
    parser.add_argument(
        "-s", "--skip-files", action="store_true", help="Do not download files"
    )
    parser.add_argument(
        "-n", "--no-videos", action="store_true", help="Do not download lecture recordings"
    )
    parser.add_argument(
        "-t", "--forum", action="store_true", help="Download forum threads"
    )
    parser.add_argument(
        "--content-tree",
        action="store_true",
        help="Use the content tree of courses (slow, but finds hidden folders)",
    )
    parser.add_argument(
        "--check-videos",
        action="store_true",
        help="Re-check the size of downloaded recordings",
    )
    parser.add_argument(
        "--combine-videos",
        action="store_true",
        help="Combine the streams of a recording with ffmpeg",
    )
    parser.add_argument(
        "--save-ilias-pages",
        action="store_true",
        help="Save the text of course and folder pages as course.html / folder.html",
    )
    parser.add_argument("-U", "--username", default=None, help="Your KIT account")
    parser.add_argument("-P", "--password", default=None, help="Your KIT password")
    parser.add_argument(
        "--keyring",
        action="store_true",
        help="Use the system keyring for storing and retrieving the password",
    )
    parser.add_argument(
        "--sync-url", default=None, help="Only sync this course or folder"
    )
    parser.add_argument(
        "--all", action="store_true", help="Sync all courses you are a member of"
    )
    parser.add_argument(
        "--keep-session",
        action="store_true",
        help="Save the session in .iliassession and reuse it next time",
    )
    parser.add_argument("--config", default=None, help="The path to the config file")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Do not download any files, instead just print what would be synced",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Verbose output, repeat for debugging output",
    )
    return parser


def load_config(path: Optional[str]) -> Dict[str, Any]:
    config: Dict[str, Any] = {}
    if path:
        files = [Path(path)]
        if not files[0].is_file():
            raise ConfigError(f"config file {path} not found")
    else:
        files = [
            Path(os.environ.get("XDG_CONFIG_HOME", Path("~/.config").expanduser()))
            / "syncilias"
            / "config.json",
            Path("config.json"),
        ]
    for file in files:
        if file.is_file():
            try:
                with file.open() as f:
                    config.update(json.load(f))
            except (OSError, ValueError) as e:
                raise ConfigError(f"cannot read config file {file}: {e}") from e
    unknown = set(config) - set(OPTIONS)
    if unknown:
        logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
    return config


def merge_config(args, config: Dict[str, Any]) -> Dict[str, Any]:
    """Command line arguments override the config file"""
    flags = {
        "output": args.output,
        "jobs": args.jobs,
        "rate": args.rate,
        "proxy": args.proxy,
        "username": args.username,
        "use_keyring": args.keyring,
        "content_tree": args.content_tree,
        "forum": args.forum,
        "no_videos": args.no_videos,
        "skip_files": args.skip_files,
        "check_videos": args.check_videos,
        "combine_videos": args.combine_videos,
        "save_ilias_pages": args.save_ilias_pages,
        "keep_session": args.keep_session,
        "force": args.force,
        "sync_url": args.sync_url,
        "all": args.all,
    }
    merged = {}
    for key, default in OPTIONS.items():
        flag = flags.get(key)
        # store_true flags are False when not given
        if flag is not None and flag is not False:
            merged[key] = flag
        else:
            merged[key] = config.get(key, default)
    return merged


def print_plan(smm: SyncIlias) -> None:
    logger.info("The following virtual filetree has been generated")
    if smm.root_node is None or smm.plan is None:
        raise RuntimeError("Nothing to print. Did you call sync() and reconcile()?")
    for file in smm.root_node.list_files():
        print(file)
    for job in smm.plan.jobs:
        print(f"{job.decision.value:8} {job.kind.value:17} {job.target}")


SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def install_signal_handlers(smm: SyncIlias, loop=None) -> None:
    """Let the first Ctrl+C finish the running downloads, the second one aborts"""
    loop = loop or asyncio.get_running_loop()

    def stop() -> None:
        logger.warning("Stopping after the running downloads, press Ctrl+C again to abort")
        smm.shutdown()
        remove_signal_handlers(loop)

    for sig in SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, stop)
        except (NotImplementedError, RuntimeError):
            # not available on this platform, Ctrl+C aborts immediately
            logger.debug(f"Cannot install handler for {sig!r}")


def remove_signal_handlers(loop) -> None:
    for sig in SHUTDOWN_SIGNALS:
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Cannot remove handler for {sig!r}")


async def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    loglevel = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    logging.basicConfig(level=loglevel, format="%(levelname)s: %(message)s")
    events = LoggingEventSink()

    try:
        config = merge_config(args, load_config(args.config))
        credentials = CredentialProvider(
            Path(config["output"]).expanduser(),
            config["username"],
            args.password,
            config["use_keyring"],
        )
        smm = SyncIlias(config, credentials, events)
    except ConfigError as e:
        events.emit(FatalError(str(e), e.kind))
        return EXIT_CONFIG

    loop = asyncio.get_running_loop()
    loop.slow_callback_duration = 0.5

    try:
        async with smm:
            logger.info("Logging in...")
            await smm.login()
            logger.info("Syncing file tree...")
            await smm.sync()
            smm.reconcile()

            if args.dry_run:
                print_plan(smm)
                return 0

            logger.info("Downloading files...")
            install_signal_handlers(smm)
            try:
                await smm.download_all_files()
            finally:
                remove_signal_handlers(loop)
    except (AuthError, NoCredentials) as e:
        events.emit(FatalError(f"authentication failed: {e}", e.kind))
        return EXIT_AUTH
    except ConfigError as e:
        events.emit(FatalError(str(e), e.kind))
        return EXIT_CONFIG

    for line in smm.summary():
        print(line)
    return 0

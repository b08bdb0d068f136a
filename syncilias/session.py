import asyncio
import logging
import pickle
import urllib.parse
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

import httpx
from bs4 import BeautifulSoup as bs

from syncilias import __version__
from syncilias.errors import (
    AuthError,
    AuthErrorKind,
    HttpError,
    NetworkError,
    PortalError,
    SessionExpired,
)
from syncilias.pages import is_error_page, is_login_page, soupify
from syncilias.ratelimit import RateLimiter
from syncilias.urls import DEFAULT_BASE_URL

logger = logging.getLogger(__name__)

USER_AGENT = f"syncilias/{__version__}"
KIT_IDP = "https://idp.scc.kit.edu/idp/shibboleth"
EXPIRED_MARKERS = ("reloadpublic=1", "cmd=force_login")

Credentials = Callable[[], Tuple[str, str]]


class SessionState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


class SessionStore:
    """Opaque session blob kept next to the mirrored files"""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> Optional[bytes]:
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return None

    def save(self, blob: bytes) -> None:
        tmp = self.path.with_name(self.path.name + ".temp")
        tmp.write_bytes(blob)
        tmp.replace(self.path)


class IliasSession:
    """Authenticated, rate limited access to one ILIAS instance.

    Every request is admitted by the shared :class:`RateLimiter`. Responses
    that show the session has expired are never handed to callers: the
    session logs in again (once, even if many requests notice the expiry at
    the same time) and replays the request.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        limiter: Optional[RateLimiter] = None,
        credentials: Optional[Credentials] = None,
        proxy: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not base_url.endswith("/"):
            base_url += "/"
        self.base_url = base_url
        self.limiter = limiter or RateLimiter()
        self.state = SessionState.UNAUTHENTICATED
        self.logins = 0
        self._credentials = credentials
        self._login_data: Optional[Tuple[str, str]] = None
        self._auth_lock = asyncio.Lock()
        # bumped on every successful login
        self._generation = 0

        kwargs: Dict = {}
        if proxy:
            kwargs["proxy"] = proxy
        if transport is not None:
            kwargs["transport"] = transport
        self.client = httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
            timeout=httpx.Timeout(60.0),
            **kwargs,
        )

    async def __aenter__(self) -> "IliasSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.client.aclose()

    def url(self, href: str) -> str:
        return urllib.parse.urljoin(self.base_url, href)

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        await self.limiter.admit()
        logger.debug(f"{method} {url}")
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise NetworkError(str(e) or type(e).__name__, url) from e

    # Login

    def _get_credentials(self) -> Tuple[str, str]:
        if self._login_data is None:
            if self._credentials is None:
                raise AuthError(AuthErrorKind.INVALID_CREDENTIALS, "no credentials available")
            self._login_data = self._credentials()
        return self._login_data

    async def _auth_post(self, url: str, data: Dict[str, str]) -> httpx.Response:
        try:
            response = await self._send("POST", url, data=data)
        except NetworkError as e:
            raise AuthError(AuthErrorKind.PORTAL_UNREACHABLE, str(e)) from e
        if response.status_code >= 500:
            raise AuthError(
                AuthErrorKind.PORTAL_UNREACHABLE, f"HTTP status {response.status_code}"
            )
        return response

    async def _login(self) -> None:
        username, password = self._get_credentials()

        logger.info("Logging into ILIAS using KIT account..")
        response = await self._auth_post(
            self.url("Shibboleth.sso/Login"),
            {
                "sendLogin": "1",
                "idp_selection": KIT_IDP,
                "target": "/shib_login.php?target=",
                "home_organization_selection": "Mit KIT-Account anmelden",
            },
        )
        soup = soupify(response.text)
        csrf_token = soup.select_one('input[name="csrf_token"]')
        if csrf_token is None or csrf_token.get("value") is None:
            raise AuthError(AuthErrorKind.SHIBBOLETH_FLOW_CHANGED, "no CSRF token found")

        logger.info("Logging into Shibboleth..")
        response = await self._auth_post(
            str(response.url),
            {
                "j_username": username,
                "j_password": password,
                "_eventId_proceed": "",
                "csrf_token": csrf_token["value"],
            },
        )
        soup = soupify(response.text)
        saml = soup.select_one('input[name="SAMLResponse"]')
        if saml is None or saml.get("value") is None:
            # the IdP shows the login form again
            raise AuthError(
                AuthErrorKind.INVALID_CREDENTIALS, "no SAML response, incorrect password?"
            )
        relay_state = soup.select_one('input[name="RelayState"]')
        if relay_state is None or relay_state.get("value") is None:
            raise AuthError(AuthErrorKind.SHIBBOLETH_FLOW_CHANGED, "no relay state")

        logger.info("Logging into ILIAS..")
        await self._auth_post(
            self.url("Shibboleth.sso/SAML2/POST"),
            {"SAMLResponse": saml["value"], "RelayState": relay_state["value"]},
        )
        self.state = SessionState.AUTHENTICATED
        self.logins += 1
        self._generation += 1
        logger.info("Logged in!")

    async def login(self) -> None:
        async with self._auth_lock:
            await self._login()

    async def _relogin(self, generation: int) -> None:
        """Log in again unless somebody else did since ``generation``"""
        async with self._auth_lock:
            if self._generation != generation:
                return
            self.state = SessionState.EXPIRED
            logger.info("Session expired, logging in again")
            await self._login()

    # Requests

    @staticmethod
    def _expired_url(response: httpx.Response) -> bool:
        query = urllib.parse.urlsplit(str(response.url)).query
        return any(marker in query for marker in EXPIRED_MARKERS)

    def _is_expired(self, response: httpx.Response) -> bool:
        if self._expired_url(response):
            return True
        if "html" not in response.headers.get("content-type", ""):
            return False
        text = response.text
        if "formlogin" not in text and "login_form" not in text:
            return False
        return is_login_page(soupify(text))

    async def _get(self, url: str) -> httpx.Response:
        generation = self._generation
        response = await self._send("GET", url)
        if self._is_expired(response):
            await self._relogin(generation)
            response = await self._send("GET", url)
            if self._is_expired(response):
                self.state = SessionState.EXPIRED
                raise AuthError(AuthErrorKind.SESSION_EXPIRED_AGAIN, url)
        if response.status_code >= 400:
            raise HttpError(response.status_code, url)
        return response

    async def fetch(self, url: str) -> str:
        return (await self._get(url)).text

    async def get_html(self, url: str) -> bs:
        soup = soupify(await self.fetch(url))
        if is_error_page(soup):
            message = soup.select_one("div.alert-danger").get_text().strip()
            raise PortalError(f"ILIAS error: {message}", url)
        return soup

    async def head(self, url: str, check_status: bool = True) -> httpx.Response:
        generation = self._generation
        response = await self._send("HEAD", url)
        if self._expired_url(response):
            await self._relogin(generation)
            response = await self._send("HEAD", url)
            if self._expired_url(response):
                self.state = SessionState.EXPIRED
                raise AuthError(AuthErrorKind.SESSION_EXPIRED_AGAIN, url)
        if check_status and response.status_code >= 400:
            raise HttpError(response.status_code, url)
        return response

    @asynccontextmanager
    async def stream(
        self, url: str, headers: Optional[Dict[str, str]] = None
    ) -> AsyncIterator[httpx.Response]:
        """Streaming GET for downloads.

        An expired session is renewed, but the download is not replayed:
        :class:`SessionExpired` is raised so the caller can restart its job.
        """
        generation = self._generation
        await self.limiter.admit()
        logger.debug(f"GET (stream) {url}")
        expired = False
        try:
            async with self.client.stream("GET", url, headers=headers) as response:
                if self._expired_url(response):
                    expired = True
                elif response.status_code >= 400:
                    raise HttpError(response.status_code, url)
                else:
                    yield response
        except httpx.HTTPError as e:
            raise NetworkError(str(e) or type(e).__name__, url) from e
        if expired:
            await self._relogin(generation)
            raise SessionExpired("session expired during download", url)

    # Persistence

    def persist(self, store: SessionStore) -> None:
        store.save(pickle.dumps(list(self.client.cookies.jar)))

    def restore(self, store: SessionStore) -> bool:
        """Load saved cookies. Says nothing about whether they are still valid."""
        blob = store.load()
        if blob is None:
            return False
        try:
            cookies = pickle.loads(blob)
        except (pickle.UnpicklingError, EOFError, AttributeError, TypeError) as e:
            logger.warning(f"Ignoring unreadable session file {store.path}: {e}")
            return False
        for cookie in cookies:
            self.client.cookies.jar.set_cookie(cookie)
        logger.info("Restored previous session")
        return True

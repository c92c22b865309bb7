"""
KidsNote API client.

Session-authenticated access to the KidsNote web service: form login with a
scraped CSRF token, cookie-authenticated JSON requests, and the growing-batch
listing of reports and albums.
"""

import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import requests

logger = logging.getLogger(__name__)

BASE_URL = "https://www.kidsnote.com"
API_BASE = "/api/v1_2"
LOGIN_PATH = "/kr/login/"
TIMEZONE = "Asia/Seoul"

USER_AGENT = "Mozilla/5.0 (Linux; Android 10; SM-G975F) AppleWebKit/537.36"

SESSION_COOKIE = "sessionid"
SESSION_FILENAME = ".kidsnote_session.json"

REPORT = "report"
ALBUM = "album"
ENTRY_KINDS = {REPORT: "reports", ALBUM: "albums"}

# Redirect targets that mean the login form was accepted
LANDING_PATHS = ("/dashboard", "/kr/", "/index")

INVALID_CREDENTIAL_MARKERS = (
    "Invalid username",
    "Invalid password",
    "아이디 또는 비밀번호",
)
CSRF_ERROR_MARKERS = (
    "CSRF verification failed",
    "CSRF token missing",
    "CSRF token incorrect",
)


class KidsNoteError(Exception):
    """Base class for every error raised by the KidsNote client."""


class AuthError(KidsNoteError):
    """
    Login failed.

    Parameters
    ----------
    message : str
        Human readable explanation.
    cause : str
        One of ``invalid_credentials``, ``csrf``, ``login_form``,
        ``indeterminate``, ``no_session`` or ``browser``.
    """

    def __init__(self, message: str, cause: str = "no_session"):
        super().__init__(message)
        self.cause = cause


class SessionRequiredError(KidsNoteError):
    """An authenticated call was attempted without a session."""

    def __init__(self, message: str = "session required: log in first"):
        super().__init__(message)


class HttpError(KidsNoteError):
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class SessionExpiredError(HttpError):
    pass


class ForbiddenError(HttpError):
    pass


class ServerError(HttpError):
    pass


class NetworkError(KidsNoteError):
    """The request never produced an HTTP response."""


class ResponseDecodeError(KidsNoteError):
    """The server answered with something that is not JSON."""


class StorageError(KidsNoteError):
    """No usable output directory could be prepared."""


@dataclass(frozen=True)
class Session:
    """An authenticated KidsNote session (the ``sessionid`` cookie value)."""

    session_id: str
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def masked(self) -> str:
        return f"{self.session_id[:6]}..." if len(self.session_id) > 6 else "***"


class SessionStore(ABC):
    """Persistence boundary for the session token."""

    @abstractmethod
    def save(self, token: str) -> None:
        pass

    @abstractmethod
    def load(self) -> str | None:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass


class MemorySessionStore(SessionStore):
    """Keeps the token for the lifetime of the process only."""

    def __init__(self, token: str | None = None):
        self.token = token

    def save(self, token: str) -> None:
        self.token = token

    def load(self) -> str | None:
        return self.token

    def clear(self) -> None:
        self.token = None


class JsonSessionStore(SessionStore):
    """
    Stores the session token in a small JSON file.

    Writing is best effort: when the file cannot be written or removed a
    warning is logged and the session only lives in memory.

    Parameters
    ----------
    path : Path
        File to read and write, usually ``<output_dir>/.kidsnote_session.json``.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def save(self, token: str) -> None:
        data = {
            "session_id": token,
            "saved_at": datetime.now().isoformat(),
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.warning("Could not cache session to %s: %s", self.path, e)
            return
        logger.debug("Session cached to %s", self.path)

    def load(self) -> str | None:
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (FileNotFoundError, NotADirectoryError):
            return None
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable session file %s: %s", self.path, e)
            return None

        token = data.get("session_id") if isinstance(data, dict) else None
        return token or None

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove session file %s: %s", self.path, e)


class SessionProvider:
    """
    Holds the single current session.

    Reads and writes go through a lock, so a session swapped by ``login`` or
    ``logout`` is seen by the next request. Changes are mirrored to the store.

    Parameters
    ----------
    store : SessionStore | None
        Where the token is persisted. Defaults to an in-memory store.
    """

    def __init__(self, store: SessionStore | None = None):
        self.store = store if store is not None else MemorySessionStore()
        self._session: Session | None = None
        self._lock = threading.Lock()

    @property
    def current(self) -> Session | None:
        with self._lock:
            return self._session

    def set(self, session: Session) -> None:
        with self._lock:
            self._session = session
            self.store.save(session.session_id)

    def restore(self) -> Session | None:
        token = self.store.load()
        if not token:
            return None
        with self._lock:
            self._session = Session(token)
            return self._session

    def clear(self) -> None:
        with self._lock:
            self._session = None
            self.store.clear()


class CsrfStrategy(ABC):
    """One way of finding the CSRF token on the login page."""

    name: str = "csrf"

    @abstractmethod
    def extract(self, response: requests.Response) -> str | None:
        pass


class RegexCsrfStrategy(CsrfStrategy):
    """Match the login page body against a pattern with one capture group."""

    def __init__(self, name: str, pattern: str):
        self.name = name
        self.pattern = re.compile(pattern, re.DOTALL)

    def extract(self, response: requests.Response) -> str | None:
        match = self.pattern.search(response.text)
        return match.group(1) if match else None


class CookieCsrfStrategy(CsrfStrategy):
    """Django also hands the token out as the ``csrftoken`` cookie."""

    def __init__(self, name: str = "csrftoken-cookie", cookie_name: str = "csrftoken"):
        self.name = name
        self.cookie_name = cookie_name

    def extract(self, response: requests.Response) -> str | None:
        return response.cookies.get(self.cookie_name)


# Tried in order, first non-empty match wins
DEFAULT_CSRF_STRATEGIES = [
    RegexCsrfStrategy("form-single-quoted", r"name='csrfmiddlewaretoken' value='([^']*)'"),
    RegexCsrfStrategy("form-double-quoted", r'csrfmiddlewaretoken.*?value="([^"]*)"'),
    RegexCsrfStrategy("script-csrfToken", r"csrfToken.*?[\"']([^\"']*)"),
    CookieCsrfStrategy(),
]


def extract_csrf_token(
    response: requests.Response, strategies: list[CsrfStrategy] | None = None
) -> str:
    """
    Find the CSRF token on the login page.

    Parameters
    ----------
    response : requests.Response
        Response of the login page GET.
    strategies : list[CsrfStrategy] | None
        Strategies to try in order. Defaults to ``DEFAULT_CSRF_STRATEGIES``.

    Returns
    -------
    str
        The first non-empty token, or ``""`` when nothing matched.
    """
    for strategy in strategies or DEFAULT_CSRF_STRATEGIES:
        token = strategy.extract(response)
        if token:
            logger.debug("CSRF token found by %s: %s...", strategy.name, token[:10])
            return token

    logger.warning("CSRF token not found on login page")
    return ""


@dataclass(frozen=True)
class Child:
    id: str
    name: str
    index: int


@dataclass(frozen=True)
class MediaAsset:
    """An image or video attached to an entry."""

    id: str
    original_url: str
    original_file_name: str = ""
    high_url: str | None = None

    @property
    def extension(self) -> str:
        return get_file_extension(self.original_file_name)

    @property
    def best_url(self) -> str:
        return self.high_url or self.original_url

    @classmethod
    def from_api(cls, data: dict) -> "MediaAsset":
        return cls(
            id=str(data.get("id", "unknown")),
            original_url=data.get("original") or "",
            original_file_name=data.get("original_file_name") or "",
            high_url=data.get("high") or None,
        )


@dataclass(frozen=True)
class Entry:
    """
    A report or album record.

    ``date`` is the raw ``YYYY-MM-DD`` day the entry belongs to: the write date
    of a report, or the modification timestamp of an album cut at ``T``.
    """

    id: str
    kind: str
    child_name: str
    date: str | None = None
    class_name: str | None = None
    images: tuple[MediaAsset, ...] = ()
    video: MediaAsset | None = None

    @classmethod
    def from_api(cls, data: dict, kind: str) -> "Entry":
        if kind == REPORT:
            date = data.get("date_written") or None
            class_name = data.get("class_name") or None
        else:
            modified = data.get("modified")
            date = modified.split("T")[0] if modified else None
            class_name = None

        images = data.get("attached_images") or []
        video = data.get("attached_video")

        return cls(
            id=str(data.get("id", "unknown")),
            kind=kind,
            child_name=data.get("child_name") or "Unknown",
            date=date,
            class_name=class_name,
            images=tuple(MediaAsset.from_api(img) for img in images if isinstance(img, dict)),
            video=MediaAsset.from_api(video) if isinstance(video, dict) else None,
        )


def get_file_extension(filename: str) -> str:
    """Return ``.ext`` from the text after the last dot, or ``""`` without one."""
    _, dot, ext = (filename or "").rpartition(".")
    return f".{ext}" if dot else ""


class KidsNoteClient:
    """
    Authenticated KidsNote HTTP client.

    Parameters
    ----------
    session_provider : SessionProvider | None
        Holder of the current session. A fresh in-memory one by default.
    http : requests.Session | None
        Transport, injectable for tests.
    base_url : str
        Scheme and host of the service.
    timeout : float
        Per-request timeout in seconds.
    csrf_strategies : list[CsrfStrategy] | None
        Login page token extraction strategies.
    """

    def __init__(
        self,
        session_provider: SessionProvider | None = None,
        http: requests.Session | None = None,
        base_url: str = BASE_URL,
        timeout: float = 30,
        csrf_strategies: list[CsrfStrategy] | None = None,
    ):
        self.sessions = session_provider or SessionProvider()
        self.http = http or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.csrf_strategies = csrf_strategies or DEFAULT_CSRF_STRATEGIES

        self.http.headers.update({"User-Agent": USER_AGENT})

    @property
    def login_url(self) -> str:
        return f"{self.base_url}{LOGIN_PATH}"

    @property
    def session(self) -> Session | None:
        return self.sessions.current

    def login(self, username: str, password: str) -> Session:
        """
        Log in with the web form and store the resulting session.

        Parameters
        ----------
        username : str
            KidsNote account id.
        password : str
            Account password.

        Returns
        -------
        Session
            The new session.

        Raises
        ------
        AuthError
            If the server did not hand out a session.
        NetworkError
            If the login page could not be reached.
        """
        self.http.cookies.clear()
        self.sessions.clear()

        logger.info("Logging in as %s", username)
        try:
            page = self.http.get(self.login_url, timeout=self.timeout)
            csrf_token = extract_csrf_token(page, self.csrf_strategies)

            response = self.http.post(
                self.login_url,
                data={
                    "username": username,
                    "password": password,
                    "csrfmiddlewaretoken": csrf_token,
                },
                headers={
                    "Referer": self.login_url,
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                allow_redirects=False,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise NetworkError(f"Could not reach the login page: {e}") from e

        session_id = response.cookies.get(SESSION_COOKIE)

        if not session_id and response.status_code in (301, 302):
            location = response.headers.get("Location", "")
            logger.debug("Login redirected to %s", location)
            if not _is_landing_path(location):
                raise AuthError(
                    f"Login redirected to an unexpected page: {location}", cause="login_form"
                )
            session_id = self.http.cookies.get(SESSION_COOKIE)
            if not session_id:
                raise AuthError(
                    "Login was redirected but no session cookie was issued",
                    cause="indeterminate",
                )

        if not session_id:
            raise _login_failure(response.text)

        session = Session(session_id)
        self.sessions.set(session)
        logger.info("Logged in, session %s", session.masked)
        return session

    def use_session(self, session_id: str) -> Session:
        """Adopt a session id obtained outside of ``login``."""
        session = Session(session_id)
        self.sessions.set(session)
        return session

    def restore_session(self) -> Session | None:
        session = self.sessions.restore()
        if session:
            logger.info("Restored stored session %s", session.masked)
        return session

    def logout(self) -> None:
        self.sessions.clear()
        self.http.cookies.clear()

    def request(self, endpoint: str, params: dict | None = None) -> dict | list:
        """
        Perform an authenticated GET and decode its JSON body.

        Parameters
        ----------
        endpoint : str
            Path below the host, e.g. ``/api/v1_2/me/info``.
        params : dict | None
            Query string parameters.

        Returns
        -------
        dict | list
            Decoded JSON.
        """
        session = self.sessions.current
        if session is None:
            raise SessionRequiredError()

        url = f"{self.base_url}{endpoint}"
        logger.debug("GET %s %s", url, params or "")
        try:
            response = self.http.get(
                url,
                params=params,
                cookies={SESSION_COOKIE: session.session_id},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise NetworkError(f"Network error, check your connection: {e}") from e

        status = response.status_code
        if status == 401:
            self.sessions.clear()
            raise SessionExpiredError("Session expired, please log in again", status)
        if status == 403:
            self.sessions.clear()
            raise ForbiddenError("Access forbidden, please check your login", status)
        if status >= 400:
            logger.debug("Error body: %s", response.text[:200])
            raise ServerError(f"HTTP {status}: the KidsNote server returned an error", status)

        try:
            return response.json()
        except ValueError as e:
            raise ResponseDecodeError(f"Expected JSON from {endpoint}: {e}") from e

    def get_children(self) -> list[Child]:
        """
        Fetch the children registered on the account.

        Returns
        -------
        list[Child]
            Children in listing order, ``index`` starting at 1.
        """
        data = self.request(f"{API_BASE}/me/info")
        children = data.get("children") if isinstance(data, dict) else None
        if not children:
            raise KidsNoteError("No children are registered on this account")

        return [
            Child(id=str(child.get("id")), name=child.get("name") or "Unknown", index=i)
            for i, child in enumerate(children, 1)
        ]

    def list_entries(self, child_id: str, kind: str, page_size: int) -> dict:
        """
        Fetch one batch of reports or albums.

        Parameters
        ----------
        child_id : str
            The child's id.
        kind : str
            ``report`` or ``album``.
        page_size : int
            Number of records to request, always counted from the newest one.

        Returns
        -------
        dict
            Raw listing with ``results`` and ``next``.
        """
        endpoint = f"{API_BASE}/children/{child_id}/{ENTRY_KINDS[kind]}/"
        params = {"page_size": page_size, "tz": TIMEZONE, "child": child_id}
        data = self.request(endpoint, params=params)
        if not isinstance(data, dict):
            raise ResponseDecodeError(f"Unexpected listing payload for child {child_id}")
        return data

    def open_stream(self, url: str, timeout: float | None = None) -> requests.Response:
        """Start a streamed GET of a media file; the caller checks the status."""
        return self.http.get(url, stream=True, timeout=timeout or self.timeout)


def _is_landing_path(location: str) -> bool:
    path = re.sub(r"^https?://[^/]+", "", location or "")
    if not path:
        return False
    if path == "/" or path.startswith("/?"):
        return True
    if path.startswith(LOGIN_PATH.rstrip("/")):
        return False
    return any(marker in path for marker in LANDING_PATHS)


def _login_failure(body: str) -> AuthError:
    if any(marker in body for marker in INVALID_CREDENTIAL_MARKERS) or (
        "로그인" in body and "실패" in body
    ):
        return AuthError(
            "Login failed: the username or password is incorrect",
            cause="invalid_credentials",
        )
    if any(marker in body for marker in CSRF_ERROR_MARKERS):
        return AuthError("Login failed: the CSRF token was rejected", cause="csrf")
    if "csrfmiddlewaretoken" in body or 'name="password"' in body:
        return AuthError(
            "Login failed: the login form was shown again, check your credentials",
            cause="login_form",
        )
    return AuthError(
        "Login failed: no session was issued. The KidsNote site may have changed.",
        cause="no_session",
    )


class PaginationFetcher:
    """
    Fetch every entry of a child by asking for ever larger batches.

    The listing has no usable offset, so each round re-requests from the
    newest record with ``base_page_size * index`` entries until the server
    stops reporting ``next`` or ``max_iterations`` rounds were made. Only the
    final batch is returned; it contains the earlier ones.

    Parameters
    ----------
    client : KidsNoteClient
        Authenticated client.
    base_page_size : int
        Batch size of the first round.
    max_iterations : int
        Hard cap on the number of rounds.
    on_log : callable | None
        Receives progress messages.
    """

    def __init__(
        self,
        client: KidsNoteClient,
        base_page_size: int = 9999,
        max_iterations: int = 10,
        on_log=None,
    ):
        self.client = client
        self.base_page_size = base_page_size
        self.max_iterations = max_iterations
        self.on_log = on_log or (lambda message: None)

    def fetch_all(self, child_id: str, kind: str, page_size: int | None = None) -> list[Entry]:
        """
        Fetch the entries of one child.

        Parameters
        ----------
        child_id : str
            The child's id.
        kind : str
            ``report`` or ``album``.
        page_size : int | None
            Fetch exactly this many entries in a single request instead of
            growing the batch.

        Returns
        -------
        list[Entry]
            Entries of the last batch retrieved.
        """
        if page_size:
            data = self.client.list_entries(child_id, kind, page_size)
            return _parse_entries(data, kind)

        index = 1
        while True:
            size = self.base_page_size * index
            data = self.client.list_entries(child_id, kind, size)

            if data.get("next") is None or index >= self.max_iterations:
                break

            index += 1
            self.on_log(
                f"More {ENTRY_KINDS[kind]} available, "
                f"fetching a batch of {self.base_page_size * index}..."
            )

        entries = _parse_entries(data, kind)
        if data.get("next") is not None:
            logger.warning("Stopped after %d rounds with more %s pending", index, ENTRY_KINDS[kind])
        self.on_log(f"Found {len(entries)} {ENTRY_KINDS[kind]}")
        return entries


def _parse_entries(data: dict, kind: str) -> list[Entry]:
    results = data.get("results") or []
    return [Entry.from_api(item, kind) for item in results if isinstance(item, dict)]

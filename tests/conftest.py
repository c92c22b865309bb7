"""Shared fakes for the KidsNote downloader tests. Nothing here touches the network."""

import json

import pytest
import requests
from requests.cookies import RequestsCookieJar
from requests.structures import CaseInsensitiveDict

from kidsnote_api import KidsNoteClient, MemorySessionStore, SessionProvider

LOGIN_PAGE = """
<html><body>
<form method="post" action="/kr/login/">
  <input type='hidden' name='csrfmiddlewaretoken' value='csrf-abc123' />
  <input type="text" name="username" />
  <input type="password" name="password" />
</form>
</body></html>
"""


def make_response(
    status_code: int = 200,
    body: bytes | str = b"",
    json_data=None,
    headers: dict | None = None,
    cookies: dict | None = None,
    url: str = "https://www.kidsnote.com/",
) -> requests.Response:
    """Build a fully read ``requests.Response``."""
    if json_data is not None:
        body = json.dumps(json_data)
        headers = {"Content-Type": "application/json", **(headers or {})}
    if isinstance(body, str):
        body = body.encode("utf-8")

    response = requests.Response()
    response.status_code = status_code
    response._content = body
    response._content_consumed = True
    response.encoding = "utf-8"
    response.headers = CaseInsensitiveDict(headers or {})
    response.url = url
    for name, value in (cookies or {}).items():
        response.cookies.set(name, value)
    return response


def media_response(content: bytes, status_code: int = 200, with_length: bool = True):
    headers = {"Content-Length": str(len(content))} if with_length else {}
    return make_response(status_code, body=content, headers=headers)


class FakeHttp:
    """
    Stands in for ``requests.Session``.

    Queued items are returned in order; an exception instance is raised
    instead, and a callable is called with ``(method, url, kwargs)``.
    Cookies of every returned response are copied into the jar.
    """

    def __init__(self, responses=None):
        self.headers = CaseInsensitiveDict()
        self.cookies = RequestsCookieJar()
        self.queue = list(responses or [])
        self.calls = []

    def add(self, *responses) -> "FakeHttp":
        self.queue.extend(responses)
        return self

    def get(self, url, **kwargs):
        return self._next("GET", url, kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, kwargs)

    def _next(self, method, url, kwargs):
        self.calls.append((method, url, kwargs))
        if not self.queue:
            raise AssertionError(f"Unexpected request: {method} {url}")

        item = self.queue.pop(0)
        if callable(item) and not isinstance(item, requests.Response):
            item = item(method, url, kwargs)
        if isinstance(item, BaseException):
            raise item
        for cookie in item.cookies:
            self.cookies.set_cookie(cookie)
        return item

    def urls(self, method: str | None = None) -> list[str]:
        return [url for m, url, _ in self.calls if method is None or m == method]


class RecordingSleep:
    """Replaces ``time.sleep`` and remembers every delay."""

    def __init__(self):
        self.delays = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.delays)


def login_responses(session_id: str = "sess-42") -> list:
    return [
        make_response(200, body=LOGIN_PAGE, url="https://www.kidsnote.com/kr/login/"),
        make_response(302, headers={"Location": "/kr/"}, cookies={"sessionid": session_id}),
    ]


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def client(http, store):
    return KidsNoteClient(SessionProvider(store), http=http)


@pytest.fixture
def sleep():
    return RecordingSleep()

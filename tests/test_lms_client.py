import pytest
import requests

import db
from errors import UpstreamFetchError
from lms_client import FallbackLessonCourseLookup, LmsClient, StoredLessonCourseMap


class FakeResponse:
    def __init__(self, status_code=200, body=None, invalid_json=False):
        self.status_code = status_code
        self._body = body
        self._invalid_json = invalid_json

    def json(self):
        if self._invalid_json:
            raise ValueError("No JSON object could be decoded")
        return self._body


class FakeSession:
    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        page = (params or {}).get("page")
        route = self.routes[url] if page is None else self.routes[(url, page)]
        if isinstance(route, Exception):
            raise route
        return route


BASE = "https://lms.example.com/api/v1"


def test_lesson_course_walks_chapter_to_course():
    session = FakeSession(
        {
            f"{BASE}/contents/77": FakeResponse(body={"id": 77, "chapter_id": 3}),
            f"{BASE}/chapters/3": FakeResponse(body={"id": 3, "course_id": 5}),
            f"{BASE}/courses/5": FakeResponse(body={"id": 5, "name": " Grade 3 Math "}),
        }
    )
    client = LmsClient(BASE + "/", "secret", session=session, timeout=3)
    assert client.lookup_course("77") == ("5", "Grade 3 Math")
    assert [call["url"] for call in session.calls] == [
        f"{BASE}/contents/77",
        f"{BASE}/chapters/3",
        f"{BASE}/courses/5",
    ]
    assert session.calls[0]["headers"]["Authorization"] == "Bearer secret"
    assert session.calls[0]["timeout"] == 3


def test_lesson_without_chapter_is_an_upstream_error():
    session = FakeSession({f"{BASE}/contents/77": FakeResponse(body={"id": 77})})
    with pytest.raises(UpstreamFetchError):
        LmsClient(BASE, session=session).lesson_course("77")


@pytest.mark.parametrize(
    "route",
    [
        FakeResponse(status_code=404, body={"error": "not found"}),
        FakeResponse(invalid_json=True),
        FakeResponse(body=["unexpected"]),
        requests.ConnectionError("connection refused"),
    ],
)
def test_transport_failures_raise_upstream_fetch_error(route):
    session = FakeSession({f"{BASE}/contents/77": route})
    with pytest.raises(UpstreamFetchError):
        LmsClient(BASE, session=session).lesson_course("77")


def test_status_code_is_kept_on_error():
    session = FakeSession({f"{BASE}/contents/77": FakeResponse(status_code=503, body={})})
    with pytest.raises(UpstreamFetchError) as excinfo:
        LmsClient(BASE, session=session).lesson_course("77")
    assert excinfo.value.status_code == 503


def test_only_whitelisted_paths_are_reachable():
    client = LmsClient(BASE, session=FakeSession({}))
    with pytest.raises(ValueError):
        client._get("/admin/users")


def test_group_roster_follows_pagination():
    session = FakeSession(
        {
            (f"{BASE}/users", 1): FakeResponse(
                body={"items": [{"email": "A@x.com"}, {"email": ""}], "meta": {"pagination": {"next_page": 2}}}
            ),
            (f"{BASE}/users", 2): FakeResponse(
                body={"items": [{"email": "b@x.com"}, {"email": "a@x.com"}], "meta": {"pagination": {"next_page": None}}}
            ),
        }
    )
    client = LmsClient(BASE, session=session, page_size=2)
    assert client.lookup_roster("group-7") == ["a@x.com", "b@x.com"]
    assert session.calls[0]["params"] == {"query[group_id]": "group-7", "page": 1, "limit": 2}


def test_from_env_requires_base_url(monkeypatch):
    monkeypatch.delenv("LMS_API_URL", raising=False)
    with pytest.raises(UpstreamFetchError):
        LmsClient.from_env()
    monkeypatch.setenv("LMS_API_URL", BASE)
    monkeypatch.setenv("LMS_API_TOKEN", "tok")
    client = LmsClient.from_env()
    assert client.base_url == BASE
    assert client.token == "tok"


def test_default_session_uses_requests(monkeypatch):
    seen = {}

    def fake_get(self, url, params=None, headers=None, timeout=None):
        seen["url"] = url
        return FakeResponse(body={"id": 5, "name": "K"})

    monkeypatch.setattr(requests.Session, "get", fake_get)
    client = LmsClient(BASE)
    assert client._get("/courses/5") == {"id": 5, "name": "K"}
    assert seen["url"] == f"{BASE}/courses/5"


def test_fallback_lookup_prefers_stored_map(temp_db):
    db.upsert_lesson_course("77", "5", "K Math")

    class Exploding:
        def lookup_course(self, lesson_id):
            raise UpstreamFetchError("offline")

    lookup = FallbackLessonCourseLookup(StoredLessonCourseMap(), Exploding())
    assert lookup.lookup_course("77") == ("5", "K Math")
    with pytest.raises(UpstreamFetchError):
        lookup.lookup_course("88")
    assert FallbackLessonCourseLookup(StoredLessonCourseMap()).lookup_course("88") is None

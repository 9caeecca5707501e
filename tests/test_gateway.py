"""Tests for the Toggl registration gateway."""

import base64
import json

import httpx
import pytest

from autotrack.errors import RegistrationError, RegistrationErrorKind
from autotrack.gateway import TogglGateway
from autotrack.models import TimeRange
from autotrack.projects import ProjectHints

from support import T0, at

WORKSPACE = 42


def _gateway(handler) -> TogglGateway:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return TogglGateway("secret-token", WORKSPACE, http_client=client)


class TestRegister:
    def test_posts_entry_with_resolved_project(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.method == "GET":
                return httpx.Response(200, json=[{"id": 7, "name": "Admin"}])
            return httpx.Response(200, json={"id": 555})

        entry_id = _gateway(handler).register("Inbox zero", "admin", TimeRange(T0, at(15)))

        assert entry_id == "555"
        post = seen[-1]
        assert post.url.path == f"/api/v9/workspaces/{WORKSPACE}/time_entries"
        body = json.loads(post.content)
        assert body["project_id"] == 7
        assert body["description"] == "Inbox zero"
        assert body["start"] == "2024-05-06T09:00:00Z"
        assert body["duration"] == 900
        expected = base64.b64encode(b"secret-token:api_token").decode()
        assert post.headers["Authorization"] == f"Basic {expected}"

    def test_entry_without_project_skips_lookup(self) -> None:
        methods: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            return httpx.Response(200, json={"id": 1})

        _gateway(handler).register("Reading", None, TimeRange(T0, at(15)))
        assert methods == ["POST"]

    def test_unknown_project_is_rejected_before_posting(self) -> None:
        methods: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            return httpx.Response(200, json=[{"id": 7, "name": "Admin"}])

        with pytest.raises(RegistrationError) as excinfo:
            _gateway(handler).register("Reading", "Research", TimeRange(T0, at(15)))
        assert excinfo.value.kind is RegistrationErrorKind.INVALID_PROJECT
        assert methods == ["GET"]

    def test_extend_puts_new_bounds(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": 555})

        assert _gateway(handler).extend("555", TimeRange(T0, at(30))) == "555"
        assert seen[0].method == "PUT"
        assert seen[0].url.path.endswith("/time_entries/555")
        assert json.loads(seen[0].content)["stop"] == "2024-05-06T09:30:00Z"


@pytest.mark.parametrize(
    ("status", "kind"),
    [
        (401, RegistrationErrorKind.AUTH),
        (403, RegistrationErrorKind.AUTH),
        (400, RegistrationErrorKind.INVALID_PROJECT),
        (422, RegistrationErrorKind.INVALID_PROJECT),
        (500, RegistrationErrorKind.NETWORK),
        (503, RegistrationErrorKind.NETWORK),
    ],
)
def test_http_errors_are_classified(status: int, kind: RegistrationErrorKind) -> None:
    gateway = _gateway(lambda request: httpx.Response(status, text="nope"))
    with pytest.raises(RegistrationError) as excinfo:
        gateway.register("Reading", None, TimeRange(T0, at(15)))
    assert excinfo.value.kind is kind


def test_timeout_is_a_network_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(RegistrationError) as excinfo:
        _gateway(handler).register("Reading", None, TimeRange(T0, at(15)))
    assert excinfo.value.kind is RegistrationErrorKind.NETWORK


def test_per_call_timeout_reaches_the_request() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": 1})

    _gateway(handler).register("Reading", None, TimeRange(T0, at(15)), timeout=2.5)
    assert seen[0].extensions["timeout"]["read"] == 2.5


class TestResolveProject:
    PROJECTS = [{"id": 7, "name": "Admin"}, {"id": 8, "name": "Research"}]

    def _resolver(self) -> tuple[TogglGateway, list[str]]:
        methods: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            return httpx.Response(200, json=self.PROJECTS)

        return _gateway(handler), methods

    def test_exact_name_is_normalized_and_list_is_cached(self) -> None:
        gateway, methods = self._resolver()
        assert gateway.resolve_project("Inbox zero", "admin") == "Admin"
        assert gateway.resolve_project("Notes", "RESEARCH") == "Research"
        assert methods == ["GET"]

    def test_near_miss_suggestion_is_mapped(self) -> None:
        gateway, _ = self._resolver()
        assert gateway.resolve_project("Inbox zero", "Admin tasks") == "Admin"

    def test_label_and_titles_pick_a_project_when_none_is_suggested(self) -> None:
        gateway, _ = self._resolver()
        hints = ProjectHints(window_title="research notes.md", calendar_title="Research sync")

        assert gateway.resolve_project("Reading papers", None, hints) == "Research"
        assert gateway.resolve_project("Reading papers", None) is None

    def test_unmatched_suggestion_is_rejected(self) -> None:
        gateway, _ = self._resolver()
        with pytest.raises(RegistrationError) as excinfo:
            gateway.resolve_project("Reading", "Marketing")
        assert excinfo.value.kind is RegistrationErrorKind.INVALID_PROJECT

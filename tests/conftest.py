"""Shared fixtures: an in-memory Dispatch server standing in for requests.Session."""

import json
import re
from collections import defaultdict
from http import HTTPStatus
from typing import Any, Dict, List, NamedTuple
from urllib.parse import urlsplit

import pytest
import requests

from dispatch_client import DispatchClient, SessionContext

API_KEY = "secret-key"
SITE_ID = "7"


def make_response(status_code: int, body: Any, reason: str = None) -> requests.Response:
    """Build a real requests.Response carrying `body` (JSON-encoded unless already text)"""
    response = requests.Response()
    response.status_code = status_code
    if reason is None:
        try:
            reason = HTTPStatus(status_code).phrase
        except ValueError:
            reason = ""
    response.reason = reason
    if isinstance(body, str):
        content = body.encode("utf-8")
    elif isinstance(body, bytes):
        content = body
    else:
        content = json.dumps(body).encode("utf-8")
    response._content = content
    response.encoding = "utf-8"
    return response


def ok(data: Any = None) -> requests.Response:
    return make_response(200, {"success": True, "data": data})


def rejected(error: str) -> requests.Response:
    return make_response(200, {"success": False, "error": error})


class Call(NamedTuple):
    method: str
    path: str
    params: Dict[str, str]


class FakeDispatchServer:
    """
    Answers Dispatch API requests from in-memory collections

    Pass an instance as the `http` argument of DispatchClient. Every request
    is recorded in `calls`; `failures` maps a path to a canned response.
    """

    def __init__(self, api_key: str = API_KEY, site: str = SITE_ID):
        self.api_key = api_key
        self.site = site
        self.sites: List[dict] = [{"id": 7, "code": "S7", "description": "Test Site"}]
        self.areas: List[dict] = [
            {"id": 10, "code": "A10", "description": "Area 10"},
            {"id": 11, "code": "A11", "description": "Area 11"},
            {"id": 12, "code": "A12", "description": "Area 12"},
        ]
        self.lines: Dict[int, List[dict]] = {12: [{"id": 20, "code": "L1", "description": "Line 1"}]}
        self.machines: Dict[int, List[dict]] = {20: [{"id": 30, "code": "M1", "description": "Press 1"}]}
        self.dispatch_types: List[dict] = [{"id": 3, "code": "MAINT", "description": "Maintenance"}]
        self.cycle_counts: Dict[str, int] = defaultdict(int)
        self.open_dispatches: Dict[int, dict] = {}
        self.closed_dispatches: Dict[int, dict] = {}
        self.next_dispatch_id = 555
        self.pitches: List[dict] = []
        self.labor: List[tuple] = []
        self.calls: List[Call] = []
        self.failures: Dict[str, requests.Response] = {}

    # requests.Session surface used by DispatchClient

    def get(self, url, params=None, timeout=None):
        return self._handle("GET", url, params or {})

    def post(self, url, data=None, timeout=None):
        return self._handle("POST", url, data or {})

    # helpers

    def paths(self) -> List[str]:
        return [f"{call.method} {call.path}" for call in self.calls]

    def calls_to(self, path: str) -> List[Call]:
        return [call for call in self.calls if call.path == path]

    def _handle(self, method: str, url: str, params: Dict[str, str]) -> requests.Response:
        path = urlsplit(url).path
        assert path.startswith("/api/1.0/"), path
        path = path[len("/api/1.0/"):]
        self.calls.append(Call(method, path, dict(params)))

        if path in self.failures:
            return self.failures[path]
        if params.get("auth") != self.api_key:
            return rejected("Invalid API key")
        if params.get("site") != self.site:
            return rejected("Unknown site")

        handler = self._route(method, path)
        if handler is None:
            return make_response(404, "<html>Not Found</html>")
        return handler(params)

    def _route(self, method: str, path: str):
        routes = [
            ("GET", r"sites/", lambda p, m: ok(self.sites)),
            ("GET", r"areas/", lambda p, m: ok(self._page(self.areas, p))),
            ("GET", r"lines/", lambda p, m: ok(self.lines.get(int(p.get("area_id", 0)), []))),
            ("GET", r"machines/", lambda p, m: ok(self.machines.get(int(p.get("line_id", 0)), []))),
            ("GET", r"dispatchtypes/", lambda p, m: ok(self.dispatch_types)),
            ("POST", r"users/(clock_in|clock_out)/([^/]+)/", self._labor),
            ("POST", r"machines/set_cycle_count/", self._set_cycle_count),
            ("POST", r"machines/increment_cycle_count/", self._increment_cycle_count),
            ("POST", r"dispatches/open/", self._open_dispatch),
            ("POST", r"dispatches/close/(\d+)/", self._close_dispatch),
            ("POST", r"dispatches/add/", self._add_dispatch),
            ("POST", r"pitchdetails/record_details/", self._record_pitch),
            ("GET", r"pitchdetails/record_details/", self._pitch_summary),
        ]
        for route_method, pattern, handler in routes:
            match = re.fullmatch(pattern, path)
            if route_method == method and match:
                return lambda params: handler(params, match)
        return None

    @staticmethod
    def _page(records, params):
        offset = int(params.get("offset", 0))
        limit = int(params.get("limit", len(records)))
        return records[offset:offset + limit]

    def _labor(self, params, match):
        self.labor.append((match.group(1), match.group(2), params.get("linecode")))
        return ok([])

    def _set_cycle_count(self, params, match):
        self.cycle_counts[params["code"]] = int(params["cyclecount"])
        return ok([])

    def _increment_cycle_count(self, params, match):
        self.cycle_counts[params["code"]] += int(params["cyclecount"])
        return ok([])

    def _new_dispatch(self, params) -> dict:
        dispatch = dict(params, id=self.next_dispatch_id)
        self.next_dispatch_id += 1
        return dispatch

    def _open_dispatch(self, params, match):
        dispatch = self._new_dispatch(params)
        self.open_dispatches[dispatch["id"]] = dispatch
        return ok({"id": dispatch["id"]})

    def _close_dispatch(self, params, match):
        dispatch_id = int(match.group(1))
        if dispatch_id not in self.open_dispatches:
            return rejected(f"Dispatch {dispatch_id} is not open")
        self.closed_dispatches[dispatch_id] = self.open_dispatches.pop(dispatch_id)
        return ok({"id": dispatch_id})

    def _add_dispatch(self, params, match):
        dispatch = self._new_dispatch(params)
        self.closed_dispatches[dispatch["id"]] = dispatch
        return ok({"id": dispatch["id"]})

    def _record_pitch(self, params, match):
        self.pitches.append(params)
        return ok({"id": len(self.pitches)})

    def _pitch_summary(self, params, match):
        pitches = [p for p in self.pitches if p["linecode"] == params["linecode"]]
        return ok({
            "actual": sum(int(p["actual"]) for p in pitches),
            "scrap": sum(int(p["scrap"]) for p in pitches),
            "products": [{"productcode": p["productcode"], "actual": int(p["actual"])} for p in pitches],
        })


@pytest.fixture
def server() -> FakeDispatchServer:
    return FakeDispatchServer()


@pytest.fixture
def session_context() -> SessionContext:
    return SessionContext(base_url="https://dispatch.test", site=SITE_ID, api_key=API_KEY)


@pytest.fixture
def client(server, session_context) -> DispatchClient:
    return DispatchClient(session_context, http=server)

"""
Dispatch API - Python Client Library

A small client for reading and writing data in a Dispatch manufacturing
operations server. Every call goes through the same two chokepoints:
`build_params` injects the API key and site, and `validate_envelope`
turns the `{success, error, data}` response envelope into a typed payload
or raises.

Example Usage:
    from dispatch_client import DispatchClient, SessionContext

    client = DispatchClient(
        SessionContext.for_server("example.l2l.com", site="1", api_key=key)
    )

    lines = client.lines.list(area_id=12)
    client.users.clock_in("alice", linecode=lines[0].code)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import requests
from dateutil.relativedelta import relativedelta

logger = logging.getLogger(__name__)

API_PREFIX = "api/1.0"


class Precision(Enum):
    """Datetime layouts the Dispatch API accepts"""
    MINUTE = "%Y-%m-%d %H:%M"
    SECOND = "%Y-%m-%d %H:%M:%S"


class PayloadShape(Enum):
    """Expected shape of the envelope's `data` field"""
    RECORDS = "records"
    OBJECT = "object"


class DispatchError(Exception):
    """Base exception for Dispatch API errors"""
    pass


class TransportError(DispatchError):
    """The request never produced an HTTP response"""
    pass


class HTTPStatusError(DispatchError):
    """Server answered with a non-2xx status"""
    def __init__(self, status_code: int, reason: str = ""):
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"HTTP {status_code} {reason}".rstrip())


class DecodeError(DispatchError):
    """Response body is not the envelope we expected"""
    pass


class APIError(DispatchError):
    """Server rejected the request (`success` is false)"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(f"API Error: {message}")


@dataclass(frozen=True)
class SessionContext:
    """
    Connection details shared by every call of a run

    Args:
        base_url: Scheme and host of the Dispatch server
        site: Site id every request is scoped to
        api_key: API key sent as the `auth` parameter
    """
    base_url: str
    site: str
    api_key: str = field(repr=False)

    @classmethod
    def for_server(cls, server: str, site: str, api_key: str) -> "SessionContext":
        """Build a context from a bare hostname (https is assumed)"""
        base_url = server if "://" in server else f"https://{server}"
        return cls(base_url=base_url.rstrip("/"), site=str(site), api_key=api_key)


@dataclass(frozen=True)
class ResourceRecord:
    """Generic `{id, code, description}` row returned by list endpoints"""
    id: int
    code: str = ""
    description: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "ResourceRecord":
        if not isinstance(data, dict):
            raise DecodeError(f"Expected a record object, got {type(data).__name__}")
        record_id = data.get("id")
        if not isinstance(record_id, int) or isinstance(record_id, bool) or record_id <= 0:
            raise DecodeError(f"Record has no usable id: {data!r}")
        return cls(
            id=record_id,
            code=str(data.get("code") or ""),
            description=str(data.get("description") or ""),
        )


@dataclass(frozen=True)
class DispatchHandle:
    """Identifier of an open dispatch, consumed by `DispatchesAPI.close`"""
    id: int

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "DispatchHandle":
        dispatch_id = payload.get("id")
        if not isinstance(dispatch_id, int) or isinstance(dispatch_id, bool) or dispatch_id <= 0:
            raise DecodeError(f"Dispatch response has no usable id: {payload!r}")
        return cls(id=dispatch_id)


@dataclass(frozen=True)
class TimeWindow:
    """
    A `(start, end)` pair of site-local datetimes

    Callers pass wall-clock time in the site's timezone, never UTC.
    """
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"Window start {self.start} is after end {self.end}")

    @classmethod
    def backdated(cls, now: datetime, days: int, hours: int) -> "TimeWindow":
        """Window starting `days` calendar days before `now`, lasting `hours`"""
        start = now + relativedelta(days=-days)
        return cls(start=start, end=start + relativedelta(hours=hours))

    @classmethod
    def day_of(cls, now: datetime) -> "TimeWindow":
        """Midnight of `now`'s day through 24 hours later"""
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return cls(start=start, end=start + relativedelta(days=1))

    def format(self, precision: Precision) -> Tuple[str, str]:
        return self.start.strftime(precision.value), self.end.strftime(precision.value)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def build_params(session: SessionContext, params: Optional[Mapping[str, Any]] = None) -> Dict[str, str]:
    """
    Build the authenticated parameter set for one call

    Args:
        session: Session supplying the API key and site
        params: Caller parameters; `auth` and `site` are reserved

    Returns:
        Dict with `auth`, `site` and every caller parameter as strings
    """
    built = {"auth": session.api_key, "site": session.site}
    for key, value in (params or {}).items():
        if key in built:
            raise ValueError(f"Parameter '{key}' is reserved and set from the session")
        built[key] = _stringify(value)
    return built


def validate_envelope(response: requests.Response, shape: PayloadShape) -> Union[List[ResourceRecord], Dict[str, Any]]:
    """
    Check a Dispatch response and return its typed `data` payload

    Args:
        response: HTTP response from the server
        shape: Whether `data` is a list of records or a single object

    Returns:
        List of ResourceRecord for RECORDS, a dict for OBJECT

    Raises:
        HTTPStatusError: status outside 2xx (the body is not read)
        DecodeError: body is not a JSON envelope, or `data` has the wrong shape
        APIError: envelope reports `success: false`
    """
    if not 200 <= response.status_code < 300:
        raise HTTPStatusError(response.status_code, response.reason or "")

    try:
        envelope = response.json()
    except ValueError as e:
        raise DecodeError(f"Response body is not valid JSON: {e}") from e

    if not isinstance(envelope, dict) or not isinstance(envelope.get("success"), bool):
        raise DecodeError("Response is not a Dispatch envelope (missing boolean 'success')")

    if not envelope["success"]:
        raise APIError(str(envelope.get("error") or "unknown error"))

    data = envelope.get("data")
    if shape is PayloadShape.RECORDS:
        if data is None:
            return []
        if not isinstance(data, list):
            raise DecodeError(f"Expected a list in 'data', got {type(data).__name__}")
        return [ResourceRecord.from_dict(item) for item in data]

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise DecodeError(f"Expected an object in 'data', got {type(data).__name__}")
    return data


class SitesAPI:
    """Sites API endpoints"""

    def __init__(self, client):
        self.client = client

    def list(self, **filters) -> List[ResourceRecord]:
        """
        List sites matching equality filters

        Example:
            client.sites.list(active=True, test_site=True)
        """
        return self.client._get("sites/", filters, PayloadShape.RECORDS)


class AreasAPI:
    """Areas API endpoints"""

    def __init__(self, client):
        self.client = client

    def list(self, limit: int, offset: int = 0, **filters) -> List[ResourceRecord]:
        """
        List one page of areas

        Args:
            limit: Page size
            offset: Number of records to skip

        Returns:
            At most `limit` records
        """
        params = {**filters, "limit": limit, "offset": offset}
        return self.client._get("areas/", params, PayloadShape.RECORDS)


class LinesAPI:
    """Production lines API endpoints"""

    def __init__(self, client):
        self.client = client

    def list(self, area_id: Optional[int] = None, **filters) -> List[ResourceRecord]:
        params = dict(filters)
        if area_id is not None:
            params["area_id"] = area_id
        return self.client._get("lines/", params, PayloadShape.RECORDS)


class MachinesAPI:
    """Machine listing and cycle count endpoints"""

    def __init__(self, client):
        self.client = client

    def list(self, line_id: Optional[int] = None, **filters) -> List[ResourceRecord]:
        params = dict(filters)
        if line_id is not None:
            params["line_id"] = line_id
        return self.client._get("machines/", params, PayloadShape.RECORDS)

    def set_cycle_count(self, code: str, cyclecount: int, window: Optional[TimeWindow] = None) -> List[ResourceRecord]:
        """
        Set a machine's cycle count to an absolute value

        Args:
            code: Machine code
            cyclecount: New counter value
            window: Optional window sent as start/end (minute precision)
        """
        params = _with_window({"code": code, "cyclecount": cyclecount}, window)
        return self.client._post("machines/set_cycle_count/", params, PayloadShape.RECORDS)

    def increment_cycle_count(
        self,
        code: str,
        cyclecount: int,
        window: Optional[TimeWindow] = None,
        skip_lastupdated: bool = False
    ) -> List[ResourceRecord]:
        """
        Add to a machine's cycle count

        Args:
            code: Machine code
            cyclecount: Amount to add
            window: Optional window sent as start/end (minute precision)
            skip_lastupdated: Tell the server not to touch the machine's
                lastupdated bookkeeping (for high frequency feeds)
        """
        params = _with_window({"code": code}, window)
        if skip_lastupdated:
            params["skip_lastupdated"] = 1
        params["cyclecount"] = cyclecount
        return self.client._post("machines/increment_cycle_count/", params, PayloadShape.RECORDS)


class DispatchTypesAPI:
    """Dispatch types API endpoints"""

    def __init__(self, client):
        self.client = client

    def list(self, **filters) -> List[ResourceRecord]:
        return self.client._get("dispatchtypes/", filters, PayloadShape.RECORDS)


class UsersAPI:
    """User labor (clock in/out) endpoints"""

    def __init__(self, client):
        self.client = client

    def clock_in(self, username: str, linecode: str, window: Optional[TimeWindow] = None) -> List[ResourceRecord]:
        """
        Clock a user in on a line

        Args:
            username: Dispatch username
            linecode: Code of the line the user works on
            window: Optional past session; when given the server records a
                complete clock in/out pair for it (minute precision)
        """
        params = _with_window({}, window)
        params["linecode"] = linecode
        return self.client._post(f"users/clock_in/{username}/", params, PayloadShape.RECORDS)

    def clock_out(self, username: str, linecode: str) -> List[ResourceRecord]:
        return self.client._post(f"users/clock_out/{username}/", {"linecode": linecode}, PayloadShape.RECORDS)


class DispatchesAPI:
    """Dispatch (service ticket) endpoints"""

    def __init__(self, client):
        self.client = client

    def open(
        self,
        machine_id: int,
        dispatchtype_id: int,
        description: str,
        window: Optional[TimeWindow] = None
    ) -> DispatchHandle:
        """
        Open a dispatch against a machine

        Args:
            machine_id: Id of the machine needing intervention
            dispatchtype_id: Id of the dispatch type
            description: Free text description
            window: Optional start/end (minute precision)

        Returns:
            Handle to pass to `close`
        """
        params = _with_window({}, window)
        params.update({
            "dispatchtype": dispatchtype_id,
            "description": description,
            "machine": machine_id,
        })
        payload = self.client._post("dispatches/open/", params, PayloadShape.OBJECT)
        return DispatchHandle.from_payload(payload)

    def close(self, handle: DispatchHandle) -> Dict[str, Any]:
        return self.client._post(f"dispatches/close/{handle.id}/", {}, PayloadShape.OBJECT)

    def add(
        self,
        machinecode: str,
        dispatchtypecode: str,
        description: str,
        reported: datetime,
        completed: datetime
    ) -> Dict[str, Any]:
        """
        Record a dispatch that already happened, in one call

        Args:
            machinecode: Machine code
            dispatchtypecode: Dispatch type code
            description: Free text description
            reported: When the event was reported (site-local)
            completed: When the intervention was completed (site-local)

        Returns:
            Dict containing the created dispatch data
        """
        window = TimeWindow(reported, completed)
        reported_text, completed_text = window.format(Precision.MINUTE)
        params = {
            "dispatchtypecode": dispatchtypecode,
            "description": description,
            "machinecode": machinecode,
            "reported": reported_text,
            "completed": completed_text,
        }
        return self.client._post("dispatches/add/", params, PayloadShape.OBJECT)


class PitchDetailsAPI:
    """Production (pitch detail) endpoints"""

    def __init__(self, client):
        self.client = client

    def record(
        self,
        linecode: str,
        productcode: str,
        actual: int,
        scrap: int,
        operator_count: int,
        start: str = "now",
        end: str = "now"
    ) -> Dict[str, Any]:
        """
        Record production counts for a line

        Args:
            linecode: Line code
            productcode: Product being produced
            actual: Good units produced
            scrap: Scrapped units
            operator_count: Operators working the line
            start: Pitch start, formatted datetime or "now"
            end: Pitch end, formatted datetime or "now"

        Returns:
            Dict containing the recorded pitch data
        """
        params = {
            "linecode": linecode,
            "productcode": productcode,
            "actual": actual,
            "scrap": scrap,
            "operator_count": operator_count,
            "start": start,
            "end": end,
        }
        return self.client._post("pitchdetails/record_details/", params, PayloadShape.OBJECT)

    def summary(
        self,
        linecode: str,
        productcode: str,
        window: TimeWindow,
        show_products: bool = True
    ) -> Dict[str, Any]:
        """
        Get aggregated production for a line over a window

        Args:
            linecode: Line code
            productcode: Product code
            window: Reporting window (second precision)
            show_products: Include the per-product breakdown

        Returns:
            Dict with the summarized production data
        """
        start, end = window.format(Precision.SECOND)
        params = {
            "start": start,
            "end": end,
            "linecode": linecode,
            "productcode": productcode,
            "show_products": show_products,
        }
        return self.client._get("pitchdetails/record_details/", params, PayloadShape.OBJECT)


def _with_window(params: Dict[str, Any], window: Optional[TimeWindow]) -> Dict[str, Any]:
    if window is not None:
        params["start"], params["end"] = window.format(Precision.MINUTE)
    return params


class DispatchClient:
    """
    Dispatch API Client

    Args:
        session: SessionContext with server, site and API key
        timeout: Request timeout in seconds (default: 30)
        http: Optional `requests.Session` to send requests with

    Example:
        client = DispatchClient(
            SessionContext.for_server("example.l2l.com", site="1", api_key=key)
        )

        handle = client.dispatches.open(
            machine_id=42,
            dispatchtype_id=3,
            description="Spindle jam"
        )
        client.dispatches.close(handle)
    """

    def __init__(self, session: SessionContext, timeout: float = 30, http: Optional[requests.Session] = None):
        self.session = session
        self.timeout = timeout
        self.http = http or requests.Session()

        # Initialize API endpoints
        self.sites = SitesAPI(self)
        self.areas = AreasAPI(self)
        self.lines = LinesAPI(self)
        self.machines = MachinesAPI(self)
        self.dispatch_types = DispatchTypesAPI(self)
        self.users = UsersAPI(self)
        self.dispatches = DispatchesAPI(self)
        self.pitch_details = PitchDetailsAPI(self)

    def _url(self, path: str) -> str:
        return f"{self.session.base_url}/{API_PREFIX}/{path}"

    def _send(self, method: str, path: str, params: Optional[Mapping[str, Any]], shape: PayloadShape):
        url = self._url(path)
        built = build_params(self.session, params)
        logger.debug("%s %s", method, url)
        try:
            if method == "GET":
                response = self.http.get(url, params=built, timeout=self.timeout)
            else:
                response = self.http.post(url, data=built, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e
        logger.debug("Response from %s: %s", path, response.text)
        return validate_envelope(response, shape)

    def _get(self, path: str, params: Optional[Mapping[str, Any]], shape: PayloadShape):
        """Make GET request with query string parameters"""
        return self._send("GET", path, params, shape)

    def _post(self, path: str, params: Optional[Mapping[str, Any]], shape: PayloadShape):
        """Make POST request with a form-url-encoded body"""
        return self._send("POST", path, params, shape)

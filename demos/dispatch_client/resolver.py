"""
Locate the site, area, line, machine and dispatch type a run works against.

Lines, machines and dispatch types are found with a filtered listing. Areas
have no filter that picks "any one active area", so they are found by
scanning the paginated area listing and keeping the last record seen.
"""

import logging
from typing import List, Optional

from .dispatch_api import DispatchClient, DispatchError, ResourceRecord

logger = logging.getLogger(__name__)

AREA_PAGE_SIZE = 2


class ResourceNotFound(DispatchError):
    """No usable (or no unambiguous) resource of a kind"""
    def __init__(self, kind: str, detail: str = ""):
        self.kind = kind
        self.detail = detail
        message = f"Couldn't find an active {kind} to use"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


def _first(records: List[ResourceRecord], kind: str) -> ResourceRecord:
    if not records:
        raise ResourceNotFound(kind)
    return records[0]


class ResourceResolver:
    """
    Resolve Dispatch resources through a client

    Args:
        client: DispatchClient to query
        page_size: Page size used by the area scan (default: 2)
    """

    def __init__(self, client: DispatchClient, page_size: int = AREA_PAGE_SIZE):
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.client = client
        self.page_size = page_size

    def site(self) -> ResourceRecord:
        """
        Find the session's test site

        Raises:
            ResourceNotFound: zero or more than one site matched
        """
        records = self.client.sites.list(active=True, test_site=True)
        if len(records) != 1:
            raise ResourceNotFound("site", f"expected exactly one test site, got {len(records)}")
        return records[0]

    def area(self) -> ResourceRecord:
        """
        Scan the active areas page by page and return the last one

        A full page moves the offset forward by its length; a short page
        (or an empty page after earlier records) ends the scan. The record
        returned is the final record in the server's listing order.

        For N active areas this fetches floor(N / page_size) + 1 pages: when
        N is a multiple of the page size the last full page is followed by
        one empty page, since the listing carries no total count.

        Raises:
            ResourceNotFound: there are no active areas
        """
        offset = 0
        candidate: Optional[ResourceRecord] = None

        while True:
            page = self.client.areas.list(limit=self.page_size, offset=offset, active=True)
            logger.debug("Area page at offset %d returned %d records", offset, len(page))
            if page:
                candidate = page[-1]
            if len(page) < self.page_size:
                break
            offset += len(page)

        if candidate is None:
            raise ResourceNotFound("area")
        return candidate

    def line(self, area: ResourceRecord) -> ResourceRecord:
        return _first(self.client.lines.list(area_id=area.id, active=True), "line")

    def machine(self, line: ResourceRecord) -> ResourceRecord:
        return _first(self.client.machines.list(line_id=line.id, active=True), "machine")

    def dispatch_type(self) -> ResourceRecord:
        return _first(self.client.dispatch_types.list(active=True), "dispatch type")

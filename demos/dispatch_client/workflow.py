"""
Dispatch Workflow

Drives a Dispatch server through one complete, ordered run:

1. Resolve the test site
2. Discover an active area
3. Resolve a line in that area
4. Resolve a machine on that line
5. Resolve an active dispatch type
6. Clock a user in and straight back out on the line
7. Record a backdated 8 hour clock in session from a week ago
8. Set, then increment, the machine's cycle count
9. Open a dispatch on the machine and close it
10. Add an already-completed dispatch from 60 days ago
11. Record a point production sample for the line
12. Fetch today's production summary for the line

Each step receives the context built so far and returns a new one. The
first step that raises stops the run; nothing already written is undone.
"""

import logging
import random
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from dateutil import tz
from dateutil.relativedelta import relativedelta

from .dispatch_api import (
    DispatchClient,
    DispatchError,
    DispatchHandle,
    ResourceRecord,
    TimeWindow,
)
from .resolver import ResourceResolver

logger = logging.getLogger(__name__)

INITIAL_CYCLE_COUNT = 832
CYCLE_COUNT_INCREMENT = 5
OPEN_DISPATCH_DESCRIPTION = "dispatch-client test dispatch"
CLOSED_DISPATCH_DESCRIPTION = "dispatch-client test dispatch (already closed)"
PRODUCT_CODE = "testproduct-3"

BACKDATED_DAYS = 7
BACKDATED_HOURS = 8
HISTORICAL_DISPATCH_DAYS = 60
HISTORICAL_DISPATCH_MINUTES = 34

# Inclusive ranges for the random production sample
ACTUAL_RANGE = (10, 99)
SCRAP_RANGE = (5, 19)
OPERATOR_COUNT_RANGE = (0, 9)


class WorkflowAborted(DispatchError):
    """A workflow step failed and the run was stopped"""
    def __init__(self, step_number: int, step_name: str, cause: Exception):
        self.step_number = step_number
        self.step_name = step_name
        self.cause = cause
        super().__init__(f"Step {step_number} ({step_name}) failed: {cause}")


@dataclass(frozen=True)
class PitchSample:
    """Production counts sent with a pitch detail"""
    actual: int
    scrap: int
    operator_count: int

    @classmethod
    def random(cls, rng: random.Random) -> "PitchSample":
        return cls(
            actual=rng.randint(*ACTUAL_RANGE),
            scrap=rng.randint(*SCRAP_RANGE),
            operator_count=rng.randint(*OPERATOR_COUNT_RANGE),
        )


@dataclass(frozen=True)
class WorkflowContext:
    """Everything the workflow has learned so far"""
    username: str
    site: Optional[ResourceRecord] = None
    area: Optional[ResourceRecord] = None
    line: Optional[ResourceRecord] = None
    machine: Optional[ResourceRecord] = None
    dispatch_type: Optional[ResourceRecord] = None
    backdated_window: Optional[TimeWindow] = None
    dispatch: Optional[DispatchHandle] = None
    historical_dispatch: Optional[Dict[str, Any]] = None
    pitch_sample: Optional[PitchSample] = None
    daily_summary: Optional[Dict[str, Any]] = None


class WorkflowStep(NamedTuple):
    name: str
    run: Callable[[WorkflowContext], WorkflowContext]


def site_clock(timezone: Optional[str] = None) -> Callable[[], datetime]:
    """
    Return a function giving the current wall-clock time at the site

    Args:
        timezone: IANA zone name of the site; the host's zone when omitted

    Raises:
        ValueError: unknown zone name
    """
    zone = tz.gettz(timezone) if timezone else tz.tzlocal()
    if zone is None:
        raise ValueError(f"Unknown timezone: {timezone}")
    return lambda: datetime.now(zone)


class DispatchWorkflow:
    """
    The twelve step Dispatch run

    Args:
        client: DispatchClient bound to the site
        username: Dispatch user to clock in and out
        clock: Returns site-local "now" (default: host local time)
        rng: Random source for the production sample
        resolver: ResourceResolver to use (default: one over `client`)
    """

    def __init__(
        self,
        client: DispatchClient,
        username: str,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
        resolver: Optional[ResourceResolver] = None
    ):
        self.client = client
        self.username = username
        self.clock = clock or site_clock()
        self.rng = rng or random.Random()
        self.resolver = resolver or ResourceResolver(client)

    def steps(self) -> List[WorkflowStep]:
        return [
            WorkflowStep("resolve site", self.resolve_site),
            WorkflowStep("discover area", self.discover_area),
            WorkflowStep("resolve line", self.resolve_line),
            WorkflowStep("resolve machine", self.resolve_machine),
            WorkflowStep("resolve dispatch type", self.resolve_dispatch_type),
            WorkflowStep("clock in and out", self.clock_in_and_out),
            WorkflowStep("backdated clock in", self.backdated_clock_in),
            WorkflowStep("machine cycle counts", self.update_cycle_counts),
            WorkflowStep("open and close dispatch", self.open_and_close_dispatch),
            WorkflowStep("add historical dispatch", self.add_historical_dispatch),
            WorkflowStep("record production", self.record_production),
            WorkflowStep("daily production summary", self.daily_summary),
        ]

    def run(self) -> WorkflowContext:
        """
        Execute every step in order

        Returns:
            The final WorkflowContext

        Raises:
            WorkflowAborted: the first failing step, chained to its cause
        """
        context = WorkflowContext(username=self.username)
        for number, step in enumerate(self.steps(), start=1):
            logger.debug("[%d] %s", number, step.name)
            try:
                context = step.run(context)
            except DispatchError as e:
                raise WorkflowAborted(number, step.name, e) from e
        return context

    # Resource resolution

    def resolve_site(self, context: WorkflowContext) -> WorkflowContext:
        site = self.resolver.site()
        logger.info("Using site: %s", site.description)
        return replace(context, site=site)

    def discover_area(self, context: WorkflowContext) -> WorkflowContext:
        area = self.resolver.area()
        logger.info("Using area: %s", area.code)
        return replace(context, area=area)

    def resolve_line(self, context: WorkflowContext) -> WorkflowContext:
        line = self.resolver.line(context.area)
        logger.info("Using line: %s", line.code)
        return replace(context, line=line)

    def resolve_machine(self, context: WorkflowContext) -> WorkflowContext:
        machine = self.resolver.machine(context.line)
        logger.info("Using machine: %s", machine.code)
        return replace(context, machine=machine)

    def resolve_dispatch_type(self, context: WorkflowContext) -> WorkflowContext:
        dispatch_type = self.resolver.dispatch_type()
        logger.info("Using dispatch type: %s", dispatch_type.code)
        return replace(context, dispatch_type=dispatch_type)

    # Labor

    def clock_in_and_out(self, context: WorkflowContext) -> WorkflowContext:
        self.client.users.clock_in(context.username, linecode=context.line.code)
        logger.info("User clocked in")
        self.client.users.clock_out(context.username, linecode=context.line.code)
        logger.info("User clocked out")
        return context

    def backdated_clock_in(self, context: WorkflowContext) -> WorkflowContext:
        window = TimeWindow.backdated(self.clock(), days=BACKDATED_DAYS, hours=BACKDATED_HOURS)
        self.client.users.clock_in(context.username, linecode=context.line.code, window=window)
        logger.info("Created backdated clock in")
        return replace(context, backdated_window=window)

    # Machine

    def update_cycle_counts(self, context: WorkflowContext) -> WorkflowContext:
        code = context.machine.code
        self.client.machines.set_cycle_count(code, INITIAL_CYCLE_COUNT, window=context.backdated_window)
        logger.info("Set machine cycle count")
        # High frequency feeds skip the lastupdated bookkeeping
        self.client.machines.increment_cycle_count(
            code,
            CYCLE_COUNT_INCREMENT,
            window=context.backdated_window,
            skip_lastupdated=True,
        )
        logger.info("Incremented machine cycle count")
        return context

    # Dispatches

    def open_and_close_dispatch(self, context: WorkflowContext) -> WorkflowContext:
        handle = self.client.dispatches.open(
            machine_id=context.machine.id,
            dispatchtype_id=context.dispatch_type.id,
            description=OPEN_DISPATCH_DESCRIPTION,
            window=context.backdated_window,
        )
        logger.info("Created open Dispatch %d", handle.id)
        self.client.dispatches.close(handle)
        logger.info("Closed open Dispatch %d", handle.id)
        return replace(context, dispatch=handle)

    def add_historical_dispatch(self, context: WorkflowContext) -> WorkflowContext:
        # Independent of the dispatch opened and closed above
        reported = self.clock() + relativedelta(days=-HISTORICAL_DISPATCH_DAYS)
        completed = reported + relativedelta(minutes=HISTORICAL_DISPATCH_MINUTES)
        created = self.client.dispatches.add(
            machinecode=context.machine.code,
            dispatchtypecode=context.dispatch_type.code,
            description=CLOSED_DISPATCH_DESCRIPTION,
            reported=reported,
            completed=completed,
        )
        logger.info("Created backdated Dispatch")
        return replace(context, historical_dispatch=created)

    # Production

    def record_production(self, context: WorkflowContext) -> WorkflowContext:
        sample = PitchSample.random(self.rng)
        # start == end == "now": a point sample rather than a time range
        self.client.pitch_details.record(
            linecode=context.line.code,
            productcode=PRODUCT_CODE,
            actual=sample.actual,
            scrap=sample.scrap,
            operator_count=sample.operator_count,
            start="now",
            end="now",
        )
        logger.info("Recorded pitch details")
        return replace(context, pitch_sample=sample)

    def daily_summary(self, context: WorkflowContext) -> WorkflowContext:
        summary = self.client.pitch_details.summary(
            linecode=context.line.code,
            productcode=PRODUCT_CODE,
            window=TimeWindow.day_of(self.clock()),
            show_products=True,
        )
        logger.info("Retrieved daily summary for line")
        return replace(context, daily_summary=summary)

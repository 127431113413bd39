"""
Dispatch API - Python Client Package

A Python client for the Dispatch manufacturing operations API, plus a
workflow that walks a site through labor, machine, dispatch and production
calls.
"""

from .dispatch_api import (
    # Main client
    DispatchClient,
    SessionContext,

    # Values
    ResourceRecord,
    DispatchHandle,
    TimeWindow,
    Precision,
    PayloadShape,

    # Call chokepoints
    build_params,
    validate_envelope,

    # Exceptions
    DispatchError,
    TransportError,
    HTTPStatusError,
    DecodeError,
    APIError,
)
from .resolver import ResourceNotFound, ResourceResolver
from .workflow import DispatchWorkflow, WorkflowAborted, WorkflowContext

__version__ = "1.0.0"
__all__ = [
    "DispatchClient",
    "SessionContext",
    "ResourceRecord",
    "DispatchHandle",
    "TimeWindow",
    "Precision",
    "PayloadShape",
    "build_params",
    "validate_envelope",
    "DispatchError",
    "TransportError",
    "HTTPStatusError",
    "DecodeError",
    "APIError",
    "ResourceNotFound",
    "ResourceResolver",
    "DispatchWorkflow",
    "WorkflowAborted",
    "WorkflowContext",
]

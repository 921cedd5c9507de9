"""Runtime module for supervised process execution.

This module provides isolated process execution with timeout enforcement,
optional impersonation and reliable process-group termination.
"""

from __future__ import annotations

from .credentials import (
    CredentialResolver,
    IdCommandLookup,
    IdentityLookup,
    PasswdLookup,
    get_lookup,
    parse_group_ids,
    resolve_credentials,
)
from .errors import (
    CommandExitError,
    CommandStartError,
    CommandTimeoutError,
    IdentityError,
    IdentityLookupError,
    IdentityReportError,
    InvalidIdentityError,
    ProcessSetupError,
    SupervisorError,
    UserNotFoundError,
    WaitError,
)
from .process_supervisor import ProcessSupervisor
from .types import (
    SENTINEL_EXIT_CODE,
    Credentials,
    OutputSink,
    ProcessSpec,
    RunResult,
    RunState,
    RunStatus,
)

__all__ = [
    "SENTINEL_EXIT_CODE",
    "CommandExitError",
    "CommandStartError",
    "CommandTimeoutError",
    "CredentialResolver",
    "Credentials",
    "IdCommandLookup",
    "IdentityError",
    "IdentityLookup",
    "IdentityLookupError",
    "IdentityReportError",
    "InvalidIdentityError",
    "OutputSink",
    "PasswdLookup",
    "ProcessSetupError",
    "ProcessSpec",
    "ProcessSupervisor",
    "RunResult",
    "RunState",
    "RunStatus",
    "SupervisorError",
    "UserNotFoundError",
    "WaitError",
    "get_lookup",
    "parse_group_ids",
    "resolve_credentials",
]

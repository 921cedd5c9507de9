"""Credential resolution for impersonated runs.

childguard runtime v0.1.0

Resolves a user name into the uid, gid and supplementary groups a child
process is launched under. Lookups produce an identity report line in the
format printed by id(1):

    uid=1000(alice) gid=1000(alice) groups=1000(alice),27(sudo),999(docker)

and the resolver extracts the supplementary group ids from its ``groups=``
section. Nothing is cached; every call hits the identity database.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from typing import Protocol

from .errors import (
    IdentityLookupError,
    IdentityReportError,
    InvalidIdentityError,
    UserNotFoundError,
)
from .types import Credentials

if sys.platform != "win32":
    import grp
    import pwd

__all__ = [
    "GROUPS_MARKER",
    "CredentialResolver",
    "IdCommandLookup",
    "IdentityLookup",
    "PasswdLookup",
    "get_lookup",
    "parse_group_ids",
    "resolve_credentials",
]

logger = logging.getLogger(__name__)

GROUPS_MARKER = "groups="

# Timeout for a single id(1) invocation
ID_COMMAND_TIMEOUT = 5.0


class IdentityLookup(Protocol):
    """Identity query capability used by the resolver."""

    def lookup(self, username: str) -> tuple[int, int, str]:
        """Return (uid, gid, identity report) for ``username``."""
        ...


def parse_group_ids(report: str) -> list[int]:
    """Extract group ids from the ``groups=`` section of an identity report.

    Each comma-separated entry has the form ``<id>(<name>)``; only the
    number before the first ``(`` is used.

    Args:
        report: Identity report line

    Returns:
        Group ids in report order (empty when there is no groups section)

    Raises:
        IdentityReportError: If an entry has no numeric id
    """
    index = report.find(GROUPS_MARKER)
    if index < 0:
        return []

    section = report[index + len(GROUPS_MARKER):].strip()
    if not section:
        return []

    group_ids: list[int] = []
    for entry in section.split(","):
        paren = entry.find("(")
        if paren < 0:
            raise IdentityReportError(f"malformed group entry: {entry.strip()!r}")
        try:
            group_ids.append(int(entry[:paren].strip()))
        except ValueError as e:
            raise IdentityReportError(
                f"failed to retrieve group id from {entry.strip()!r}"
            ) from e
    return group_ids


class PasswdLookup:
    """Lookup backed by the passwd/group databases (no subprocess)."""

    def lookup(self, username: str) -> tuple[int, int, str]:
        if sys.platform == "win32":
            raise IdentityLookupError("identity database not available on Windows")

        try:
            entry = pwd.getpwnam(username)
        except KeyError:
            raise UserNotFoundError(username) from None

        try:
            group_ids = os.getgrouplist(username, entry.pw_gid)
        except OSError as e:
            raise IdentityLookupError(f"failed to list groups for {username}: {e}") from e

        groups = ",".join(f"{gid}({self._group_name(gid)})" for gid in group_ids)
        report = (
            f"uid={entry.pw_uid}({username}) "
            f"gid={entry.pw_gid}({self._group_name(entry.pw_gid)}) "
            f"groups={groups}"
        )
        return entry.pw_uid, entry.pw_gid, report

    @staticmethod
    def _group_name(gid: int) -> str:
        try:
            return grp.getgrgid(gid).gr_name
        except KeyError:
            # Groups without a name are printed as their number
            return str(gid)


class IdCommandLookup:
    """Lookup that runs the id(1) utility.

    The user name is passed as a separate argv element, never through a
    shell.
    """

    def __init__(self, executable: str = "id", timeout: float = ID_COMMAND_TIMEOUT) -> None:
        self.executable = executable
        self.timeout = timeout

    def lookup(self, username: str) -> tuple[int, int, str]:
        uid = self._parse_number(self._run("-u", username), "uid", username)
        gid = self._parse_number(self._run("-g", username), "gid", username)
        report = self._run(username)
        return uid, gid, report

    def _run(self, *args: str) -> str:
        argv = [self.executable, *args]
        try:
            completed = subprocess.run(
                argv,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise IdentityLookupError(f"failed to run {' '.join(argv)}: {e}") from e

        if completed.returncode != 0:
            logger.debug(
                f"{' '.join(argv)} exited {completed.returncode}: "
                f"{completed.stderr.strip()}"
            )
            raise UserNotFoundError(args[-1])
        return completed.stdout

    @staticmethod
    def _parse_number(output: str, what: str, username: str) -> int:
        try:
            return int(output.strip())
        except ValueError:
            raise IdentityReportError(
                f"failed to retrieve {what} for {username}: {output.strip()!r}"
            ) from None


_LOOKUPS = {
    "passwd": PasswdLookup,
    "id": IdCommandLookup,
}


def get_lookup(name: str) -> IdentityLookup:
    """Create an identity lookup by backend name (``passwd`` or ``id``)."""
    try:
        return _LOOKUPS[name.lower().strip()]()
    except KeyError:
        raise ValueError(f"Unknown identity backend: {name}") from None


class CredentialResolver:
    """Resolve user names into launch credentials.

    Example:
        resolver = CredentialResolver()
        creds = resolver.resolve("nobody")
        # Credentials(uid=65534, gid=65534, groups=(65534,))
    """

    def __init__(self, lookup: IdentityLookup | None = None) -> None:
        self.lookup = lookup if lookup is not None else PasswdLookup()

    def resolve(self, username: str) -> Credentials:
        """Resolve ``username``.

        Raises:
            UserNotFoundError: Unknown user
            IdentityReportError: Unparsable identity report
            IdentityLookupError: The lookup could not be performed
            InvalidIdentityError: uid or gid is not strictly positive
        """
        if not username:
            raise UserNotFoundError(username)

        uid, gid, report = self.lookup.lookup(username)
        groups = parse_group_ids(report)

        if uid <= 0 or gid <= 0:
            raise InvalidIdentityError(username, uid, gid)

        logger.debug(f"Resolved {username}: uid={uid} gid={gid} groups={groups}")
        return Credentials(uid=uid, gid=gid, groups=tuple(groups))


def resolve_credentials(username: str, lookup: IdentityLookup | None = None) -> Credentials:
    """Resolve ``username`` with a one-off resolver."""
    return CredentialResolver(lookup).resolve(username)

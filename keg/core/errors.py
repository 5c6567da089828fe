# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Custom exceptions for keg.

All exceptions inherit from KegError for consistent error handling.
Three families mirror the failure taxonomy of the engine:

- ResolutionError: constraints cannot be satisfied (never retried)
- TransportError: fetching an artifact failed (retried by the downloader)
- InstallError: filesystem work failed (commit failures are rolled back)

Install-side errors always state whether system state changed.
"""

from typing import Any, Dict, List, Optional, Sequence


class KegError(Exception):
    """Base exception for all keg errors."""

    def __init__(
        self,
        message: str,
        exit_code: int = 1,
        details: Optional[dict] = None
    ):
        """
        Initialize keg error.

        Args:
            message: Human-readable error message
            exit_code: Process exit code for the CLI layer
            details: Additional error details
        """
        self.message = message
        self.exit_code = exit_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert error to dictionary for reporting."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "exit_code": self.exit_code,
            "details": self.details
        }


class ConfigurationError(KegError):
    """Configuration error."""

    def __init__(self, message: str, config_file: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, exit_code=78, details=details)
        self.config_file = config_file


# =============================================================================
# RESOLUTION ERRORS
# =============================================================================

class ResolutionError(KegError):
    """Dependency resolution failed. Nothing on disk was touched."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, exit_code=2, details=details)


class FormulaNotFound(ResolutionError):
    """No formula exists for a requested or depended-upon name."""

    def __init__(self, name: str, requester_chain: Optional[Sequence[str]] = None):
        self.name = name
        self.requester_chain = list(requester_chain or [])
        message = f"No available formula with the name \"{name}\""
        if self.requester_chain:
            message += f" (required by {' -> '.join(self.requester_chain)})"
        super().__init__(message, details={
            "package": name,
            "requester_chain": self.requester_chain
        })


class VersionConflict(ResolutionError):
    """No single version satisfies every collected constraint."""

    def __init__(self, name: str, constraints: List[str], report: Optional[Any] = None):
        """
        Initialize version conflict.

        Args:
            name: Package whose constraints conflict
            constraints: Human-readable constraints, one per requester
            report: ConflictReport with the full requester chains
        """
        self.name = name
        self.constraints = constraints
        self.report = report
        message = f"Cannot satisfy constraints for {name}: {'; '.join(constraints)}"
        details: Dict[str, Any] = {"package": name, "constraints": constraints}
        if report is not None:
            details["report"] = report.model_dump(mode="json")
        super().__init__(message, details=details)


class CircularDependency(ResolutionError):
    """A package depends on itself through a chain of dependencies."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"Circular dependency detected: {' -> '.join(self.cycle)}",
            details={"cycle": self.cycle}
        )


class FormulaConflict(ResolutionError):
    """Two selected formulae declare a conflict with each other."""

    def __init__(self, name: str, other: str):
        self.name = name
        self.other = other
        super().__init__(
            f"{name} conflicts with {other}",
            details={"package": name, "conflicts_with": other}
        )


class ResolutionCancelled(ResolutionError):
    """Resolution was cancelled between package expansions."""

    def __init__(self, pending: Optional[str] = None):
        self.pending = pending
        super().__init__("Resolution cancelled", details={"pending": pending})


# =============================================================================
# TRANSPORT ERRORS
# =============================================================================

class TransportError(KegError):
    """Fetching an artifact failed."""

    def __init__(self, message: str, url: str, package: Optional[str] = None, details: Optional[dict] = None):
        merged = {"url": url, "package": package}
        merged.update(details or {})
        super().__init__(message, exit_code=3, details=merged)
        self.url = url
        self.package = package


class DownloadFailed(TransportError):
    """The transport could not deliver the payload after retries."""

    def __init__(self, url: str, reason: str, package: Optional[str] = None):
        self.reason = reason
        super().__init__(f"Download failed for {url}: {reason}", url=url, package=package)


class ChecksumMismatch(TransportError):
    """Payload digest differs from the formula-declared checksum."""

    def __init__(self, url: str, expected: str, actual: str, package: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for {url}: expected {expected}, got {actual}",
            url=url,
            package=package,
            details={"expected": expected, "actual": actual}
        )


# =============================================================================
# INSTALL ERRORS
# =============================================================================

class InstallError(KegError):
    """
    Installer failure.

    Attributes:
        packages: Packages affected by the failure
        state_changed: True when the filesystem or Receipt Store differs from
            its state before the call
        rolled_back: True when already-committed work was undone
    """

    def __init__(
        self,
        message: str,
        packages: Optional[Sequence[str]] = None,
        state_changed: bool = False,
        rolled_back: bool = False,
        details: Optional[dict] = None
    ):
        self.packages = list(packages or [])
        self.state_changed = state_changed
        self.rolled_back = rolled_back
        merged = {
            "packages": self.packages,
            "state_changed": state_changed,
            "rolled_back": rolled_back
        }
        merged.update(details or {})
        super().__init__(message, exit_code=4, details=merged)


class StagingIOError(InstallError):
    """Unpacking into the private staging area failed."""

    def __init__(self, package: str, reason: str):
        self.package = package
        super().__init__(
            f"Staging failed for {package}: {reason}; nothing was installed",
            packages=[package]
        )


class CommitIOError(InstallError):
    """Moving a staged package into place failed."""

    def __init__(self, package: str, reason: str, rolled_back: bool = True, rollback_errors: Optional[List[str]] = None):
        self.package = package
        self.rollback_errors = list(rollback_errors or [])
        if rolled_back:
            message = f"Commit failed for {package}: {reason}; all changes were rolled back"
        else:
            message = (
                f"Commit failed for {package}: {reason}; rollback incomplete: "
                f"{'; '.join(self.rollback_errors)}"
            )
        super().__init__(
            message,
            packages=[package],
            state_changed=not rolled_back,
            rolled_back=rolled_back,
            details={"rollback_errors": self.rollback_errors}
        )


class TransactionCancelled(InstallError):
    """Transaction cancelled before its commit phase started."""

    def __init__(self, packages: Optional[Sequence[str]] = None):
        super().__init__("Transaction cancelled before commit; nothing was installed", packages=packages)


class PackageNotInstalled(InstallError):
    """No Receipt exists for the package."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"{name} is not installed", packages=[name])


class DependentsExist(InstallError):
    """Refusing to uninstall a package other Receipts depend on."""

    def __init__(self, name: str, dependents: Sequence[str]):
        self.name = name
        self.dependents = list(dependents)
        super().__init__(
            f"Refusing to uninstall {name} because it is required by {', '.join(self.dependents)}",
            packages=[name],
            details={"dependents": self.dependents}
        )


def sanitize_error_for_user(error: Exception, include_type: bool = True) -> str:
    """
    Sanitize error messages for user display.

    Args:
        error: The exception to sanitize
        include_type: Whether to include exception type

    Returns:
        Single-line message without stack trace
    """
    error_msg = " ".join(str(error).split())

    if len(error_msg) > 500:
        error_msg = error_msg[:500] + "..."

    if include_type:
        return f"{error.__class__.__name__}: {error_msg}"

    return error_msg

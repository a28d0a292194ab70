"""Exception hierarchy for vfkit-machine.

All exceptions inherit from MachineError.

Hierarchy:
    MachineError (base)
    ├── TransientError (retryable marker base)
    │   ├── FirewallBlockedError   ← bootpd unblocked, retry start
    │   └── SSHTimeoutError        ← guest sshd never answered
    ├── PermanentError (non-retryable marker base)
    │   ├── MachineExistsError     ← create on an existing instance
    │   ├── MachineNotFoundError   ← load of an unknown instance
    │   ├── MachineRunningError    ← start while vfkit is already running
    │   ├── MachineConfigError     ← missing boot assets, bad machine.json
    │   └── BuildError             ← bootstrap / raw disk creation failed
    ├── LaunchError                ← child process could not be started
    │   └── NetworkHelperError     ← vmnet-helper failed to come up
    ├── ProcessSignalError         ← terminate/kill failed on a live process
    ├── ChannelError               ← control socket unreachable or garbled
    ├── LeaseError
    │   ├── LeaseNotFoundError     ← no DHCP lease for the MAC address
    │   └── LeaseFileError         ← lease file missing or unreadable
    ├── IPResolutionError          ← lookup exhausted, not a firewall issue
    └── FirewallError              ← socketfilterfw remediation failed
"""

from __future__ import annotations

from typing import Any


class MachineError(Exception):
    """Base exception for all machine errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(MachineError):
    """Base for errors where retrying the whole operation may succeed."""


class PermanentError(MachineError):
    """Base for errors that need a configuration change before retrying."""


class FirewallBlockedError(TransientError):
    """Guest IP not found because the host firewall blocked bootpd.

    The firewall exception has already been added when this is raised,
    so the caller should retry start.
    """


class SSHTimeoutError(TransientError):
    """Guest SSH endpoint never became reachable within the attempt budget."""


class MachineExistsError(PermanentError):
    """Create was called for a machine that already has persisted state."""


class MachineNotFoundError(PermanentError):
    """No persisted state exists for the requested machine."""


class MachineRunningError(PermanentError):
    """Start was called while the hypervisor recorded for the machine is alive."""


class MachineConfigError(PermanentError):
    """Machine configuration or persisted state is invalid.

    Raised for missing boot assets, an unreadable machine.json or a
    network mode that lacks the data it needs (e.g. shared without an
    interface id).
    """


class BuildError(PermanentError):
    """Disk image construction failed.

    Raised when the public key cannot be read or when writing or sizing
    the bootstrap image or an extra raw disk fails.  Fatal to create.
    """


# =============================================================================
# Process Supervision
# =============================================================================


class LaunchError(MachineError):
    """A child process could not be started or its PID file not written."""


class NetworkHelperError(LaunchError):
    """The network helper did not start or did not report its interface."""


class ProcessSignalError(MachineError):
    """Sending a signal to a recorded, live process failed.

    Attributes:
        pid: PID the signal was addressed to (None if the PID file
            could not be read)
    """

    def __init__(self, message: str, pid: int | None = None, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx["pid"] = pid
        super().__init__(message, ctx)
        self.pid = pid


# =============================================================================
# Control Channel
# =============================================================================


class ChannelError(MachineError):
    """Hypervisor control channel failed.

    Covers connection refusal, a missing socket, timeouts, non-2xx
    responses and malformed JSON.  Never fatal on its own: stop and kill
    fall back to signalling the recorded PID.
    """


# =============================================================================
# Network Identity
# =============================================================================


class LeaseError(MachineError):
    """Base for DHCP lease lookup failures."""


class LeaseNotFoundError(LeaseError):
    """The lease file has no entry for the requested MAC address."""


class LeaseFileError(LeaseError):
    """The lease file does not exist or cannot be read."""


class IPResolutionError(MachineError):
    """Guest IP was never found and the failure is not a firewall block."""


class FirewallError(MachineError):
    """Adding bootpd to the host firewall allow list failed."""

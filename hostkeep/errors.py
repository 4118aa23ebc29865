"""
Exception hierarchy for hostkeep.

Every failure an operation can report derives from BackupError, so the
executors can record it on the run and return instead of crashing the
process. RunInterrupted is the exception: it derives from BaseException so
that generic handlers let it reach the lifecycle guard and the CLI.
"""


class BackupError(Exception):
    """Base class for all reportable backup failures."""
    pass


class DestinationUnavailable(BackupError):
    """Destination path is missing, not mounted, or its sync client is down."""
    pass


class DestinationUnreadable(DestinationUnavailable):
    """Destination exists but cannot be listed."""
    pass


class DestinationEmpty(DestinationUnavailable):
    """Destination is empty where an empty mount means the sync client is not ready."""
    pass


class DestinationNotWritable(BackupError):
    """Write probe failed even after attempting to repair permissions."""
    pass


class DestinationBusy(BackupError):
    """Another invocation holds the destination lock."""
    pass


class MissingTool(BackupError):
    """A required external command is not installed."""

    def __init__(self, tools):
        if isinstance(tools, str):
            tools = [tools]
        self.tools = list(tools)
        super().__init__(f"Missing required commands: {' '.join(self.tools)}")


class ArchiveMemberFailed(BackupError):
    """One archive member could not be written or extracted."""

    def __init__(self, member: str, returncode: int = None, detail: str = ''):
        self.member = member
        self.returncode = returncode
        self.detail = detail
        message = f"{member} failed"
        if returncode is not None:
            message += f" (exit status {returncode})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class VerifyFailed(BackupError):
    """One or more manifest entries did not match."""

    def __init__(self, generation, failures):
        self.generation = str(generation)
        self.failures = list(failures)
        super().__init__(
            f"Verification FAILED for {self.generation}: {', '.join(self.failures)}"
        )


class QuickVerifyFailed(VerifyFailed):
    """A sampled manifest entry did not match."""
    pass


class NoBackupsFound(BackupError):
    """No generation directories exist for the requested backup class."""
    pass


class RestoreCancelled(BackupError):
    """The operator declined the restore confirmation."""
    pass


class RetentionFailed(BackupError):
    """Old generations could not be deleted."""
    pass


class ScheduleUpdateFailed(BackupError):
    """The periodic task table could not be read, validated or written."""
    pass


class PrivilegeUnavailable(BackupError):
    """Elevated access is required but not pre-authorized for this context."""
    pass


class SystemCheckFailed(BackupError):
    """Host sanity check failed (for example the root filesystem is nearly full)."""
    pass


class RunInterrupted(BaseException):
    """Raised inside a guarded run when SIGINT or SIGTERM is received."""

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Interrupted by signal {signum}")

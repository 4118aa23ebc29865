"""
Host level helpers shared by the backup engines.

- Running external commands and turning a missing binary into MissingTool
- Probing for required tools
- Elevated privilege handling (sudo -n for unattended runs)
- Sync client process detection
- System sanity check run before backups and after restores
"""

import os
import shutil
import logging
import subprocess
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from hostkeep.errors import MissingTool, PrivilegeUnavailable, SystemCheckFailed

logger = logging.getLogger(__name__)

# Commands each operation shells out to
REQUIRED_TOOLS = {
    'full': ['tar'],
    'home': ['tar'],
    'incremental': ['tar'],
    'snapshot': ['rsync'],
    'restore': ['tar'],
    'restore-snapshot': ['rsync'],
}


def run_command(args: Sequence[str], input: Optional[str] = None, check: bool = False) -> subprocess.CompletedProcess:
    """
    Run an external command to completion and capture its output.

    Args:
        args: Command and arguments
        input: Optional text fed to stdin
        check: Raise CalledProcessError on non-zero exit

    Returns:
        CompletedProcess with text stdout/stderr

    Raises:
        MissingTool: If the executable does not exist
    """
    logger.debug(f"Running: {' '.join(args)}")
    try:
        return subprocess.run(
            list(args),
            input=input,
            capture_output=True,
            text=True,
            check=check,
        )
    except FileNotFoundError:
        raise MissingTool(args[0])


def find_missing_tools(tools: Iterable[str], which: Callable = shutil.which) -> List[str]:
    """Return the tools that are not on PATH."""
    return [tool for tool in tools if which(tool) is None]


def require_tools(operation: str, which: Callable = shutil.which):
    """
    Fail fast if an operation's external commands are missing.

    Args:
        operation: Key of REQUIRED_TOOLS
        which: Lookup function (shutil.which)

    Raises:
        MissingTool: If any command is missing
    """
    missing = find_missing_tools(REQUIRED_TOOLS.get(operation, []), which)
    if missing:
        logger.error(f"Missing required commands for {operation}: {' '.join(missing)}")
        raise MissingTool(missing)
    logger.info(f"All required commands are available for {operation}")


def is_root() -> bool:
    return os.geteuid() == 0


def needs_sudo(use_sudo: bool) -> bool:
    """Commands get a ``sudo -n`` prefix when sudo is enabled and we are not root."""
    return use_sudo and not is_root()


def privileged(args: Sequence[str], use_sudo: bool) -> List[str]:
    """Prefix a command with ``sudo -n`` when required."""
    if needs_sudo(use_sudo):
        return ['sudo', '-n'] + list(args)
    return list(args)


def require_privilege(use_sudo: bool, unattended: bool, runner: Callable = run_command):
    """
    Make sure privileged commands will not block on a password prompt.

    Unattended runs must already have non-interactive sudo access. Interactive
    runs get one chance to authenticate with ``sudo -v``.

    Args:
        use_sudo: Whether privileged commands go through sudo
        unattended: True for scheduled or scripted runs
        runner: Command runner (run_command)

    Raises:
        PrivilegeUnavailable: If elevated access cannot be obtained
    """
    if not needs_sudo(use_sudo):
        return

    result = runner(['sudo', '-n', 'true'])
    if result.returncode == 0:
        return

    if unattended:
        raise PrivilegeUnavailable(
            "Unattended run requires passwordless sudo (sudo -n true failed)"
        )

    # Interactive: let sudo prompt on the terminal
    try:
        completed = subprocess.run(['sudo', '-v'])
    except FileNotFoundError:
        raise MissingTool('sudo')
    if completed.returncode != 0:
        raise PrivilegeUnavailable("sudo authentication failed")


def process_running(name: str, runner: Callable = run_command) -> bool:
    """Check whether a process with this exact name is running (pgrep -x)."""
    if not name:
        return True
    try:
        result = runner(['pgrep', '-x', name])
    except MissingTool:
        logger.warning(f"pgrep not available, cannot check for process {name}")
        return False
    return result.returncode == 0


def disk_usage_percent(path: str) -> int:
    usage = shutil.disk_usage(path)
    if usage.total == 0:
        return 0
    return int(usage.used * 100 / usage.total)


def count_failed_services(runner: Callable = run_command) -> Optional[int]:
    """Number of failed systemd units, or None if systemctl is unavailable."""
    if shutil.which('systemctl') is None:
        return None
    try:
        result = runner(['systemctl', '--failed', '--no-legend', '--plain'])
    except MissingTool:
        return None
    if result.returncode != 0:
        return None
    return len([line for line in result.stdout.splitlines() if line.strip()])


def system_check(root: str = '/', usage_limit: int = 90, runner: Callable = run_command) -> Dict:
    """
    Host sanity check run before backups and after restores.

    Args:
        root: Filesystem whose usage is checked
        usage_limit: Maximum usage in percent
        runner: Command runner

    Returns:
        Dict with 'root_usage_percent', 'failed_services' and 'warnings'

    Raises:
        SystemCheckFailed: If the filesystem is over the usage limit
    """
    logger.info("Performing system check...")
    report = {'root': root, 'root_usage_percent': None, 'failed_services': None, 'warnings': []}

    usage = disk_usage_percent(root)
    report['root_usage_percent'] = usage
    if usage > usage_limit:
        logger.error(f"Root filesystem is {usage}% full. Consider cleaning up before backup.")
        raise SystemCheckFailed(f"Root filesystem {root} is {usage}% full (limit {usage_limit}%)")

    failed = count_failed_services(runner)
    report['failed_services'] = failed
    if failed:
        message = f"{failed} failed services detected"
        logger.warning(message)
        report['warnings'].append(message)

    logger.info(f"System check completed (root usage {usage}%)")
    return report

"""
Periodic backup scheduling through the user's crontab.

hostkeep owns exactly one delimited block of the crontab:

    # BEGIN hostkeep managed block
    0 2 * * 0 hostkeep backup full --unattended
    0 3 * * * hostkeep backup incremental --unattended
    # END hostkeep managed block

Every update rewrites that block as a whole and leaves all other lines
alone, so repeating an update never duplicates entries. Cron expressions
are validated with APScheduler's CronTrigger, which also previews the next
fire times.
"""

import re
import logging
from collections import namedtuple
from datetime import datetime
from typing import Callable, Dict, List, Optional

from apscheduler.triggers.cron import CronTrigger

from hostkeep.config import BackupSettings
from hostkeep.errors import MissingTool, ScheduleUpdateFailed
from hostkeep.backup.system import run_command

logger = logging.getLogger(__name__)


BLOCK_BEGIN = '# BEGIN hostkeep managed block'
BLOCK_END = '# END hostkeep managed block'

# Default schedule per backup class, in block order
DEFAULT_SCHEDULES = {
    'full': '0 2 * * 0',
    'incremental': '0 3 * * *',
    'home': '0 4 * * *',
    'snapshot': '30 4 * * *',
}

ENTRY_PATTERN = re.compile(r'^\s*(?P<cron>(?:\S+\s+){4}\S+)\s+(?P<command>.*\bbackup\s+(?P<backup_class>\w+).*)$')

ScheduleEntry = namedtuple('ScheduleEntry', ['backup_class', 'cron', 'command'])


# crontab numbering: 0 and 7 are Sunday
CRON_DAY_NAMES = ['sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat']


def crontab_day_of_week(field: str) -> str:
    """
    Translate a numeric crontab day-of-week field to day names.

    APScheduler numbers days from Monday, crontab from Sunday, so numeric
    fields are expanded to explicit names before building the trigger.
    """
    if field == '*' or re.search('[a-zA-Z]', field):
        return field

    days = []
    for part in field.split(','):
        span, _, step = part.partition('/')
        if span == '*':
            start, end = 0, 6
        elif '-' in span:
            start, end = (int(value) for value in span.split('-', 1))
        else:
            start = int(span)
            end = 6 if step else start
        if not 0 <= start <= end <= 7:
            raise ValueError(f"day of week out of range: {part}")
        for day in range(start, end + 1, int(step or 1)):
            name = CRON_DAY_NAMES[day % 7]
            if name not in days:
                days.append(name)
    return ','.join(days)


def validate_cron(expression: str) -> CronTrigger:
    """
    Parse a five-field cron expression.

    Returns:
        CronTrigger for the expression

    Raises:
        ScheduleUpdateFailed: If the expression is invalid
    """
    if not expression or len(expression.split()) != 5:
        raise ScheduleUpdateFailed(f"Invalid cron expression (expected 5 fields): {expression!r}")
    fields = expression.split()
    try:
        fields[4] = crontab_day_of_week(fields[4])
        return CronTrigger.from_crontab(' '.join(fields))
    except ValueError as e:
        raise ScheduleUpdateFailed(f"Invalid cron expression {expression!r}: {e}")


def render_entry(entry: ScheduleEntry) -> str:
    return f"{entry.cron} {entry.command}"


def parse_entry(line: str) -> Optional[ScheduleEntry]:
    match = ENTRY_PATTERN.match(line)
    if not match:
        return None
    return ScheduleEntry(match.group('backup_class'), match.group('cron'), match.group('command').strip())


def split_managed_block(text: str):
    """
    Separate managed entries from the rest of a crontab.

    Every managed block is removed, so a table that ended up with several
    blocks collapses back to one on the next update.

    Returns:
        (foreign_lines, managed_lines)
    """
    foreign, managed = [], []
    inside = False

    for line in text.splitlines():
        stripped = line.strip()
        if stripped == BLOCK_BEGIN:
            inside = True
            continue
        if stripped == BLOCK_END:
            inside = False
            continue
        (managed if inside else foreign).append(line)

    return foreign, managed


class CrontabTable:
    """
    The invoking user's crontab, read with ``crontab -l`` and written with
    ``crontab -``.
    """

    def __init__(self, runner: Callable = run_command):
        self.runner = runner

    def read(self) -> str:
        try:
            result = self.runner(['crontab', '-l'])
        except MissingTool:
            raise ScheduleUpdateFailed("crontab command not found. Please install cron.")

        if result.returncode != 0:
            # "no crontab for <user>" is an empty table
            if 'no crontab' in (result.stderr or '').lower():
                return ''
            raise ScheduleUpdateFailed(f"Failed to read crontab: {(result.stderr or '').strip()}")
        return result.stdout or ''

    def write(self, text: str):
        try:
            result = self.runner(['crontab', '-'], input=text)
        except MissingTool:
            raise ScheduleUpdateFailed("crontab command not found. Please install cron.")

        if result.returncode != 0:
            raise ScheduleUpdateFailed(f"Failed to update crontab: {(result.stderr or '').strip()}")


class ScheduleManager:
    """
    Maintains the managed block of scheduled backup classes.
    """

    def __init__(self, settings: BackupSettings, table: Optional[CrontabTable] = None):
        self.settings = settings
        self.table = table or CrontabTable()

    def command_for(self, backup_class: str) -> str:
        return f"{self.settings.schedule_command} backup {backup_class} --unattended"

    def entries(self) -> List[ScheduleEntry]:
        """Entries currently in the managed block."""
        _, managed = split_managed_block(self.table.read())
        entries = []
        for line in managed:
            if not line.strip() or line.lstrip().startswith('#'):
                continue
            entry = parse_entry(line)
            if entry is None:
                logger.warning(f"Ignoring unrecognised line in managed block: {line}")
                continue
            entries.append(entry)
        return entries

    def upsert(self, entries: List[ScheduleEntry]) -> List[ScheduleEntry]:
        """
        Replace the managed block with exactly ``entries``.

        An empty list removes the block.

        Raises:
            ScheduleUpdateFailed: If the table cannot be read or written
        """
        for entry in entries:
            validate_cron(entry.cron)

        foreign, _ = split_managed_block(self.table.read())
        lines = list(foreign)
        if entries:
            lines.append(BLOCK_BEGIN)
            lines.extend(render_entry(entry) for entry in entries)
            lines.append(BLOCK_END)

        self.table.write(''.join(line + '\n' for line in lines))
        logger.info(f"Managed schedule updated ({len(entries)} entries)")
        return list(entries)

    def schedule(self, backup_class: str, cron: Optional[str] = None) -> List[ScheduleEntry]:
        """
        Add or replace the schedule of one backup class.

        Args:
            backup_class: 'full', 'incremental', 'home' or 'snapshot'
            cron: Cron expression (class default if omitted)

        Returns:
            Entries of the updated block
        """
        if backup_class not in DEFAULT_SCHEDULES:
            raise ScheduleUpdateFailed(
                f"Invalid backup class: {backup_class}. Valid options: {list(DEFAULT_SCHEDULES)}"
            )
        cron = cron or DEFAULT_SCHEDULES[backup_class]
        validate_cron(cron)

        current = {entry.backup_class: entry for entry in self.entries()}
        current[backup_class] = ScheduleEntry(backup_class, cron, self.command_for(backup_class))
        logger.info(f"Scheduling {backup_class} backup: {cron}")
        return self.upsert(self._ordered(current))

    def unschedule(self, backup_class: str) -> List[ScheduleEntry]:
        """Remove one backup class from the block."""
        current = {entry.backup_class: entry for entry in self.entries()}
        if current.pop(backup_class, None) is None:
            logger.info(f"{backup_class} backup was not scheduled")
        else:
            logger.info(f"Removed {backup_class} backup from schedule")
        return self.upsert(self._ordered(current))

    def next_runs(self, now: Optional[datetime] = None) -> Dict[str, Optional[str]]:
        """
        Next fire time of every scheduled class.

        Returns:
            Mapping of backup class to ISO timestamp (None if it never fires)
        """
        runs = {}
        for entry in self.entries():
            trigger = validate_cron(entry.cron)
            current = now or datetime.now(trigger.timezone)
            if current.tzinfo is None:
                current = current.replace(tzinfo=trigger.timezone)
            next_time = trigger.get_next_fire_time(None, current)
            runs[entry.backup_class] = next_time.isoformat() if next_time else None
        return runs

    @staticmethod
    def _ordered(entries: Dict[str, ScheduleEntry]) -> List[ScheduleEntry]:
        order = list(DEFAULT_SCHEDULES)
        return sorted(entries.values(), key=lambda e: order.index(e.backup_class) if e.backup_class in order else len(order))

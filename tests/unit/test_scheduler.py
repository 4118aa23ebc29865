"""
Unit tests for the crontab schedule manager (hostkeep/scheduler.py).
"""

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from hostkeep.errors import MissingTool, ScheduleUpdateFailed
from hostkeep.scheduler import (
    BLOCK_BEGIN,
    BLOCK_END,
    CrontabTable,
    ScheduleEntry,
    ScheduleManager,
    crontab_day_of_week,
    parse_entry,
    split_managed_block,
    validate_cron,
)


@pytest.fixture
def manager(settings, crontab):
    return ScheduleManager(settings, table=crontab)


class TestManagedBlock:
    """Test the managed block contract."""

    def test_schedule_appends_block_after_foreign_lines(self, manager, crontab):
        manager.schedule('full')

        assert crontab.text == (
            'MAILTO=me@example.com\n'
            '15 * * * * /usr/bin/foreign-job\n'
            f'{BLOCK_BEGIN}\n'
            '0 2 * * 0 /usr/local/bin/hostkeep backup full --unattended\n'
            f'{BLOCK_END}\n'
        )

    def test_upsert_is_idempotent(self, manager, crontab):
        """Test repeating the same update leaves exactly one block."""
        manager.schedule('full')
        manager.schedule('incremental')
        first = crontab.text

        manager.schedule('full')
        manager.schedule('incremental')

        assert crontab.text == first
        assert crontab.text.count(BLOCK_BEGIN) == 1
        assert crontab.text.count('backup full') == 1

    def test_entries_in_class_order(self, manager):
        manager.schedule('snapshot')
        manager.schedule('full')

        assert [e.backup_class for e in manager.entries()] == ['full', 'snapshot']

    def test_reschedule_replaces_cron(self, manager):
        manager.schedule('full')
        manager.schedule('full', '30 1 * * 6')

        assert manager.entries() == [
            ScheduleEntry('full', '30 1 * * 6', '/usr/local/bin/hostkeep backup full --unattended')
        ]

    def test_unschedule_last_entry_removes_block(self, manager, crontab):
        manager.schedule('home')
        manager.unschedule('home')

        assert BLOCK_BEGIN not in crontab.text
        assert crontab.text == 'MAILTO=me@example.com\n15 * * * * /usr/bin/foreign-job\n'

    def test_duplicate_blocks_collapse(self, manager, crontab):
        crontab.text = (
            f'{BLOCK_BEGIN}\n0 3 * * * hostkeep backup incremental --unattended\n{BLOCK_END}\n'
            '@reboot /usr/bin/foreign\n'
            f'{BLOCK_BEGIN}\n0 3 * * * hostkeep backup incremental --unattended\n{BLOCK_END}\n'
        )

        manager.schedule('incremental')

        assert crontab.text.count(BLOCK_BEGIN) == 1
        assert crontab.text.startswith('@reboot /usr/bin/foreign\n')

    def test_invalid_cron_rejected_without_writing(self, manager, crontab):
        with pytest.raises(ScheduleUpdateFailed):
            manager.schedule('full', '61 2 * * *')

        assert crontab.writes == 0

    def test_invalid_class_rejected(self, manager):
        with pytest.raises(ScheduleUpdateFailed):
            manager.schedule('hourly')

    def test_next_runs(self, manager):
        manager.schedule('full')

        runs = manager.next_runs(now=datetime(2024, 1, 6, 12, 0))

        assert runs['full'].startswith('2024-01-07T02:00:00')


class TestParsing:
    """Test block parsing helpers."""

    def test_split_managed_block(self):
        text = f'a\n{BLOCK_BEGIN}\nx\n{BLOCK_END}\nb\n'

        assert split_managed_block(text) == (['a', 'b'], ['x'])

    def test_parse_entry(self):
        entry = parse_entry('0 3 * * * hostkeep backup incremental --unattended')

        assert entry == ScheduleEntry('incremental', '0 3 * * *', 'hostkeep backup incremental --unattended')
        assert parse_entry('@daily something') is None

    @pytest.mark.parametrize("expression", ['0 2 * * 0', '*/15 * * * *', '30 4 1,15 * *'])
    def test_validate_cron_accepts(self, expression):
        validate_cron(expression)

    @pytest.mark.parametrize("expression", ['', '0 2 * *', '0 25 * * *', 'every day'])
    def test_validate_cron_rejects(self, expression):
        with pytest.raises(ScheduleUpdateFailed):
            validate_cron(expression)


class TestCrontabTable:
    """Test crontab command handling."""

    def test_no_crontab_is_empty(self, make_completed):
        runner = MagicMock(return_value=make_completed(returncode=1, stderr='no crontab for user\n'))

        assert CrontabTable(runner).read() == ''
        runner.assert_called_once_with(['crontab', '-l'])

    def test_read_failure(self, make_completed):
        runner = MagicMock(return_value=make_completed(returncode=1, stderr='permission denied'))

        with pytest.raises(ScheduleUpdateFailed):
            CrontabTable(runner).read()

    def test_write_pipes_table(self, fake_runner):
        CrontabTable(fake_runner).write('0 2 * * 0 job\n')

        fake_runner.assert_called_once_with(['crontab', '-'], input='0 2 * * 0 job\n')

    def test_write_failure(self, make_completed):
        runner = MagicMock(return_value=make_completed(returncode=1, stderr='errors in crontab file'))

        with pytest.raises(ScheduleUpdateFailed):
            CrontabTable(runner).write('bad\n')

    def test_missing_crontab_binary(self):
        runner = MagicMock(side_effect=MissingTool('crontab'))

        with pytest.raises(ScheduleUpdateFailed, match='crontab command not found'):
            CrontabTable(runner).read()


class TestDayOfWeek:
    """Test crontab day numbering (0 and 7 are Sunday)."""

    @pytest.mark.parametrize("field,expected", [
        ('*', '*'),
        ('0', 'sun'),
        ('7', 'sun'),
        ('1-5', 'mon,tue,wed,thu,fri'),
        ('0,6', 'sun,sat'),
        ('*/3', 'sun,wed,sat'),
        ('mon-fri', 'mon-fri'),
    ])
    def test_translation(self, field, expected):
        assert crontab_day_of_week(field) == expected

    def test_out_of_range(self):
        with pytest.raises(ValueError):
            crontab_day_of_week('8')

    def test_weekday_schedule_skips_weekend(self):
        trigger = validate_cron('0 9 * * 1-5')

        saturday = datetime(2024, 1, 6, 12, 0, tzinfo=trigger.timezone)
        assert trigger.get_next_fire_time(None, saturday).date().isoformat() == '2024-01-08'

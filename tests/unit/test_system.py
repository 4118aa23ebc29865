"""
Unit tests for host helpers (hostkeep/backup/system.py).
"""

from collections import namedtuple
from unittest.mock import MagicMock, patch

import pytest

from hostkeep.errors import MissingTool, PrivilegeUnavailable, SystemCheckFailed
from hostkeep.backup.system import (
    privileged,
    process_running,
    require_privilege,
    require_tools,
    run_command,
    system_check,
)

DiskUsage = namedtuple('DiskUsage', ['total', 'used', 'free'])


class TestTools:
    """Test external command handling."""

    def test_missing_binary_raises_missing_tool(self):
        with pytest.raises(MissingTool) as excinfo:
            run_command(['hostkeep-no-such-binary', '--version'])

        assert excinfo.value.tools == ['hostkeep-no-such-binary']

    def test_run_command_captures_output(self):
        result = run_command(['echo', 'hello'])

        assert result.returncode == 0
        assert result.stdout.strip() == 'hello'

    def test_require_tools_lists_all_missing(self):
        with pytest.raises(MissingTool) as excinfo:
            require_tools('snapshot', which=lambda name: None)

        assert excinfo.value.tools == ['rsync']
        assert 'rsync' in str(excinfo.value)

    def test_require_tools_present(self):
        require_tools('full', which=lambda name: f'/usr/bin/{name}')


class TestPrivilege:
    """Test sudo handling."""

    def test_privileged_prefix_when_not_root(self):
        with patch('hostkeep.backup.system.is_root', return_value=False):
            assert privileged(['tar', '-cf', 'x'], use_sudo=True) == ['sudo', '-n', 'tar', '-cf', 'x']
            assert privileged(['tar'], use_sudo=False) == ['tar']

    def test_no_prefix_as_root(self):
        with patch('hostkeep.backup.system.is_root', return_value=True):
            assert privileged(['tar'], use_sudo=True) == ['tar']

    def test_unattended_without_passwordless_sudo(self, make_completed):
        runner = MagicMock(return_value=make_completed(returncode=1, stderr='a password is required'))

        with patch('hostkeep.backup.system.is_root', return_value=False):
            with pytest.raises(PrivilegeUnavailable):
                require_privilege(True, unattended=True, runner=runner)

        runner.assert_called_once_with(['sudo', '-n', 'true'])

    def test_passwordless_sudo_accepted(self, fake_runner):
        with patch('hostkeep.backup.system.is_root', return_value=False):
            require_privilege(True, unattended=True, runner=fake_runner)

    def test_sudo_disabled_never_probes(self, fake_runner):
        require_privilege(False, unattended=True, runner=fake_runner)

        fake_runner.assert_not_called()


class TestProcessAndSystemCheck:
    """Test sync client detection and the system sanity check."""

    def test_process_running(self, make_completed):
        assert process_running('pcloud', lambda args: make_completed(0))
        assert not process_running('pcloud', lambda args: make_completed(1))
        assert process_running('', lambda args: make_completed(1))

    def test_system_check_over_limit(self, fake_runner):
        with patch('hostkeep.backup.system.shutil.disk_usage', return_value=DiskUsage(100, 95, 5)):
            with pytest.raises(SystemCheckFailed, match='95%'):
                system_check('/', 90, fake_runner)

    def test_system_check_reports_failed_services(self, make_completed):
        runner = MagicMock(return_value=make_completed(stdout='cups.service loaded failed failed\n'))

        with patch('hostkeep.backup.system.shutil.disk_usage', return_value=DiskUsage(100, 40, 60)), \
                patch('hostkeep.backup.system.shutil.which', return_value='/bin/systemctl'):
            report = system_check('/', 90, runner)

        assert report['root_usage_percent'] == 40
        assert report['failed_services'] == 1
        assert report['warnings'] == ['1 failed services detected']

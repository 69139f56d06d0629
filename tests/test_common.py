#!/usr/bin/env python3
"""Tests for common.py - shared utilities.

Tests verify:
1. run_command execution and error handling
2. backoff_delays sequence and cap
"""

import subprocess
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import backoff_delays, run_command


class TestRunCommand:
    """Test run_command utility."""

    def test_returns_success_tuple(self):
        """Should return (returncode, stdout, stderr) on success."""
        rc, stdout, stderr = run_command(['echo', 'hello'])
        assert rc == 0
        assert 'hello' in stdout
        assert stderr == ''

    def test_returns_failure_tuple(self):
        """Should return non-zero returncode on failure."""
        rc, _stdout, _stderr = run_command(['false'])
        assert rc != 0

    def test_captures_stderr(self):
        """Should capture stderr."""
        _rc, _stdout, stderr = run_command(['sh', '-c', 'echo error >&2'])
        assert 'error' in stderr

    def test_respects_cwd(self, tmp_path):
        """Should run command in specified directory."""
        (tmp_path / 'marker.txt').write_text('found')
        rc, stdout, _stderr = run_command(['cat', 'marker.txt'], cwd=tmp_path)
        assert rc == 0
        assert 'found' in stdout

    def test_timeout_returns_error(self):
        """Should return -1 and a message when the command times out."""
        with patch('common.subprocess.run',
                   side_effect=subprocess.TimeoutExpired(cmd='helm', timeout=5)):
            rc, stdout, stderr = run_command(['helm', 'status', 'x'], timeout=5)
        assert rc == -1
        assert stdout == ''
        assert stderr == 'Command timed out after 5s'

    def test_missing_binary(self):
        """Should return -1 when the executable does not exist."""
        rc, _stdout, stderr = run_command(['definitely-not-a-binary-xyz'])
        assert rc == -1
        assert stderr


class TestBackoffDelays:
    """Test backoff_delays generator."""

    def test_exponential(self):
        assert list(backoff_delays(5, 1.0, 100.0)) == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        assert list(backoff_delays(6, 2.0, 10.0)) == [2.0, 4.0, 8.0, 10.0, 10.0]

    def test_single_attempt_has_no_delays(self):
        assert list(backoff_delays(1, 1.0, 30.0)) == []

    def test_zero_base(self):
        assert list(backoff_delays(3, 0.0, 0.0)) == [0.0, 0.0]

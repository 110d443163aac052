"""Unit tests for appforge.preview.signatures.classify_output."""

from __future__ import annotations

import pytest

from appforge.preview.signatures import StartupSignal, classify_output


class TestReadySignals:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "line",
        [
            " ✓ Ready in 2.3s",
            "ready - started server on 0.0.0.0:4321, url: http://localhost:4321",
            "   - Local:        http://localhost:4321",
            "compiled successfully in 900 ms",
        ],
    )
    def test_markers_on_stdout(self, line):
        assert classify_output("stdout", line, 4321) is StartupSignal.READY

    @pytest.mark.unit
    def test_bound_host_and_port(self):
        assert classify_output("stdout", "listening on 127.0.0.1:4500", 4500) is StartupSignal.READY

    @pytest.mark.unit
    def test_other_port_is_not_ready(self):
        assert classify_output("stdout", "proxy on localhost:9999", 4500) is None

    @pytest.mark.unit
    def test_ready_marker_on_stderr_is_ignored(self):
        assert classify_output("stderr", "Ready in 1s", 4500) is None

    @pytest.mark.unit
    def test_plain_output(self):
        assert classify_output("stdout", "compiling /page ...", 4500) is None


class TestPortConflictSignals:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "line",
        [
            "Error: listen EADDRINUSE: address already in use :::4500",
            "OSError: [Errno 98] Address already in use",
        ],
    )
    def test_conflict_on_stderr(self, line):
        assert classify_output("stderr", line, 4500) is StartupSignal.PORT_CONFLICT

    @pytest.mark.unit
    def test_conflict_on_stdout_is_ignored(self):
        assert classify_output("stdout", "EADDRINUSE", 4500) is None

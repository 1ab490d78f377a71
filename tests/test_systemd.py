"""Tests for the systemd service backend."""

import os
import stat
from pathlib import Path

import pytest

from qtools.config import ServiceConstants, ServiceOptions
from qtools.errors import (
    AlreadyRunningError,
    AlreadyStoppedError,
    DefinitionWriteError,
    OperationTimeoutError,
    PermissionDeniedError,
    PlatformUnsupportedError,
    ServiceNotFoundError,
)
from qtools.process import CommandResult
from qtools.service_manager.descriptors import DescriptorFactory
from qtools.service_manager.systemd import SystemdBackend, format_seconds, parse_show_output
from qtools.service_manager.types import ServiceState

from .fakes import FakeRunner

RUNNING = "LoadState=loaded\nActiveState=active\nSubState=running\nMainPID=1234\nExecMainStatus=0\n"
STOPPED = "LoadState=loaded\nActiveState=inactive\nSubState=dead\nMainPID=0\nExecMainStatus=0\n"
RESTARTING = "LoadState=loaded\nActiveState=activating\nSubState=auto-restart\nMainPID=0\nExecMainStatus=1\n"
MISSING = "LoadState=not-found\nActiveState=inactive\nSubState=dead\nMainPID=0\n"


def scripted(show: str, **responses):
    """Handler answering ``systemctl show`` with ``show`` and other verbs from ``responses``."""

    def handler(argv, timeout):
        verb = argv[1]
        if verb == "show":
            return CommandResult(argv, 0, show, "")
        response = responses.get(verb.replace("-", "_"))
        if response is None:
            return CommandResult(argv, 0, "", "")
        return response(argv) if callable(response) else response

    return handler


@pytest.fixture
def factory() -> DescriptorFactory:
    return DescriptorFactory(
        ServiceOptions(environment={"ZETA": "1", "ALPHA": "two words"}),
        ServiceConstants(),
    )


class TestRenderDefinition:
    """Test suite for unit file generation."""

    def test_worker_unit_content(self, factory):
        backend = SystemdBackend(runner=FakeRunner())
        unit = backend.render_definition(factory.worker(3)).decode()

        assert "[Unit]" in unit and "[Service]" in unit and "[Install]" in unit
        assert "User=quilibrium" in unit
        assert "Group=quilibrium" in unit
        assert "WorkingDirectory=/home/quilibrium/ceremonyclient/node" in unit
        assert "ExecStart=/home/quilibrium/ceremonyclient/node/node --core 3" in unit
        assert "Restart=always" in unit
        assert "RestartSec=5s" in unit
        assert "KillSignal=SIGINT" in unit
        assert "WantedBy=multi-user.target" in unit

    def test_environment_sorted_and_quoted(self, factory):
        backend = SystemdBackend(runner=FakeRunner())
        unit = backend.render_definition(factory.master()).decode()
        alpha = unit.index('Environment="ALPHA=two words"')
        zeta = unit.index('Environment="ZETA=1"')
        assert alpha < zeta

    def test_deterministic(self, factory):
        """Test identical descriptors render byte-identical units."""
        backend = SystemdBackend(runner=FakeRunner())
        other = DescriptorFactory(
            ServiceOptions(environment={"ALPHA": "two words", "ZETA": "1"}),
            ServiceConstants(),
        )
        assert backend.render_definition(factory.worker(2)) == backend.render_definition(other.worker(2))

    def test_restart_disabled(self):
        factory = DescriptorFactory(ServiceOptions(auto_restart=False, worker_restart_delay=2.5))
        unit = SystemdBackend(runner=FakeRunner()).render_definition(factory.worker(1)).decode()
        assert "Restart=no" in unit
        assert "RestartSec=2.5s" in unit

    def test_testnet_master_arguments(self):
        factory = DescriptorFactory(ServiceOptions(network="testnet", debug=True))
        unit = SystemdBackend(runner=FakeRunner()).render_definition(factory.master()).decode()
        assert "ExecStart=/home/quilibrium/ceremonyclient/node/node --network 1 --debug" in unit

    def test_percent_escaped_as_literal(self):
        """Test ``%`` in values is written as ``%%`` so systemd keeps it literal."""
        factory = DescriptorFactory(ServiceOptions(environment={"PASS": "50%off"}))
        unit = SystemdBackend(runner=FakeRunner()).render_definition(factory.worker(1)).decode()
        assert 'Environment="PASS=50%%off"' in unit

    def test_exec_arguments_escaped(self):
        constants = ServiceConstants(node_dir=Path("/opt/node %i"), binary_name="node$bin")
        factory = DescriptorFactory(ServiceOptions(), constants)
        unit = SystemdBackend(runner=FakeRunner()).render_definition(factory.worker(1)).decode()
        assert 'ExecStart="/opt/node %%i/node$$bin" --core 1' in unit

    def test_line_break_rejected(self):
        factory = DescriptorFactory(ServiceOptions(environment={"BAD": "one\ntwo"}))
        with pytest.raises(DefinitionWriteError):
            SystemdBackend(runner=FakeRunner()).render_definition(factory.worker(1))

    def test_format_seconds(self):
        assert format_seconds(5.0) == "5s"
        assert format_seconds(0.25) == "0.25s"


class TestWriteDefinition:
    """Test suite for atomic unit file writes."""

    @pytest.mark.asyncio
    async def test_write_creates_file(self, tmp_path: Path, factory):
        backend = SystemdBackend(runner=FakeRunner(), definition_dir=tmp_path)
        descriptor = factory.worker(4)

        path = await backend.write_definition(descriptor)

        assert path == tmp_path / "ceremonyclient-worker-4.service"
        assert path.read_bytes() == backend.render_definition(descriptor)
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o644

    @pytest.mark.asyncio
    async def test_rewrite_replaces_fully(self, tmp_path: Path, factory):
        """Test a stale, hand-edited unit is replaced rather than patched."""
        backend = SystemdBackend(runner=FakeRunner(), definition_dir=tmp_path)
        descriptor = factory.worker(4)
        path = backend.definition_path(descriptor.name)
        path.write_text("[Service]\nExecStart=/bin/false\nHandEdited=yes\n")

        await backend.write_definition(descriptor)
        await backend.write_definition(descriptor)

        assert path.read_bytes() == backend.render_definition(descriptor)
        assert sorted(p.name for p in tmp_path.iterdir()) == [path.name]

    @pytest.mark.asyncio
    async def test_failed_replace_keeps_previous_unit(self, tmp_path: Path, factory, monkeypatch):
        """Test a failed rename leaves the old unit intact and no temp file behind."""
        backend = SystemdBackend(runner=FakeRunner(), definition_dir=tmp_path)
        descriptor = factory.worker(4)
        path = backend.definition_path(descriptor.name)
        path.write_text("[Service]\nExecStart=/bin/old\n")

        def deny(src, dst):
            raise PermissionError(13, "Permission denied", str(dst))

        monkeypatch.setattr("qtools.service_manager.backend.os.replace", deny)
        with pytest.raises(PermissionDeniedError):
            await backend.write_definition(descriptor)

        assert path.read_text() == "[Service]\nExecStart=/bin/old\n"
        assert sorted(p.name for p in tmp_path.iterdir()) == [path.name]

    @pytest.mark.asyncio
    async def test_io_error_is_definition_write_error(self, tmp_path: Path, factory, monkeypatch):
        backend = SystemdBackend(runner=FakeRunner(), definition_dir=tmp_path)

        def disk_full(fd):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr("qtools.service_manager.backend.os.fsync", disk_full)
        with pytest.raises(DefinitionWriteError):
            await backend.write_definition(factory.worker(4))

        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_remove_disables_then_deletes(self, tmp_path: Path, factory):
        runner = FakeRunner()
        backend = SystemdBackend(runner=runner, definition_dir=tmp_path)
        path = await backend.write_definition(factory.worker(1))

        await backend.remove_definition("ceremonyclient-worker-1")

        assert not path.exists()
        assert runner.calls == [["systemctl", "disable", "ceremonyclient-worker-1.service"]]


class TestStatus:
    """Test suite for status parsing."""

    def test_parse_show_output(self):
        props = parse_show_output(RUNNING)
        assert props["ActiveState"] == "active"
        assert props["MainPID"] == "1234"

    @pytest.mark.asyncio
    async def test_running(self):
        runner = FakeRunner(scripted(RUNNING))
        status = await SystemdBackend(runner=runner).status("ceremonyclient")

        assert status.state == ServiceState.RUNNING
        assert status.pid == 1234
        assert status.exit_code == 0
        assert runner.calls[0][:3] == ["systemctl", "show", "ceremonyclient.service"]

    @pytest.mark.asyncio
    async def test_stopped(self):
        status = await SystemdBackend(runner=FakeRunner(scripted(STOPPED))).status("ceremonyclient")
        assert status.state == ServiceState.STOPPED
        assert status.pid is None

    @pytest.mark.asyncio
    async def test_auto_restart_counts_as_stopped(self):
        status = await SystemdBackend(runner=FakeRunner(scripted(RESTARTING))).status("x")
        assert status.state == ServiceState.STOPPED
        assert status.exit_code == 1

    @pytest.mark.asyncio
    async def test_not_found(self):
        with pytest.raises(ServiceNotFoundError):
            await SystemdBackend(runner=FakeRunner(scripted(MISSING))).status("x")

    @pytest.mark.asyncio
    async def test_missing_systemctl(self):
        runner = FakeRunner(lambda argv, timeout: CommandResult(argv, 127, "", "No such file"))
        with pytest.raises(PlatformUnsupportedError):
            await SystemdBackend(runner=runner).status("x")


class TestLifecycle:
    """Test suite for start/stop through systemctl."""

    @pytest.mark.asyncio
    async def test_start(self):
        runner = FakeRunner(scripted(STOPPED))
        await SystemdBackend(runner=runner).start("ceremonyclient-worker-2")
        assert runner.calls[-1] == ["systemctl", "start", "ceremonyclient-worker-2.service"]

    @pytest.mark.asyncio
    async def test_start_when_running(self):
        """Test starting a running unit is informational and issues no start."""
        runner = FakeRunner(scripted(RUNNING))
        with pytest.raises(AlreadyRunningError):
            await SystemdBackend(runner=runner).start("ceremonyclient")
        assert all(call[1] != "start" for call in runner.calls)

    @pytest.mark.asyncio
    async def test_start_permission_denied(self):
        denied = CommandResult([], 4, "", "Failed to start x.service: Access denied")
        runner = FakeRunner(scripted(STOPPED, start=denied))
        with pytest.raises(PermissionDeniedError):
            await SystemdBackend(runner=runner).start("x")

    @pytest.mark.asyncio
    async def test_stop_when_stopped(self):
        with pytest.raises(AlreadyStoppedError):
            await SystemdBackend(runner=FakeRunner(scripted(STOPPED))).stop("x")

    @pytest.mark.asyncio
    async def test_stop_uses_grace_timeout(self):
        runner = FakeRunner(scripted(RUNNING))
        await SystemdBackend(runner=runner).stop("x", grace=12)
        assert runner.calls[-1] == ["systemctl", "stop", "x.service"]
        assert runner.timeouts[-1] == 12

    @pytest.mark.asyncio
    async def test_stop_timeout_without_force(self):
        hung = CommandResult([], -1, "", "", timed_out=True)
        runner = FakeRunner(scripted(RUNNING, stop=hung))
        with pytest.raises(OperationTimeoutError):
            await SystemdBackend(runner=runner).stop("x", grace=1)

    @pytest.mark.asyncio
    async def test_force_stop_escalates_to_sigkill(self):
        hung = CommandResult([], -1, "", "", timed_out=True)
        runner = FakeRunner(scripted(RUNNING, stop=hung))

        await SystemdBackend(runner=runner).stop("x", force=True, grace=1)

        assert runner.calls[-1] == ["systemctl", "kill", "--signal=SIGKILL", "x.service"]

    @pytest.mark.asyncio
    async def test_restart_starts_stopped_service(self):
        """Test restart of a stopped unit still starts it."""
        runner = FakeRunner(scripted(STOPPED))
        await SystemdBackend(runner=runner).restart("x")
        assert ["systemctl", "start", "x.service"] in runner.calls

    @pytest.mark.asyncio
    async def test_reload_and_enable(self):
        runner = FakeRunner()
        backend = SystemdBackend(runner=runner)
        await backend.reload()
        await backend.set_enabled("x", True)
        assert runner.calls == [
            ["systemctl", "daemon-reload"],
            ["systemctl", "enable", "x.service"],
        ]

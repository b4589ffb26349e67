"""Tests for the local and remote execution backends."""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import asyncssh
import pytest

from deepsentry.config import SentryConfig
from deepsentry.executor import create_backend, init_backend, open_backend
from deepsentry.executor.base import (
    BackendConnectionError,
    ExecutionResult,
    describe_exit_status,
    strip_ansi,
    truncate_for_display,
)
from deepsentry.executor.local import LocalBackend
from deepsentry.executor.remote import RemoteBackend

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell syntax")


# --- Helpers ---


class TestTruncateForDisplay:
    """Tests for the interactive display truncation."""

    def test_short_output_unchanged(self) -> None:
        assert truncate_for_display("load average: 0.1") == "load average: 0.1"

    def test_long_output_cut_at_300(self) -> None:
        display = truncate_for_display("x" * 1000)
        assert display == "x" * 300 + "..."

    def test_exactly_300_not_cut(self) -> None:
        assert truncate_for_display("y" * 300) == "y" * 300

    def test_empty_output(self) -> None:
        assert truncate_for_display("   \n") == "(no output)"


class TestExecutionResult:
    """Tests for the ExecutionResult data class."""

    def test_success(self) -> None:
        assert ExecutionResult(output="ok").success is True

    def test_failure_keeps_output(self) -> None:
        r = ExecutionResult(output="partial", error="exit status 1", exit_code=1)
        assert r.success is False
        assert r.output == "partial"

    def test_display_truncates(self) -> None:
        assert ExecutionResult(output="z" * 400).display.endswith("...")


def test_describe_exit_status() -> None:
    assert describe_exit_status(0) is None
    assert describe_exit_status(1) == "exit status 1"
    assert "command not found" in describe_exit_status(127)
    assert "signal 9" in describe_exit_status(-9)


def test_strip_ansi() -> None:
    assert strip_ansi("\x1b[31mred\x1b[0m\r") == "red"


# --- LocalBackend ---


class TestLocalBackend:
    """Tests for local shell execution."""

    @pytest.mark.asyncio
    async def test_echo(self) -> None:
        backend = LocalBackend()
        result = await backend.run("echo hello")
        assert result.output == "hello"
        assert result.success
        assert backend.is_remote is False

    @posix_only
    @pytest.mark.asyncio
    async def test_stderr_merged_into_output(self) -> None:
        result = await LocalBackend().run("echo out; echo err 1>&2")
        assert "out" in result.output
        assert "err" in result.output

    @posix_only
    @pytest.mark.asyncio
    async def test_nonzero_exit_returns_output_and_error(self) -> None:
        result = await LocalBackend().run("echo diagnostics; exit 3")
        assert result.output == "diagnostics"
        assert result.error == "exit status 3"
        assert result.exit_code == 3

    @posix_only
    @pytest.mark.asyncio
    async def test_command_not_found(self) -> None:
        result = await LocalBackend().run("definitely-not-a-real-command-xyz")
        assert result.exit_code == 127
        assert "command not found" in (result.error or "")
        assert result.output  # the shell's own complaint

    @posix_only
    @pytest.mark.asyncio
    async def test_pipes_are_supported(self) -> None:
        result = await LocalBackend().run("printf 'a\\nb\\nc\\n' | wc -l")
        assert result.output.strip() == "3"

    @pytest.mark.asyncio
    async def test_empty_command(self) -> None:
        result = await LocalBackend().run("   ")
        assert result.error == "Empty command"

    @posix_only
    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        result = await LocalBackend(command_timeout=1).run("sleep 5")
        assert "timed out" in (result.error or "")

    @posix_only
    @pytest.mark.asyncio
    async def test_timeout_kills_compound_command(self) -> None:
        started = time.monotonic()
        result = await LocalBackend(command_timeout=1).run("echo partial; sleep 8; echo done")
        assert time.monotonic() - started < 4
        assert "timed out" in (result.error or "")
        assert result.output == "partial"

    @posix_only
    @pytest.mark.asyncio
    async def test_timeout_kills_pipeline(self) -> None:
        started = time.monotonic()
        result = await LocalBackend(command_timeout=1).run("sleep 8 | cat")
        assert time.monotonic() - started < 4
        assert result.exit_code == 1

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        backend = LocalBackend()
        await backend.close()
        await backend.open()
        await backend.close()
        await backend.close()


# --- RemoteBackend ---


class _FakeReader:
    """Stand-in for an asyncssh stdout reader that yields preset chunks."""

    def __init__(self, chunks: list[str], hang: bool = False) -> None:
        self._chunks = list(chunks)
        self._hang = hang

    async def read(self, n: int = -1) -> str:
        if self._chunks:
            return self._chunks.pop(0)
        if self._hang:
            await asyncio.Event().wait()
        return ""


def _fake_process(
    stdout: str = "up 5 days", exit_status: int | None = 0, *, hang: bool = False
) -> MagicMock:
    process = MagicMock()
    process.stdout = _FakeReader([stdout] if stdout else [], hang=hang)
    process.wait = AsyncMock(
        return_value=SimpleNamespace(exit_status=exit_status, exit_signal=None)
    )
    return process


def _fake_connection(stdout: str = "up 5 days", exit_status: int | None = 0) -> MagicMock:
    conn = MagicMock()
    conn.create_process = AsyncMock(side_effect=lambda *a, **kw: _fake_process(stdout, exit_status))
    conn.wait_closed = AsyncMock()
    return conn


class TestRemoteBackend:
    """Tests for SSH execution with asyncssh mocked out."""

    @pytest.mark.asyncio
    async def test_single_connection_for_many_commands(self) -> None:
        conn = _fake_connection()
        with patch("deepsentry.executor.remote.asyncssh.connect", AsyncMock(return_value=conn)) as connect:
            backend = RemoteBackend("10.0.0.5", 2222, password="secret")
            await backend.open()
            await backend.run("uptime")
            await backend.run("df -h")
            await backend.close()

        connect.assert_awaited_once()
        assert conn.create_process.await_count == 2
        assert connect.await_args.kwargs["port"] == 2222
        assert connect.await_args.kwargs["password"] == "secret"

    @pytest.mark.asyncio
    async def test_run_returns_output(self) -> None:
        conn = _fake_connection("load average: 0.5")
        with patch("deepsentry.executor.remote.asyncssh.connect", AsyncMock(return_value=conn)):
            backend = RemoteBackend("host", password="pw")
            await backend.open()
            result = await backend.run("uptime")
        assert result.output == "load average: 0.5"
        assert result.success
        assert backend.is_remote is True
        assert conn.create_process.await_args.kwargs["stderr"] == asyncssh.STDOUT

    @pytest.mark.asyncio
    async def test_nonzero_exit(self) -> None:
        conn = _fake_connection("No such file", exit_status=2)
        with patch("deepsentry.executor.remote.asyncssh.connect", AsyncMock(return_value=conn)):
            backend = RemoteBackend("host", password="pw")
            await backend.open()
            result = await backend.run("ls /nope")
        assert result.output == "No such file"
        assert result.error == "exit status 2"

    @pytest.mark.asyncio
    async def test_key_auth_passes_client_keys(self, tmp_path: Path) -> None:
        key = tmp_path / "id_ed25519"
        key.write_text("fake")
        conn = _fake_connection()
        with patch("deepsentry.executor.remote.asyncssh.connect", AsyncMock(return_value=conn)) as connect:
            await RemoteBackend("host", key_path=str(key)).open()
        assert connect.await_args.kwargs["client_keys"] == [str(key)]
        assert "password" not in connect.await_args.kwargs

    @pytest.mark.asyncio
    async def test_missing_key_fails_before_connecting(self, tmp_path: Path) -> None:
        with patch("deepsentry.executor.remote.asyncssh.connect", AsyncMock()) as connect:
            with pytest.raises(BackendConnectionError, match="key not found"):
                await RemoteBackend("host", key_path=str(tmp_path / "missing")).open()
        connect.assert_not_called()

    @pytest.mark.asyncio
    async def test_permission_denied(self) -> None:
        error = asyncssh.PermissionDenied("bad password")
        with patch("deepsentry.executor.remote.asyncssh.connect", AsyncMock(side_effect=error)):
            backend = RemoteBackend("host", password="wrong")
            with pytest.raises(BackendConnectionError, match="permission denied"):
                await backend.open()
        assert backend.is_open is False

    @pytest.mark.asyncio
    async def test_network_error(self) -> None:
        with patch(
            "deepsentry.executor.remote.asyncssh.connect",
            AsyncMock(side_effect=ConnectionRefusedError("refused")),
        ):
            with pytest.raises(BackendConnectionError) as exc_info:
                await RemoteBackend("10.0.0.9", password="pw").open()
        assert exc_info.value.host == "10.0.0.9:22"

    @pytest.mark.asyncio
    async def test_session_error_during_run_is_reported(self) -> None:
        conn = _fake_connection()
        conn.create_process = AsyncMock(side_effect=asyncssh.ConnectionLost("gone"))
        with patch("deepsentry.executor.remote.asyncssh.connect", AsyncMock(return_value=conn)):
            backend = RemoteBackend("host", password="pw")
            await backend.open()
            result = await backend.run("uptime")
        assert "SSH session error" in (result.error or "")

    @pytest.mark.asyncio
    async def test_timeout_keeps_partial_output(self) -> None:
        process = _fake_process("first lines of journal", hang=True)
        conn = _fake_connection()
        conn.create_process = AsyncMock(return_value=process)
        with patch("deepsentry.executor.remote.asyncssh.connect", AsyncMock(return_value=conn)):
            backend = RemoteBackend("host", password="pw", command_timeout=1)
            await backend.open()
            result = await backend.run("journalctl -f")
        assert result.output == "first lines of journal"
        assert "timed out" in (result.error or "")
        process.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_run_before_open(self) -> None:
        result = await RemoteBackend("host").run("uptime")
        assert result.error == "SSH session is not open"

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        conn = _fake_connection()
        backend = RemoteBackend("host", password="pw")
        await backend.close()  # never opened
        with patch("deepsentry.executor.remote.asyncssh.connect", AsyncMock(return_value=conn)):
            await backend.open()
        await backend.close()
        await backend.close()
        conn.close.assert_called_once()


# --- Backend selection ---


class TestBackendSelection:
    """Tests for create_backend / init_backend / open_backend."""

    def test_local_when_no_ssh_host(self) -> None:
        assert isinstance(create_backend(SentryConfig()), LocalBackend)

    def test_remote_when_ssh_host_set(self) -> None:
        backend = create_backend(SentryConfig(ssh_host="10.0.0.5:2200", ssh_password="pw"))
        assert isinstance(backend, RemoteBackend)
        assert backend.target == "root@10.0.0.5:2200"

    @pytest.mark.asyncio
    async def test_init_backend_local(self) -> None:
        backend = await init_backend(SentryConfig())
        assert backend.is_remote is False
        await backend.close()

    @pytest.mark.asyncio
    async def test_init_backend_bad_endpoint(self) -> None:
        with pytest.raises(BackendConnectionError):
            await init_backend(SentryConfig(ssh_host="host:notaport"))

    @pytest.mark.asyncio
    async def test_open_backend_closes_on_error(self) -> None:
        conn = _fake_connection()
        with patch("deepsentry.executor.remote.asyncssh.connect", AsyncMock(return_value=conn)):
            with pytest.raises(RuntimeError):
                async with open_backend(SentryConfig(ssh_host="host", ssh_password="pw")):
                    raise RuntimeError("session blew up")
        conn.close.assert_called_once()

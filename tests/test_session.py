"""
Tests for the Session façade: authentication state machine, command
execution, upload and download sequencing, and connection-loss handling.
All remote behaviour comes from the in-memory fakes in fakes.py.
"""
import os
import tempfile
import unittest
from pathlib import Path

import sshsession.config as cfg
from sshsession import (
    AlreadyConnectedError,
    AuthenticationError,
    ChannelError,
    DecodingError,
    ExecRejectedError,
    LocalIOError,
    NotAuthenticatedError,
    RemoteNotFoundError,
    RemotePermissionError,
    Session,
    SessionState,
    SSHConnectionError,
    StreamError,
    TransferError,
)
from fakes import DroppingExecChannel, FakeConnection, FakeExecChannel, FakeTransport


class ConfigIsolation(unittest.TestCase):
    """Snapshot the mutable config module around every test."""

    def setUp(self):
        self._saved_cfg = {k: v for k, v in vars(cfg).items() if k.isupper()}

    def tearDown(self):
        for k, v in self._saved_cfg.items():
            setattr(cfg, k, v)


# ── construction ──────────────────────────────────────────────────────────────

class TestConstruction(unittest.TestCase):

    def test_new_session_is_not_authed(self):
        ssh = Session("testhost", 22, transport=FakeTransport())
        self.assertFalse(ssh.authed())
        self.assertIs(ssh.state, SessionState.DISCONNECTED)

    def test_construction_does_no_io(self):
        transport = FakeTransport()
        Session("testhost", 22, transport=transport)
        self.assertEqual(transport.opened, [])

    def test_empty_host_rejected(self):
        with self.assertRaises(ValueError):
            Session("", 22, transport=FakeTransport())
        with self.assertRaises(ValueError):
            Session("   ", 22, transport=FakeTransport())

    def test_bad_port_rejected(self):
        for port in (0, 65536, -1, "22", True):
            with self.subTest(port=port):
                with self.assertRaises(ValueError):
                    Session("testhost", port, transport=FakeTransport())

    def test_authed_is_idempotent(self):
        ssh = Session("testhost", 22, transport=FakeTransport())
        for _ in range(5):
            self.assertFalse(ssh.authed())
        self.assertIs(ssh.state, SessionState.DISCONNECTED)


# ── authentication ────────────────────────────────────────────────────────────

class TestConnect(unittest.TestCase):

    def setUp(self):
        self.conn = FakeConnection(password="secret")
        self.transport = FakeTransport(self.conn)
        self.ssh = Session("testhost", 22, transport=self.transport)

    def test_unreachable_host_raises_connection_error(self):
        ssh = Session("testhost", 2222, transport=FakeTransport(unreachable=True))
        with self.assertRaises(SSHConnectionError) as ctx:
            ssh.connect("user", "secret")
        self.assertIsInstance(ctx.exception, ConnectionError)
        self.assertFalse(ssh.authed())

    def test_wrong_password_raises_authentication_error(self):
        with self.assertRaises(AuthenticationError):
            self.ssh.connect("user", "wrongpass")
        self.assertFalse(self.ssh.authed())
        self.assertIs(self.ssh.state, SessionState.DISCONNECTED)

    def test_failed_auth_releases_connection(self):
        with self.assertRaises(AuthenticationError):
            self.ssh.connect("user", "wrongpass")
        self.assertTrue(self.conn.closed)

    def test_successful_connect(self):
        self.ssh.connect("user", "secret")
        self.assertTrue(self.ssh.authed())
        self.assertIs(self.ssh.state, SessionState.AUTHENTICATED)
        self.assertEqual(self.transport.opened, [("testhost", 22)])

    def test_retry_after_failure_is_allowed(self):
        with self.assertRaises(AuthenticationError):
            self.ssh.connect("user", "wrongpass")
        self.ssh.connect("user", "secret")
        self.assertTrue(self.ssh.authed())

    def test_connect_when_already_authenticated(self):
        self.ssh.connect("user", "secret")
        with self.assertRaises(AlreadyConnectedError):
            self.ssh.connect("user", "secret")
        with self.assertRaises(AlreadyConnectedError):
            self.ssh.connect_agent("user")
        self.assertEqual(len(self.transport.opened), 1)
        self.assertTrue(self.ssh.authed())
        self.assertFalse(self.conn.closed)

    def test_connect_agent(self):
        self.ssh.connect_agent("user")
        self.assertTrue(self.ssh.authed())

    def test_connect_agent_rejected(self):
        self.conn.agent_ok = False
        with self.assertRaises(AuthenticationError):
            self.ssh.connect_agent("user")
        self.assertFalse(self.ssh.authed())
        self.assertTrue(self.conn.closed)

    def test_context_manager_releases_connection(self):
        with Session("testhost", 22, transport=self.transport) as ssh:
            ssh.connect("user", "secret")
            self.assertTrue(ssh.authed())
        self.assertFalse(ssh.authed())
        self.assertTrue(self.conn.closed)


# ── command execution ─────────────────────────────────────────────────────────

class TestRunCommand(ConfigIsolation):

    def setUp(self):
        super().setUp()
        self.conn = FakeConnection(outputs={
            "uname -a": FakeExecChannel(stdout=b"Linux testhost 6.1.0 x86_64 GNU/Linux\n"),
            "false": FakeExecChannel(stdout=b"", stderr=b"nope\n", status=1),
            "cat blob": FakeExecChannel(stdout=b"\xff\xfe\x00bad"),
            "yes": FakeExecChannel(read_error=StreamError("timed out reading output of 'yes'")),
        })
        self.conn.rejected_commands.add("forbidden")
        self.ssh = Session("testhost", 22, transport=FakeTransport(self.conn))

    def test_run_command_before_auth(self):
        with self.assertRaises(NotAuthenticatedError):
            self.ssh.run_command("uname -a")
        self.assertEqual(self.conn.channels, [])

    def test_run_command_returns_stdout(self):
        self.ssh.connect_agent("user")
        out = self.ssh.run_command("uname -a")
        self.assertTrue(out)
        self.assertIn("Linux", out)
        self.assertTrue(self.ssh.authed())

    def test_channel_is_closed_after_command(self):
        self.ssh.connect_agent("user")
        self.ssh.run_command("uname -a")
        channel = self.conn.channels[-1]
        self.assertTrue(channel.closed)
        self.assertTrue(channel.eof_sent)

    def test_non_zero_exit_is_not_an_error(self):
        self.ssh.connect_agent("user")
        self.assertEqual(self.ssh.run_command("false"), "")
        result = self.ssh.execute("false")
        self.assertEqual(result.exit_status, 1)
        self.assertFalse(result.ok)
        self.assertEqual(result.stderr, "nope\n")

    def test_execute_reports_success(self):
        self.ssh.connect_agent("user")
        result = self.ssh.execute("uname -a")
        self.assertTrue(result.ok)
        self.assertEqual(result.command, "uname -a")

    def test_invalid_utf8_raises_decoding_error(self):
        self.ssh.connect_agent("user")
        with self.assertRaises(DecodingError):
            self.ssh.run_command("cat blob")
        self.assertTrue(self.ssh.authed())
        self.assertTrue(self.conn.channels[-1].closed)

    def test_rejected_exec(self):
        self.ssh.connect_agent("user")
        with self.assertRaises(ExecRejectedError) as ctx:
            self.ssh.run_command("forbidden")
        self.assertIsInstance(ctx.exception, ChannelError)
        self.assertTrue(self.ssh.authed())

    def test_read_failure_closes_channel(self):
        self.ssh.connect_agent("user")
        with self.assertRaises(StreamError):
            self.ssh.run_command("yes")
        self.assertTrue(self.conn.channels[-1].closed)
        self.assertTrue(self.ssh.authed())

    def test_authed_survives_many_commands(self):
        self.ssh.connect_agent("user")
        for _ in range(3):
            self.ssh.run_command("uname -a")
            self.assertTrue(self.ssh.authed())


# ── connection loss ───────────────────────────────────────────────────────────

class TestConnectionLoss(unittest.TestCase):

    def setUp(self):
        self.conn = FakeConnection()
        self.ssh = Session("testhost", 22, transport=FakeTransport(self.conn))
        self.ssh.connect_agent("user")

    def test_dead_connection_fails_fast(self):
        self.conn.active = False
        with self.assertRaises(SSHConnectionError):
            self.ssh.run_command("uname -a")
        self.assertIs(self.ssh.state, SessionState.DROPPED)
        self.assertFalse(self.ssh.authed())
        self.assertEqual(self.conn.channels, [])

    def test_dropped_session_keeps_failing_with_connection_error(self):
        self.conn.active = False
        for op in (lambda: self.ssh.run_command("ls"),
                   lambda: self.ssh.get_file("/etc/hostname"),
                   lambda: self.ssh.keepalive(10)):
            with self.assertRaises(SSHConnectionError):
                op()

    def test_reconnect_after_drop(self):
        self.conn.active = False
        with self.assertRaises(SSHConnectionError):
            self.ssh.run_command("ls")
        self.ssh.connect_agent("user")
        self.assertTrue(self.ssh.authed())
        self.assertEqual(self.ssh.run_command("ls"), "")

    def test_drop_while_reading_output(self):
        """A link that dies mid-command moves the session to DROPPED."""
        self.conn.outputs["tail -f app.log"] = DroppingExecChannel(self.conn)
        with self.assertRaises(StreamError):
            self.ssh.run_command("tail -f app.log")
        self.assertIs(self.ssh.state, SessionState.DROPPED)
        self.assertFalse(self.ssh.authed())
        self.assertTrue(self.conn.closed)
        self.assertTrue(self.conn.channels[-1].closed)
        with self.assertRaises(SSHConnectionError):
            self.ssh.run_command("uname -a")
        self.assertEqual(len(self.conn.channels), 1)

    def test_stream_error_on_live_link_keeps_session(self):
        self.conn.outputs["yes"] = FakeExecChannel(read_error=StreamError("timed out"))
        with self.assertRaises(StreamError):
            self.ssh.run_command("yes")
        self.assertIs(self.ssh.state, SessionState.AUTHENTICATED)

    def test_keepalive(self):
        self.ssh.keepalive(15)
        self.assertEqual(self.conn.keepalive_interval, 15)
        self.assertEqual(self.conn.keepalive_sent, 1)

    def test_keepalive_requires_auth(self):
        ssh = Session("testhost", 22, transport=FakeTransport())
        with self.assertRaises(NotAuthenticatedError):
            ssh.keepalive(15)


# ── file transfer ─────────────────────────────────────────────────────────────

class TestFileTransfer(ConfigIsolation):

    def setUp(self):
        super().setUp()
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)
        self.local = self.root / "important.txt"
        self.local.write_bytes(b"line one\nline two\n\x00\x01binary tail")
        os.chmod(self.local, 0o640)
        self.conn = FakeConnection()
        self.ssh = Session("testhost", 22, transport=FakeTransport(self.conn))

    def tearDown(self):
        self.tmpdir.cleanup()
        super().tearDown()

    def test_upload_requires_auth(self):
        with self.assertRaises(NotAuthenticatedError):
            self.ssh.upload_file(self.local, "/tmp/destination.txt")
        with self.assertRaises(NotAuthenticatedError):
            self.ssh.get_file("/tmp/destination.txt")

    def test_upload_then_download_round_trip(self):
        self.ssh.connect_agent("user")
        self.ssh.upload_file(self.local, "/tmp/destination.txt")
        content, stat = self.ssh.get_file("/tmp/destination.txt")
        self.assertEqual(content, self.local.read_bytes())
        self.assertEqual(stat.size, len(content))
        self.assertTrue(self.ssh.authed())

    def test_upload_uses_local_permission_bits(self):
        self.ssh.connect_agent("user")
        self.ssh.upload_file(self.local, "/tmp/destination.txt")
        _, mode = self.conn.files["/tmp/destination.txt"]
        self.assertEqual(mode, 0o640)

    def test_upload_mode_override(self):
        cfg.UPLOAD_MODE = 0o600
        self.ssh.connect_agent("user")
        self.ssh.upload_file(self.local, "/tmp/destination.txt")
        _, mode = self.conn.files["/tmp/destination.txt"]
        self.assertEqual(mode, 0o600)

    def test_atomic_upload_renames_temp_file(self):
        self.ssh.connect_agent("user")
        self.ssh.upload_file(self.local, "/tmp/destination.txt")
        self.assertEqual(len(self.conn.renamed), 1)
        src, dst = self.conn.renamed[0]
        self.assertEqual(dst, "/tmp/destination.txt")
        self.assertTrue(src.startswith("/tmp/.destination.txt.part-"))
        self.assertEqual(list(self.conn.files), ["/tmp/destination.txt"])

    def test_direct_upload_when_not_atomic(self):
        cfg.ATOMIC_UPLOAD = False
        self.ssh.connect_agent("user")
        self.ssh.upload_file(self.local, "/tmp/destination.txt")
        self.assertEqual(self.conn.renamed, [])
        self.assertIn("/tmp/destination.txt", self.conn.files)

    def test_upload_to_readonly_path(self):
        self.conn.readonly_dirs.add("/tmp")
        self.ssh.connect_agent("user")
        with self.assertRaises(TransferError) as ctx:
            self.ssh.upload_file(self.local, "/tmp/destination.txt")
        self.assertIsInstance(ctx.exception, RemotePermissionError)
        self.assertEqual(ctx.exception.reason, TransferError.PERMISSION_DENIED)
        self.assertTrue(self.ssh.authed())

    def test_failed_upload_leaves_target_untouched(self):
        self.conn.files["/tmp/destination.txt"] = (b"previous", 0o644)
        self.conn.fail_writes = True
        self.ssh.connect_agent("user")
        with self.assertRaises(TransferError):
            self.ssh.upload_file(self.local, "/tmp/destination.txt")
        self.assertEqual(self.conn.files, {"/tmp/destination.txt": (b"previous", 0o644)})
        self.assertEqual(len(self.conn.removed), 1)
        self.assertTrue(self.conn.channels[-1].closed)
        self.assertTrue(self.ssh.authed())

    def test_drop_during_upload(self):
        """Losing the link mid-write drops the session; later calls fail fast."""
        self.conn.fail_writes = True
        self.conn.drop_on_write = True
        self.ssh.connect_agent("user")
        with self.assertRaises(TransferError):
            self.ssh.upload_file(self.local, "/tmp/destination.txt")
        self.assertIs(self.ssh.state, SessionState.DROPPED)
        self.assertFalse(self.ssh.authed())
        with self.assertRaises(SSHConnectionError):
            self.ssh.upload_file(self.local, "/tmp/destination.txt")

    def test_close_failure_does_not_mask_write_error(self):
        """The write error is what surfaces when closing the file fails too."""
        self.conn.fail_writes = True
        self.conn.fail_closes = True
        self.ssh.connect_agent("user")
        with self.assertRaises(TransferError) as ctx:
            self.ssh.upload_file(self.local, "/tmp/destination.txt")
        self.assertIn("connection reset", str(ctx.exception))
        self.assertTrue(self.conn.channels[-1].closed)

    def test_close_failure_after_clean_write_is_reported(self):
        self.conn.files["/tmp/destination.txt"] = (b"previous", 0o644)
        self.conn.fail_closes = True
        self.ssh.connect_agent("user")
        with self.assertRaises(TransferError) as ctx:
            self.ssh.upload_file(self.local, "/tmp/destination.txt")
        self.assertIn("Socket is closed", str(ctx.exception))
        self.assertEqual(self.conn.renamed, [])
        self.assertEqual(self.conn.files["/tmp/destination.txt"], (b"previous", 0o644))

    def test_unreadable_local_file(self):
        self.ssh.connect_agent("user")
        with self.assertRaises(LocalIOError):
            self.ssh.upload_file(self.root / "missing.txt", "/tmp/destination.txt")
        self.assertEqual(self.conn.channels, [])
        self.assertTrue(self.ssh.authed())

    def test_get_missing_file(self):
        self.ssh.connect_agent("user")
        with self.assertRaises(TransferError) as ctx:
            self.ssh.get_file("/tmp/nonexistent")
        self.assertIsInstance(ctx.exception, RemoteNotFoundError)
        self.assertEqual(ctx.exception.reason, TransferError.NOT_FOUND)
        self.assertTrue(self.ssh.authed())

    def test_get_file_returns_raw_bytes(self):
        self.conn.files["/var/blob"] = (b"\xff\xfe\x00", 0o600)
        self.ssh.connect_agent("user")
        content, stat = self.ssh.get_file("/var/blob")
        self.assertIsInstance(content, bytes)
        self.assertEqual(content, b"\xff\xfe\x00")
        self.assertEqual(stat.permissions, 0o600)
        self.assertTrue(self.conn.channels[-1].closed)

    def test_download_file_writes_locally(self):
        self.conn.files["/etc/motd"] = (b"welcome\n", 0o644)
        self.ssh.connect_agent("user")
        dest = self.root / "motd"
        stat = self.ssh.download_file("/etc/motd", dest)
        self.assertEqual(dest.read_bytes(), b"welcome\n")
        self.assertEqual(int(dest.stat().st_mtime), stat.mtime)

    def test_download_into_missing_directory(self):
        self.conn.files["/etc/motd"] = (b"welcome\n", 0o644)
        self.ssh.connect_agent("user")
        with self.assertRaises(LocalIOError):
            self.ssh.download_file("/etc/motd", self.root / "no" / "such" / "dir" / "motd")


if __name__ == "__main__":
    unittest.main()

"""Tests for copying into a guest over a scripted transport."""

import json
import os
import sys
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from websockets.datastructures import Headers
from websockets.exceptions import InvalidStatus
from websockets.http11 import Response

from guestcopy.config import CopyConfig
from guestcopy.cp.progress import CopyCallbacks
from guestcopy.cp.protocol import ErrorMessage, ResultMessage, encode_message
from guestcopy.cp.sender import CopyToOptions, SendSession, copy_to_instance
from guestcopy.cp.transport import ScriptedDialer, WebSocketDialer
from guestcopy.errors import (
    CopyConnectionError,
    IncompleteTransferError,
    LocalIOError,
    ProtocolError,
    RemoteFailureError,
    TransferCancelled,
)

OK = encode_message(ResultMessage(success=True))


@pytest.fixture
def config():
    return CopyConfig("https://api.example.com/v1", api_key="secret")


@pytest.fixture
def src_file(tmp_path):
    path = tmp_path / "data.bin"
    path.write_bytes(b"0123456789")
    os.chmod(path, 0o640)
    return path


def requests_sent(dialer):
    return [json.loads(ch.text_frames[0]) for ch in dialer.channels]


class EventLog:
    """Records progress callbacks in order."""

    def __init__(self):
        self.events = []

    def callbacks(self):
        return CopyCallbacks(
            on_file_start=lambda path, size: self.events.append(("start", path, size)),
            on_progress=lambda n: self.events.append(("progress", n)),
            on_file_end=lambda path: self.events.append(("end", path)),
        )


# ============================================================================
# Single files
# ============================================================================


class TestSendFile:
    def test_request_payload_and_end_marker(self, config, src_file):
        dialer = ScriptedDialer(scripts=[[encode_message(ResultMessage(True, bytes_written=10))]])
        session = SendSession(config, dialer, chunk_size=4)
        session.run(CopyToOptions("inst_1", str(src_file), "/app/data.bin"))

        assert len(dialer.channels) == 1
        channel = dialer.channels[0]
        assert json.loads(channel.text_frames[0]) == {
            "direction": "to",
            "guest_path": "/app/data.bin",
            "mode": 0o640,
        }
        assert channel.binary_frames == [b"0123", b"4567", b"89"]
        assert json.loads(channel.text_frames[-1]) == {"type": "end"}
        assert channel.closed is True

    def test_url_and_bearer_header(self, config, src_file):
        dialer = ScriptedDialer(default=[OK])
        copy_to_instance(config, CopyToOptions("inst_1", str(src_file), "/app/f"), dialer)

        url, headers = dialer.dials[0]
        assert url == "wss://api.example.com/v1/instances/inst_1/cp"
        assert headers == {"Authorization": "Bearer secret"}

    def test_mode_override(self, config, src_file):
        dialer = ScriptedDialer(default=[OK])
        copy_to_instance(config, CopyToOptions("inst_1", str(src_file), "/app/f", mode=0o600), dialer)
        assert requests_sent(dialer)[0]["mode"] == 0o600

    def test_archive_sends_ownership_and_mtime(self, config, src_file):
        os.utime(src_file, (1600000000, 1600000000))
        dialer = ScriptedDialer(default=[OK])
        copy_to_instance(config, CopyToOptions("inst_1", str(src_file), "/app/f", archive=True), dialer)

        request = requests_sent(dialer)[0]
        st = os.stat(src_file)
        assert request.get("uid", 0) == st.st_uid
        assert request.get("gid", 0) == st.st_gid
        assert request["mtime"] == 1600000000

    def test_callbacks_order(self, config, src_file):
        log = EventLog()
        dialer = ScriptedDialer(default=[OK])
        SendSession(config, dialer, chunk_size=3).run(
            CopyToOptions("inst_1", str(src_file), "/app/f", callbacks=log.callbacks())
        )

        assert log.events[0] == ("start", str(src_file), 10)
        assert log.events[-1] == ("end", str(src_file))
        progress = [e[1] for e in log.events if e[0] == "progress"]
        assert progress == sorted(progress)
        assert progress[-1] == 10
        assert [e[0] for e in log.events].count("start") == 1
        assert [e[0] for e in log.events].count("end") == 1

    def test_failing_callback_does_not_abort(self, config, src_file):
        def boom(_):
            raise RuntimeError("render failed")

        dialer = ScriptedDialer(default=[OK])
        copy_to_instance(
            config,
            CopyToOptions("inst_1", str(src_file), "/app/f", callbacks=CopyCallbacks(on_progress=boom)),
            dialer,
        )
        assert dialer.channels[0].binary_frames == [b"0123456789"]

    def test_empty_file(self, config, tmp_path):
        empty = tmp_path / "empty"
        empty.write_bytes(b"")
        dialer = ScriptedDialer(default=[OK])
        copy_to_instance(config, CopyToOptions("inst_1", str(empty), "/app/empty"), dialer)
        assert dialer.channels[0].binary_frames == []


class TestSendFailures:
    """Tests for failures reported by the guest or the transport."""

    def test_error_frame(self, config, src_file):
        log = EventLog()
        dialer = ScriptedDialer(default=[encode_message(ErrorMessage("permission denied", "/app/f"))])
        with pytest.raises(RemoteFailureError) as exc:
            copy_to_instance(
                config, CopyToOptions("inst_1", str(src_file), "/app/f", callbacks=log.callbacks()), dialer
            )
        assert exc.value.path == "/app/f"
        assert "permission denied" in str(exc.value)
        assert ("end", str(src_file)) not in log.events
        assert dialer.channels[0].closed is True

    def test_failed_result(self, config, src_file):
        dialer = ScriptedDialer(default=[encode_message(ResultMessage(False, error="disk full"))])
        with pytest.raises(RemoteFailureError, match="disk full"):
            copy_to_instance(config, CopyToOptions("inst_1", str(src_file), "/app/f"), dialer)

    def test_close_before_result(self, config, src_file):
        dialer = ScriptedDialer(default=[])
        with pytest.raises(IncompleteTransferError):
            copy_to_instance(config, CopyToOptions("inst_1", str(src_file), "/app/f"), dialer)

    def test_unexpected_reply(self, config, src_file):
        dialer = ScriptedDialer(default=[b"binary"])
        with pytest.raises(ProtocolError):
            copy_to_instance(config, CopyToOptions("inst_1", str(src_file), "/app/f"), dialer)

    def test_missing_source(self, config, tmp_path):
        dialer = ScriptedDialer(default=[OK])
        with pytest.raises(LocalIOError):
            copy_to_instance(config, CopyToOptions("inst_1", str(tmp_path / "nope"), "/app/f"), dialer)
        assert dialer.dials == []

    def test_invalid_instance_id(self, config, src_file):
        dialer = ScriptedDialer(default=[OK])
        with pytest.raises(CopyConnectionError):
            copy_to_instance(config, CopyToOptions("../etc", str(src_file), "/app/f"), dialer)

    def test_dial_error_propagates(self, config, src_file):
        dialer = ScriptedDialer(error=CopyConnectionError("websocket connect failed", 503, "busy"))
        with pytest.raises(CopyConnectionError) as exc:
            copy_to_instance(config, CopyToOptions("inst_1", str(src_file), "/app/f"), dialer)
        assert exc.value.status_code == 503

    def test_cancellation_closes_channel(self, config, src_file):
        cancel = threading.Event()
        callbacks = CopyCallbacks(on_progress=lambda n: cancel.set())
        dialer = ScriptedDialer(default=[OK])

        with pytest.raises(TransferCancelled):
            SendSession(config, dialer, chunk_size=2).run(
                CopyToOptions("inst_1", str(src_file), "/app/f", callbacks=callbacks, cancel=cancel)
            )
        channel = dialer.channels[0]
        assert channel.closed is True
        assert channel.binary_frames == [b"01"]


# ============================================================================
# Directories
# ============================================================================


class TestSendDirectory:
    @pytest.fixture
    def src_dir(self, tmp_path):
        root = tmp_path / "project"
        (root / "sub").mkdir(parents=True)
        (root / "a.txt").write_text("alpha")
        (root / "sub" / "b.txt").write_text("beta")
        return root

    def test_one_connection_per_entry(self, config, src_dir):
        dialer = ScriptedDialer(default=[OK])
        copy_to_instance(config, CopyToOptions("inst_1", str(src_dir), "/app/project"), dialer)

        sent = requests_sent(dialer)
        assert [r["guest_path"] for r in sent] == [
            "/app/project",
            "/app/project/a.txt",
            "/app/project/sub",
            "/app/project/sub/b.txt",
        ]
        assert [r.get("is_dir", False) for r in sent] == [True, False, True, False]
        assert all(ch.closed for ch in dialer.channels)

    def test_directory_sends_only_end_marker(self, config, src_dir):
        dialer = ScriptedDialer(default=[OK])
        copy_to_instance(config, CopyToOptions("inst_1", str(src_dir), "/app/project"), dialer)

        root_channel = dialer.channels[0]
        assert root_channel.binary_frames == []
        assert [json.loads(f) for f in root_channel.text_frames[1:]] == [{"type": "end"}]
        assert dialer.channels[1].binary_frames == [b"alpha"]

    def test_mode_override_only_for_top_level(self, config, src_dir):
        os.chmod(src_dir / "a.txt", 0o644)
        dialer = ScriptedDialer(default=[OK])
        copy_to_instance(config, CopyToOptions("inst_1", str(src_dir), "/app/p", mode=0o700), dialer)

        sent = requests_sent(dialer)
        assert sent[0]["mode"] == 0o700
        assert sent[1]["mode"] == 0o644

    def test_failure_stops_walk(self, config, src_dir):
        dialer = ScriptedDialer(
            scripts=[[OK], [encode_message(ResultMessage(False, error="read-only"))]],
            default=[OK],
        )
        with pytest.raises(RemoteFailureError):
            copy_to_instance(config, CopyToOptions("inst_1", str(src_dir), "/app/p"), dialer)
        assert len(dialer.dials) == 2

    def test_symlink_sent_as_target_content(self, config, src_dir):
        os.chmod(src_dir / "a.txt", 0o600)
        os.symlink("a.txt", src_dir / "link.txt")
        dialer = ScriptedDialer(default=[OK])
        copy_to_instance(config, CopyToOptions("inst_1", str(src_dir), "/app/p"), dialer)

        by_path = {json.loads(ch.text_frames[0])["guest_path"]: ch for ch in dialer.channels}
        link_channel = by_path["/app/p/link.txt"]
        assert json.loads(link_channel.text_frames[0])["mode"] == 0o600
        assert link_channel.binary_frames == [b"alpha"]

    def test_cycle_sent_once(self, config, src_dir):
        os.symlink(src_dir, src_dir / "sub" / "loop")
        dialer = ScriptedDialer(default=[OK])
        copy_to_instance(
            config, CopyToOptions("inst_1", str(src_dir), "/app/p", follow_links=True), dialer
        )
        paths = [r["guest_path"] for r in requests_sent(dialer)]
        assert len(paths) == len(set(paths))
        assert not any("loop" in p for p in paths)

    def test_cycle_to_intermediate_directory_sent_once(self, config, tmp_path):
        root = tmp_path / "src"
        (root / "a" / "b").mkdir(parents=True)
        (root / "a" / "f.txt").write_text("f")
        os.symlink(root / "a", root / "a" / "b" / "loop")

        dialer = ScriptedDialer(default=[OK])
        copy_to_instance(config, CopyToOptions("inst_1", str(root), "/app/src", follow_links=True), dialer)

        assert [r["guest_path"] for r in requests_sent(dialer)] == [
            "/app/src",
            "/app/src/a",
            "/app/src/a/b",
            "/app/src/a/f.txt",
        ]


# ============================================================================
# WebSocket dialer
# ============================================================================


class TestWebSocketDialer:
    def test_rejected_upgrade_surfaces_status_and_body(self):
        response = Response(403, "Forbidden", Headers(), b"invalid token")
        with patch("guestcopy.cp.transport.connect", side_effect=InvalidStatus(response)):
            with pytest.raises(CopyConnectionError) as exc:
                WebSocketDialer().dial("wss://api.example.com/instances/x/cp", {})
        assert exc.value.status_code == 403
        assert exc.value.body == "invalid token"
        assert "HTTP 403" in str(exc.value)

    def test_network_error(self):
        with patch("guestcopy.cp.transport.connect", side_effect=OSError("connection refused")):
            with pytest.raises(CopyConnectionError, match="connection refused"):
                WebSocketDialer().dial("ws://localhost:1/instances/x/cp", {})

    def test_passes_headers_and_timeout(self):
        with patch("guestcopy.cp.transport.connect") as connect:
            WebSocketDialer(open_timeout=5).dial("ws://h/instances/x/cp", {"Authorization": "Bearer k"})
        connect.assert_called_once_with(
            "ws://h/instances/x/cp",
            additional_headers={"Authorization": "Bearer k"},
            open_timeout=5,
            max_size=None,
        )

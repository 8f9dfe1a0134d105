"""Tests for the proxy process supervisor using a stand-in proxy script."""

from __future__ import annotations

import socket
import stat
import sys
from pathlib import Path

import pytest

from proxy_process import PROXY_CONFIG_ENV, PROXY_PATH_ENV, ProxyProcess

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="needs an executable script")

FAKE_PROXY = """#!{python}
import socket
import sys

config_path = sys.argv[sys.argv.index("-f") + 1]
with open(config_path) as config_file:
    port = int(config_file.read().strip() or 0)

if port:
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    listener.bind(("127.0.0.1", port))
    listener.listen(8)
    while True:
        conn, _ = listener.accept()
        conn.recv(4096)
        conn.sendall(b"HTTP/1.1 200 OK\\r\\nContent-Length: 0\\r\\nConnection: close\\r\\n\\r\\n")
        conn.close()
else:
    import time
    time.sleep(60)
"""


def _fake_proxy(tmp_path: Path, port: int = 0) -> tuple[str, str]:
    script = tmp_path / "fake-proxy"
    script.write_text(FAKE_PROXY.format(python=sys.executable))
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    config = tmp_path / "proxy.cfg"
    config.write_text(str(port))
    return str(script), str(config)


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as spare:
        spare.bind(("127.0.0.1", 0))
        return spare.getsockname()[1]


def test_command_uses_config_flag_and_extra_args() -> None:
    proxy = ProxyProcess("/opt/haproxy", "/etc/haproxy.cfg")

    assert proxy.command() == ["/opt/haproxy", "-f", "/etc/haproxy.cfg", "-db"]


def test_paths_default_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(PROXY_PATH_ENV, "/usr/sbin/haproxy")
    monkeypatch.setenv(PROXY_CONFIG_ENV, "/tmp/test.cfg")

    proxy = ProxyProcess(extra_args=())

    assert proxy.command() == ["/usr/sbin/haproxy", "-f", "/tmp/test.cfg"]


def test_missing_paths_raise_value_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(PROXY_PATH_ENV, raising=False)
    monkeypatch.delenv(PROXY_CONFIG_ENV, raising=False)

    with pytest.raises(ValueError, match=PROXY_PATH_ENV):
        ProxyProcess().command()
    with pytest.raises(ValueError, match=PROXY_CONFIG_ENV):
        ProxyProcess(path="/opt/haproxy").command()


def test_start_and_stop_child_process(tmp_path: Path) -> None:
    path, config = _fake_proxy(tmp_path)
    proxy = ProxyProcess(path, config).start()
    try:
        assert proxy.running is True
        assert proxy.pid is not None
    finally:
        proxy.stop()

    assert proxy.running is False
    assert proxy.pid is None


def test_start_waits_for_port_to_answer(tmp_path: Path) -> None:
    port = _free_port()
    path, config = _fake_proxy(tmp_path, port)
    proxy = ProxyProcess(path, config).start(wait_port=port, timeout=5)
    try:
        assert proxy.running is True
    finally:
        proxy.stop()


def test_stop_without_start_is_noop() -> None:
    proxy = ProxyProcess("/opt/haproxy", "/etc/haproxy.cfg")

    proxy.stop()

    assert proxy.running is False

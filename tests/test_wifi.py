"""Tests for partitions/wifi.py - WiFi provisioning."""

import configparser
import subprocess
from contextlib import contextmanager
from pathlib import Path
from unittest.mock import MagicMock, patch

from pi_flash.config import WifiCredentials
from pi_flash.errors import ExternalCommandFailure
from pi_flash.partitions.wifi import (
    NetworkManagerBackend,
    WifiStatus,
    connection_filename,
    generate_wifi_connection,
    inject_wifi_credentials,
    parse_active_connections,
)
from pi_flash.remote.ssh import RemoteTarget

EXPECTED_KEYFILE = """\
[connection]
id=HomeNet
uuid=0b9a4d8e-1111-2222-3333-444455556666
type=wifi
autoconnect=true

[wifi]
mode=infrastructure
ssid=HomeNet

[wifi-security]
key-mgmt=wpa-psk
psk=hunter22

[ipv4]
method=auto

[ipv6]
method=auto
"""


def _strip_sudo(cmd):
    return cmd[1:] if cmd[0] == "sudo" else list(cmd)


class TestGenerateWifiConnection:
    """Tests for generate_wifi_connection function."""

    def test_keyfile_content(self):
        """The keyfile has the expected sections and keys."""
        content = generate_wifi_connection(
            "HomeNet", "hunter22", connection_uuid="0b9a4d8e-1111-2222-3333-444455556666"
        )
        assert content == EXPECTED_KEYFILE

    def test_random_uuid(self):
        """Each connection gets its own UUID by default."""
        first = generate_wifi_connection("net", "password1")
        second = generate_wifi_connection("net", "password1")
        assert first != second

    def test_special_characters_preserved(self):
        """Passwords with shell and interpolation characters survive unchanged."""
        password = "p@ss $HOME %(x)s 'q' \"d\" ;rm"
        content = generate_wifi_connection("Café Net", password)

        parser = configparser.ConfigParser(interpolation=None)
        parser.read_string(content)
        assert parser["wifi-security"]["psk"] == password
        assert parser["wifi"]["ssid"] == "Café Net"


class TestConnectionFilename:
    """Tests for connection_filename function."""

    def test_plain(self):
        """Plain SSIDs map directly."""
        assert connection_filename("HomeNet") == "HomeNet.nmconnection"

    def test_path_separator_replaced(self):
        """A '/' cannot escape the connections directory."""
        assert connection_filename("../etc/passwd") == ".._etc_passwd.nmconnection"


class TestParseActiveConnections:
    """Tests for parse_active_connections function."""

    def test_wifi_connected(self):
        """The first wireless connection is reported."""
        output = "Wired connection 1:802-3-ethernet:eth0\nHomeNet:802-11-wireless:wlan0\n"
        assert parse_active_connections(output) == WifiStatus(connected=True, ssid="HomeNet")

    def test_no_wifi(self):
        """Only wired connections means not connected."""
        output = "Wired connection 1:802-3-ethernet:eth0\n"
        assert parse_active_connections(output) == WifiStatus(connected=False)

    def test_empty(self):
        """No active connections."""
        assert parse_active_connections("").connected is False


class TestNetworkManagerBackend:
    """Tests for NetworkManagerBackend."""

    def test_apply_credentials(self, tmp_path):
        """The connection is written root-only and the password stays off argv."""
        commands = []
        staged_content = {}

        def fake_run(cmd, **kwargs):
            cmd = _strip_sudo(cmd)
            commands.append(cmd)
            if cmd[0] == "cp":
                staged_content["text"] = Path(cmd[1]).read_text(encoding="utf-8")
                staged_content["path"] = cmd[1]
            return subprocess.CompletedProcess(cmd, 0, "", "")

        creds = WifiCredentials(ssid="HomeNet", password="s3cret pass")
        with patch("pi_flash.partitions.wifi.run_command", side_effect=fake_run):
            written = NetworkManagerBackend().apply_credentials(tmp_path, creds)

        connections = tmp_path / "NetworkManager" / "system-connections"
        assert written == connections / "HomeNet.nmconnection"
        assert commands[0] == ["mkdir", "-p", str(connections)]
        assert ["chmod", "755", str(tmp_path / "NetworkManager")] in commands
        assert ["chmod", "700", str(connections)] in commands
        assert commands[-1] == ["chmod", "600", str(written)]
        assert "psk=s3cret pass" in staged_content["text"]
        assert not Path(staged_content["path"]).exists()
        assert all("s3cret pass" not in arg for cmd in commands for arg in cmd)

    def test_query_local(self):
        """Local query runs nmcli directly."""
        result = subprocess.CompletedProcess([], 0, "HomeNet:802-11-wireless:wlan0\n", "")
        with patch("pi_flash.partitions.wifi.run_command", return_value=result) as mock_run:
            status = NetworkManagerBackend().query_connectivity()

        assert status.ssid == "HomeNet"
        assert mock_run.call_args.args[0][0] == "nmcli"

    def test_query_remote(self):
        """Remote query wraps nmcli in ssh."""
        result = subprocess.CompletedProcess([], 0, "", "")
        target = RemoteTarget(user="pi", host="kiosk.local")
        with patch("pi_flash.partitions.wifi.run_command", return_value=result) as mock_run:
            status = NetworkManagerBackend().query_connectivity(target)

        cmd = mock_run.call_args.args[0]
        assert cmd[0] == "ssh"
        assert "pi@kiosk.local" in cmd
        assert status.connected is False

    def test_query_failure(self):
        """An unreachable nmcli reports disconnected."""
        with patch(
            "pi_flash.partitions.wifi.run_command",
            side_effect=ExternalCommandFailure("nmcli", None, "not found"),
        ):
            assert NetworkManagerBackend().query_connectivity() == WifiStatus(connected=False)


class TestInjectWifiCredentials:
    """Tests for inject_wifi_credentials function."""

    def test_writes_through_backend(self, tmp_path):
        """The data partition is mounted and handed to the backend."""
        mounted = []

        @contextmanager
        def fake_mount(partition, purpose, *, guard=None):
            mounted.append(partition)
            yield tmp_path

        backend = MagicMock()
        backend.apply_credentials.return_value = tmp_path / "x.nmconnection"
        creds = WifiCredentials(ssid="HomeNet", password="hunter22")

        with patch("pi_flash.partitions.wifi.mounted_partition", fake_mount):
            written = inject_wifi_credentials("/dev/mmcblk0", creds, backend=backend)

        assert mounted == ["/dev/mmcblk0p4"]
        backend.apply_credentials.assert_called_once_with(tmp_path, creds)
        assert written == tmp_path / "x.nmconnection"

    def test_dry_run(self):
        """Dry run touches nothing."""
        backend = MagicMock()
        creds = WifiCredentials(ssid="HomeNet", password="hunter22")
        with patch("pi_flash.partitions.wifi.mounted_partition") as mock_mount:
            assert inject_wifi_credentials("/dev/sdb", creds, backend=backend, dry_run=True) is None
        mock_mount.assert_not_called()
        backend.apply_credentials.assert_not_called()

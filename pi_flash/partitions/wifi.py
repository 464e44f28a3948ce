"""WiFi provisioning of the data partition.

This module handles:
- Rendering NetworkManager keyfile connections
- Writing a connection into <data>/NetworkManager/system-connections/
- Querying the active WiFi connection through nmcli, locally or over SSH

Network tooling is reached through the NetworkBackend capability so the
flash workflow does not depend on NetworkManager directly.
"""

from __future__ import annotations

import configparser
import io
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from pi_flash.commands import privileged, run_command
from pi_flash.config import WifiCredentials
from pi_flash.errors import ExternalCommandFailure
from pi_flash.flash.device import DATA_PARTITION, partition_path
from pi_flash.partitions.manager import mounted_partition
from pi_flash.remote.ssh import RemoteTarget, ssh_command

if TYPE_CHECKING:
    from pi_flash.guard import SignalGuard

logger = logging.getLogger(__name__)

CONNECTIONS_DIR = Path("NetworkManager") / "system-connections"

# nmcli reports WiFi connections with this type
NMCLI_WIFI_TYPE = "802-11-wireless"


@dataclass
class WifiStatus:
    """Active WiFi connection, if any."""

    connected: bool
    ssid: str | None = None


class NetworkBackend(Protocol):
    """Capability for applying and checking network credentials."""

    def apply_credentials(self, data_root: Path, credentials: WifiCredentials) -> Path:
        """Persist credentials under a mounted data partition root."""
        ...

    def query_connectivity(self, target: RemoteTarget | None = None) -> WifiStatus:
        """Report the active WiFi connection, locally or on a remote target."""
        ...


def connection_filename(ssid: str) -> str:
    """Filename for an SSID's connection; path separators become '_'."""
    return f"{ssid.replace('/', '_')}.nmconnection"


def generate_wifi_connection(
    ssid: str,
    password: str,
    connection_uuid: str | None = None,
) -> str:
    """Render a NetworkManager keyfile for a WPA-PSK network.

    Args:
        ssid: Network name.
        password: Pre-shared key.
        connection_uuid: Connection UUID (random if omitted).

    Returns:
        Keyfile content.
    """
    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str  # type: ignore[assignment,method-assign]
    parser["connection"] = {
        "id": ssid,
        "uuid": connection_uuid or str(uuid.uuid4()),
        "type": "wifi",
        "autoconnect": "true",
    }
    parser["wifi"] = {"mode": "infrastructure", "ssid": ssid}
    parser["wifi-security"] = {"key-mgmt": "wpa-psk", "psk": password}
    parser["ipv4"] = {"method": "auto"}
    parser["ipv6"] = {"method": "auto"}

    buffer = io.StringIO()
    parser.write(buffer, space_around_delimiters=False)
    return buffer.getvalue().rstrip("\n") + "\n"


def parse_active_connections(output: str) -> WifiStatus:
    """Parse ``nmcli -t -f NAME,TYPE,DEVICE connection show --active``."""
    for line in output.splitlines():
        parts = line.split(":")
        if len(parts) >= 2 and parts[1] == NMCLI_WIFI_TYPE:
            return WifiStatus(connected=True, ssid=parts[0])
    return WifiStatus(connected=False)


class NetworkManagerBackend:
    """NetworkManager implementation of NetworkBackend."""

    def apply_credentials(self, data_root: Path, credentials: WifiCredentials) -> Path:
        """Write the connection file under a mounted data partition.

        The NetworkManager directory is 755, system-connections 700 and
        the connection file 600, all root-owned.

        Returns:
            Path of the written connection file.
        """
        nm_dir = data_root / CONNECTIONS_DIR.parent
        connections_dir = data_root / CONNECTIONS_DIR
        connection_path = connections_dir / connection_filename(credentials.ssid)

        run_command(privileged(["mkdir", "-p", str(connections_dir)]))
        run_command(privileged(["chmod", "755", str(nm_dir)]))
        run_command(privileged(["chmod", "700", str(connections_dir)]))

        content = generate_wifi_connection(credentials.ssid, credentials.password)
        logger.info("Writing %s...", connection_path.name)
        # Staged through a private temp file so the password never hits argv
        fd, staged = tempfile.mkstemp(prefix="pi-flash-nm-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            run_command(privileged(["cp", staged, str(connection_path)]))
            run_command(privileged(["chmod", "600", str(connection_path)]))
        finally:
            os.unlink(staged)

        return connection_path

    def query_connectivity(self, target: RemoteTarget | None = None) -> WifiStatus:
        """Report the active WiFi connection.

        Returns:
            WifiStatus (disconnected if nmcli cannot be queried).
        """
        cmd = ["nmcli", "-t", "-f", "NAME,TYPE,DEVICE", "connection", "show", "--active"]
        if target is not None:
            cmd = ssh_command(target, cmd)
        try:
            result = run_command(cmd, timeout=30)
        except ExternalCommandFailure as e:
            logger.warning("Could not query WiFi status: %s", e.message)
            return WifiStatus(connected=False)
        status = parse_active_connections(result.stdout)
        if status.connected:
            logger.info("WiFi connected to: %s", status.ssid)
        else:
            logger.info("WiFi not connected")
        return status


def inject_wifi_credentials(
    device: str,
    credentials: WifiCredentials,
    *,
    backend: NetworkBackend | None = None,
    dry_run: bool = False,
    guard: SignalGuard | None = None,
) -> Path | None:
    """Provision WiFi on the data partition of a flashed device.

    Returns:
        Path of the connection file inside the (now unmounted) partition,
        or None in dry-run mode.
    """
    backend = backend or NetworkManagerBackend()
    data_partition = partition_path(device, DATA_PARTITION)
    filename = connection_filename(credentials.ssid)

    logger.info("Injecting WiFi credentials...")
    if dry_run:
        logger.info("Would mount %s", data_partition)
        logger.info("Would write %s to /data/%s/", filename, CONNECTIONS_DIR)
        logger.info("Would unmount")
        return None

    with mounted_partition(data_partition, "data-wifi", guard=guard) as mount_point:
        written = backend.apply_credentials(mount_point, credentials)

    logger.info('WiFi "%s" configured', credentials.ssid)
    return written


__all__ = [
    "CONNECTIONS_DIR",
    "NetworkBackend",
    "NetworkManagerBackend",
    "WifiStatus",
    "connection_filename",
    "generate_wifi_connection",
    "inject_wifi_credentials",
    "parse_active_connections",
]

"""Tests for flash/service.py - flash service layer."""

import io
from contextlib import contextmanager
from pathlib import Path
from unittest.mock import ANY, MagicMock, patch

import pytest
from rich.console import Console

from pi_flash.config import WifiCredentials
from pi_flash.errors import ConfirmationMismatch, ExternalCommandFailure, MountFailure
from pi_flash.flash.service import FlashOptions, FlashPlan, flash_device, plan_flash
from pi_flash.flash.writer import WritePlan
from pi_flash.guard import SignalGuard
from pi_flash.types import BackupResult, BackupStatus, GrowResult, WriteMethod

SERVICE = "pi_flash.flash.service"


def _guard():
    return SignalGuard(console=Console(file=io.StringIO()))


def _write_plan(tmp_path: Path) -> WritePlan:
    image = tmp_path / "pi-image.wic.gz"
    image.write_bytes(b"img")
    return WritePlan(image=image, device="/dev/sdb", method=WriteMethod.DD, write=["dd"])


def _flash_plan(tmp_path: Path, backup_data: bool = True) -> FlashPlan:
    return FlashPlan(
        device_path="/dev/sdb",
        write=_write_plan(tmp_path),
        steps=["Write"],
        backup_data=backup_data,
    )


class TestPlanFlash:
    """Tests for plan_flash function."""

    def test_full_plan(self, tmp_path):
        """All requested steps are listed in execution order."""
        options = FlashOptions(
            ssh_key_path=Path("/home/u/.ssh/id_ed25519.pub"),
            hostname="kiosk",
            wifi=WifiCredentials(ssid="HomeNet", password="hunter22"),
            grow_data=True,
        )
        with (
            patch(f"{SERVICE}.validate_device", return_value="/dev/sdb"),
            patch(f"{SERVICE}.has_data_partition", return_value=True),
            patch(f"{SERVICE}.plan_write", return_value=_write_plan(tmp_path)),
        ):
            plan = plan_flash(tmp_path / "pi-image.wic.gz", "/dev/sdb", options)

        assert plan.device_path == "/dev/sdb"
        assert plan.backup_data is True
        assert plan.steps == [
            "Back up /dev/sdb4",
            "Write pi-image.wic.gz to /dev/sdb with dd",
            "Restore data partition backup",
            "Install id_ed25519.pub for pi on /dev/sdb2",
            'Set hostname "kiosk"',
            'Configure WiFi "HomeNet"',
            "Grow data partition to 90% of /dev/sdb",
        ]

    def test_no_data_partition(self, tmp_path):
        """A blank card has nothing to back up."""
        with (
            patch(f"{SERVICE}.validate_device", return_value="/dev/sdb"),
            patch(f"{SERVICE}.has_data_partition", return_value=False),
            patch(f"{SERVICE}.plan_write", return_value=_write_plan(tmp_path)),
        ):
            plan = plan_flash(tmp_path / "pi-image.wic.gz", "/dev/sdb", FlashOptions())

        assert plan.backup_data is False
        assert plan.steps == ["Write pi-image.wic.gz to /dev/sdb with dd"]

    def test_invalid_hostname(self, tmp_path):
        """A bad hostname is caught while planning."""
        with patch(f"{SERVICE}.validate_device", return_value="/dev/sdb"):
            with pytest.raises(ValueError):
                plan_flash(tmp_path / "x.wic.gz", "/dev/sdb", FlashOptions(hostname="bad host"))


@pytest.fixture
def steps():
    """Patch every side-effecting step and record the call order."""
    manager = MagicMock()
    with (
        patch(f"{SERVICE}.backup_data_partition", manager.backup),
        patch(f"{SERVICE}.write_image", manager.write),
        patch(f"{SERVICE}.restore_data_partition", manager.restore),
        patch(f"{SERVICE}.cleanup_backup", manager.cleanup),
        patch(f"{SERVICE}.set_hostname", manager.hostname),
        patch(f"{SERVICE}.inject_wifi_credentials", manager.wifi),
        patch(f"{SERVICE}.grow_data_partition", manager.grow),
        patch(f"{SERVICE}.inject_ssh_key", manager.key),
    ):
        yield manager


def _names(manager):
    return [name for name, _, _ in manager.mock_calls if "." not in name]


class TestFlashDevice:
    """Tests for flash_device function."""

    def test_full_flow(self, tmp_path, steps):
        """Backup, write, restore, key, hostname, wifi, grow run in order."""
        backup_dir = tmp_path / "backup"
        steps.backup.return_value = BackupResult(BackupStatus.OK, backup_dir, 3)
        steps.restore.return_value = True
        steps.grow.return_value = GrowResult("/dev/sdb4", True, "grown")
        key = tmp_path / "id.pub"
        key.write_text("ssh-ed25519 AAAA user@host\n")
        options = FlashOptions(
            ssh_key_path=key,
            hostname="kiosk",
            wifi=WifiCredentials(ssid="HomeNet", password="hunter22"),
            grow_data=True,
        )

        @contextmanager
        def fake_mount(partition, purpose, *, guard=None):
            steps.mount(partition)
            yield tmp_path

        confirm = MagicMock(return_value="/dev/sdb")
        with patch(f"{SERVICE}.mounted_partition", fake_mount):
            result = flash_device(
                _flash_plan(tmp_path), options, guard=_guard(), confirm=confirm
            )

        confirm.assert_called_once_with("/dev/sdb")
        assert _names(steps) == [
            "backup", "write", "restore", "cleanup", "mount", "key", "hostname", "wifi", "grow"
        ]
        steps.mount.assert_called_once_with("/dev/sdb2")
        steps.key.assert_called_once_with(tmp_path, "ssh-ed25519 AAAA user@host", "pi", 1000)
        steps.cleanup.assert_called_once_with(backup_dir)
        assert result.restored is True
        assert result.kept_backup is None
        assert result.grow is not None and result.grow.changed is True

    def test_confirmation_before_any_side_effect(self, tmp_path, steps):
        """A wrong confirmation stops before the backup."""
        with pytest.raises(ConfirmationMismatch):
            flash_device(
                _flash_plan(tmp_path),
                FlashOptions(),
                guard=_guard(),
                confirm=lambda device: "/dev/sdc",
            )
        assert steps.mock_calls == []

    def test_backup_failure_is_not_fatal(self, tmp_path, steps):
        """The flash proceeds without a backup; nothing is restored."""
        steps.backup.return_value = BackupResult(BackupStatus.FAILED, message="mount failed")
        result = flash_device(
            _flash_plan(tmp_path), FlashOptions(), guard=_guard(), skip_confirmation=True
        )

        steps.write.assert_called_once()
        steps.restore.assert_not_called()
        assert result.backup is not None
        assert result.backup.status == BackupStatus.FAILED
        assert result.restored is None

    def test_empty_backup_skips_restore(self, tmp_path, steps):
        """An EMPTY backup has nothing to restore."""
        steps.backup.return_value = BackupResult(BackupStatus.EMPTY)
        flash_device(_flash_plan(tmp_path), FlashOptions(), guard=_guard(), skip_confirmation=True)
        steps.restore.assert_not_called()

    def test_restore_failure_keeps_backup(self, tmp_path, steps):
        """A failed restore keeps the backup and reports its location."""
        backup_dir = tmp_path / "backup"
        steps.backup.return_value = BackupResult(BackupStatus.OK, backup_dir, 1)
        steps.restore.return_value = False

        result = flash_device(
            _flash_plan(tmp_path), FlashOptions(), guard=_guard(), skip_confirmation=True
        )

        steps.cleanup.assert_not_called()
        assert result.restored is False
        assert result.kept_backup == backup_dir

    def test_write_failure_propagates(self, tmp_path, steps):
        """A failed write stops the workflow; the backup is left in place."""
        steps.backup.return_value = BackupResult(BackupStatus.OK, tmp_path / "b", 1)
        steps.write.side_effect = ExternalCommandFailure("dd of=/dev/sdb", 1, "I/O error")

        with pytest.raises(ExternalCommandFailure):
            flash_device(
                _flash_plan(tmp_path),
                FlashOptions(hostname="kiosk"),
                guard=_guard(),
                skip_confirmation=True,
            )

        steps.restore.assert_not_called()
        steps.cleanup.assert_not_called()
        steps.hostname.assert_not_called()

    def test_key_mount_failure_after_restore(self, tmp_path, steps):
        """The data is restored before a failing key install can block it."""
        backup_dir = tmp_path / "backup"
        steps.backup.return_value = BackupResult(BackupStatus.OK, backup_dir, 2)
        steps.restore.return_value = True
        key = tmp_path / "id.pub"
        key.write_text("ssh-ed25519 AAAA")

        @contextmanager
        def failing_mount(partition, purpose, *, guard=None):
            raise MountFailure(partition, "/tmp/pi-flash-rootfs", "wrong fs type")
            yield

        with patch(f"{SERVICE}.mounted_partition", failing_mount):
            with pytest.raises(MountFailure):
                flash_device(
                    _flash_plan(tmp_path),
                    FlashOptions(ssh_key_path=key, hostname="kiosk"),
                    guard=_guard(),
                    skip_confirmation=True,
                )

        steps.restore.assert_called_once_with("/dev/sdb", backup_dir, guard=ANY)
        steps.cleanup.assert_called_once_with(backup_dir)
        steps.hostname.assert_not_called()

    def test_restore_crash_reports_backup(self, tmp_path, steps):
        """An error escaping the restore logs where the backup was kept."""
        backup_dir = tmp_path / "backup"
        steps.backup.return_value = BackupResult(BackupStatus.OK, backup_dir, 2)
        steps.restore.side_effect = OSError("No space left on device")

        with patch(f"{SERVICE}.logger") as mock_logger:
            with pytest.raises(OSError):
                flash_device(
                    _flash_plan(tmp_path), FlashOptions(), guard=_guard(), skip_confirmation=True
                )

        steps.cleanup.assert_not_called()
        assert mock_logger.error.call_args.args[1] == backup_dir

    def test_write_failure_reports_backup(self, tmp_path, steps):
        """A failed write logs where the backup was kept."""
        backup_dir = tmp_path / "backup"
        steps.backup.return_value = BackupResult(BackupStatus.OK, backup_dir, 1)
        steps.write.side_effect = ExternalCommandFailure("dd of=/dev/sdb", 1, "I/O error")

        with patch(f"{SERVICE}.logger") as mock_logger:
            with pytest.raises(ExternalCommandFailure):
                flash_device(
                    _flash_plan(tmp_path), FlashOptions(), guard=_guard(), skip_confirmation=True
                )

        assert mock_logger.error.call_args.args[1] == backup_dir

    def test_no_backup_requested(self, tmp_path, steps):
        """backup_data=False skips the backup entirely."""
        flash_device(
            _flash_plan(tmp_path, backup_data=False),
            FlashOptions(backup_data=False),
            guard=_guard(),
            skip_confirmation=True,
        )
        steps.backup.assert_not_called()

    def test_dry_run(self, tmp_path, steps):
        """Dry run only logs: the writer and provisioning steps run in dry mode."""
        options = FlashOptions(
            hostname="kiosk", wifi=WifiCredentials(ssid="HomeNet", password="hunter22")
        )
        confirm = MagicMock()
        result = flash_device(
            _flash_plan(tmp_path), options, guard=_guard(), confirm=confirm, dry_run=True
        )

        assert result.dry_run is True
        confirm.assert_not_called()
        steps.backup.assert_not_called()
        assert steps.write.call_args.kwargs["dry_run"] is True
        assert steps.hostname.call_args.kwargs["dry_run"] is True
        assert steps.wifi.call_args.kwargs["dry_run"] is True
        steps.grow.assert_not_called()

    def test_confirmation_prompt_required(self, tmp_path, steps):
        """A real run without a prompt or skip flag is refused."""
        with pytest.raises(ValueError):
            flash_device(_flash_plan(tmp_path), FlashOptions(), guard=_guard())
        steps.backup.assert_not_called()

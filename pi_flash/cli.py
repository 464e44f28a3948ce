"""Thin CLI wrapper for pi_flash.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Annotated, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler

from pi_flash import __version__
from pi_flash.config import (
    FlashConfig,
    Settings,
    get_settings,
    load_flash_config,
    load_wifi_credentials,
    print_settings_json,
    save_flash_config,
)
from pi_flash.errors import PiFlashError

app = typer.Typer(
    name="pi-flash",
    help="Pi Flash - flash, provision and A/B update Raspberry Pi devices",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"pi-flash version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Route log records through rich on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Pi Flash - flash, provision and A/B update Raspberry Pi devices."""
    setup_logging("DEBUG" if verbose else get_settings().log_level)


def _fail(message: str) -> NoReturn:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=1)


def _flash_config(settings: Settings) -> FlashConfig | None:
    return load_flash_config(settings.config_path)


def _prompt_confirmation(device: str) -> str:
    console.print(f"[bold red]WARNING: This will ERASE ALL DATA on {device}[/bold red]")
    return str(typer.prompt(f'Type "{device}" to confirm'))


def _prompt_update_confirmation(host: str) -> str:
    console.print(f"[bold cyan]Flashing the inactive slot on {host}[/bold cyan]")
    return str(typer.prompt(f'Type "{host}" to proceed'))


@app.command()
def config(
    ssh_key: Annotated[
        Path | None,
        typer.Option("--ssh-key", help="Save this public key to the flash config"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration, or save the SSH key to use."""
    settings = get_settings()

    if ssh_key is not None:
        if not ssh_key.expanduser().is_file():
            _fail(f"SSH key not found: {ssh_key}")
        existing = _flash_config(settings)
        data = existing.model_dump() if existing else {}
        data["ssh_key_path"] = str(ssh_key.expanduser())
        if not save_flash_config(settings.config_path, FlashConfig.model_validate(data)):
            _fail(f"Failed to save {settings.config_path}")
        console.print(f"[green]✓ SSH key configured: {ssh_key.name}[/green]")
        console.print(f"  Config saved to: {settings.config_path}")
        return

    if json_output:
        console.print(print_settings_json(settings))
        return

    flash_config = _flash_config(settings)
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Image directory:     {settings.image_dir}")
    console.print(f"  Image suffix:        {settings.image_suffix}")
    console.print(f"  Flash config:        {settings.config_path}")
    console.print(f"  WiFi credentials:    {settings.wifi_creds_path}")
    console.print()
    console.print("[bold]Device:[/bold]")
    console.print(f"  User:                {settings.username} (uid {settings.user_uid})")
    console.print(f"  SSH key:             {flash_config.ssh_key_path if flash_config else '(none)'}")
    console.print(f"  Data free percent:   {settings.data_free_percent}")
    console.print()
    console.print("[bold]Remote:[/bold]")
    console.print(f"  User:                {settings.remote_user}")
    console.print(f"  Scratch directory:   {settings.remote_tmp}")
    console.print(f"  Reboot timeout:      {settings.reboot_timeout}")
    console.print(f"  Log level:           {settings.log_level}")


@app.command()
def devices(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List removable and USB disks that can be flashed."""
    from pi_flash.flash.device import format_size, list_block_devices

    found = list_block_devices()
    if json_output:
        console.print(json.dumps([asdict(d) for d in found], indent=2))
        return

    if not found:
        console.print("[yellow]No removable devices found[/yellow]")
        return

    console.print("[bold]Available devices:[/bold]")
    for i, dev in enumerate(found, start=1):
        badge = " [green]\\[removable][/green]" if dev.removable else ""
        console.print(
            f"  [cyan]{i})[/cyan] {dev.path}  {format_size(dev.size_bytes)}  "
            f"{dev.model}  ({dev.transport}){badge}"
        )


@app.command()
def images(
    image_dir: Annotated[
        Path | None,
        typer.Option("--dir", "-d", help="Directory to search"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List flashable images, newest first."""
    from pi_flash.flash.locator import list_images

    settings = get_settings()
    found = list_images(image_dir or settings.image_dir, settings.image_suffix)

    if json_output:
        output = [
            {"name": img.name, "path": str(img.path), "mtime": img.mtime} for img in found
        ]
        console.print(json.dumps(output, indent=2))
        return

    if not found:
        console.print(f"[yellow]No *{settings.image_suffix} images found[/yellow]")
        return

    for img in found:
        console.print(f"  {img.name}")


def _select_device() -> str:
    """Interactively pick a device from the inventory."""
    from pi_flash.flash.device import format_size, list_block_devices

    found = list_block_devices()
    if not found:
        _fail("No removable devices found")

    console.print("[bold]Available devices:[/bold]")
    for i, dev in enumerate(found, start=1):
        console.print(f"  [cyan]{i})[/cyan] {dev.path}  {format_size(dev.size_bytes)}  {dev.model}")
    choice = typer.prompt(f"Select device (1-{len(found)})", type=int)
    if not 1 <= choice <= len(found):
        _fail("Invalid selection.")
    return found[choice - 1].path


def _resolve_image(image: Path | None, settings: Settings) -> Path:
    from pi_flash.flash.locator import find_latest_image

    if image is not None:
        return image
    latest = find_latest_image(
        settings.image_dir, settings.image_suffix, settings.preferred_images
    )
    if latest is None:
        _fail(f"No *{settings.image_suffix} image found in {settings.image_dir}")
    return latest.path


@app.command()
def flash(
    device: Annotated[
        str | None,
        typer.Argument(help="Device path (e.g., /dev/sdX); prompted if omitted"),
    ] = None,
    image: Annotated[
        Path | None,
        typer.Option("--image", "-i", help="Image file (default: latest in image dir)"),
    ] = None,
    hostname: Annotated[
        str | None,
        typer.Option("--hostname", "-H", help="Hostname written to the boot partition"),
    ] = None,
    no_backup: Annotated[
        bool,
        typer.Option("--no-backup", help="Do not preserve the data partition"),
    ] = False,
    grow: Annotated[
        bool,
        typer.Option("--grow", help="Grow the data partition after flashing"),
    ] = False,
    no_wifi: Annotated[
        bool,
        typer.Option("--no-wifi", help="Skip WiFi provisioning"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Show what would be done without writing"),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip the typed device confirmation"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Flash an image to an SD card or USB disk.

    The data partition is backed up first and restored afterwards, then
    the SSH key, hostname and WiFi credentials are written to the card.
    Requires an explicit whole-device path; partitions are refused.
    """
    from pi_flash.flash.service import FlashOptions, flash_device, plan_flash
    from pi_flash.guard import SignalGuard

    settings = get_settings()
    flash_config = _flash_config(settings)

    device = device or (flash_config.device if flash_config else None) or _select_device()
    image_path = _resolve_image(image, settings)
    if hostname is None and flash_config:
        hostname = flash_config.hostname
    backup_data = not no_backup
    if flash_config and flash_config.backup_data is not None and not no_backup:
        backup_data = flash_config.backup_data
    skip_confirmation = yes or bool(flash_config and flash_config.skip_confirmation)

    options = FlashOptions(
        ssh_key_path=Path(flash_config.ssh_key_path) if flash_config else None,
        username=settings.username,
        uid=settings.user_uid,
        hostname=hostname,
        wifi=None if no_wifi else load_wifi_credentials(settings.wifi_creds_path),
        backup_data=backup_data,
        grow_data=grow,
        free_percent=settings.data_free_percent,
    )
    if options.ssh_key_path is None and not json_output:
        console.print("[yellow]No SSH key configured (pi-flash config --ssh-key PATH)[/yellow]")

    try:
        plan = plan_flash(image_path, device, options)

        if not json_output:
            header = "DRY RUN - No changes will be made" if dry_run else "Flash plan"
            console.print(f"[bold]{header}[/bold]")
            for line in plan.write.describe():
                console.print(f"  {line}")
            for number, step in enumerate(plan.steps, start=1):
                console.print(f"  {number}. {step}")
            console.print("[bold]Commands:[/bold]")
            for line in plan.write.render_commands():
                console.print(f"  {line}", markup=False)

        with SignalGuard(console=err_console) as guard:
            result = flash_device(
                plan,
                options,
                guard=guard,
                confirm=_prompt_confirmation,
                skip_confirmation=skip_confirmation,
                dry_run=dry_run,
            )
    except (PiFlashError, ValueError) as e:
        message = e.message if isinstance(e, PiFlashError) else str(e)
        console.print(f"[red]Flash failed: {message}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        output = {
            "success": True,
            "dry_run": result.dry_run,
            "device_path": result.device_path,
            "image_path": str(result.image_path),
            "method": result.method.value,
            "backup": result.backup.status.value if result.backup else None,
            "restored": result.restored,
            "kept_backup": str(result.kept_backup) if result.kept_backup else None,
            "grown": result.grow.changed if result.grow else None,
        }
        console.print(json.dumps(output, indent=2))
    elif dry_run:
        console.print("[green]✓ Dry-run validation passed[/green]")
    else:
        console.print(f"[green]✓ Flash complete: {result.device_path}[/green]")
        if result.kept_backup:
            console.print(f"[yellow]Data restore failed; backup kept at {result.kept_backup}[/yellow]")


@app.command()
def backup(
    device: Annotated[str, typer.Argument(help="Device path (e.g., /dev/sdX)")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Back up a card's data partition to a temporary directory."""
    from pi_flash.flash.device import validate_device
    from pi_flash.guard import SignalGuard
    from pi_flash.partitions.manager import backup_data_partition, has_data_partition
    from pi_flash.types import BackupStatus

    try:
        device = validate_device(device)
    except PiFlashError as e:
        _fail(e.message)

    if not has_data_partition(device):
        _fail(f"{device} has no data partition")

    with SignalGuard(console=err_console) as guard:
        result = backup_data_partition(device, guard=guard)

    if json_output:
        output = {
            "status": result.status.value,
            "path": str(result.path) if result.path else None,
            "item_count": result.item_count,
            "message": result.message,
        }
        console.print(json.dumps(output, indent=2))
    elif result.status == BackupStatus.OK:
        console.print(f"[green]✓ Backed up {result.item_count} items to {result.path}[/green]")
    elif result.status == BackupStatus.EMPTY:
        console.print("[yellow]Data partition is empty (nothing to back up)[/yellow]")
    else:
        console.print(f"[red]Backup failed: {result.message}[/red]")

    if result.status == BackupStatus.FAILED:
        raise typer.Exit(code=1)


@app.command()
def grow(
    device: Annotated[str, typer.Argument(help="Device path (e.g., /dev/sdX)")],
    free_percent: Annotated[
        int | None,
        typer.Option("--free-percent", help="Percent of the disk left unallocated"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Show what would be done"),
    ] = False,
) -> None:
    """Grow the data partition and its filesystem."""
    from pi_flash.commands import render
    from pi_flash.flash.device import DATA_PARTITION, partition_path, validate_device
    from pi_flash.partitions.manager import grow_data_partition

    settings = get_settings()
    percent = settings.data_free_percent if free_percent is None else free_percent

    try:
        device = validate_device(device)
        if dry_run:
            data = partition_path(device, DATA_PARTITION)
            console.print("[bold]DRY RUN - would execute:[/bold]")
            for cmd in (
                ["parted", "-s", device, "resizepart", str(DATA_PARTITION), f"{100 - percent}%"],
                ["e2fsck", "-f", "-y", data],
                ["resize2fs", data],
            ):
                console.print(f"  {render(cmd)}", markup=False)
            return
        result = grow_data_partition(device, percent)
    except (PiFlashError, ValueError) as e:
        message = e.message if isinstance(e, PiFlashError) else str(e)
        console.print(f"[red]Grow failed: {message}[/red]")
        raise typer.Exit(code=1) from None

    console.print(f"[green]✓ {result.message}[/green]")


@app.command()
def prepare(
    image: Annotated[
        Path | None,
        typer.Option("--image", "-i", help="Image file (default: latest in image dir)"),
    ] = None,
    output_dir: Annotated[
        Path | None,
        typer.Option("--output-dir", "-o", help="Working directory for the result"),
    ] = None,
    no_key: Annotated[
        bool,
        typer.Option("--no-key", help="Do not inject the configured SSH key"),
    ] = False,
) -> None:
    """Extract and prepare the rootfs of an image for remote updates.

    A <name>.sha256 checksum file is written next to the result.
    """
    from pi_flash.checksum import write_sidecar
    from pi_flash.guard import SignalGuard
    from pi_flash.image.prepare import prepare_rootfs

    settings = get_settings()
    flash_config = _flash_config(settings)
    image_path = _resolve_image(image, settings)
    key = None if no_key or flash_config is None else Path(flash_config.ssh_key_path)

    try:
        with SignalGuard(console=err_console) as guard:
            prepared = prepare_rootfs(
                image_path,
                ssh_key_path=key,
                username=settings.username,
                uid=settings.user_uid,
                work_dir=output_dir,
                guard=guard,
            )
        sidecar = write_sidecar(prepared.path)
    except (PiFlashError, OSError) as e:
        message = e.message if isinstance(e, PiFlashError) else str(e)
        console.print(f"[red]Prepare failed: {message}[/red]")
        raise typer.Exit(code=1) from None

    console.print(f"[green]✓ Rootfs prepared: {prepared.path}[/green]")
    console.print(f"  Checksum: {sidecar}")


@app.command()
def update(
    host: Annotated[str, typer.Argument(help="Device hostname or IP address")],
    user: Annotated[
        str | None,
        typer.Option("--user", "-u", help="SSH user (default from settings)"),
    ] = None,
    image: Annotated[
        Path | None,
        typer.Option("--image", "-i", help="Image file (default: latest in image dir)"),
    ] = None,
    no_key: Annotated[
        bool,
        typer.Option("--no-key", help="Do not inject the configured SSH key"),
    ] = False,
    remote_key: Annotated[
        bool,
        typer.Option(
            "--remote-key",
            help="Send a ready rootfs image as is and inject the key on the device",
        ),
    ] = False,
    check_wifi: Annotated[
        bool,
        typer.Option("--check-wifi", help="Report the WiFi connection after the reboot"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Show what would be done"),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip the typed host confirmation"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """A/B update a running device over SSH and verify it rebooted.

    The new rootfs is written to the inactive slot only; the running slot
    stays bootable if anything fails. With --remote-key, --image must be a
    rootfs image (e.g. from pi-flash prepare --no-key) and no local sudo is
    needed.
    """
    from pi_flash.guard import SignalGuard
    from pi_flash.remote.orchestrator import UpdateOptions, remote_update
    from pi_flash.remote.ssh import RemoteTarget

    settings = get_settings()
    flash_config = _flash_config(settings)
    if remote_key and image is None:
        _fail("--remote-key needs --image pointing at a rootfs image")
    image_path = _resolve_image(image, settings)
    target = RemoteTarget(
        user=user or settings.remote_user,
        host=host,
        connect_timeout=settings.ssh_connect_timeout,
    )
    options = UpdateOptions(
        ssh_key_path=None if no_key or flash_config is None else Path(flash_config.ssh_key_path),
        username=settings.username,
        uid=settings.user_uid,
        remote_tmp=settings.remote_tmp,
        reboot_timeout=settings.reboot_timeout,
        poll_interval=settings.reboot_poll_interval,
        fresh_uptime=settings.fresh_uptime_threshold,
        remote_key_injection=remote_key,
        check_wifi=check_wifi,
        dry_run=dry_run,
    )
    skip_confirmation = yes or bool(flash_config and flash_config.skip_confirmation)

    try:
        with SignalGuard(console=err_console) as guard:
            result = remote_update(
                image_path,
                target,
                options,
                guard=guard,
                confirm=_prompt_update_confirmation,
                skip_confirmation=skip_confirmation,
            )
    except (PiFlashError, OSError, ValueError) as e:
        message = e.message if isinstance(e, PiFlashError) else str(e)
        if json_output:
            output = {
                "success": False,
                "error_message": message,
                "error_code": getattr(e, "error_code", None),
            }
            console.print(json.dumps(output, indent=2))
        else:
            console.print(f"[red]Update failed: {message}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        output = {
            "success": True,
            "dry_run": result.dry_run,
            "target": result.target,
            "remote_path": result.remote_path,
            "digest": result.digest,
            "boot_device": result.boot_device,
            "reboot": result.reboot.outcome.value if result.reboot else None,
            "uptime": result.reboot.uptime if result.reboot else None,
            "wifi_ssid": result.wifi.ssid if result.wifi else None,
        }
        console.print(json.dumps(output, indent=2))
    elif dry_run:
        console.print("[green]✓ Dry run complete[/green]")
    else:
        console.print(f"[green]✓ {host} updated and rebooted into the new slot[/green]")
        if result.wifi is not None:
            _print_wifi(result.wifi.connected, result.wifi.ssid)


def _print_wifi(connected: bool, ssid: str | None) -> None:
    if connected:
        console.print(f"WiFi connected to: [cyan]{ssid}[/cyan]")
    else:
        console.print("[yellow]WiFi not connected[/yellow]")


@app.command("wifi-status")
def wifi_status(
    host: Annotated[
        str | None,
        typer.Argument(help="Device to query over SSH (default: this machine)"),
    ] = None,
    user: Annotated[
        str | None,
        typer.Option("--user", "-u", help="SSH user (default from settings)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the active WiFi connection, locally or on a device."""
    from pi_flash.partitions.wifi import NetworkManagerBackend
    from pi_flash.remote.ssh import RemoteTarget

    settings = get_settings()
    target = None
    if host is not None:
        target = RemoteTarget(
            user=user or settings.remote_user,
            host=host,
            connect_timeout=settings.ssh_connect_timeout,
        )

    status = NetworkManagerBackend().query_connectivity(target)

    if json_output:
        console.print(json.dumps({"connected": status.connected, "ssid": status.ssid}, indent=2))
    else:
        _print_wifi(status.connected, status.ssid)


if __name__ == "__main__":
    app()

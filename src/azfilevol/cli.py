"""azfilevol command-line interface.

Operator diagnostics for Azure Files volumes on a node:
- Decode and encode volume ids
- Derive share names and mount option sets
- Check mount points for corruption
- Run the node lifecycle (stage, publish, unpublish, unstage) by hand

The storage account key is read from AZURE_STORAGE_ACCOUNT_KEY and is
never printed.
"""

import logging
import sys
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.table import Table

from azfilevol import __version__
from azfilevol.config import ConfigError, DriverConfig
from azfilevol.driver import AzureFileDriver
from azfilevol.errors import VolumeError
from azfilevol.models import (
    NodePublishRequest,
    NodeStageRequest,
    NodeUnpublishRequest,
    NodeUnstageRequest,
)
from azfilevol.modules.mount_health import MountState, classify_mount_path
from azfilevol.modules.mount_options import MountOptionDefaults, append_default_mount_options
from azfilevol.modules.share_name import begins_and_ends_valid, derive_share_name
from azfilevol.modules.volume_id import decode_snapshot, decode_volume_id, encode_volume_id

logger = logging.getLogger(__name__)

ACCOUNT_KEY_ENV = "AZURE_STORAGE_ACCOUNT_KEY"


@click.group(name="azfilevol")
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="TOML config file (AZFILEVOL_* variables override it)",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Azure Files volume driver tools.

    \b
    COMMANDS:
        volume-id      Decode or encode volume ids
        share-name     Derive a share name from a volume name
        mount-options  Fill in SMB mount option defaults
        check-mount    Classify a mount point
        stage          Mount a volume's share at a staging path
        publish        Expose a staged volume at a target path
        unpublish      Unmount a target path
        unstage        Tear down a staging path

    \b
    EXAMPLES:
        $ azfilevol volume-id decode 'rg#acct#share#share.vhd'
        $ azfilevol share-name PVC_Data--01
        $ AZURE_STORAGE_ACCOUNT_KEY=... azfilevol stage 'rg#acct#share' /mnt/staging
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _load_config(ctx: click.Context) -> DriverConfig:
    console = Console()
    try:
        return DriverConfig.load(ctx.obj.get("config_path"))
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


def _fail(error: VolumeError) -> NoReturn:
    console = Console()
    console.print(f"[red]Error [{error.kind.value}]: {error.message}[/red]")
    sys.exit(1)


# ----------------------------------------------------------------------
# Identifiers and names
# ----------------------------------------------------------------------


@main.group(name="volume-id")
def volume_id_group() -> None:
    """Decode or encode volume ids."""
    pass


@volume_id_group.command(name="decode")
@click.argument("volume_id")
def decode_command(volume_id: str) -> None:
    """Show the fields of a volume id.

    \b
    Examples:
      $ azfilevol volume-id decode 'rg#acct#share'
      $ azfilevol volume-id decode 'rg#acct#share#disk.vhd#2019-08-22T07:17:53.0000000Z'
    """
    try:
        volume = decode_volume_id(volume_id)
    except VolumeError as e:
        _fail(e)
        return

    table = Table(title="Volume ID")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Resource group", volume.resource_group)
    table.add_row("Account", volume.account_name)
    table.add_row("Share", volume.share_name)
    table.add_row("Disk", volume.disk_name or "-")
    table.add_row("Snapshot", volume.snapshot_timestamp or "-")
    table.add_row("Mode", "block (VHD)" if volume.is_block_volume else "filesystem")
    Console().print(table)


@volume_id_group.command(name="encode")
@click.option("--resource-group", "--rg", required=True, help="Azure resource group")
@click.option("--account", required=True, help="Storage account name")
@click.option("--share", required=True, help="File share name")
@click.option("--disk", default="", help="VHD file name for block volumes")
@click.option("--snapshot", default="", help="Snapshot timestamp")
def encode_command(resource_group: str, account: str, share: str, disk: str, snapshot: str) -> None:
    """Build a volume id from its fields."""
    click.echo(encode_volume_id(resource_group, account, share, disk, snapshot))


@volume_id_group.command(name="snapshot")
@click.argument("snapshot_id")
def snapshot_command(snapshot_id: str) -> None:
    """Print the snapshot timestamp of a snapshot id."""
    try:
        click.echo(decode_snapshot(snapshot_id))
    except VolumeError as e:
        _fail(e)


@main.command(name="share-name")
@click.argument("volume_name")
def share_name_command(volume_name: str) -> None:
    """Derive an Azure Files share name from a volume name."""
    name = derive_share_name(volume_name)
    click.echo(name)
    if not begins_and_ends_valid(name):
        click.echo("Warning: derived name does not begin and end with a letter or digit", err=True)


@main.command(name="mount-options")
@click.argument("options", nargs=-1)
@click.pass_context
def mount_options_command(ctx: click.Context, options: tuple[str, ...]) -> None:
    """Fill in dir_mode, file_mode and vers defaults.

    \b
    Examples:
      $ azfilevol mount-options dir_mode=0755 nosharesock
      dir_mode=0755,nosharesock,file_mode=0777,vers=3.0
    """
    config = _load_config(ctx)
    defaults = MountOptionDefaults.from_config(config)
    click.echo(",".join(append_default_mount_options(list(options), defaults)))


@main.command(name="check-mount")
@click.argument("path", type=click.Path(path_type=Path))
def check_mount_command(path: Path) -> None:
    """Classify a mount point as absent, healthy or corrupted.

    Exits with status 1 when the path is corrupted.
    """
    console = Console()
    state = classify_mount_path(path)
    colors = {
        MountState.ABSENT: "yellow",
        MountState.HEALTHY: "green",
        MountState.CORRUPTED: "red",
    }
    console.print(f"{path}: [{colors[state]}]{state.value}[/{colors[state]}]")
    if state is MountState.CORRUPTED:
        sys.exit(1)


# ----------------------------------------------------------------------
# Node lifecycle
# ----------------------------------------------------------------------


def _secrets(volume_id: str, account_key: str | None) -> dict[str, str]:
    if not account_key:
        click.echo(f"Error: {ACCOUNT_KEY_ENV} must be set", err=True)
        sys.exit(1)
    try:
        account_name = decode_volume_id(volume_id).account_name
    except VolumeError as e:
        _fail(e)
    return {"accountname": account_name, "accountkey": account_key}


@main.command(name="stage")
@click.argument("volume_id")
@click.argument("staging_path", type=click.Path(path_type=Path))
@click.option("--option", "-o", "options", multiple=True, help="Mount option (repeatable)")
@click.option("--fs-type", default="", help="Filesystem type for block volumes")
@click.option("--size", type=int, help="VHD size in bytes if the file must be created")
@click.option(
    "--account-key",
    envvar=ACCOUNT_KEY_ENV,
    hidden=True,
    help="Storage account key",
)
@click.pass_context
def stage_command(
    ctx: click.Context,
    volume_id: str,
    staging_path: Path,
    options: tuple[str, ...],
    fs_type: str,
    size: int | None,
    account_key: str | None,
) -> None:
    """Mount a volume's share at STAGING_PATH (and attach its VHD)."""
    driver = AzureFileDriver(_load_config(ctx))
    request = NodeStageRequest(
        volume_id=volume_id,
        staging_path=str(staging_path),
        secrets=_secrets(volume_id, account_key),
        mount_options=list(options),
        fs_type=fs_type,
        capacity_bytes=size,
    )
    try:
        changed = driver.node_stage_volume(request)
    except VolumeError as e:
        _fail(e)
        return
    click.echo(f"Staged {volume_id} at {staging_path}" if changed else "Already staged")


@main.command(name="publish")
@click.argument("volume_id")
@click.argument("staging_path", type=click.Path(path_type=Path))
@click.argument("target_path", type=click.Path(path_type=Path))
@click.option("--readonly", is_flag=True, help="Publish read-only")
@click.option("--option", "-o", "options", multiple=True, help="Mount option (repeatable)")
@click.option("--fs-type", default="", help="Filesystem type for block volumes")
@click.pass_context
def publish_command(
    ctx: click.Context,
    volume_id: str,
    staging_path: Path,
    target_path: Path,
    readonly: bool,
    options: tuple[str, ...],
    fs_type: str,
) -> None:
    """Expose a staged volume at TARGET_PATH."""
    driver = AzureFileDriver(_load_config(ctx))
    request = NodePublishRequest(
        volume_id=volume_id,
        staging_path=str(staging_path),
        target_path=str(target_path),
        readonly=readonly,
        mount_options=list(options),
        fs_type=fs_type,
    )
    try:
        changed = driver.node_publish_volume(request)
    except VolumeError as e:
        _fail(e)
        return
    click.echo(f"Published {volume_id} at {target_path}" if changed else "Already published")


@main.command(name="unpublish")
@click.argument("volume_id")
@click.argument("target_path", type=click.Path(path_type=Path))
@click.pass_context
def unpublish_command(ctx: click.Context, volume_id: str, target_path: Path) -> None:
    """Unmount TARGET_PATH."""
    driver = AzureFileDriver(_load_config(ctx))
    try:
        driver.node_unpublish_volume(
            NodeUnpublishRequest(volume_id=volume_id, target_path=str(target_path))
        )
    except VolumeError as e:
        _fail(e)
        return
    click.echo(f"Unpublished {target_path}")


@main.command(name="unstage")
@click.argument("volume_id")
@click.argument("staging_path", type=click.Path(path_type=Path))
@click.pass_context
def unstage_command(ctx: click.Context, volume_id: str, staging_path: Path) -> None:
    """Tear down STAGING_PATH (detaching the VHD first for block volumes)."""
    driver = AzureFileDriver(_load_config(ctx))
    try:
        driver.node_unstage_volume(
            NodeUnstageRequest(volume_id=volume_id, staging_path=str(staging_path))
        )
    except VolumeError as e:
        _fail(e)
        return
    click.echo(f"Unstaged {volume_id}")


if __name__ == "__main__":
    main()

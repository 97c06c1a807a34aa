"""Command-line interface for patchfeed.

Publisher commands build an update feed from a directory; client commands
check a feed and download an update into a staging directory.

Example:
    >>> # From terminal:
    >>> # patchfeed --version
    >>> # patchfeed keys generate --out signing.pem
    >>> # patchfeed keys blob --out blob.json
    >>> # patchfeed publish build/ --product Billing --version 2.1.0 --changes "Fixed printing." \\
    >>> #     --key signing.pem --config client.json --out feed/ --previous feed/Billing.xml
    >>> # patchfeed check Billing --config client.json --current-version 2.0.0
    >>> # patchfeed download Billing /opt/billing --config client.json
    >>> # patchfeed archive pack build/ build.pak
    >>> # patchfeed archive unpack build.pak restored/
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Optional

import typer

from patchfeed import __version__
from patchfeed.archive import extract_archive, write_archive
from patchfeed.config import UpdateConfig, load_config
from patchfeed.crypto.keys import (
    encode_blob_material,
    generate_blob_material,
    generate_signing_keypair,
    load_private_key_from_file_sync,
    serialize_private_key,
    serialize_public_key,
)
from patchfeed.errors import PatchfeedError
from patchfeed.fetcher import ManifestFetcher
from patchfeed.models.enums import SyncStatus
from patchfeed.models.versions import VersionEntry
from patchfeed.observability import configure_logging
from patchfeed.progress import ProgressCounter
from patchfeed.publish import publish_legacy_blob, publish_tree, read_version_history

app = typer.Typer(help="patchfeed signed update distribution CLI.")

keys_app = typer.Typer(help="Signing key and payload key generation.")
app.add_typer(keys_app, name="keys")

archive_app = typer.Typer(help="Whole-tree archive operations (pack, unpack).")
app.add_typer(archive_app, name="archive")

# Restrict private key file to owner read/write only (security)
PRIVATE_KEY_FILE_MODE = 0o600

CONFIG_OPTION = typer.Option(..., "--config", "-c", help="Client configuration JSON file.")


def _version_callback(value: bool) -> None:
    """Print the version and exit when requested."""
    if value:
        typer.echo(__version__)
        raise typer.Exit()


VERSION_OPTION = typer.Option(
    False,
    "--version",
    help="Show patchfeed version and exit.",
    callback=_version_callback,
    is_eager=True,
)


@app.callback()
def cli(
    version: bool = VERSION_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """patchfeed CLI entrypoint."""
    if verbose:
        configure_logging(log_level="DEBUG", force=True)


def _fail(exc: PatchfeedError) -> typer.Exit:
    typer.echo(f"Error: {exc.message}", err=True)
    return typer.Exit(1)


def _load_config(path: Path) -> UpdateConfig:
    if not path.exists():
        raise typer.BadParameter(f"Config file not found: {path}")
    try:
        return load_config(path)
    except PatchfeedError as exc:
        raise typer.BadParameter(exc.message) from exc


def _make_fetcher(config: UpdateConfig) -> ManifestFetcher:
    return ManifestFetcher.from_config(config)


def _write_private_key_file(out: Path, pem: bytes) -> None:
    out.write_bytes(pem)
    try:
        out.chmod(PRIVATE_KEY_FILE_MODE)
    except OSError as exc:
        typer.echo(
            f"Warning: could not set file permissions to 0600: {exc}. "
            "Ensure the key file is not readable by others.",
            err=True,
        )


@keys_app.command("generate")
def keys_generate(
    out: Annotated[
        Path,
        typer.Option(..., "--out", "-o", help="Output path for the private key PEM file."),
    ],
) -> None:
    """Write a new RSA signing key pair (private PEM mode 0600, public PEM beside it)."""
    if out.exists() and out.is_dir():
        raise typer.BadParameter(f"Output path is a directory: {out}")
    out.parent.mkdir(parents=True, exist_ok=True)
    private_key, public_key = generate_signing_keypair()
    _write_private_key_file(out, serialize_private_key(private_key))
    public_out = out.with_name(f"{out.stem}.pub.pem")
    public_out.write_bytes(serialize_public_key(public_key))
    typer.echo(f"Private key written to {out}")
    typer.echo(f"Public key written to {public_out}")


@keys_app.command("blob")
def keys_blob(
    out: Annotated[
        Optional[Path],
        typer.Option("--out", "-o", help="Output path for the key JSON (default: stdout)."),
    ] = None,
) -> None:
    """Generate a pre-shared AES key and IV for update payloads (base64 JSON)."""
    key, iv = generate_blob_material()
    output = json.dumps(
        {"blob_key": encode_blob_material(key), "blob_iv": encode_blob_material(iv)},
        indent=2,
    )
    if out is None:
        typer.echo(output)
        return
    out.parent.mkdir(parents=True, exist_ok=True)
    _write_private_key_file(out, output.encode("utf-8"))
    typer.echo(f"Payload key written to {out}")


@app.command("publish")
def publish(
    source: Annotated[Path, typer.Argument(help="Build directory to publish.")],
    product: Annotated[str, typer.Option(..., "--product", "-p", help="Product name.")],
    version: Annotated[str, typer.Option(..., "--version", help="Version being published.")],
    key: Annotated[Path, typer.Option(..., "--key", "-k", help="RSA private key PEM.")],
    config: Annotated[Path, CONFIG_OPTION],
    out: Annotated[Path, typer.Option(..., "--out", "-o", help="Output feed directory.")],
    changes: Annotated[str, typer.Option("--changes", help="Changelog for this version.")] = "",
    previous: Annotated[
        Optional[Path],
        typer.Option("--previous", help="Previously published manifest to carry history from."),
    ] = None,
    legacy: Annotated[
        bool,
        typer.Option("--legacy", help="Publish one encrypted archive, not per-file payloads."),
    ] = False,
) -> None:
    """Publish SOURCE as a signed update feed under OUT."""
    if not source.is_dir():
        raise typer.BadParameter(f"Source directory not found: {source}")
    if not key.exists():
        raise typer.BadParameter(f"Key file not found: {key}")
    if previous is not None and not previous.exists():
        raise typer.BadParameter(f"Previous manifest not found: {previous}")
    update_config = _load_config(config)
    try:
        trust = update_config.trust_context()
        signing_key = load_private_key_from_file_sync(key)
        if legacy:
            manifest_file = publish_legacy_blob(
                source, out, product, version, changes, signing_key, trust
            )
        else:
            history = read_version_history(previous) if previous is not None else []
            entry = VersionEntry(
                version=version,
                publish_date=datetime.now(timezone.utc),
                changes=changes,
            )
            history = [h for h in history if h.version != entry.version]
            manifest_file = publish_tree(
                source, out, product, [entry, *history], [signing_key], trust
            )
    except PatchfeedError as exc:
        raise _fail(exc) from exc
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    typer.echo(f"Manifest written to {manifest_file}")


@app.command("check")
def check(
    product: Annotated[str, typer.Argument(help="Product name.")],
    config: Annotated[Path, CONFIG_OPTION],
    current_version: Annotated[
        Optional[str],
        typer.Option("--current-version", help="Installed version; older updates are ignored."),
    ] = None,
) -> None:
    """Report whether an update to PRODUCT is available."""
    update_config = _load_config(config)
    try:
        with _make_fetcher(update_config) as fetcher:
            update = fetcher.find_update(product, current_version)
    except PatchfeedError as exc:
        raise _fail(exc) from exc
    if update is None:
        typer.echo("No update available.")
        return
    typer.echo(
        f"Update available: {update.product_name} {update.new_version} "
        f"(published {update.publish_date.date().isoformat()}, {update.strategy.value})"
    )
    changes = update.get_changes(current_version or "0")
    if changes:
        typer.echo(changes)


@app.command("download")
def download(
    product: Annotated[str, typer.Argument(help="Product name.")],
    install_dir: Annotated[Path, typer.Argument(help="Current install directory.")],
    config: Annotated[Path, CONFIG_OPTION],
    current_version: Annotated[
        Optional[str],
        typer.Option("--current-version", help="Installed version; older updates are ignored."),
    ] = None,
) -> None:
    """Download changed files of PRODUCT into a staging directory and print its path."""
    if not install_dir.is_dir():
        raise typer.BadParameter(f"Install directory not found: {install_dir}")
    update_config = _load_config(config)
    counter = ProgressCounter()
    try:
        with _make_fetcher(update_config) as fetcher:
            update = fetcher.find_update(product, current_version)
            if update is None:
                typer.echo("No update available.")
                return
            result = update.sync(install_dir, counter)
    except PatchfeedError as exc:
        raise _fail(exc) from exc

    if result.status is SyncStatus.SUCCEEDED:
        typer.echo(str(result.staging_dir))
    elif result.status is SyncStatus.CANCELLED:
        typer.echo("Download cancelled.", err=True)
        raise typer.Exit(1)
    else:
        assert result.error is not None
        typer.echo(f"Error: {result.error.message}: {result.error.cause}", err=True)
        raise typer.Exit(1)


@archive_app.command("pack")
def archive_pack(
    source: Annotated[Path, typer.Argument(help="Directory to pack.")],
    out: Annotated[Path, typer.Argument(help="Archive file to write.")],
) -> None:
    """Pack every file under SOURCE into one archive."""
    if not source.is_dir():
        raise typer.BadParameter(f"Source directory not found: {source}")
    out.parent.mkdir(parents=True, exist_ok=True)
    with open(out, "wb") as target:
        write_archive(target, source)
    typer.echo(f"Archive written to {out}")


@archive_app.command("unpack")
def archive_unpack(
    archive: Annotated[Path, typer.Argument(help="Archive file to read.")],
    dest: Annotated[Path, typer.Argument(help="Empty or missing destination directory.")],
) -> None:
    """Unpack ARCHIVE into DEST."""
    if not archive.is_file():
        raise typer.BadParameter(f"Archive not found: {archive}")
    try:
        with open(archive, "rb") as source:
            extract_archive(source, dest)
    except PatchfeedError as exc:
        raise _fail(exc) from exc
    typer.echo(f"Extracted to {dest}")


def main() -> None:
    """Run the patchfeed CLI."""
    app()


if __name__ == "__main__":
    main()

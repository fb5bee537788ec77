"""Command line interface: ``reg``."""

import asyncio
import json
import logging
import re
import ssl
from dataclasses import dataclass
from typing import Optional

import aiofiles
import click

from . import __version__
from .core.registry_client import RegistryClient
from .core.types import RegistryConfig
from .exceptions import RegistryError
from .models import (
    MEDIA_TYPE_MANIFEST_LIST,
    MEDIA_TYPE_MANIFEST_V2,
    MEDIA_TYPE_OCI_INDEX,
    MEDIA_TYPE_OCI_MANIFEST,
    ImageReference,
)
from .scanners import select_scanner
from .server import RegistryController, serve
from .utils.auth import get_auth_config
from .utils.reference import parse_image
from .vulns import DEFAULT_BAD_THRESHOLD, check_thresholds, format_report

logger = logging.getLogger(__name__)

DURATION_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}

COMMAND_ALIASES = {"ls": "list", "rm": "delete", "download": "layer"}


class Duration(click.ParamType):
    """Durations such as ``30s``, ``1m`` or ``1h30m``; bare numbers are seconds."""

    name = "duration"

    def convert(self, value, param, ctx) -> float:
        if isinstance(value, (int, float)):
            return float(value)
        text = str(value).strip()
        try:
            return float(text)
        except ValueError:
            pass

        parts = DURATION_PATTERN.findall(text)
        if not parts or "".join(n + u for n, u in parts) != text:
            self.fail(f"{value!r} is not a valid duration", param, ctx)
        return sum(float(n) * DURATION_UNITS[u] for n, u in parts)


class AliasedGroup(click.Group):
    """Group that also resolves the short command aliases."""

    def get_command(self, ctx, cmd_name):
        return super().get_command(ctx, COMMAND_ALIASES.get(cmd_name, cmd_name))

    def resolve_command(self, ctx, args):
        _, cmd, args = super().resolve_command(ctx, args)
        return cmd.name if cmd else None, cmd, args


@dataclass
class Options:
    """Global options shared by every command."""

    username: str = ""
    password: str = ""
    auth_url: str = ""
    insecure: bool = False
    force_non_ssl: bool = False
    skip_ping: bool = False
    timeout: float = 60
    debug: bool = False


def registry_config(opts: Options, domain: str) -> RegistryConfig:
    """Build the client configuration for a registry domain.

    Credentials fall back to the docker config file. Plain http registries are
    refused unless ``--force-non-ssl`` is given.
    """
    auth = get_auth_config(opts.username, opts.password, domain)
    url = auth.server_address or domain
    if url.startswith("http://") and not opts.force_non_ssl:
        raise click.UsageError(
            "attempted to use insecure protocol! Use force-non-ssl option to force"
        )
    return RegistryConfig(
        url=url,
        username=auth.username,
        password=auth.password,
        auth_url=opts.auth_url,
        timeout=opts.timeout,
        insecure=opts.insecure,
        non_ssl=opts.force_non_ssl,
        skip_ping=opts.skip_ping,
    )


def run(coro):
    """Run a command coroutine, reporting registry errors as CLI errors."""
    try:
        return asyncio.run(coro)
    except RegistryError as e:
        raise click.ClickException(str(e)) from e


def parse_image_arg(name: str) -> ImageReference:
    try:
        return parse_image(name)
    except RegistryError as e:
        raise click.BadParameter(str(e), param_hint="IMAGE") from e


@click.group(cls=AliasedGroup, epilog="Run 'reg COMMAND --help' for more information.")
@click.option("-u", "--username", envvar="REG_USERNAME", default="", help="Username for the registry.")
@click.option("-p", "--password", envvar="REG_PASSWORD", default="", help="Password for the registry.")
@click.option("--auth-url", default="", help="Alternate URL for registry authentication (ex. auth.docker.io).")
@click.option("-k", "--insecure", is_flag=True, help="Do not verify tls certificates.")
@click.option("-f", "--force-non-ssl", is_flag=True, help="Force allow use of non-ssl.")
@click.option("--skip-ping", is_flag=True, help="Skip pinging the registry while establishing connection.")
@click.option("--timeout", type=Duration(), default="1m", show_default=True, help="Timeout for HTTP requests.")
@click.option("-d", "--debug", is_flag=True, help="Enable debug logging.")
@click.version_option(__version__, prog_name="reg")
@click.pass_context
def cli(ctx, username, password, auth_url, insecure, force_non_ssl, skip_ping, timeout, debug):
    """Docker registry v2 command line client and repo listing generator with
    security checks."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.obj = Options(
        username=username,
        password=password,
        auth_url=auth_url,
        insecure=insecure,
        force_non_ssl=force_non_ssl,
        skip_ping=skip_ping,
        timeout=timeout,
        debug=debug,
    )


@cli.command("list", short_help="List all repositories (alias: ls).")
@click.argument("domain")
@click.pass_obj
def list_command(opts: Options, domain: str):
    """List all repositories and their tags."""

    async def _list():
        async with RegistryClient(registry_config(opts, domain)) as client:
            repos = await client.catalog()
            tags = await asyncio.gather(*(client.tags(r) for r in repos), return_exceptions=True)

        click.echo("REPO\tTAGS")
        for repo, repo_tags in zip(repos, tags):
            if isinstance(repo_tags, RegistryError):
                logger.warning("getting tags for %s failed: %s", repo, repo_tags)
                continue
            if isinstance(repo_tags, BaseException):
                raise repo_tags
            click.echo(f"{repo}\t{', '.join(repo_tags)}")

    run(_list())


@cli.command(short_help="Get the tags for a repository.")
@click.argument("image")
@click.pass_obj
def tags(opts: Options, image: str):
    """Get the tags for a repository."""
    ref = parse_image_arg(image)

    async def _tags():
        async with RegistryClient(registry_config(opts, ref.domain)) as client:
            for tag in await client.tags(ref.path):
                click.echo(tag)

    run(_tags())


@cli.command(short_help="Get the json manifest for a repository.")
@click.option("--v1", "schema_v1", is_flag=True, help="Force the version of the manifest retrieved to v1.")
@click.option("--index", is_flag=True, help="Get the manifest list or image index.")
@click.option("--oci", is_flag=True, help="Use OCI media types.")
@click.argument("image")
@click.pass_obj
def manifest(opts: Options, schema_v1: bool, index: bool, oci: bool, image: str):
    """Get the json manifest for a repository."""
    ref = parse_image_arg(image)

    async def _manifest():
        async with RegistryClient(registry_config(opts, ref.domain)) as client:
            if schema_v1:
                m = await client.manifest_v1(ref.path, ref.reference())
            elif index:
                m = await client.manifest(
                    ref.path,
                    ref.reference(),
                    [MEDIA_TYPE_OCI_INDEX if oci else MEDIA_TYPE_MANIFEST_LIST],
                )
            else:
                m = await client.manifest(
                    ref.path,
                    ref.reference(),
                    [MEDIA_TYPE_OCI_MANIFEST if oci else MEDIA_TYPE_MANIFEST_V2],
                )
        click.echo(json.dumps(m.data, indent=2))

    run(_manifest())


@cli.command(short_help="Get the digest for a repository.")
@click.option("--index", is_flag=True, help="Get the digest of the manifest list or image index.")
@click.option("--oci", is_flag=True, help="Use OCI media types.")
@click.argument("image")
@click.pass_obj
def digest(opts: Options, index: bool, oci: bool, image: str):
    """Get the digest for a repository."""
    ref = parse_image_arg(image)
    if index:
        media_type = MEDIA_TYPE_OCI_INDEX if oci else MEDIA_TYPE_MANIFEST_LIST
    else:
        media_type = MEDIA_TYPE_OCI_MANIFEST if oci else MEDIA_TYPE_MANIFEST_V2

    async def _digest():
        async with RegistryClient(registry_config(opts, ref.domain)) as client:
            click.echo(await client.digest(ref, [media_type]))

    run(_digest())


@cli.command(short_help="Delete a specific reference of a repository (alias: rm).")
@click.argument("image")
@click.pass_obj
def delete(opts: Options, image: str):
    """Delete a specific reference of a repository.

    Tags are resolved to their digest first, registries only delete by digest.
    """
    ref = parse_image_arg(image)

    async def _delete():
        async with RegistryClient(registry_config(opts, ref.domain)) as client:
            digest = await client.digest(ref)
            await client.delete(ref.path, digest)
        click.echo(f"Deleted {ref.domain}/{ref.path}@{digest}")

    run(_delete())


@cli.command(short_help="Download a layer for a repository (alias: download).")
@click.option("-o", "--output", type=click.Path(dir_okay=False), help="Output file, default to stdout.")
@click.argument("image")
@click.pass_obj
def layer(opts: Options, output: Optional[str], image: str):
    """Download a layer for a repository, IMAGE must reference a digest
    (``repo@sha256:...``)."""
    ref = parse_image_arg(image)
    if not ref.digest:
        raise click.BadParameter("pass a digest, e.g. repo@sha256:...", param_hint="IMAGE")

    async def _layer():
        async with RegistryClient(registry_config(opts, ref.domain)) as client:
            content = await client.download_layer(ref.path, ref.digest)
        if output:
            async with aiofiles.open(output, "wb") as f:
                await f.write(content)
        else:
            stdout = click.get_binary_stream("stdout")
            stdout.write(content)
            stdout.flush()

    run(_layer())


@cli.command(short_help="Get a vulnerability report for an image.")
@click.option("--clair", "clair_url", default="", help="URL to clair instance.")
@click.option("--trivy", "trivy_location", default="", help="Path to the trivy binary, preferred over clair.")
@click.option(
    "--fixable-threshold",
    type=click.IntRange(min=0),
    default=None,
    help="Number of fixable issues permitted.",
)
@click.option(
    "--bad-threshold",
    type=click.IntRange(min=0),
    default=DEFAULT_BAD_THRESHOLD,
    show_default=True,
    help="Number of High, Critical and Defcon1 issues permitted.",
)
@click.argument("image")
@click.pass_obj
def vulns(
    opts: Options,
    clair_url: str,
    trivy_location: str,
    fixable_threshold: Optional[int],
    bad_threshold: int,
    image: str,
):
    """Get a vulnerability report for the image from Clair or Trivy.

    Exits non-zero when the report has more bad or fixable vulnerabilities
    than permitted.
    """
    if not clair_url and not trivy_location:
        raise click.UsageError("clair url cannot be empty, pass --clair (or --trivy)")
    ref = parse_image_arg(image)

    async def _vulns():
        scanner = select_scanner(
            trivy_location, clair_url, timeout=opts.timeout, insecure=opts.insecure
        )
        async with scanner, RegistryClient(registry_config(opts, ref.domain)) as client:
            report = await scanner.scan_image(client, ref.path, ref.reference())

        click.echo(format_report(report), nl=False)
        check_thresholds(report, bad_threshold, fixable_threshold)

    run(_vulns())


@cli.command(short_help="Run the vulnerability reporting server.")
@click.option("-r", "--registry", "domain", required=True, help="URL to the private registry (ex. r.j3ss.co).")
@click.option("--clair", "clair_url", default="", help="URL to clair instance.")
@click.option("--trivy", "trivy_location", default="", help="Path to the trivy binary, preferred over clair.")
@click.option("--interval", type=Duration(), default="1h", show_default=True, help="Interval to regenerate the index.")
@click.option("--workers", type=click.IntRange(min=1), default=20, show_default=True, help="Maximum number of repositories processed at once.")
@click.option("--port", type=int, default=8080, show_default=True, help="Port for server to run on.")
@click.option("--listen-address", default="0.0.0.0", show_default=True, help="Address to listen on.")
@click.option("--cert", type=click.Path(exists=True, dir_okay=False), help="Path to ssl cert.")
@click.option("--key", type=click.Path(exists=True, dir_okay=False), help="Path to ssl key.")
@click.pass_obj
def server(
    opts: Options,
    domain: str,
    clair_url: str,
    trivy_location: str,
    interval: float,
    workers: int,
    port: int,
    listen_address: str,
    cert: Optional[str],
    key: Optional[str],
):
    """Serve vulnerability reports for every image of a registry."""
    ssl_context = None
    if cert and key:
        ssl_context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        ssl_context.load_cert_chain(cert, key)

    async def _server():
        scanner = select_scanner(
            trivy_location, clair_url, timeout=opts.timeout, insecure=opts.insecure
        )
        async with RegistryClient(registry_config(opts, domain)) as client:
            controller = RegistryController(client, scanner, interval=interval, workers=workers)
            try:
                await serve(controller, listen_address, port, ssl_context)
            finally:
                if scanner is not None:
                    await scanner.close()

    try:
        run(_server())
    except KeyboardInterrupt:
        logger.info("server stopped")


def main():
    cli()


if __name__ == "__main__":
    main()

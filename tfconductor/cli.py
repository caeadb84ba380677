import click


@click.group()
def main() -> None:
    """tfconductor - Terraform workspace controller utilities."""


@main.command()
@click.argument("blob")
def decode(blob: str) -> None:
    """Decode a gzipped, base64 encoded plan or error blob."""
    from tfconductor.controller.terraform.errors import decode_blob

    try:
        click.echo(decode_blob(blob), nl=False)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False, resolve_path=True))
def checksum(directory: str) -> None:
    """Print the checksum of a workspace working directory."""
    from pathlib import Path

    from tfconductor.controller.terraform.checksum import compute_checksum

    click.echo(compute_checksum(Path(directory)))


@main.command("shard-owner")
@click.argument("uid")
@click.option("--replicas", "-r", type=click.IntRange(min=1), required=True, help="Number of controller replicas.")
def shard_owner(uid: str, replicas: int) -> None:
    """Print the index of the replica owning UID."""
    from tfconductor.controller.sharding.partitioner import hash_and_modulo

    click.echo(hash_and_modulo(uid, replicas))


@main.command()
@click.argument("root", type=click.Path(file_okay=False))
@click.option("--keep", "-k", multiple=True, help="UID of a workspace that still exists (repeatable).")
def gc(root: str, keep: tuple[str, ...]) -> None:
    """Remove workspace directories under ROOT whose UID is not kept."""
    import asyncio

    from tfconductor.controller.log import setup_logging
    from tfconductor.controller.settings import get_settings
    from tfconductor.controller.terraform.errors import GCError
    from tfconductor.controller.workdir.gc import GarbageCollector

    setup_logging(get_settings().log_level)

    class _Kept:
        async def list_workspace_uids(self) -> set[str]:
            return set(keep)

    try:
        removed = asyncio.run(GarbageCollector(_Kept(), root).collect())
    except GCError as exc:
        raise click.ClickException(str(exc)) from exc
    for path in removed:
        click.echo(f"removed {path}")


if __name__ == "__main__":
    main()

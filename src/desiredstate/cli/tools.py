"""Offline tools: verify a signature, unpack an archive."""

from __future__ import annotations

import sys
from pathlib import Path

import click

from ..errors import ArchiveError, KeyParseError, SignatureInvalidError
from ._common import console


def register_tool_commands(main: click.Group) -> None:
    """Register the offline helper commands."""

    @main.command("verify")
    @click.argument("key", type=click.Path(exists=True, dir_okay=False))
    @click.argument("signed", type=click.Path(exists=True, dir_okay=False))
    @click.argument("signature", required=False, type=click.Path(dir_okay=False))
    def verify(key, signed, signature):
        """Verify SIGNED against its detached SIGNATURE using KEY.

        SIGNATURE defaults to SIGNED with a .sig suffix appended.
        """
        from ..signature import verify_detached_signature

        sig_path = Path(signature) if signature else Path(signed + ".sig")
        try:
            fingerprint = verify_detached_signature(
                Path(key).read_text(encoding="utf-8"), Path(signed), sig_path,
            )
        except KeyParseError as exc:
            console.print(f"[bold red]Bad key ring:[/] {exc}")
            sys.exit(2)
        except SignatureInvalidError as exc:
            console.print(f"[bold red]Signature INVALID:[/] {exc}")
            sys.exit(1)
        except OSError as exc:
            console.print(f"[bold red]Cannot read file:[/] {exc}")
            sys.exit(2)
        console.print(f"[bold green]Signature OK[/], key {fingerprint}")

    @main.command("unpack")
    @click.argument("archive", type=click.Path(exists=True, dir_okay=False))
    @click.argument("dest", type=click.Path(file_okay=False))
    @click.option("--include-hidden", is_flag=True, help="Also extract entries starting with '.'.")
    def unpack(archive, dest, include_hidden):
        """Extract a .tar.gz ARCHIVE into DEST the way the agent does."""
        from ..archive import unpack_tgz

        try:
            with open(archive, "rb") as fh:
                written = unpack_tgz(fh, Path(dest), skip_hidden=not include_hidden)
        except ArchiveError as exc:
            console.print(f"[bold red]Corrupt archive:[/] {exc}")
            sys.exit(1)
        console.print(f"[green]Extracted {len(written)} entries[/] into {dest}")

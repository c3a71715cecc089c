"""CLI entrypoint for relay-chat."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
from pathlib import Path
import sys
from typing import Any, TextIO

from .attachments import AttachmentIngestor, SupabaseStorageUploader, scan_directory
from .config import load_config
from .events import TURN_UPDATED, TURN_WARNING, TurnEvent
from .exceptions import AuthError, RelayChatError, ValidationError
from .logging_utils import configure_logging
from .models import Attachment, RawFile
from .session import ChatSession

EXIT_OK = 0
EXIT_TURN_FAILED = 1
EXIT_USAGE = 2
EXIT_NEEDS_CONFIRMATION = 3
EXIT_INTERRUPTED = 130


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relay-chat",
        description="relay-chat - stream a chat completion through the relay",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    parser.add_argument("--config", type=Path, help="Path to an alternate config.toml")
    parser.add_argument(
        "--conversation",
        default="default",
        help="Conversation id to append the turn to (default: %(default)s)",
    )
    parser.add_argument(
        "--attach",
        action="append",
        default=[],
        metavar="PATH",
        help="Attach a file, or every file in a folder (repeatable)",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm a batch that exceeds the attachment count limit",
    )
    parser.add_argument("message", nargs="?", help="Message text (read from stdin if omitted)")
    return parser


def collect_files(paths: Sequence[str]) -> list[RawFile]:
    """Expand ``--attach`` arguments into candidate files."""
    files: list[RawFile] = []
    for raw_path in paths:
        path = Path(raw_path).expanduser()
        if path.is_dir():
            files.extend(scan_directory(path))
        elif path.is_file():
            files.append(RawFile.from_path(path))
        else:
            raise ValidationError(f"No such file or folder: {raw_path}")
    return files


class _StdoutRenderer:
    """Write only the newly arrived suffix of each update."""

    def __init__(self, out: TextIO, err: TextIO) -> None:
        self.out = out
        self.err = err
        self._written = 0

    def on_update(self, event: TurnEvent) -> None:
        if event.state is None:
            return
        content = event.state.accumulated_content
        self.out.write(content[self._written:])
        self.out.flush()
        self._written = len(content)

    def on_warning(self, event: TurnEvent) -> None:
        self.err.write(f"warning: {event.error}\n")


async def _run(args: argparse.Namespace, config: dict[str, Any], text: str) -> int:
    session = ChatSession.from_config(config)
    ingestor: AttachmentIngestor | None = None
    try:
        accepted: list[Attachment] = []
        if args.attach:
            token = session.credentials.access_token if session.credentials else ""
            ingestor = AttachmentIngestor.from_config(config, token)
            result = await ingestor.ingest(collect_files(args.attach), confirmed=args.yes)
            for rejected in result.rejected:
                sys.stderr.write(f"skipped: {rejected.as_error()}\n")
            if result.needs_confirmation:
                sys.stderr.write(
                    f"{len(result.pending)} files exceed the batch limit of "
                    f"{ingestor.limits.max_attachments_per_batch}; re-run with --yes.\n"
                )
                return EXIT_NEEDS_CONFIRMATION
            accepted = result.attachments

        renderer = _StdoutRenderer(sys.stdout, sys.stderr)
        session.bus.subscribe(TURN_UPDATED, renderer.on_update)
        session.bus.subscribe(TURN_WARNING, renderer.on_warning)

        outcome = await session.send(args.conversation, text, accepted)
        if not outcome.sent:
            sys.stderr.write("Nothing to send.\n")
            return EXIT_USAGE
        sys.stdout.write("\n")
        if not outcome.ok:
            sys.stderr.write(f"error: {outcome.error}\n")
            return EXIT_TURN_FAILED
        return EXIT_OK
    finally:
        if ingestor is not None and isinstance(ingestor.uploader, SupabaseStorageUploader):
            await ingestor.uploader.aclose()
        await session.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    """Load configuration, handle CLI flags, and run one chat turn."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("relay-chat")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"relay-chat {version}")
        return EXIT_OK

    config = load_config(args.config)
    configure_logging(config["logging"])

    text = args.message
    if text is None:
        text = "" if sys.stdin.isatty() else sys.stdin.read()

    try:
        return asyncio.run(_run(args, config, text))
    except AuthError as exc:
        sys.stderr.write(f"error: {exc} Set ${config['auth']['token_env']} or auth.token.\n")
        return EXIT_USAGE
    except RelayChatError as exc:
        sys.stderr.write(f"error: {exc}\n")
        return EXIT_USAGE
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main())

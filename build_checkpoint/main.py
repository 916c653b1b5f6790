import argparse
import asyncio
import sys
import tempfile
from pathlib import Path

from build_checkpoint.blobstore import open_blob_store
from build_checkpoint.blobstore.server import DEFAULT_PORT, BlobServer
from build_checkpoint.config import settings
from build_checkpoint.exceptions import CheckpointError
from build_checkpoint.logging import get_logger, setup_logging
from build_checkpoint.manifest import load_manifest
from build_checkpoint.orchestrator import CheckpointOrchestrator


def _build_parser():
    parser = argparse.ArgumentParser(
        prog="build-checkpoint",
        description="Checkpoint and restore large build trees through a blob store",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log per-chunk transfer progress")
    parser.add_argument("--settings", type=Path, help="Settings file (JSON)")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument(
        "--no-log-files", action="store_true", help="Only log to the console"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Archive paths into a new checkpoint")
    create.add_argument("--working-dir", type=Path, required=True)
    create.add_argument("--base-name")
    create.add_argument("--volume-size", help="Maximum volume size, e.g. 5G")
    create.add_argument("paths", nargs="+", help="Paths relative to the working directory")

    restore = commands.add_parser("restore", help="Restore the checkpoint into a directory")
    restore.add_argument("--working-dir", type=Path, required=True)
    restore.add_argument("--base-name")

    cleanup = commands.add_parser("cleanup", help="Delete the current checkpoint")
    cleanup.add_argument("--base-name")

    manifest = commands.add_parser("manifest", help="Print the current manifest")
    manifest.add_argument("--base-name")

    serve = commands.add_parser("serve", help="Run a blob server over a directory")
    serve.add_argument("--root", type=Path, required=True)
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=DEFAULT_PORT)
    serve.add_argument("--token", help="Bearer token clients must send")
    return parser


def _config_from_args(args, values):
    return settings.CheckpointConfig.from_settings(
        values,
        base_name=getattr(args, "base_name", None),
        volume_size=getattr(args, "volume_size", None),
    )


def _run(args, log) -> int:
    if args.command == "serve":
        server = BlobServer(args.root, host=args.host, port=args.port, token=args.token)
        try:
            asyncio.run(server.serve_forever())
        except KeyboardInterrupt:
            log.info("Blob server interrupted")
        return 0

    values = settings.load_settings(args.settings)
    config = _config_from_args(args, values)

    if args.command == "manifest":
        store = open_blob_store(config)
        with tempfile.TemporaryDirectory(prefix="build-checkpoint-") as scratch:
            manifest = load_manifest(config.base_name, store, Path(scratch))
        print(manifest.to_json())
        return 0

    orchestrator = CheckpointOrchestrator.from_config(config)
    if args.command == "create":
        name = orchestrator.create_checkpoint(args.paths, args.working_dir)
        print(name)
    elif args.command == "restore":
        orchestrator.restore_checkpoint(args.working_dir)
    elif args.command == "cleanup":
        deleted = orchestrator.cleanup_previous()
        log.info(f"Cleanup issued {deleted} delete(s)")
    return 0


def main(argv=None):
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging(
        debug=args.debug,
        trace=args.trace,
        log_dir=args.log_dir,
        file_logging=not args.no_log_files,
    )
    log = get_logger(source="main")

    try:
        return _run(args, log)
    except CheckpointError as e:
        log.error(f"{args.command} failed: {e}")
        return 1
    except ValueError as e:
        log.error(f"Invalid configuration: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())

import argparse
import json
import logging
import os
import posixpath
import sys
from typing import Optional, Tuple

import uvicorn

from .client import InstanceClient
from .config import CopyConfig
from .cp.progress import ConsoleProgress
from .cp.receiver import CopyFromOptions, copy_from_instance
from .cp.sender import CopyToOptions, copy_to_instance
from .devserver import create_app
from .errors import CopyError

logger = logging.getLogger(__name__)


def parse_target(arg: str) -> Tuple[Optional[str], str]:
    """Split INSTANCE:PATH into its parts.

    Anything without a colon, or whose prefix contains a path separator
    (./dir:name), is a local path and comes back with instance None.
    """
    prefix, sep, path = arg.partition(":")
    if not sep or not prefix or "/" in prefix or "\\" in prefix:
        return None, arg
    return prefix, path


def remote_destination(client: InstanceClient, instance_id: str, dst: str, src: str) -> str:
    """Copying into an existing guest directory keeps the source name, like cp."""
    name = os.path.basename(os.path.abspath(src))
    if dst.endswith("/"):
        return posixpath.join(dst, name)
    info = client.stat_path(instance_id, dst, follow_links=True)
    if info.exists and info.is_dir:
        return posixpath.join(dst, name)
    return dst


def copy_command(args) -> int:
    src_instance, src = parse_target(args.src)
    dst_instance, dst = parse_target(args.dst)
    if bool(src_instance) == bool(dst_instance):
        print("Error: exactly one of SRC and DST must be INSTANCE:PATH", file=sys.stderr)
        return 2

    config = CopyConfig.from_env(args.base_url, args.api_key)
    callbacks = None if args.quiet else ConsoleProgress().callbacks()

    if dst_instance:
        dst = remote_destination(InstanceClient(config), dst_instance, dst, src)
        copy_to_instance(config, CopyToOptions(
            instance_id=dst_instance,
            src_path=src,
            dst_path=dst,
            mode=args.mode,
            archive=args.archive,
            follow_links=args.follow_links,
            callbacks=callbacks,
            timeout=args.timeout,
        ))
        if not args.quiet:
            print(f"Copied {src} to {dst_instance}:{dst}")
    else:
        copy_from_instance(config, CopyFromOptions(
            instance_id=src_instance,
            src_path=src,
            dst_path=dst,
            follow_links=args.follow_links,
            archive=args.archive,
            callbacks=callbacks,
            timeout=args.timeout,
        ))
        if not args.quiet:
            print(f"Copied {src_instance}:{src} to {dst}")
    return 0


def stat_command(args) -> int:
    instance_id, path = parse_target(args.target)
    if not instance_id:
        print("Error: expected INSTANCE:PATH", file=sys.stderr)
        return 2

    config = CopyConfig.from_env(args.base_url, args.api_key)
    info = InstanceClient(config).stat_path(instance_id, path, args.follow_links or None)
    print(json.dumps(info.to_dict(), indent=2))
    return 0 if info.exists else 1


def serve_command(args) -> int:
    os.makedirs(args.root, exist_ok=True)
    print(f"Serving instances from {args.root} at http://{args.host}:{args.port}")
    uvicorn.run(create_app(args.root, args.api_key or ""), host=args.host, port=args.port)
    return 0


def octal(value: str) -> int:
    try:
        mode = int(value, 8)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid octal mode: {value}")
    if mode < 0 or mode > 0o7777:
        raise argparse.ArgumentTypeError(f"mode out of range: {value}")
    return mode


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Copy files to and from guest instances")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    def add_connection_args(p):
        p.add_argument("--base-url", type=str, help="Service base URL (default: $GUESTCOPY_BASE_URL)")
        p.add_argument("--api-key", type=str, help="API key (default: $GUESTCOPY_API_KEY)")

    cp_parser = subparsers.add_parser("cp", help="Copy between the local machine and an instance")
    cp_parser.add_argument("src", type=str, help="Source: local path or INSTANCE:PATH")
    cp_parser.add_argument("dst", type=str, help="Destination: local path or INSTANCE:PATH")
    cp_parser.add_argument("-a", "--archive", action="store_true", help="Preserve UID/GID and mtime")
    cp_parser.add_argument("-L", "--follow-links", action="store_true", help="Follow symbolic links")
    cp_parser.add_argument("--mode", type=octal, default=0, help="Permission bits for the top-level entry (octal)")
    cp_parser.add_argument("-q", "--quiet", action="store_true", help="Suppress progress output")
    cp_parser.add_argument("--timeout", type=float, help="Seconds to wait for connect and each frame")
    add_connection_args(cp_parser)

    stat_parser = subparsers.add_parser("stat", help="Show information about a guest path")
    stat_parser.add_argument("target", type=str, help="INSTANCE:PATH")
    stat_parser.add_argument("-L", "--follow-links", action="store_true", help="Follow symbolic links")
    add_connection_args(stat_parser)

    serve_parser = subparsers.add_parser("serve", help="Run the development guest endpoint")
    serve_parser.add_argument("root", type=str, help="Directory holding one subdirectory per instance")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to listen on")
    serve_parser.add_argument("--host", type=str, default="127.0.0.1", help="Host to listen on")
    serve_parser.add_argument("--api-key", type=str, help="Require this bearer token")

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {"cp": copy_command, "stat": stat_command, "serve": serve_command}
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return 2

    try:
        return command(args)
    except (CopyError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())

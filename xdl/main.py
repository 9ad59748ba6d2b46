import argparse
import asyncio
import json
import sys

import pyfiglet
from rich.align import Align
from rich.panel import Panel

from xdl.common.logger import console, set_debug_mode, setup_logger
from xdl.context import XDLContext
from xdl.core.errors import XDLError
from xdl.project import ProjectSession, StartOptions
from xdl.services.manifest_service import package_version
from xdl.services.project_settings import read_packager_info, set_settings

logger = setup_logger("CLI")


def print_banner(project_root: str, url: str) -> None:
    ascii_art = pyfiglet.figlet_format("xdl", font="slant")
    banner_text = (
        f"[bold #4630EB]{ascii_art}[/]\n"
        f"[bold white]Project:[/] {project_root}\n"
        f"[bold white]Manifest URL:[/] [underline]{url}[/]"
    )
    console.print(Panel(Align.center(banner_text), border_style="#4630EB", subtitle=f"xdl {package_version()}", padding=(1, 2)))


async def _serve(args) -> None:
    session = ProjectSession(args.project_root, XDLContext())
    if args.host:
        set_settings(session.project_root, host_type=args.host)

    try:
        await session.start(StartOptions(reset_cache=args.clear, max_workers=args.max_workers))
        print_banner(session.project_root, session.manifest_url())
        await asyncio.Event().wait()
    finally:
        await session.stop()


def cmd_start(args):
    try:
        asyncio.run(_serve(args))
    except KeyboardInterrupt:
        logger.info("[CLI] Stopped")
    except XDLError as e:
        logger.error(f"[CLI] {e.code}: {e}")
        sys.exit(1)


def cmd_stop(args):
    session = ProjectSession(args.project_root, XDLContext())
    asyncio.run(session.stop())
    logger.info("[CLI] Project stopped")


def cmd_status(args):
    session = ProjectSession(args.project_root, XDLContext())
    info = read_packager_info(session.project_root)
    console.print(f"Status: [bold]{session.current_status().value}[/]")
    console.print_json(json.dumps(info.to_json()))


def cmd_url(args):
    session = ProjectSession(args.project_root, XDLContext())
    opts = {"urlType": args.type} if args.type else None
    try:
        console.print(session.manifest_url(opts))
    except XDLError as e:
        logger.error(f"[CLI] {e}")
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(description="xdl development server")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Serve a project")
    start.add_argument("project_root", nargs="?", default=".")
    start.add_argument("--host", choices=["localhost", "lan", "tunnel"])
    start.add_argument("--clear", action="store_true", help="Reset the bundler cache")
    start.add_argument("--max-workers", type=int, dest="max_workers")
    start.set_defaults(func=cmd_start)

    stop = subparsers.add_parser("stop", help="Stop a project started earlier")
    stop.add_argument("project_root", nargs="?", default=".")
    stop.set_defaults(func=cmd_stop)

    status = subparsers.add_parser("status", help="Show the recorded ports and processes")
    status.add_argument("project_root", nargs="?", default=".")
    status.set_defaults(func=cmd_status)

    url = subparsers.add_parser("url", help="Print the manifest URL")
    url.add_argument("project_root", nargs="?", default=".")
    url.add_argument("--type", choices=["exp", "http", "redirect", "no-protocol"])
    url.set_defaults(func=cmd_url)

    args = parser.parse_args()
    if args.debug:
        set_debug_mode(True)
    args.func(args)


if __name__ == "__main__":
    main()

"""Command-line interface for consensusflow."""

import argparse
import asyncio
import datetime
import logging
import sys
from contextlib import aclosing
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import load_config
from .errors import PipelineError
from .models import UploadedFile
from .plan import build_plan, render_plan
from .progress import ProgressStreamer
from .runs import RunManager, RunStatus
from .samples import GENOME_EXTENSIONS, resolve_uploads
from .utils import get_tool_version
from .version import __version__
from .workspace import Workspace

logger = logging.getLogger("consensusflow")

LOG_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}

VERSIONED_TOOLS = ["bowtie2", "samtools", "bcftools", "bedtools", "fastp", "fastqc", "multiqc"]


def create_parser() -> argparse.ArgumentParser:
    """Create and return the argument parser for the consensusflow CLI."""
    general = argparse.ArgumentParser(add_help=False)
    general_group = general.add_argument_group("General Options")
    general_group.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARN", "ERROR"],
        default="INFO",
        help="Set the logging level",
    )
    general_group.add_argument(
        "--log-file", help="Path to a file to write logs to (in addition to stderr)."
    )
    general_group.add_argument(
        "-c",
        "--config",
        help="Path to configuration file",
        default=None,
    )

    parser = argparse.ArgumentParser(
        description="consensusflow: Align paired-end reads and build consensus genomes."
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"consensusflow {__version__}",
        help="Show the current version and exit",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("plan", "Resolve input files and print the generated pipeline script"),
        ("run", "Resolve input files and run the pipeline in the foreground"),
    ):
        sub = subparsers.add_parser(name, parents=[general], help=help_text)
        io_group = sub.add_argument_group("Core Input/Output")
        io_group.add_argument(
            "files",
            nargs="+",
            help="Reference genome (.fasta/.fa) and paired read files, pairs in order",
        )
        io_group.add_argument(
            "--base-dir",
            default=None,
            help="Directory for the plan, progress log and all generated artifacts "
            "(default: base_dir from the configuration)",
        )
        io_group.add_argument(
            "--low-coverage-threshold",
            type=int,
            default=None,
            help="Positions with depth below this value are masked (default: 5)",
        )
        if name == "plan":
            io_group.add_argument(
                "-o", "--output", help="Write the script to this file instead of stdout"
            )
        else:
            io_group.add_argument(
                "--no-tool-check",
                action="store_true",
                help="Do not verify that the external tools are on PATH before starting",
            )

    serve = subparsers.add_parser("serve", parents=[general], help="Start the HTTP service")
    serve.add_argument("--host", default=None, help="Bind address (default: from config)")
    serve.add_argument("--port", type=int, default=None, help="Port (default: from config)")
    serve.add_argument("--base-dir", default=None, help="Run directory (default: from config)")

    return parser


def parse_args(args_list: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Parameters
    ----------
    args_list : list of str, optional
        Arguments to parse (default: sys.argv)

    Returns
    -------
    argparse.Namespace
        Parsed arguments
    """
    parser = create_parser()
    return parser.parse_args(args_list)


def _configure_logging(args: argparse.Namespace) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    logging.getLogger("consensusflow").setLevel(LOG_LEVEL_MAP[args.log_level])

    if args.log_file:
        log_file_path = Path(args.log_file)
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        fh = logging.FileHandler(args.log_file)
        fh.setLevel(LOG_LEVEL_MAP[args.log_level])
        fh.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
            )
        )
        logger.addHandler(fh)
        logger.debug(f"Logging to file enabled: {args.log_file}")


def _apply_overrides(cfg: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    if getattr(args, "base_dir", None):
        cfg["base_dir"] = args.base_dir
    if getattr(args, "low_coverage_threshold", None) is not None:
        cfg["low_coverage_threshold"] = args.low_coverage_threshold
    if getattr(args, "no_tool_check", False):
        cfg["check_tools"] = False
    return cfg


def _uploads(files: List[str]) -> List[UploadedFile]:
    return [UploadedFile.from_path(f) for f in files]


def cmd_plan(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    genome, samples = resolve_uploads(
        _uploads(args.files),
        extensions=cfg.get("genome_extensions", GENOME_EXTENSIONS),
        normalize=False,
    )
    plan = build_plan(genome, samples, Workspace(cfg["base_dir"], cfg), cfg)
    script = render_plan(plan)
    if args.output:
        Path(args.output).write_text(script, encoding="utf-8")
        logger.info(f"Pipeline script written to {args.output}")
    else:
        sys.stdout.write(script)
    return 0


async def _run_foreground(manager: RunManager, uploads: List[UploadedFile], poll: float) -> int:
    manager.start(uploads)
    streamer = ProgressStreamer(manager.progress_log, poll)
    async with aclosing(streamer.subscribe(until=lambda: not manager.is_active)) as events:
        async for event in events:
            for line in event.lines:
                print(line, flush=True)
    state = await manager.wait()
    if state.status == RunStatus.FAILED_TO_START:
        return 127
    if state.exit_code is None:
        return 1
    return state.exit_code if state.exit_code >= 0 else 128 - state.exit_code


def cmd_run(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    if logger.isEnabledFor(logging.DEBUG):
        for tool in VERSIONED_TOOLS:
            logger.debug(f"{tool}: {get_tool_version(tool)}")
    manager = RunManager(Workspace(cfg["base_dir"], cfg), cfg)
    return asyncio.run(_run_foreground(manager, _uploads(args.files), cfg.get("poll_interval", 0.5)))


def cmd_serve(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    import uvicorn

    from .api import create_app

    host = args.host or cfg.get("host", "0.0.0.0")
    port = args.port or cfg.get("port", 3000)
    logger.info(f"Server is running on http://{host}:{port}")
    uvicorn.run(create_app(cfg), host=host, port=port)
    return 0


COMMANDS = {"plan": cmd_plan, "run": cmd_run, "serve": cmd_serve}


def main(argv: Optional[List[str]] = None) -> int:
    """Run main entry point for the consensusflow CLI.

    Steps:
        1. Parse arguments.
        2. Configure logging and load config.
        3. Apply command-line overrides to the configuration.
        4. Dispatch to the subcommand.
    """
    args = parse_args(argv)
    _configure_logging(args)

    start_time = datetime.datetime.now()
    logger.debug(f"Run started at {start_time.isoformat()}")
    logger.debug(f"CLI arguments: {args}")

    try:
        cfg = _apply_overrides(load_config(args.config), args)
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 2
    logger.debug(f"Configuration loaded: {cfg}")

    try:
        return COMMANDS[args.command](args, cfg)
    except PipelineError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())

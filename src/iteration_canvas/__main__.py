"""cli entrypoint for iteration canvas."""

import argparse
from pathlib import Path

from .core.config import DEFAULT_ITERATION_COUNT, ITERATION_COUNT_OPTIONS, CanvasConfig, get_state_dir
from .core.logger import setup_logging


def main():
    parser = argparse.ArgumentParser(
        description="iteration canvas - explore generated ui iterations as a tree"
    )
    parser.add_argument(
        "project_dir",
        nargs="?",
        help="project root containing the iterations directory (default: cwd)",
    )
    parser.add_argument("--iterations-dir", "-i", help="iterations directory")
    parser.add_argument("--state-dir", help="where canvas state is saved")
    parser.add_argument(
        "--runner",
        "-r",
        choices=["agent", "claude", "mock"],
        default="agent",
        help="how iterations are generated (default: agent cli)",
    )
    parser.add_argument("--mock", "-m", action="store_true", help="use mock runner")
    parser.add_argument(
        "--count",
        "-n",
        type=int,
        choices=ITERATION_COUNT_OPTIONS,
        default=DEFAULT_ITERATION_COUNT,
        help="iterations per generation",
    )
    parser.add_argument("--log-level", default="INFO", help="logging level")

    args = parser.parse_args()

    config = CanvasConfig.from_env(
        project_dir=Path(args.project_dir) if args.project_dir else None,
        iterations_dir=Path(args.iterations_dir) if args.iterations_dir else None,
        state_dir=Path(args.state_dir) if args.state_dir else None,
    )
    # the tui owns the terminal, so log to a file
    log_dir = config.state_dir or get_state_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    setup_logging(args.log_level, log_file=log_dir / "iteration-canvas.log")

    from .tui.app import run

    run(config=config, runner="mock" if args.mock else args.runner, count=args.count)


if __name__ == "__main__":
    main()

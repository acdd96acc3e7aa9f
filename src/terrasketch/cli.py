"""
Command line entry point.

    terrasketch generate painted.png -o heightmap.png
    terrasketch refine painted.png -o refined.png
    terrasketch pipeline painted.png -o heightmap.png --backend host
"""
import argparse
import logging
import sys
from typing import List, Optional

from . import codec
from .config import build_driver, load_config
from .errors import TerrainPipelineError
from .logger import setup_logger

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="terrasketch", description=__doc__,
                                     formatter_class=argparse.RawDescriptionHelpFormatter)
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("generate", "Synthesize terrain and export a 16-bit PNG heightmap."),
        ("refine", "Refine a painting and write it back as an 8-bit PNG."),
        ("pipeline", "Refine, then synthesize, then export a 16-bit PNG heightmap."),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("input", help="8-bit grayscale painting (PNG or any GDAL raster).")
        cmd.add_argument("-o", "--output", required=True, help="Output PNG path.")
        cmd.add_argument("--config", default=None, help="JSON config file.")
        cmd.add_argument("--backend", choices=("cuda", "host"), default=None,
                         help="Accelerator backend (overrides config).")
        cmd.add_argument("--log-dir", default=None, help="Log directory (overrides config).")
        cmd.add_argument("--plot", action="store_true", help="Show a matplotlib preview of the result.")
    return parser


def run(args: argparse.Namespace) -> int:
    overrides = {}
    if args.backend:
        overrides["accelerator"] = {"backend": args.backend}
    if args.log_dir:
        overrides["logging"] = {"log_dir": args.log_dir}
    config = load_config(args.config, overrides)
    setup_logger(config["logging"]["log_dir"], config["logging"]["log_name"])

    driver = build_driver(config)
    painted = codec.read_raster(args.input)

    if args.command == "refine":
        result = driver.refine(painted)
        codec.write_raster(result, args.output)
    else:
        if args.command == "pipeline":
            # Refined painting goes back through the 8-bit surface, as it would in the editor
            painted = codec.extract(codec.to_raster(driver.refine(painted)))
        result = driver.generate_field(painted)
        codec.save(result, args.output)

    if args.plot:
        import matplotlib.pyplot as plt
        from .preview import plot_field

        plot_field(result, resolution=config["preview"]["resolution"])
        plt.show()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        return run(args)
    except (TerrainPipelineError, FileNotFoundError) as exc:
        logger.error(str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())

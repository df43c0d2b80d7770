import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

from automapper.errors import AutoMapperError, ChartFormatError
from automapper.pipeline.automap import AutoMapper
from automapper.pipeline.config import GenerationOptions, PipelineConfig
from automapper.pipeline.converters import read_chart_file
from automapper.pipeline.instrumentation import PipelineLogger
from automapper.pipeline.utils_config import apply_dotted_overrides, parse_overrides

logger = logging.getLogger("automapper")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate six-zone rhythm charts from audio")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Generate a chart from an audio file")
    gen.add_argument("audio", help="Path to input audio file")
    gen.add_argument("-o", "--output", default="chart.json", help="Output chart JSON path")
    gen.add_argument("--difficulty", type=int, default=2, choices=[1, 2, 3, 4, 5])
    gen.add_argument("--bpm", type=float, default=120.0)
    gen.add_argument("--offset", type=float, default=0.0, help="Offset added to every note (ms)")
    gen.add_argument("--min-interval", type=float, default=150.0, help="Base minimum note interval (ms)")
    gen.add_argument("--intensity", type=float, default=0.7, help="maimai-style intensity, 0..1")
    gen.add_argument("--no-trained", action="store_true", help="Ignore trained/expert pattern tables")
    gen.add_argument("--no-maimai", action="store_true", help="Disable maimai-style flow and style passes")
    gen.add_argument("--model", default=None, help="Exported model JSON to use")
    gen.add_argument("--seed", type=int, default=None, help="Seed for reproducible output")
    gen.add_argument("--start", type=float, default=0.0, help="Start offset into the audio (s)")
    gen.add_argument("--max-duration", type=float, default=None, help="Maximum audio duration (s)")
    gen.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Config override, e.g. --set filter.beat_weight=0.5 (repeatable)",
    )
    gen.add_argument("--log-dir", default=None, help="Write JSONL diagnostics under this directory")

    train = sub.add_parser("train", help="Train a model from existing charts")
    train.add_argument("charts", nargs="+", help="Chart files")
    train.add_argument("-o", "--output", default="model.json", help="Output model JSON path")
    train.add_argument(
        "--format",
        default="dsx",
        choices=["dsx", "osu", "osumania", "stepmania", "sm", "bms", "bme", "maimai", "chunithm"],
        help="Source chart format",
    )
    return parser.parse_args(argv)


def _build_config(args: argparse.Namespace) -> PipelineConfig:
    config = PipelineConfig()
    if args.seed is not None:
        config.seed = args.seed
    overrides = parse_overrides(args.set)
    if overrides:
        apply_dotted_overrides(config, overrides)
        logger.info(f"Applied overrides: {overrides}")
    return config


def run_generate(args: argparse.Namespace) -> int:
    try:
        config = _build_config(args)
    except (ValueError, AttributeError) as e:
        logger.error(f"Invalid --set override: {e}")
        return 2

    mapper = AutoMapper(config=config)
    if args.model:
        try:
            mapper.import_model(args.model)
        except (OSError, ValueError) as e:
            logger.error(f"Could not load model {args.model}: {e}")
            return 1

    options = GenerationOptions(
        difficulty=args.difficulty,
        bpm=args.bpm,
        offset=args.offset,
        min_note_interval=args.min_interval,
        use_trained_model=not args.no_trained,
        maimai_style=not args.no_maimai,
        maimai_intensity=args.intensity,
    )
    pipeline_logger = PipelineLogger(base_dir=args.log_dir) if args.log_dir else None

    result = asyncio.run(
        mapper.generate_from_file(
            args.audio,
            options,
            pipeline_logger=pipeline_logger,
            start_offset=args.start,
            max_duration=args.max_duration,
        )
    )
    if pipeline_logger:
        pipeline_logger.write_json("chart.json", result.to_dict())
        pipeline_logger.finalize({"strategy_usage": result.diagnostics.get("strategy_usage", {})})

    out_dir = os.path.dirname(os.path.abspath(args.output))
    os.makedirs(out_dir, exist_ok=True)
    with open(args.output, "w", encoding="utf-8") as f:
        json.dump(result.to_dict(), f, indent=2)

    if "error" in result.diagnostics:
        logger.error(f"No notes generated: {result.diagnostics['error']}")
        return 1
    logger.info(f"Wrote {len(result)} notes to {args.output}")
    return 0


def run_train(args: argparse.Namespace) -> int:
    sources = []
    for path in args.charts:
        try:
            sources.append(read_chart_file(path, args.format))
        except ChartFormatError as e:
            logger.warning(f"Skipping {path}: {e}")

    mapper = AutoMapper()
    model = mapper.train(sources, args.format)
    if model.charts_used == 0:
        logger.error("No usable charts (each needs at least 10 notes)")
        return 1
    try:
        mapper.export_model(args.output)
    except (OSError, AutoMapperError) as e:
        logger.error(f"Could not write {args.output}: {e}")
        return 1
    logger.info(f"Model trained on {model.charts_used} charts written to {args.output}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    if args.command == "generate":
        return run_generate(args)
    return run_train(args)


if __name__ == "__main__":
    sys.exit(main())

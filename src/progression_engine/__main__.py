"""Entry point for `python -m progression_engine` and the `progression` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import dataclasses
from pathlib import Path

from progression_engine.engine import ProgressionEngine
from progression_engine.errors import EngineError
from progression_engine.generator import OfflineTemplateGenerator, UnitDescriptor
from progression_engine.models import StepResponse, Unit
from progression_engine.persistence import snapshot
from progression_engine.settings import EngineSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive missions and directives through their phases")
    parser.add_argument("--state-root", type=Path, default=None, help="Override PROGRESSION_STATE_STORE_ROOT")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Generate and store a new unit")
    create.add_argument("--profile", choices=["mission", "directive"], default="directive")
    create.add_argument("--category", required=True)
    create.add_argument("--location", default=None)
    create.add_argument("--approach", default="EVIDENCE_FIRST")

    show = sub.add_parser("show", help="Print a unit snapshot")
    show.add_argument("unit_id")

    complete = sub.add_parser("complete", help="Complete one step")
    complete.add_argument("unit_id")
    complete.add_argument("phase_index", type=int)
    complete.add_argument("step_id")
    complete.add_argument(
        "--answer",
        action="append",
        default=[],
        metavar="GATE=JSON",
        help="Gate answer as gate id and JSON value, e.g. p-0-1=true (repeatable)",
    )
    complete.add_argument("--evidence-ref", default=None)
    complete.add_argument("--expected-version", type=int, default=None)

    jump = sub.add_parser("jump", help="Move the review cursor to a reached phase")
    jump.add_argument("unit_id")
    jump.add_argument("target_index", type=int)

    retry = sub.add_parser("retry-digest", help="Attach a missing audit digest")
    retry.add_argument("unit_id")

    sub.add_parser("list", help="List stored unit ids")
    return parser.parse_args(argv)


def parse_answers(pairs: list[str]) -> dict[str, object]:
    answers: dict[str, object] = {}
    for pair in pairs:
        gate_id, sep, raw = pair.partition("=")
        if not sep or not gate_id.strip():
            raise ValueError(f"answer must look like GATE=JSON, got: {pair!r}")
        try:
            answers[gate_id.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            answers[gate_id.strip()] = raw
    return answers


def _print_unit(unit: Unit) -> None:
    print(json.dumps(snapshot(unit), indent=2, sort_keys=True))


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = EngineSettings.from_env()
        if args.state_root is not None:
            settings = dataclasses.replace(settings, state_store_root=str(args.state_root))
        engine = ProgressionEngine.from_settings(settings)
    except (ValueError, RuntimeError) as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    try:
        if args.command == "create":
            descriptor = UnitDescriptor(
                profile=args.profile,
                category=args.category,
                location=args.location,
                approach=args.approach,
            )
            _print_unit(engine.create_unit(descriptor, fallback=OfflineTemplateGenerator()))
        elif args.command == "show":
            _print_unit(engine.get_snapshot(args.unit_id))
        elif args.command == "complete":
            response = StepResponse(answers=parse_answers(args.answer), evidence_ref=args.evidence_ref)
            advance = engine.complete_step(
                args.unit_id,
                args.phase_index,
                args.step_id,
                response,
                expected_version=args.expected_version,
            )
            for event in advance.events:
                print(f"event: {event}")
            _print_unit(advance.unit)
        elif args.command == "jump":
            _print_unit(engine.jump_to_phase(args.unit_id, args.target_index).unit)
        elif args.command == "retry-digest":
            _print_unit(engine.retry_digest(args.unit_id).unit)
        elif args.command == "list":
            for unit_id in engine.list_units():
                print(unit_id)
    except EngineError as exc:
        logging.error("%s: %s", type(exc).__name__, exc)
        return 1
    except ValueError as exc:
        logging.error("Invalid input: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

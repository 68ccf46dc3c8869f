"""Entry point for `python -m validator_forge` and the `forge` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

from pydantic import ValidationError

from validator_forge.errors import ForgeError
from validator_forge.models import ArtifactKind, CheckStatus, Draft, Specification, TestRun
from validator_forge.orchestrator import CREATOR_ROLE, PipelineOrchestrator
from validator_forge.settings import RuntimeSettings
from validator_forge.state_store import PipelineStateStore


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate and certify validator artifacts")
    parser.add_argument(
        "--state-store",
        type=Path,
        default=None,
        help="State store directory (default: FORGE_STATE_STORE_ROOT relative to cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Create a draft from a specification JSON file")
    create.add_argument("--author", required=True)
    create.add_argument("--role", default=CREATOR_ROLE, help="Role claim supplied by the identity provider")
    create.add_argument("--spec", type=Path, required=True, help="Path to a specification JSON document")
    create.add_argument("--upload", type=Path, default=None, help="Create an uploaded draft from this HTML file")

    upload = commands.add_parser("upload", help="Replace the artifact of an uploaded draft")
    upload.add_argument("draft_id")
    upload.add_argument("--author", required=True)
    upload.add_argument("--file", type=Path, required=True)

    generate = commands.add_parser("generate", help="Generate the draft's artifact")
    generate.add_argument("draft_id")
    generate.add_argument("--regenerate", action="store_true", help="Replace an existing artifact")
    generate.add_argument("--timeout", type=float, default=None)

    test = commands.add_parser("test", help="Run the compliance checks on the current artifact")
    test.add_argument("draft_id")
    test.add_argument("--sub-competency", default=None)
    test.add_argument("--timeout", type=float, default=None)

    certify = commands.add_parser("certify", help="Generate if needed, then test")
    certify.add_argument("draft_id")
    certify.add_argument("--sub-competency", default=None)

    for name, help_text in (("publish", "Publish a certified draft"), ("unpublish", "Withdraw a published draft")):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("draft_id")
        sub.add_argument("--author", required=True)

    status = commands.add_parser("status", help="Show a draft and its latest test run")
    status.add_argument("draft_id")

    history = commands.add_parser("history", help="Print every test run of a draft as JSON")
    history.add_argument("draft_id")

    listing = commands.add_parser("list", help="List drafts")
    listing.add_argument("--author", default=None)

    delete = commands.add_parser("delete", help="Delete a draft and its history")
    delete.add_argument("draft_id")
    delete.add_argument("--author", required=True)
    return parser.parse_args(argv)


def print_draft(draft: Draft) -> None:
    print(f"draft_id={draft.draft_id}")
    print(f"state={draft.state.value}")
    print(f"visibility={draft.visibility.value}")
    print(f"artifact_revision={draft.artifact_revision}")
    if draft.public_code:
        print(f"public_code={draft.public_code}")
    if draft.last_error is not None:
        print(f"last_error={draft.last_error.code}")
        print(f"remediation={draft.last_error.remediation}")


def print_test_run(test_run: TestRun) -> None:
    print(f"test_run={test_run.test_run_id} sequence={test_run.sequence} status={test_run.status.value}")
    for result in test_run.results:
        print(f"  check {result.check_number} {result.name}: {result.status.value} {result.notes}".rstrip())


def run_command(args: argparse.Namespace, orchestrator: PipelineOrchestrator) -> int:
    if args.command == "create":
        specification = Specification.model_validate_json(args.spec.read_text(encoding="utf-8"))
        artifact = args.upload.read_text(encoding="utf-8") if args.upload is not None else None
        kind = ArtifactKind.UPLOADED if artifact is not None else ArtifactKind.GENERATED
        print_draft(orchestrator.create_draft(args.author, args.role, specification, kind, artifact))
    elif args.command == "upload":
        print_draft(orchestrator.attach_upload(args.draft_id, args.author, args.file.read_text(encoding="utf-8")))
    elif args.command == "generate":
        print_draft(asyncio.run(orchestrator.generate(args.draft_id, regenerate=args.regenerate, timeout=args.timeout)))
    elif args.command == "test":
        test_run = asyncio.run(orchestrator.run_tests(args.draft_id, args.sub_competency, timeout=args.timeout))
        print_test_run(test_run)
        return 0 if test_run.status == CheckStatus.PASSED else 1
    elif args.command == "certify":
        test_run = asyncio.run(orchestrator.certify(args.draft_id, args.sub_competency))
        print_test_run(test_run)
        return 0 if test_run.status == CheckStatus.PASSED else 1
    elif args.command == "publish":
        print_draft(orchestrator.publish(args.draft_id, args.author))
    elif args.command == "unpublish":
        print_draft(orchestrator.unpublish(args.draft_id, args.author))
    elif args.command == "status":
        print_draft(orchestrator.get_draft(args.draft_id))
        latest = orchestrator.latest_test_run(args.draft_id)
        if latest is not None:
            print_test_run(latest)
    elif args.command == "history":
        runs = [test_run.model_dump(mode="json") for test_run in orchestrator.list_test_runs(args.draft_id)]
        print(json.dumps(runs, indent=2))
    elif args.command == "list":
        for draft in orchestrator.list_drafts(args.author):
            print(f"{draft.draft_id} {draft.state.value} {draft.visibility.value} {draft.specification.title}".rstrip())
    elif args.command == "delete":
        orchestrator.delete_draft(args.draft_id, args.author)
        print(f"deleted={args.draft_id}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1
    root = args.state_store if args.state_store is not None else settings.state_store_path(Path.cwd())
    orchestrator = PipelineOrchestrator(PipelineStateStore(root), settings)

    try:
        return run_command(args, orchestrator)
    except ForgeError as exc:
        logging.error("%s", exc)
        print(f"error={exc.code}")
        print(f"retryable={str(exc.retryable).lower()}")
        print(f"remediation={exc.remediation}")
        return 1
    except (OSError, ValidationError) as exc:
        logging.error("Unable to read input: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

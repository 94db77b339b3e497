"""ctxhook command line: the host hook entry point plus maintenance commands."""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from .capture import capture_learning
from .config import CtxhookConfig, load_config
from .errors import CommandNotFound, CtxhookError, StageAbort
from .logging_config import configure_logging, get_logger
from .models import HookStage
from .session import Runtime, Session

logger = get_logger("cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BLOCKED = 2


def read_hook_input(stream=None) -> dict:
    """Read the host's JSON payload. Empty or malformed input yields {}."""
    stream = stream or sys.stdin
    try:
        if stream.isatty():
            return {}
        data = stream.read()
    except (OSError, ValueError):
        return {}
    if not data.strip():
        return {}
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring malformed hook input: {e}")
        return {}
    return payload if isinstance(payload, dict) else {}


async def run_hook(session: Session, stage: HookStage, payload: dict) -> tuple[str, StageAbort | None]:
    """Run one host-fired stage and return (context text, abort)."""
    if stage == HookStage.USER_PROMPT_SUBMIT:
        prompt = str(payload.get("prompt") or "")
        context = await session.submit_prompt(prompt, payload)
        text = "\n\n".join(part for part in (context.stage.output, context.text) if part)
        aborted = context.stage.aborted
    elif stage == HookStage.STOP:
        result = await session.stop(payload)
        text, aborted = result.output, result.aborted
    else:
        result = await session.run_stage(stage, payload)
        text, aborted = result.output, result.aborted

    # A hook process exits with the stage; background hooks finish first
    await session.pipeline.drain()
    await session.runtime.notifier.drain()
    return text, aborted


def cmd_hook(config: CtxhookConfig, args) -> int:
    payload = read_hook_input()
    session_id = str(payload.get("session_id") or "default")
    working_dir = Path(payload["cwd"]) if payload.get("cwd") else None
    stage = HookStage(args.stage)

    try:
        runtime = Runtime.from_config(config)
        session = runtime.session(session_id, strict=False, working_dir=working_dir)
        text, aborted = asyncio.run(run_hook(session, stage, payload))
    except CtxhookError as e:
        logger.error(f"[{session_id}] {stage.value} hook failed: {e}")
        return EXIT_OK
    except Exception:
        logger.exception(f"[{session_id}] {stage.value} hook crashed")
        return EXIT_OK

    if text:
        print(text)
    if aborted is not None:
        print(str(aborted), file=sys.stderr)
        return EXIT_BLOCKED
    return EXIT_OK


def cmd_rescan(config: CtxhookConfig, args) -> int:
    runtime = Runtime(config)
    if not config.roots:
        print("No context roots configured.")
        return EXIT_FAILED
    delta = runtime.rescan()
    print(f"Scanned {len(config.roots)} root(s): {len(runtime.registry)} unit(s)")
    for unit in delta.added:
        print(f"  + {unit.id} [{unit.kind.value}]")
    for conflict in delta.conflicts:
        print(f"  ! {conflict}: defined differently in more than one root")
    return EXIT_FAILED if delta.conflicts else EXIT_OK


def cmd_classify(config: CtxhookConfig, args) -> int:
    runtime = Runtime.from_config(config)
    candidates = runtime.classifier.classify(" ".join(args.utterance))
    if args.json:
        print(json.dumps([c.model_dump(mode="json") for c in candidates[: args.limit]], indent=2))
        return EXIT_OK
    if not candidates:
        print("No relevant context units.")
        return EXIT_OK
    for candidate in candidates[: args.limit]:
        print(
            f"{candidate.score:8.4f}  {candidate.kind.value:<8}  {candidate.unit_id}"
            f"  ({', '.join(sorted(candidate.matched_terms))})"
        )
    return EXIT_OK


def cmd_dispatch(config: CtxhookConfig, args) -> int:
    runtime = Runtime.from_config(config)
    command_args = args.args[1:] if args.args[:1] == ["--"] else args.args
    try:
        invocation = asyncio.run(runtime.dispatcher.dispatch(args.name, command_args, args.timeout))
    except CommandNotFound as e:
        print(str(e), file=sys.stderr)
        return EXIT_BLOCKED

    if invocation.stdout:
        sys.stdout.write(invocation.stdout)
    if invocation.stderr:
        sys.stderr.write(invocation.stderr if invocation.stderr.endswith("\n") else invocation.stderr + "\n")
    if invocation.timed_out or invocation.exit_code is None:
        return EXIT_BLOCKED
    return invocation.exit_code


def cmd_capture(config: CtxhookConfig, args) -> int:
    root = Path(args.root) if args.root else (config.roots[0] if config.roots else None)
    if root is None:
        print("No context root configured; pass --root.", file=sys.stderr)
        return EXIT_FAILED
    body = sys.stdin.read()
    runtime = Runtime(config)
    try:
        path = capture_learning(root, args.title, body, args.tags or "", registry=runtime.registry)
    except CtxhookError as e:
        print(str(e), file=sys.stderr)
        return EXIT_FAILED
    print(path)
    return EXIT_OK


def cmd_history(config: CtxhookConfig, args) -> int:
    runtime = Runtime(config)
    if args.stages:
        rows = asyncio.run(runtime.telemetry.stage_summary())
        for row in rows:
            print(
                f"{row['stage']:<18} runs={row['runs']:<5} aborts={row['aborts'] or 0:<4} "
                f"avg={row['avg_duration_ms'] or 0:.0f}ms"
            )
        return EXIT_OK

    rows = asyncio.run(runtime.telemetry.recent_invocations(args.limit, session_id=args.session))
    if not rows:
        print("No invocations recorded.")
    for row in rows:
        if row["timed_out"]:
            status = "timeout"
        else:
            status = f"exit={row['exit_code']}"
        print(
            f"{row['started_at'][:19]}  {row['session_id']:<14} {row['stage'] or '-':<18} "
            f"{row['command_ref']:<24} {status:<9} {row['duration_ms']}ms"
        )
    return EXIT_OK


def cmd_validate(config: CtxhookConfig, args) -> int:
    """Report configuration problems: missing roots, id conflicts and unresolved hook commands."""
    runtime = Runtime(config)
    problems = []

    for root in config.roots:
        if not root.is_dir():
            problems.append(f"context root does not exist: {root}")
    delta = runtime.rescan()
    for conflict in delta.conflicts:
        problems.append(f"unit id defined differently in more than one root: {conflict}")

    for stage in HookStage:
        for binding in config.bindings_for(stage):
            try:
                unit = runtime.dispatcher.resolve(binding.command)
            except CommandNotFound as e:
                problems.append(f"{stage.value}: {e}")
                continue
            mode = "blocking" if binding.blocking else "background"
            print(f"  {stage.value:<18} {binding.command} -> {unit.id} ({mode}, {binding.on_failure})")

    print(f"{len(runtime.registry)} context unit(s) under {len(config.roots)} root(s)")
    if problems:
        print(f"\n{len(problems)} problem(s):")
        for problem in problems:
            print(f"  - {problem}")
        return EXIT_FAILED
    print("Configuration OK")
    return EXIT_OK


COMMANDS = {
    "hook": cmd_hook,
    "rescan": cmd_rescan,
    "classify": cmd_classify,
    "dispatch": cmd_dispatch,
    "capture": cmd_capture,
    "history": cmd_history,
    "validate": cmd_validate,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ctxhook",
        description="ctxhook - intent-driven context assembly and lifecycle hooks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ctxhook hook UserPromptSubmit < payload.json
  ctxhook classify "build me a landing page"
  ctxhook dispatch --timeout 10 lint src/
  echo "Retry flaky tests once before bisecting" | ctxhook capture --title "Flaky tests" --tags testing
        """,
    )
    parser.add_argument("--config", help="Path to ctxhook.yaml (default: $CTXHOOK_CONFIG or ~/.ctxhook/ctxhook.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Also log to stderr")

    subparsers = parser.add_subparsers(dest="command", required=True)

    hook_parser = subparsers.add_parser("hook", help="Run a lifecycle stage (host hook entry point)")
    hook_parser.add_argument("stage", choices=[stage.value for stage in HookStage])

    subparsers.add_parser("rescan", help="Rescan context roots and report changes")

    classify_parser = subparsers.add_parser("classify", help="Rank context units for an utterance")
    classify_parser.add_argument("utterance", nargs="+")
    classify_parser.add_argument("--limit", type=int, default=10)
    classify_parser.add_argument("--json", action="store_true", help="Print candidates as JSON")

    # Options go before the command name; everything after it is passed through
    dispatch_parser = subparsers.add_parser("dispatch", help="Run a command unit")
    dispatch_parser.add_argument("--timeout", type=float, help="Seconds before the command is killed")
    dispatch_parser.add_argument("name", help="Command id or name")
    dispatch_parser.add_argument("args", nargs=argparse.REMAINDER)

    capture_parser = subparsers.add_parser("capture", help="Save a learning (body read from stdin)")
    capture_parser.add_argument("--title", required=True)
    capture_parser.add_argument("--tags", help="Comma-separated tags")
    capture_parser.add_argument("--root", help="Context root to write under (default: first configured root)")

    history_parser = subparsers.add_parser("history", help="Show recorded hook invocations")
    history_parser.add_argument("--limit", type=int, default=20)
    history_parser.add_argument("--session", help="Only this session")
    history_parser.add_argument("--stages", action="store_true", help="Per-stage summary instead")

    subparsers.add_parser("validate", help="Check configuration and hook bindings")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the ctxhook CLI."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except CtxhookError as e:
        if args.command == "hook":
            # Never break the host over a bad config
            configure_logging(console_output=args.verbose)
            logger.error(f"Hook {args.stage} skipped: {e}")
            return EXIT_OK
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FAILED

    configure_logging(
        log_dir=str(config.resolved_log_dir),
        log_level=config.log_level,
        console_output=args.verbose,
    )
    return COMMANDS[args.command](config, args)


if __name__ == "__main__":
    sys.exit(main())

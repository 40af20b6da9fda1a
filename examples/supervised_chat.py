#!/usr/bin/env python3
"""Chat with a supervised Codex app-server from the terminal.

This example demonstrates:
- starting the supervised app-server and waiting for the handshake
- one thread reused across several turns
- streaming normalized events until each turn completes
- an interactive approval handler with risk hints and secret masking
- configuration from CODEX_* environment variables
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from codex_app_server_supervisor import (
    ApprovalRequest,
    CodexProtocolError,
    CodexService,
    CodexTimeoutError,
    CodexTransportError,
    ServiceConfig,
    Subscription,
    assess_command_risk,
    events,
    has_sensitive_files,
    mask_command,
)

DEFAULT_PROMPTS = [
    "List the files in this directory.",
    "Summarize what you found in two sentences.",
]


def parse_args() -> argparse.Namespace:
    """Parse CLI options for the supervised chat example."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--prompt",
        action="append",
        dest="prompts",
        help="Prompt to send. Can be provided multiple times.",
    )
    parser.add_argument("--model", help="Model for the new thread.")
    parser.add_argument("--cwd", help="Working directory for the app-server and thread.")
    parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Approve every command and patch for the rest of the session without asking.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def _make_approval_handler(auto_approve: bool):
    async def handler(request: ApprovalRequest) -> str:
        if request.is_exec:
            summary = " ".join(mask_command(request.command))
            warning = assess_command_risk(request.command)
        else:
            summary = ", ".join(sorted(request.files))
            warning = "touches sensitive files" if has_sensitive_files(request.files) else None
        print(f"\n[approval] {request.method}: {summary}", file=sys.stderr)
        if warning:
            print(f"[approval] warning: {warning}", file=sys.stderr)
        if auto_approve:
            return "approved_for_session"
        answer = await asyncio.to_thread(input, "approve? [y]es / [s]ession / [n]o / [a]bort: ")
        return {
            "y": "approved",
            "s": "approved_for_session",
            "a": "abort",
        }.get(answer.strip().lower()[:1], "denied")

    return handler


async def _print_turn(stream: Subscription[events.CodexEvent], thread_id: str) -> None:
    async for event in stream:
        if event.thread_id != thread_id:
            continue
        match event:
            case events.AgentMessageDelta(delta=delta):
                print(delta, end="", flush=True)
            case events.AgentMessage(message=message):
                print(f"\n[assistant] {message}")
            case events.AgentReasoning(content=content):
                print(f"[reasoning] {content}")
            case events.PlanUpdate(plan=plan):
                for step in plan:
                    print(f"[plan:{events.plan_step_state(step.status)}] {step.step}")
            case events.ExecCommandBegin(command=command):
                print(f"[exec] {' '.join(mask_command(command))}")
            case events.ExecCommandEnd(exit_code=exit_code, duration_ms=duration_ms):
                print(f"[exec] exit={exit_code} duration_ms={duration_ms}")
            case events.Error(message=message):
                print(f"[error] {message}", file=sys.stderr)
                return
            case events.TaskComplete(status=status):
                print(f"[meta] turn complete status={status or 'completed'}")
                return
            case events.TurnAborted(reason=reason):
                print(f"[meta] turn aborted reason={reason}")
                return
            case _:
                pass


async def run_session(args: argparse.Namespace) -> int:
    """Run a multi-turn chat on one supervised thread."""
    prompts = args.prompts or DEFAULT_PROMPTS
    overrides: dict[str, object] = {}
    if args.cwd:
        overrides["working_dir"] = args.cwd
    if args.model:
        overrides["model"] = args.model
    config = ServiceConfig.from_env(**overrides)

    try:
        async with CodexService(config, approval_handler=_make_approval_handler(args.auto_approve)) as service:
            stream = service.events()
            session = await service.open_thread()
            print(f"[thread] id={session.thread_id} model={session.model}")

            for index, prompt in enumerate(prompts, start=1):
                print(f"\n[user:{index}] {prompt}")
                await service.send_message(session.thread_id, prompt)
                await _print_turn(stream, session.thread_id)
        return 0
    except CodexTimeoutError as exc:
        print(f"[error] timeout: {exc}", file=sys.stderr)
        return 2
    except CodexProtocolError as exc:
        details = f" code={exc.code}" if exc.code is not None else ""
        print(f"[error] protocol:{details} {exc}", file=sys.stderr)
        return 3
    except CodexTransportError as exc:
        print(f"[error] transport: {exc}", file=sys.stderr)
        return 4
    except KeyboardInterrupt:
        print("\n[interrupt] user cancelled session", file=sys.stderr)
        return 130


def main() -> None:
    """CLI entrypoint."""
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    raise SystemExit(asyncio.run(run_session(args)))


if __name__ == "__main__":
    main()

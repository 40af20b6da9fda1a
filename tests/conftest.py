from __future__ import annotations

import os
import stat
import sys
import textwrap
from pathlib import Path

import pytest

FAKE_APP_SERVER = textwrap.dedent(
    '''
    import json
    import sys


    def send(message):
        sys.stdout.write(json.dumps(message) + "\\n")
        sys.stdout.flush()


    def main():
        args = sys.argv[1:]
        if "--crash" in args:
            sys.stderr.write("fatal: simulated crash\\n")
            sys.exit(3)

        for line in sys.stdin:
            line = line.strip()
            if not line:
                continue
            if "--echo" in args:
                sys.stdout.write(line + "\\n")
                sys.stdout.flush()
                continue

            message = json.loads(line)
            method = message.get("method")
            request_id = message.get("id")
            params = message.get("params") or {}

            if method == "initialize":
                send({"id": request_id, "result": {"userAgent": "fake-codex/0.1"}})
            elif method == "thread/start":
                thread = {"id": "thr-1", "preview": "", "modelProvider": "openai", "createdAt": 1}
                send({"id": request_id, "result": {"thread": thread}})
                send({"method": "thread/started", "params": {"thread": {"id": "thr-1", "model": params.get("model")}}})
            elif method == "turn/start":
                thread_id = params["threadId"]
                send({"id": request_id, "result": {"turn": {"id": "turn-1", "status": "inProgress", "items": []}}})
                if "--approval" in args:
                    send(
                        {
                            "id": "approval-1",
                            "method": "execCommandApproval",
                            "params": {
                                "conversationId": thread_id,
                                "callId": "call-1",
                                "command": ["git", "status"],
                                "cwd": "/p",
                            },
                        }
                    )
                    continue
                send({"method": "turn/started", "params": {"threadId": thread_id, "turn": {"id": "turn-1"}}})
                send(
                    {
                        "method": "item/created",
                        "params": {
                            "threadId": thread_id,
                            "turnId": "turn-1",
                            "item": {"type": "agentMessage", "text": "Hello!"},
                        },
                    }
                )
                send(
                    {
                        "method": "turn/completed",
                        "params": {"threadId": thread_id, "turn": {"id": "turn-1", "status": "completed"}},
                    }
                )
            elif request_id == "approval-1":
                decision = (message.get("result") or {}).get("decision")
                send({"method": "codex/event/warning", "params": {"threadId": "thr-1", "msg": {"message": "decision=" + str(decision)}}})
            elif method == "slow/request":
                if "--exit-on-slow" in args:
                    sys.exit(1)
            elif request_id is not None and method is not None:
                send({"id": request_id, "error": {"code": -32601, "message": "unknown method " + method}})


    main()
    '''
)


@pytest.fixture
def fake_codex(tmp_path: Path) -> str:
    """Path to an executable that behaves like a minimal `codex app-server`."""
    if os.name != "posix":
        pytest.skip("fake app-server launcher is a POSIX shell script")

    server = tmp_path / "fake_app_server.py"
    server.write_text(FAKE_APP_SERVER, encoding="utf-8")

    launcher = tmp_path / "codex"
    launcher.write_text(
        f'#!/bin/sh\nshift\nexec "{sys.executable}" "{server}" "$@"\n',
        encoding="utf-8",
    )
    launcher.chmod(launcher.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(launcher)

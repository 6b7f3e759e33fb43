"""Replay a recorded backend event log through the session engine.

Usage:
    tabloop-replay events.jsonl
    tabloop-replay events.jsonl --prompt "Fix the flaky test" --ralph 3
    tabloop-replay events.jsonl --prompt "Add dark mode" --lisa -v

Each line of the log is one backend payload (``{"event": "delta",
"sessionId": ..., "content": ...}``). Lines with ``"event": "user"``
replay a user message (``text`` field) instead. Prompts the engine
would send back to the backend are recorded and shown in the summary.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.table import Table

from tabloop.adapters.backend import AgentBackend
from tabloop.adapters.events import dict_to_event
from tabloop.engine.config import EngineConfig
from tabloop.engine.models import SendMode
from tabloop.engine.orchestrator import LisaOptions, SessionOrchestrator
from tabloop.engine.ralph import RalphOptions
from tabloop.engine.yaml_config import load_yaml_config
from tabloop.shared.models.message import Attachment
from tabloop.shared.models.permission import Decision
from tabloop.shared.models.session import Session

logger = logging.getLogger(__name__)

USER_EVENT = "user"


@dataclass
class SentPrompt:
    session_id: str
    prompt: str
    mode: SendMode


@dataclass
class RecordingBackend(AgentBackend):
    """Backend that records what the engine asks of it and does nothing else."""
    sent: list[SentPrompt] = field(default_factory=list)
    aborted: list[str] = field(default_factory=list)
    permissions: list[tuple[str, Decision]] = field(default_factory=list)

    async def send(
        self,
        session_id: str,
        prompt: str,
        attachments: list[Attachment] | None = None,
        mode: SendMode = SendMode.DEFAULT,
    ) -> None:
        self.sent.append(SentPrompt(session_id, prompt, mode))

    async def abort(self, session_id: str) -> None:
        self.aborted.append(session_id)

    async def respond_permission(self, request_id: str, decision: Decision) -> None:
        self.permissions.append((request_id, decision))


class ReplayClock:
    """Logical clock for replays.

    A recorded log replays far faster than it was captured, so wall time
    would put every idle inside the dedup window. Each read advances
    past the window instead.
    """

    def __init__(self, step: float) -> None:
        self._step = step
        self._now = 0.0

    def __call__(self) -> float:
        self._now += self._step
        return self._now


def read_event_log(path: Path) -> list[dict[str, Any]]:
    """Parse a JSONL event log, skipping blank and malformed lines."""
    payloads: list[dict[str, Any]] = []
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as exc:
                logger.warning("%s:%d: skipping malformed line (%s)", path, lineno, exc)
                continue
            if not isinstance(data, dict):
                logger.warning("%s:%d: skipping non-object line", path, lineno)
                continue
            payloads.append(data)
    return payloads


async def replay(
    payloads: list[dict[str, Any]],
    orchestrator: SessionOrchestrator,
    *,
    prompt: str | None = None,
    ralph: RalphOptions | None = None,
    lisa: LisaOptions | None = None,
) -> None:
    """Feed *payloads* through *orchestrator* in order.

    Sessions are opened the first time their id appears. With *prompt*
    each new session starts with that message (and the chosen loop).
    """
    for data in payloads:
        session_id = str(data.get("sessionId", data.get("session_id", "")) or "")
        if not session_id:
            logger.debug("Skipping payload without a session id: %r", data)
            continue
        if session_id not in {s.session_id for s in orchestrator.sessions()}:
            orchestrator.create_session(session_id=session_id)
            if prompt:
                await orchestrator.send_user_message(session_id, prompt, ralph=ralph, lisa=lisa)

        if data.get("event") == USER_EVENT:
            text = str(data.get("text", ""))
            if text.strip():
                await orchestrator.send_user_message(session_id, text)
            continue
        await orchestrator.dispatch(dict_to_event(data))
    await orchestrator.drain_enrichments()


def _loop_summary(session: Session) -> str:
    if session.ralph_loop is not None:
        state = session.ralph_loop
        status = "active" if state.active else "done"
        return f"ralph {state.current_iteration}/{state.max_iterations} ({status})"
    if session.lisa_loop is not None:
        state = session.lisa_loop
        status = "active" if state.active else "done"
        return f"lisa {state.current_phase.value} ({status})"
    return "-"


def render_summary(
    console: Console,
    orchestrator: SessionOrchestrator,
    backend: RecordingBackend,
) -> None:
    table = Table(title="Sessions")
    table.add_column("Session")
    table.add_column("Name")
    table.add_column("Messages", justify="right")
    table.add_column("Processing")
    table.add_column("Loop")
    table.add_column("Pending", justify="right")
    table.add_column("Edited files")
    for session in orchestrator.sessions():
        table.add_row(
            session.session_id,
            session.name,
            str(len(session.messages)),
            "yes" if session.is_processing else "no",
            _loop_summary(session),
            str(len(session.pending_confirmations)),
            ", ".join(session.edited_file_list) or "-",
        )
    console.print(table)

    if backend.sent:
        sends = Table(title="Prompts sent to backend")
        sends.add_column("#", justify="right")
        sends.add_column("Session")
        sends.add_column("Mode")
        sends.add_column("Prompt")
        for i, sent in enumerate(backend.sent, start=1):
            first_line = sent.prompt.strip().splitlines()[0] if sent.prompt.strip() else ""
            sends.add_row(str(i), sent.session_id, sent.mode.value, first_line[:80])
        console.print(sends)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="tabloop-replay",
        description="Replay a recorded backend event log through the session engine",
    )
    parser.add_argument("events", help="JSONL file of backend event payloads")
    parser.add_argument(
        "--prompt", "-p",
        default=None,
        help="User message to send when each session first appears",
    )
    parser.add_argument(
        "--ralph",
        type=int,
        default=None,
        metavar="N",
        help="Start a Ralph loop with N max iterations (requires --prompt)",
    )
    parser.add_argument(
        "--lisa",
        action="store_true",
        help="Start a Lisa loop (requires --prompt)",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (default: TABLOOP_* environment)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    console = Console()
    if args.ralph is not None and args.lisa:
        console.print("[red]Error:[/red] --ralph and --lisa are mutually exclusive.")
        sys.exit(1)
    if (args.ralph is not None or args.lisa) and not args.prompt:
        console.print("[red]Error:[/red] loops need a --prompt to start from.")
        sys.exit(1)

    path = Path(args.events)
    if not path.is_file():
        console.print(f"[red]Error:[/red] Event log not found: {path}")
        sys.exit(1)

    config = load_yaml_config(args.config) if args.config else EngineConfig.from_env()
    backend = RecordingBackend()
    orchestrator = SessionOrchestrator(
        backend, config, clock=ReplayClock(config.idle_dedup_window_seconds + 1.0),
    )

    try:
        asyncio.run(replay(
            read_event_log(path),
            orchestrator,
            prompt=args.prompt,
            ralph=RalphOptions(max_iterations=args.ralph) if args.ralph is not None else None,
            lisa=LisaOptions() if args.lisa else None,
        ))
    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        sys.exit(1)

    render_summary(console, orchestrator, backend)


if __name__ == "__main__":
    main()

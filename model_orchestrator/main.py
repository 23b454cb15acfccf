"""
Model Orchestrator command line.

Usage:
    python -m model_orchestrator.main providers
    python -m model_orchestrator.main route content_generation --profile cost-balanced
    python -m model_orchestrator.main generate general "Explain TCP slow start in two sentences"
    python -m model_orchestrator.main generate outline_planning "Outline a course on SQL" --json
    python -m model_orchestrator.main image image:header "A lighthouse at dawn, flat illustration" --out header.png
    python -m model_orchestrator.main repair broken.json
    python -m model_orchestrator.main probe
"""

from __future__ import annotations

# Load .env before any other imports so provider SDKs never capture stale env keys
import model_orchestrator.config  # noqa: F401, E402

import argparse
import asyncio
import base64
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

from model_orchestrator.availability import AvailabilityDetector
from model_orchestrator.catalog import MODELS, ProviderId
from model_orchestrator.config import get_settings
from model_orchestrator.engine import GenerationResult
from model_orchestrator.errors import NoProviderConfiguredError, OrchestratorError, OutputFormatError
from model_orchestrator.observability import metrics as obs_metrics
from model_orchestrator.output_repair import repair
from model_orchestrator.routing import RoutingProfile, TaskRouter, TaskType
from model_orchestrator.service import ContentOrchestrator

_CUSTOM_THEME = Theme({
    "log.info":        "dim white",
    "log.warning":     "bold #f59e0b",
    "log.error":       "bold #dc2626",
    "log.debug":       "dim #64748b",
    "primary":         "#ea580c",
    "ok":              "bold #16a34a",
    "fail":            "bold #dc2626",
})

console = Console(theme=_CUSTOM_THEME, highlight=False)


class _RichStructlogRenderer:
    """Custom structlog processor that renders log lines via Rich."""

    _SKIP_KEYS = frozenset({"event", "level", "_record"})

    def __call__(self, logger_: object, method: str, event_dict: dict) -> str:  # noqa: ARG002
        event = event_dict.get("event", "")
        level = event_dict.get("level", "info").lower()

        # ── Cascade fallback highlight ───────────────────────────────────────
        if event == "cascade_attempt_failed" and event_dict.get("next_provider"):
            failed = f"{event_dict.get('provider', '?')}/{event_dict.get('model', '?')}"
            nxt = event_dict.get("next_provider", "?")
            kind = event_dict.get("kind", "transient")
            task_name = event_dict.get("task", "")
            console.print(
                f"  [bold #f59e0b]╔══ PROVIDER FALLBACK ══╗[/bold #f59e0b]  "
                f"[#64748b]{failed}[/#64748b] [bold #ea580c]→[/bold #ea580c] [bold #0ea5e9]{nxt}[/bold #0ea5e9]  "
                f"[bold #dc2626][{kind}][/bold #dc2626]  "
                + (f"[#64748b]task={task_name}[/#64748b]" if task_name else "")
            )
            raise structlog.DropEvent()

        if event == "rate_limit_backoff":
            console.print(
                f"  [#f59e0b]⏳ rate limited[/#f59e0b] "
                f"[#94a3b8]{event_dict.get('provider', '?')}/{event_dict.get('model', '?')}[/#94a3b8]  "
                f"[#64748b]retry {event_dict.get('attempt', '?')}/{event_dict.get('max_attempts', '?')} "
                f"in {event_dict.get('delay_seconds', '?')}s[/#64748b]"
            )
            raise structlog.DropEvent()

        extras = {k: v for k, v in event_dict.items() if k not in self._SKIP_KEYS}
        kv_parts = []
        for k, v in extras.items():
            vs = str(v)
            if len(vs) > 120:
                vs = vs[:117] + "…"
            if k in ("provider", "primary", "winner", "cost_usd"):
                kv_parts.append(f"[#94a3b8]{k}[/#94a3b8]=[#ea580c]{vs}[/#ea580c]")
            else:
                kv_parts.append(f"[#64748b]{k}[/#64748b]=[#94a3b8]{vs}[/#94a3b8]")
        kv_str = "  ".join(kv_parts)

        if level == "warning":
            prefix = "[bold #f59e0b]⚠[/bold #f59e0b]"
            ev_fmt = f"[bold #f59e0b]{event}[/bold #f59e0b]"
        elif level in ("error", "critical"):
            prefix = "[bold #dc2626]✗[/bold #dc2626]"
            ev_fmt = f"[bold #dc2626]{event}[/bold #dc2626]"
        elif level == "debug":
            prefix = "[#64748b]·[/#64748b]"
            ev_fmt = f"[#64748b]{event}[/#64748b]"
        else:
            prefix = "[#ea580c]▪[/#ea580c]"
            ev_fmt = f"[bold #e2e8f0]{event}[/bold #e2e8f0]"

        console.print(f"  {prefix} {ev_fmt}  {kv_str}")
        raise structlog.DropEvent()


def configure_logging(level: Optional[str] = None) -> None:
    level_name = (level or get_settings().observability.log_level).upper()
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            _RichStructlogRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level_name)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


logger = structlog.get_logger()


# ── Commands ──


def cmd_providers() -> int:
    snapshot = AvailabilityDetector().get_availability()
    table = Table(title="Providers", border_style="#ea580c", title_style="bold #ea580c")
    table.add_column("Provider", style="bold #94a3b8")
    table.add_column("Configured", justify="center")
    table.add_column("Models", style="#e2e8f0")
    for provider in ProviderId:
        models = ", ".join(p.key for p in MODELS.values() if p.provider == provider)
        ok = snapshot.is_available(provider)
        table.add_row(provider.value, "[ok]yes[/ok]" if ok else "[fail]no[/fail]", models)
    console.print(table)
    return 0 if snapshot.any_available else 1


def cmd_route(task: str, profile: Optional[str]) -> int:
    router = TaskRouter(AvailabilityDetector())
    route = router.select_route(task, RoutingProfile.parse(profile) if profile else None)
    table = Table(title=f"Route · {route.task.value} · {route.profile.value}", border_style="#ea580c")
    table.add_column("#", justify="right", style="#64748b")
    table.add_column("Model key", style="bold #94a3b8")
    table.add_column("Provider")
    table.add_column("Model id", style="#e2e8f0")
    for i, p in enumerate(route.candidates):
        table.add_row(str(i), p.key, p.provider.value, p.model)
    console.print(table)
    if route.used_universal_fallback:
        console.print("  [#f59e0b]No preferred model available; using universal fallback order[/#f59e0b]")
    return 0


def _print_attempts(result: GenerationResult) -> None:
    table = Table(title="Cascade", border_style="#64748b", title_style="#94a3b8")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Tries", justify="right")
    table.add_column("Result")
    for a in result.attempts:
        outcome = "[ok]ok[/ok]" if a.success else f"[fail]{(a.error or '')[:80]}[/fail]"
        table.add_row(a.provider.value, a.model, str(a.tries), outcome)
    console.print(table)


def _print_costs(orchestrator: ContentOrchestrator) -> None:
    summary = orchestrator.cost_summary()
    console.print(
        f"  [#64748b]session[/#64748b] [primary]${summary['session_usd']:.4f}[/primary]  "
        f"[#64748b]today[/#64748b] [primary]${summary['daily_usd']:.4f}[/primary]"
    )


async def cmd_generate(task: str, prompt: str, as_json: bool, profile: Optional[str]) -> int:
    orchestrator = ContentOrchestrator()
    try:
        result = await orchestrator.generate(task, prompt, profile=profile)
        _print_attempts(result)
        if not result.success:
            console.print(Panel(result.error or "generation failed", border_style="#dc2626"))
            return 1
        body = result.text
        if as_json:
            repaired = repair(result.text, context=task)
            body = json.dumps(repaired.value, indent=2, ensure_ascii=False)
        console.print(Panel(body, title=f"[#ea580c]{result.provider.value}/{result.model}[/#ea580c]", border_style="#ea580c"))
        _print_costs(orchestrator)
        return 0
    finally:
        await orchestrator.aclose()


async def cmd_image(task: str, prompt: str, out: Optional[str], resolution: str) -> int:
    orchestrator = ContentOrchestrator()
    try:
        result = await orchestrator.generate_image(task, prompt, resolution=resolution)
        _print_attempts(result)
        if not result.success or not result.images:
            console.print(Panel(result.error or "no image returned", border_style="#dc2626"))
            return 1
        image = result.images[0]
        if out:
            Path(out).write_bytes(base64.b64decode(image.base64_data))
            console.print(f"  [ok]saved[/ok] {out} ({image.mime_type})")
        else:
            console.print(f"  [ok]received[/ok] {len(image.base64_data)} base64 chars ({image.mime_type})")
        _print_costs(orchestrator)
        return 0
    finally:
        await orchestrator.aclose()


def cmd_repair(path: str) -> int:
    raw = sys.stdin.read() if path == "-" else Path(path).read_text(encoding="utf-8")
    try:
        result = repair(raw, context=path)
    except OutputFormatError as e:
        console.print(Panel(
            f"offset {e.offset} (line {e.line}, column {e.column}): {escape(str(e))}\n\n{escape(e.window)}",
            title="[#dc2626]Unrepairable JSON[/#dc2626]",
            border_style="#dc2626",
        ))
        return 1
    steps = ", ".join(result.steps_applied) or "none"
    console.print(f"  [#64748b]steps applied:[/#64748b] [primary]{steps}[/primary]")
    console.print_json(json.dumps(result.value, ensure_ascii=False))
    return 0


async def cmd_probe() -> int:
    orchestrator = ContentOrchestrator()
    try:
        status = await orchestrator.probe_providers()
    finally:
        await orchestrator.aclose()
    table = Table(title="Provider probe", border_style="#ea580c")
    table.add_column("Provider", style="bold #94a3b8")
    table.add_column("Reachable", justify="center")
    for provider, ok in status.items():
        table.add_row(provider, "[ok]yes[/ok]" if ok else "[fail]no[/fail]")
    console.print(table)
    return 0 if status and all(status.values()) else 1


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Model Orchestrator")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL (DEBUG, INFO, WARNING)")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("providers", help="Show which providers have credentials configured")

    rt = sub.add_parser("route", help="Show the route selected for a task")
    rt.add_argument("task", choices=[t.value for t in TaskType])
    rt.add_argument("--profile", choices=[p.value for p in RoutingProfile], default=None)

    gen = sub.add_parser("generate", help="Run a text generation through the cascade")
    gen.add_argument("task", choices=[t.value for t in TaskType if not t.value.startswith("image:")])
    gen.add_argument("prompt")
    gen.add_argument("--json", action="store_true", help="Repair and pretty-print the output as JSON")
    gen.add_argument("--profile", choices=[p.value for p in RoutingProfile], default=None)

    img = sub.add_parser("image", help="Run an image generation through the cascade")
    img.add_argument("task", choices=[t.value for t in TaskType if t.value.startswith("image:")])
    img.add_argument("prompt")
    img.add_argument("--out", default=None, help="Write the first image to this path")
    img.add_argument("--resolution", choices=["1k", "4k"], default="1k")

    rep = sub.add_parser("repair", help="Repair near-JSON from a file ('-' for stdin)")
    rep.add_argument("file")

    sub.add_parser("probe", help="Send a tiny request to every configured text provider")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    settings = get_settings()
    if settings.observability.metrics_enabled:
        obs_metrics.start_server(settings.observability.metrics_port)

    try:
        if args.command == "providers":
            return cmd_providers()
        if args.command == "route":
            return cmd_route(args.task, args.profile)
        if args.command == "generate":
            return asyncio.run(cmd_generate(args.task, args.prompt, args.json, args.profile))
        if args.command == "image":
            return asyncio.run(cmd_image(args.task, args.prompt, args.out, args.resolution))
        if args.command == "repair":
            return cmd_repair(args.file)
        if args.command == "probe":
            return asyncio.run(cmd_probe())
    except NoProviderConfiguredError as e:
        console.print(Panel(str(e), title="[#dc2626]Configuration error[/#dc2626]", border_style="#dc2626"))
        return 2
    except OrchestratorError as e:
        logger.error("command_failed", command=args.command, error=str(e))
        return 1
    parser.print_help()
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()

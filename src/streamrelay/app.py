"""Command line entry point for streamrelay."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .client import AIClient
from .orchestration import (
    CancellationError,
    CompletionOrchestrator,
    EventType,
    Message,
    OrchestratorContext,
    OrchestratorEvent,
    StreamRelayError,
)
from .settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""
    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the ``streamrelay`` console script."""
    args = _parse_cli_args(argv)

    debug = _env_flag("STREAMRELAY_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("STREAMRELAY_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if args.check:
        raise SystemExit(asyncio.run(_run_check(settings)))
    if args.list_models:
        raise SystemExit(asyncio.run(_run_list_models(settings)))

    prompt = args.prompt
    if prompt == "-" or (prompt is None and not sys.stdin.isatty()):
        prompt = sys.stdin.read()
    if not prompt or not prompt.strip():
        print("A prompt is required (argument or stdin).", file=sys.stderr)
        raise SystemExit(2)

    runner = _run_image if args.image else _run_prompt
    try:
        exit_code = asyncio.run(runner(settings, prompt, show_thinking=args.show_thinking))
    except KeyboardInterrupt:
        _LOGGER.info("Interrupted by user.")
        exit_code = 130
    raise SystemExit(exit_code)


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------


def _console_sink(show_thinking: bool, out: TextIO | None = None, err: TextIO | None = None):
    stdout = out or sys.stdout
    stderr = err or sys.stderr

    def _sink(event: OrchestratorEvent) -> None:
        if event.type is EventType.TEXT_DELTA and event.text:
            stdout.write(event.text)
            stdout.flush()
        elif event.type is EventType.THINKING_DELTA and show_thinking and event.text:
            stderr.write(event.text)
            stderr.flush()
        elif event.type is EventType.THINKING_COMPLETE and show_thinking:
            stderr.write(f"\n[thought for {(event.thinking_ms or 0) / 1000:.1f}s]\n")
        elif event.type is EventType.TEXT_COMPLETE:
            stdout.write("\n")
        elif event.type is EventType.ERROR and event.error:
            stderr.write(f"error: {event.error.get('message')}\n")
        elif event.type is EventType.BLOCK_COMPLETE:
            for citation in event.citations:
                stdout.write(f"[{citation.number}] {citation.title or citation.url} <{citation.url}>\n")
            if event.metrics is not None:
                _LOGGER.info("Completion metrics: %s", event.metrics.to_dict())

    return _sink


async def _run_prompt(settings: Settings, prompt: str, *, show_thinking: bool = False) -> int:
    client = AIClient(settings.client_settings())
    orchestrator = CompletionOrchestrator(client)
    context = OrchestratorContext(
        profile=settings.model_profile(),
        settings=settings.generation_settings(),
        sink=_console_sink(show_thinking),
        system_prompt=settings.system_prompt or None,
    )
    try:
        await orchestrator.complete([Message.text("user", prompt)], context)
    except CancellationError:
        return 130
    except StreamRelayError as exc:
        _LOGGER.debug("Completion failed: %s", exc)
        return 1
    finally:
        await client.aclose()
    return 0


async def _run_image(settings: Settings, prompt: str, *, show_thinking: bool = False) -> int:
    del show_thinking
    client = AIClient(settings.client_settings())
    orchestrator = CompletionOrchestrator(client)
    context = OrchestratorContext(profile=settings.model_profile(), settings=settings.generation_settings())
    try:
        result = await orchestrator.generate_images(prompt, context)
    except StreamRelayError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 1
    finally:
        await client.aclose()
    for image in result.images:
        print(image)
    return 0


async def _run_check(settings: Settings) -> int:
    client = AIClient(settings.client_settings())
    try:
        check = await client.check_model(settings.model, stream=settings.stream)
    finally:
        await client.aclose()
    json.dump(asdict(check), sys.stdout)
    sys.stdout.write("\n")
    return 0 if check.valid else 1


async def _run_list_models(settings: Settings) -> int:
    client = AIClient(settings.client_settings())
    try:
        models = await client.list_models()
    except StreamRelayError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 1
    finally:
        await client.aclose()
    for model in models:
        print(model)
    return 0


# -----------------------------------------------------------------------------
# Argument handling
# -----------------------------------------------------------------------------


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="streamrelay",
        description="Stream a completion from an OpenAI-compatible endpoint or inspect the configuration.",
    )
    parser.add_argument("prompt", nargs="?", help="Prompt to send; '-' reads it from stdin.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.streamrelay/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    parser.add_argument("--check", action="store_true", help="Probe the configured model and exit.")
    parser.add_argument("--list-models", action="store_true", help="List models served by the endpoint and exit.")
    parser.add_argument("--image", action="store_true", help="Treat the prompt as an image-generation prompt.")
    parser.add_argument("--show-thinking", action="store_true", help="Echo reasoning output to stderr.")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, fields[key].type), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    optional = type(None) in get_args(annotation)
    if optional and raw_value.lower() in {"none", "null"}:
        return None
    target = _resolve_annotation(annotation)
    if target is str or target is Any:
        return raw_value
    if target is bool:
        return _parse_bool(raw_value)
    if target is int:
        return int(raw_value, 10)
    if target is float:
        return float(raw_value)
    if target in (list, dict):
        try:
            value = json.loads(raw_value or ("[]" if target is list else "{}"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"{target.__name__} overrides must be valid JSON") from exc
        if not isinstance(value, target):
            raise ValueError(f"Expected a JSON {target.__name__}")
        return value
    return raw_value


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return _resolve_annotation(args[0])


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(payload.get("api_key") or "")
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.name,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("STREAMRELAY_"))


if __name__ == "__main__":  # pragma: no cover
    main()

"""``parley`` console script: run one chat exchange and print its event stream."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import types
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, TextIO, Union, get_args, get_origin, get_type_hints

from .ai.orchestration.orchestrator import ExchangeOutcome
from .ai.providers import ProviderRegistry
from .ai.tools import default_registry
from .chat.message_model import ConfirmRequest, ConfirmResponse, Message, new_message_id
from .errors import ExchangeFailed, ParleyError
from .services.chat_service import ChatService
from .services.persistence import (
    Conversation,
    InMemoryAuditLog,
    InMemoryConversationStore,
    InMemoryMessageStore,
)
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)

_YES = frozenset({"1", "true", "yes", "y", "on", "debug"})
_NO = frozenset({"0", "false", "no", "n", "off", "disabled"})
_NULLS = frozenset({"none", "null"})
_CLI_USER = "cli-user"
_CLI_ASSISTANT = "cli-assistant"

ConfirmPrompt = Callable[[ConfirmRequest], bool]


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Send logs to the rotating file and stderr; DEBUG when *debug* is set."""

    level = logging.DEBUG if debug else logging.INFO
    path = logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging to %s at %s", path, logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Return stored settings, or defaults when the store cannot be read."""

    source = store or SettingsStore(path)
    try:
        return source.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Using default settings; %s could not be read: %s", source.path, exc)
        return Settings()


def build_service(
    settings: Settings,
    *,
    tools: Sequence[str] = (),
    require_confirm: bool = False,
    provider_registry: ProviderRegistry | None = None,
) -> tuple[ChatService, Conversation]:
    """Create an in-memory chat service and a fresh conversation owned by the CLI user."""

    conversation = Conversation(
        id=new_message_id(),
        owner_id=_CLI_USER,
        assistant_id=_CLI_ASSISTANT,
        model=settings.model,
        system_prompt=settings.system_prompt,
        token_limit=settings.token_limit,
        temperature=settings.temperature,
        provider=settings.provider_params(),
    )
    tool_registry = default_registry()
    for tool_type in tools:
        tool_registry.bind(_CLI_ASSISTANT, tool_type.lower(), {"requireConfirm": require_confirm})
    service = ChatService(
        InMemoryConversationStore([conversation]),
        InMemoryMessageStore(),
        InMemoryAuditLog(),
        tool_registry=tool_registry,
        provider_registry=provider_registry,
        auto_summary=settings.auto_summary,
        summary_max_length=settings.summary_max_length,
        max_tool_iterations=settings.max_tool_iterations,
    )
    return service, conversation


async def run_conversation(
    service: ChatService,
    conversation: Conversation,
    prompt: str,
    *,
    confirm: ConfirmPrompt | None = None,
    stream: TextIO | None = None,
) -> ExchangeOutcome:
    """Send *prompt*, write every frame to *stream*, and answer confirmations via *confirm*.

    Without a *confirm* callback the first pending confirmation ends the run.
    """

    destination = stream or sys.stdout
    message = Message(role="user", content=prompt, conversation_id=conversation.id)
    while True:
        exchange = await service.handle_message(_CLI_USER, message)
        try:
            async for frame in exchange.frames():
                destination.write(frame)
                destination.flush()
        except ExchangeFailed as exc:
            _LOGGER.error("Exchange failed: %s", exc.cause)
        outcome = await exchange.wait()
        request = outcome.pending_confirmation
        if request is None or confirm is None:
            return outcome
        message = Message(
            role="user",
            content="",
            conversation_id=conversation.id,
            parent=outcome.message.id,
            confirm_response=ConfirmResponse(allow=confirm(request)),
        )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `parley` console script."""

    args = _build_parser().parse_args(argv)
    debug = os.environ.get("PARLEY_DEBUG", "").strip().lower() in _YES
    configure_logging(debug)

    location = args.settings_path or os.environ.get("PARLEY_SETTINGS_PATH")
    store = SettingsStore(Path(location).expanduser() if location else None)
    try:
        overrides = parse_overrides(args.overrides)
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    settings = load_settings(store=store, overrides=overrides or None)
    if args.dump_settings:
        _dump_settings(settings, store, overrides=overrides)
        return 0
    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    prompt = " ".join(args.prompt).strip()
    if not prompt:
        print("A prompt is required unless --dump-settings is given.", file=sys.stderr)
        return 2

    service, conversation = build_service(settings, tools=args.tools, require_confirm=args.confirm != "auto")
    try:
        outcome = asyncio.run(run_conversation(service, conversation, prompt, confirm=_CONFIRM_POLICIES[args.confirm]))
    except ParleyError as exc:
        print(f"Request rejected: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Interrupted; exchange abandoned.")
        return 130
    return 0 if outcome.succeeded else 1


# ---------------------------------------------------------------------------
# Confirmation policies
# ---------------------------------------------------------------------------


def _ask_confirmation(request: ConfirmRequest) -> bool:
    arguments = json.dumps(request.tool_args, default=str)
    answer = input(f"\nAllow {request.tool_name}({arguments})? [y/N] ")
    return answer.strip().lower() in _YES


_CONFIRM_POLICIES: Dict[str, ConfirmPrompt | None] = {
    "auto": None,
    "ask": _ask_confirmation,
    "allow": lambda _request: True,
    "deny": lambda _request: False,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="parley",
        description="Run one streaming chat exchange and print its server-sent-event frames.",
    )
    parser.add_argument("prompt", nargs="*", help="User message to send.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings (API key redacted) and exit.",
    )
    parser.add_argument("--settings-path", metavar="PATH", help="Settings file (default ~/.parley/settings.json).")
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override one setting for this run; repeatable.",
    )
    parser.add_argument(
        "--tool",
        dest="tools",
        metavar="TYPE",
        action="append",
        default=[],
        help="Bind a built-in tool type (e.g. timeofday) to the assistant; repeatable.",
    )
    parser.add_argument(
        "--confirm",
        choices=sorted(_CONFIRM_POLICIES),
        default="auto",
        help="Tool confirmation policy: run without asking, prompt, or always allow/deny.",
    )
    return parser


# ---------------------------------------------------------------------------
# --set parsing
# ---------------------------------------------------------------------------


def parse_overrides(entries: Sequence[str]) -> Dict[str, Any]:
    """Turn ``KEY=VALUE`` entries into typed :class:`Settings` overrides.

    Raises:
        ValueError: For malformed entries, unknown keys, or values that do not
            fit the field type.
    """

    hints = get_type_hints(Settings)
    known = {item.name for item in fields(Settings)}
    parsed: Dict[str, Any] = {}
    for entry in entries:
        key, sep, value = entry.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValueError(f"expected KEY=VALUE, got {entry!r}")
        if key not in known:
            raise ValueError(f"no setting named {key!r}")
        parsed[key] = _convert(hints[key], value.strip())
    return parsed


def _convert(annotation: Any, text: str) -> Any:
    members = get_args(annotation) if get_origin(annotation) in (Union, types.UnionType) else (annotation,)
    if type(None) in members and text.lower() in _NULLS:
        return None
    target = next(member for member in members if member is not type(None))
    target = get_origin(target) or target
    converter = _CONVERTERS.get(target)
    return converter(text) if converter is not None else text


def _to_bool(text: str) -> bool:
    lowered = text.lower()
    if lowered in _YES:
        return True
    if lowered in _NO:
        return False
    raise ValueError(f"{text!r} is not a boolean")


def _to_json(kind: type) -> Callable[[str], Any]:
    def convert(text: str) -> Any:
        try:
            value = json.loads(text or ("[]" if kind is list else "{}"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"{kind.__name__} values must be JSON") from exc
        if not isinstance(value, kind):
            raise ValueError(f"expected a JSON {kind.__name__}")
        return value

    return convert


_CONVERTERS: Dict[Any, Callable[[str], Any]] = {
    bool: _to_bool,
    int: lambda text: int(text, 10),
    float: float,
    list: _to_json(list),
    dict: _to_json(dict),
}


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    effective = asdict(settings)
    effective["api_key"] = redact_secret(settings.api_key)
    report = {
        "settings": effective,
        "meta": {
            "path": str(store.path),
            "secret_backend": store.vault.strategy,
            "cli_overrides": sorted(overrides),
            "environment_variables": sorted(name for name in os.environ if name.startswith("PARLEY_")),
        },
    }
    destination.write(json.dumps(report, indent=2) + "\n")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
